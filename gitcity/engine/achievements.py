"""
gitcity.engine.achievements — Achievement Unlock Checks
=========================================================

Handler-registry implementation: every achievement ``category`` maps to
the developer stat it is measured against.  An achievement unlocks once
that stat reaches the achievement's ``threshold``.

This module is pure calculation — no database I/O.  Persistence,
item rewards and feed events live in
:mod:`gitcity.services.achievement_service`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Developer stats snapshot
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DevStats:
    """Counters an achievement can be measured against."""

    contributions: int = 0
    public_repos: int = 0
    total_stars: int = 0
    referral_count: int = 0
    kudos_count: int = 0
    gifts_sent: int = 0
    gifts_received: int = 0
    app_streak: int = 0
    kudos_streak: int = 0
    raid_xp: int = 0


class AchievementLike(Protocol):
    id: str
    category: str
    threshold: int


# ---------------------------------------------------------------------------
# Category → stat registry
# ---------------------------------------------------------------------------
CATEGORY_STATS: dict[str, Callable[[DevStats], int]] = {
    "commits": lambda s: s.contributions,
    "repos": lambda s: s.public_repos,
    "stars": lambda s: s.total_stars,
    "social": lambda s: s.referral_count,
    "kudos": lambda s: s.kudos_count,
    "gifts_sent": lambda s: s.gifts_sent,
    "gifts_received": lambda s: s.gifts_received,
    "streak": lambda s: s.app_streak,
    "kudos_streak": lambda s: s.kudos_streak,
    "raid": lambda s: s.raid_xp,
}


def is_unlocked(achievement: AchievementLike, stats: DevStats) -> bool:
    stat = CATEGORY_STATS.get(achievement.category)
    if stat is None:
        logger.debug("Unknown achievement category %r", achievement.category)
        return False
    return stat(stats) >= achievement.threshold


def newly_unlocked(
    catalog: Iterable[AchievementLike],
    stats: DevStats,
    already_unlocked: set[str],
) -> list[AchievementLike]:
    """Return achievements from *catalog* that *stats* now satisfy and
    that are not already in *already_unlocked*, in catalog order."""
    return [
        a for a in catalog
        if a.id not in already_unlocked and is_unlocked(a, stats)
    ]
