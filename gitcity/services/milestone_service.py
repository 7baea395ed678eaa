"""
gitcity.services.milestone_service — Community Size Milestones
================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gitcity.constants import MILESTONES, as_utc, utcnow
from gitcity.database.models import MilestoneCelebration

logger = logging.getLogger(__name__)


def highest_crossed(total_developers: int) -> int | None:
    crossed = [m for m in MILESTONES if total_developers >= m]
    return max(crossed) if crossed else None


@dataclass(frozen=True, slots=True)
class MilestoneResult:
    milestone: int
    reached_at: datetime
    # False when this milestone had already been celebrated.
    is_new: bool


def record_milestone(session: Session, total_developers: int) -> MilestoneResult | None:
    """Record the highest milestone *total_developers* has crossed.

    Idempotent: a milestone is stored once and keeps its first ``reached_at``.
    """
    milestone = highest_crossed(total_developers)
    if milestone is None:
        return None

    existing = session.get(MilestoneCelebration, milestone)
    if existing is not None:
        return MilestoneResult(milestone, as_utc(existing.reached_at), is_new=False)

    row = MilestoneCelebration(
        milestone=milestone, total_developers=total_developers, reached_at=utcnow(),
    )
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(row)
            session.flush()
    except IntegrityError:
        # Celebrated by a concurrent call; keep its reached_at.
        winner = session.get(MilestoneCelebration, milestone)
        return MilestoneResult(milestone, as_utc(winner.reached_at), is_new=False)
    logger.info("Community reached %s developers (total %s)", milestone, total_developers)
    return MilestoneResult(milestone, row.reached_at, is_new=True)


def list_milestones(session: Session) -> list[dict]:
    rows = session.scalars(
        select(MilestoneCelebration).order_by(MilestoneCelebration.milestone.desc())
    ).all()
    return [
        {"milestone": row.milestone, "reached_at": as_utc(row.reached_at).isoformat()}
        for row in rows
    ]
