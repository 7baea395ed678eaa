"""
gitcity.services.achievement_service — Achievement Persistence
================================================================

Wraps :mod:`gitcity.engine.achievements` with the database side:
loading the catalog, recording unlocks, granting ``unlock_item`` rewards
and writing the feed event.  Callers commit; notifications go out after
commit through :func:`notification_for`.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gitcity.constants import TIER_COLORS
from gitcity.database.models import (
    Achievement,
    Developer,
    DeveloperAchievement,
    FeedEventType,
    PaymentProvider,
    Purchase,
    PurchaseStatus,
)
from gitcity.engine.achievements import DevStats, newly_unlocked
from gitcity.services import feed_service
from gitcity.services.item_service import owns_item
from gitcity.services.notification_senders import UnlockedAchievement, achievement_unlocked
from gitcity.services.notifications import NotificationPayload

logger = logging.getLogger(__name__)


def stats_for_developer(session: Session, dev: Developer, **overrides: int) -> DevStats:
    """Snapshot *dev*'s counters.  Gift counts come from completed purchases."""
    gifts_sent = session.scalar(
        select(func.count()).select_from(Purchase).where(
            Purchase.developer_id == dev.id,
            Purchase.gifted_to.is_not(None),
            Purchase.status == PurchaseStatus.COMPLETED,
        )
    ) or 0
    gifts_received = session.scalar(
        select(func.count()).select_from(Purchase).where(
            Purchase.gifted_to == dev.id,
            Purchase.status == PurchaseStatus.COMPLETED,
        )
    ) or 0
    values = {
        "contributions": dev.contributions or 0,
        "public_repos": dev.public_repos or 0,
        "total_stars": dev.total_stars or 0,
        "referral_count": dev.referral_count or 0,
        "kudos_count": dev.kudos_count or 0,
        "gifts_sent": gifts_sent,
        "gifts_received": gifts_received,
        "app_streak": dev.app_streak or 0,
        "kudos_streak": dev.kudos_streak or 0,
        "raid_xp": dev.raid_xp or 0,
    }
    values.update(overrides)
    return DevStats(**values)


def check_achievements(
    session: Session, dev: Developer, stats: DevStats | None = None,
) -> list[Achievement]:
    """Record every achievement *dev* newly qualifies for and return them."""
    stats = stats or stats_for_developer(session, dev)
    catalog = session.scalars(select(Achievement).order_by(Achievement.sort_order)).all()
    already = set(session.scalars(
        select(DeveloperAchievement.achievement_id).where(
            DeveloperAchievement.developer_id == dev.id
        )
    ))

    candidates = newly_unlocked(catalog, stats, already)
    unlocked: list[Achievement] = []
    for ach in candidates:
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(DeveloperAchievement(developer_id=dev.id, achievement_id=ach.id))
                session.flush()
        except IntegrityError:
            # Recorded by a concurrent request, which also owns the reward.
            continue
        unlocked.append(ach)
        if (
            ach.reward_type == "unlock_item"
            and ach.reward_item_id
            and not owns_item(session, dev.id, ach.reward_item_id)
        ):
            session.add(Purchase(
                developer_id=dev.id,
                item_id=ach.reward_item_id,
                provider=PaymentProvider.ACHIEVEMENT,
                provider_tx_id=f"achievement_{dev.id}_{ach.id}",
                amount_cents=0,
                currency="usd",
                status=PurchaseStatus.COMPLETED,
            ))

    if not unlocked:
        return []
    if len(unlocked) == 1:
        ach = unlocked[0]
        metadata = {
            "login": dev.github_login,
            "achievement_id": ach.id,
            "achievement_name": ach.name,
            "tier": ach.tier,
        }
    else:
        metadata = {
            "login": dev.github_login,
            "count": len(unlocked),
            "achievements": [{"id": a.id, "name": a.name, "tier": a.tier} for a in unlocked],
        }
    feed_service.add_event(session, FeedEventType.ACHIEVEMENT_UNLOCKED, dev.id, metadata=metadata)
    session.flush()

    logger.info("Dev %s unlocked %s", dev.github_login, ", ".join(a.id for a in unlocked))
    return unlocked


def notification_for(
    dev: Developer, unlocked: list[Achievement], base_url: str,
) -> NotificationPayload | None:
    return achievement_unlocked(
        dev.id,
        dev.github_login,
        [UnlockedAchievement(a.id, a.name, a.tier) for a in unlocked],
        base_url,
    )


def mark_seen(session: Session, developer_id: int) -> int:
    result = session.execute(
        update(DeveloperAchievement)
        .where(
            DeveloperAchievement.developer_id == developer_id,
            DeveloperAchievement.seen.is_(False),
        )
        .values(seen=True)
    )
    return result.rowcount or 0


def unseen_count(session: Session, developer_id: int) -> int:
    return session.scalar(
        select(func.count()).select_from(DeveloperAchievement).where(
            DeveloperAchievement.developer_id == developer_id,
            DeveloperAchievement.seen.is_(False),
        )
    ) or 0


def _achievement_dict(a: Achievement) -> dict:
    return {
        "id": a.id,
        "category": a.category,
        "name": a.name,
        "description": a.description,
        "threshold": a.threshold,
        "tier": a.tier,
        "tier_color": TIER_COLORS.get(a.tier),
        "reward_type": a.reward_type,
        "reward_item_id": a.reward_item_id,
    }


def list_catalog(session: Session) -> list[dict]:
    return [
        _achievement_dict(a)
        for a in session.scalars(select(Achievement).order_by(Achievement.sort_order))
    ]


def list_for_developer(session: Session, developer_id: int) -> list[dict]:
    rows = session.scalars(
        select(DeveloperAchievement)
        .where(DeveloperAchievement.developer_id == developer_id)
        .order_by(DeveloperAchievement.unlocked_at.desc())
    ).all()
    return [
        {
            **_achievement_dict(row.achievement),
            "unlocked_at": row.unlocked_at.isoformat() if row.unlocked_at else None,
            "seen": row.seen,
        }
        for row in rows
    ]
