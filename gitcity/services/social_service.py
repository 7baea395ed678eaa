"""
gitcity.services.social_service — Districts, Kudos & Check-ins
================================================================

The three interactive, per-user actions of the city.  Each runs in one
transaction and returns a small result object; notifications are built
here but dispatched by the route after the response is sent.

District rules:

* Picking the current district only confirms the choice.
* The first pick is free and is not counted as a change.
* Afterwards at most ``MAX_FREE_DISTRICT_CHANGES`` real changes are
  allowed, each at least ``DISTRICT_CHANGE_COOLDOWN_DAYS`` apart.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gitcity.constants import (
    DISTRICT_CHANGE_COOLDOWN_DAYS,
    MAX_FREE_DISTRICT_CHANGES,
    VALID_DISTRICTS,
    as_utc,
    utcnow,
    utctoday,
)
from gitcity.database.models import (
    Developer,
    DeveloperKudos,
    District,
    DistrictChange,
    FeedEventType,
    StreakFreezeLog,
)
from gitcity.engine.streaks import FREEZE_MILESTONE_STREAK, compute_checkin, next_kudos_streak
from gitcity.services import achievement_service, feed_service, notification_senders
from gitcity.services.developers import find_by_login, require_claimed
from gitcity.services.errors import ServiceError
from gitcity.services.item_service import grant_streak_freeze
from gitcity.services.notifications import NotificationPayload

logger = logging.getLogger(__name__)

MAX_KUDOS_PER_DAY = 5
RECENT_KUDOS_LIMIT = 10


# ---------------------------------------------------------------------------
# Districts
# ---------------------------------------------------------------------------
def _adjust_population(session: Session, district_id: str | None, delta: int) -> None:
    if not district_id:
        return
    district = session.get(District, district_id)
    if district is not None:
        district.population = max(0, (district.population or 0) + delta)


def change_district(session: Session, login: str, district_id: str) -> dict:
    if district_id not in VALID_DISTRICTS:
        raise ServiceError(400, "Invalid district")
    if not login:
        raise ServiceError(400, "No GitHub login found")

    dev = find_by_login(session, login)
    if dev is None:
        raise ServiceError(404, "Developer not found")
    if not dev.claimed:
        raise ServiceError(403, "You must claim your building first")

    old = dev.district
    if old == district_id:
        dev.district_chosen = True
        return {"ok": True, "district": district_id}

    first_choice = not dev.district_chosen
    actual_change = old is not None

    if not first_choice:
        if (dev.district_changes_count or 0) >= MAX_FREE_DISTRICT_CHANGES:
            raise ServiceError(403, "Paid district changes coming soon")
        changed_at = as_utc(dev.district_changed_at)
        if changed_at is not None:
            remaining = changed_at + timedelta(days=DISTRICT_CHANGE_COOLDOWN_DAYS) - utcnow()
            if remaining.total_seconds() > 0:
                days = math.ceil(remaining.total_seconds() / 86400)
                raise ServiceError(429, f"Cooldown: wait {days} days")

    dev.district = district_id
    dev.district_chosen = True
    if actual_change:
        dev.district_changes_count = (dev.district_changes_count or 0) + 1
        dev.district_changed_at = utcnow()

    session.add(DistrictChange(
        developer_id=dev.id,
        from_district=old,
        to_district=district_id,
        reason="user_choice",
    ))
    _adjust_population(session, old, -1)
    _adjust_population(session, district_id, +1)
    if actual_change:
        feed_service.add_event(
            session, FeedEventType.DISTRICT_CHANGED, dev.id,
            metadata={"login": dev.github_login, "from": old, "to": district_id},
        )

    logger.info("Dev %s moved %s → %s", dev.github_login, old, district_id)
    return {"ok": True, "district": district_id}


# ---------------------------------------------------------------------------
# Kudos
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class KudosResult:
    given: bool
    notifications: list[NotificationPayload] = field(default_factory=list)


def give_kudos(session: Session, login: str, receiver_login: str, base_url: str) -> KudosResult:
    giver = require_claimed(session, login)

    receiver = find_by_login(session, receiver_login)
    if receiver is None:
        raise ServiceError(404, "Receiver not found")
    if receiver.id == giver.id:
        raise ServiceError(400, "Cannot give kudos to yourself")

    today = utctoday()
    given_today = session.scalar(
        select(func.count()).select_from(DeveloperKudos).where(
            DeveloperKudos.giver_id == giver.id,
            DeveloperKudos.given_date == today,
        )
    ) or 0
    if given_today >= MAX_KUDOS_PER_DAY:
        raise ServiceError(429, f"Daily kudos limit reached ({MAX_KUDOS_PER_DAY}/day)")

    # One per giver/receiver/day: a repeat is a silent success.
    if session.get(DeveloperKudos, (giver.id, receiver.id, today)) is not None:
        return KudosResult(given=False)
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(DeveloperKudos(giver_id=giver.id, receiver_id=receiver.id, given_date=today))
            session.flush()
    except IntegrityError:
        # A concurrent request gave the same kudos first.
        return KudosResult(given=False)

    receiver.kudos_count = (receiver.kudos_count or 0) + 1
    feed_service.add_event(
        session, FeedEventType.KUDOS_GIVEN, giver.id,
        target_id=receiver.id,
        metadata={"giver_login": giver.github_login, "receiver_login": receiver.github_login},
    )

    giver.kudos_streak = next_kudos_streak(today, giver.last_kudos_given_date, giver.kudos_streak or 0)
    giver.last_kudos_given_date = today
    session.flush()

    notifications: list[NotificationPayload] = []
    unlocked = achievement_service.check_achievements(session, giver)
    achievement_note = achievement_service.notification_for(giver, unlocked, base_url)
    if achievement_note is not None:
        notifications.append(achievement_note)
    notifications.append(notification_senders.kudos_received(
        receiver.id, giver.github_login, receiver.github_login, today.isoformat(), base_url,
    ))
    return KudosResult(given=True, notifications=notifications)


# ---------------------------------------------------------------------------
# Daily check-in
# ---------------------------------------------------------------------------
def perform_checkin(session: Session, login: str, base_url: str) -> tuple[dict, list[NotificationPayload]]:
    dev = require_claimed(session, login)
    today = utctoday()

    result = compute_checkin(
        today,
        dev.last_checkin_date,
        dev.app_streak or 0,
        dev.app_longest_streak or 0,
        dev.streak_freezes_available or 0,
    )

    new_achievements: list[str] = []
    notifications: list[NotificationPayload] = []

    if result.checked_in:
        dev.app_streak = result.streak
        dev.app_longest_streak = result.longest
        dev.last_checkin_date = today
        dev.last_active_at = utcnow()
        dev.streak_freezes_available = result.freezes_left
        if result.was_frozen:
            session.add(StreakFreezeLog(developer_id=dev.id, action="consumed"))

        if result.streak >= FREEZE_MILESTONE_STREAK and not dev.streak_freeze_30d_claimed:
            grant_streak_freeze(session, dev.id, "granted_milestone")
            dev.streak_freeze_30d_claimed = True

        feed_service.add_event(
            session, FeedEventType.STREAK_CHECKIN, dev.id,
            metadata={
                "login": dev.github_login,
                "streak": result.streak,
                "was_frozen": result.was_frozen,
            },
        )
        session.flush()

        unlocked = achievement_service.check_achievements(session, dev)
        new_achievements = [a.id for a in unlocked]
        achievement_note = achievement_service.notification_for(dev, unlocked, base_url)
        if achievement_note is not None:
            notifications.append(achievement_note)

        milestone_note = notification_senders.streak_milestone(
            dev.id, dev.github_login, result.streak, result.longest, base_url=base_url,
        )
        if milestone_note is not None:
            notifications.append(milestone_note)

    recent_kudos = session.scalars(
        select(DeveloperKudos.giver_id)
        .where(DeveloperKudos.receiver_id == dev.id)
        .order_by(DeveloperKudos.given_date.desc())
        .limit(RECENT_KUDOS_LIMIT)
    ).all()

    body = {
        "checked_in": result.checked_in,
        "already_today": result.already_today,
        "streak": result.streak,
        "longest": result.longest,
        "was_frozen": result.was_frozen,
        "new_achievements": new_achievements,
        "unseen_count": achievement_service.unseen_count(session, dev.id),
        "kudos_since_last": len(recent_kudos),
    }
    return body, notifications


@dataclass(frozen=True, slots=True)
class ReminderTarget:
    developer_id: int
    streak: int
    freezes: int
    # The streak can no longer be saved by checking in today.
    already_broken: bool


def streak_reminder_targets(session: Session, min_streak: int = 3) -> list[ReminderTarget]:
    """Claimed developers with an email and a streak not yet extended today."""
    today = utctoday()
    devs = session.scalars(
        select(Developer).where(
            Developer.claimed.is_(True),
            Developer.email.is_not(None),
            Developer.app_streak >= min_streak,
            (Developer.last_checkin_date.is_(None)) | (Developer.last_checkin_date != today),
        ).order_by(Developer.id)
    ).all()

    targets: list[ReminderTarget] = []
    for dev in devs:
        freezes = dev.streak_freezes_available or 0
        last = dev.last_checkin_date
        recoverable = last is not None and (
            last == today - timedelta(days=1)
            or (last == today - timedelta(days=2) and freezes > 0)
        )
        targets.append(ReminderTarget(dev.id, dev.app_streak, freezes, not recoverable))
    return targets
