"""
gitcity.services.notification_senders — Typed Notification Builders
=====================================================================

One builder per notification type.  Each returns a ready
:class:`NotificationPayload` (or ``None`` when nothing should be sent) so
routes can hand it to ``Notifier.send_safe`` from a background task.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import Engine, select

from gitcity.constants import NOTIFY_TIERS, TIER_EMOJI, item_name
from gitcity.database.engine import get_session, run_db
from gitcity.database.models import Developer
from gitcity.engine.streaks import STREAK_MILESTONES
from gitcity.services.email_template import SITE_URL, build_button, escape_html
from gitcity.services.notifications import (
    Category,
    NotificationPayload,
    Notifier,
    Priority,
)

logger = logging.getLogger(__name__)

COMMUNITY_CHUNK_SIZE = 50

STREAK_MESSAGES: dict[int, tuple[str, str]] = {
    7: ("&#x1F525;", "You're on fire!"),
    30: ("&#x1F3C6;", "A whole month. Legendary."),
    100: ("&#x1F48E;", "Triple digits. Unstoppable."),
    365: ("&#x1F451;", "One full year. You're a legend."),
}


def _profile_url(login: str, base_url: str) -> str:
    return f"{base_url}/?user={login}"


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class UnlockedAchievement:
    id: str
    name: str
    tier: str


def achievement_unlocked(
    developer_id: int,
    login: str,
    achievements: list[UnlockedAchievement],
    base_url: str = SITE_URL,
) -> NotificationPayload | None:
    """Gold/diamond unlocks only.  Several at once become one email."""
    notable = [a for a in achievements if a.tier in NOTIFY_TIERS]
    if not notable:
        return None

    single = len(notable) == 1
    first = notable[0]
    if single:
        dedup_key = f"achievement:{developer_id}:{first.id}"
        title = f"Achievement Unlocked: {first.name} ({first.tier})"
        body = f"You unlocked {first.name} ({first.tier})."
        heading = "Achievement Unlocked!"
    else:
        dedup_key = f"achievement_batch:{developer_id}:{','.join(sorted(a.id for a in notable))}"
        title = f"{len(notable)} Achievements Unlocked!"
        body = (
            f"You unlocked {len(notable)} new achievements: "
            f"{', '.join(a.name for a in notable)}."
        )
        heading = title

    items_html = "".join(
        '<li style="margin-bottom: 6px; color: #e0d8cc;">'
        f'{TIER_EMOJI.get(a.tier, "")} <strong style="color: #c8e64a;">{escape_html(a.name)}</strong> '
        f'<span style="color: #666;">({a.tier})</span></li>'
        for a in notable
    )
    url = _profile_url(login, base_url)

    return NotificationPayload(
        type="achievement_unlocked",
        category=Category.SOCIAL,
        developer_id=developer_id,
        dedup_key=dedup_key,
        title=title,
        body=body,
        html=(
            f'<p style="color: #c8e64a; font-size: 16px;">{heading}</p>'
            f'<ul style="padding-left: 20px; margin: 16px 0; list-style: none;">{items_html}</ul>'
            f"{build_button('View Achievements', url)}"
        ),
        action_url=url,
        priority=Priority.LOW,
        batch_key=f"achievements:{developer_id}",
        batch_window_minutes=30,
        batch_event_data={
            "achievements": [{"id": a.id, "name": a.name, "tier": a.tier} for a in notable],
        },
    )


# ---------------------------------------------------------------------------
# Purchases & gifts
# ---------------------------------------------------------------------------
def purchase_confirmation(
    developer_id: int, login: str, purchase_id: int, item_id: str, base_url: str = SITE_URL,
) -> NotificationPayload:
    name = item_name(item_id)
    url = _profile_url(login, base_url)
    return NotificationPayload(
        type="purchase_confirmation",
        category=Category.TRANSACTIONAL,
        developer_id=developer_id,
        dedup_key=f"purchase:{purchase_id}",
        force_send=True,
        title=f"Purchase confirmed: {name}",
        body=f"Your purchase of {name} is confirmed and equipped on your building.",
        html=(
            '<p style="color: #e0d8cc; font-size: 16px;">Purchase confirmed!</p>'
            f'<p style="color: #e0d8cc;"><strong style="color: #c8e64a;">{escape_html(name)}</strong> '
            "is now available on your building.</p>"
            f"{build_button('View Your Building', url)}"
        ),
        action_url=url,
        priority=Priority.HIGH,
    )


def gift_sent(
    buyer_id: int, receiver_login: str, purchase_id: int, item_id: str, base_url: str = SITE_URL,
) -> NotificationPayload:
    name = item_name(item_id)
    url = _profile_url(receiver_login, base_url)
    return NotificationPayload(
        type="gift_sent",
        category=Category.TRANSACTIONAL,
        developer_id=buyer_id,
        dedup_key=f"gift_sent:{purchase_id}",
        force_send=True,
        title=f"Gift sent to @{receiver_login}",
        body=f"You gifted {name} to @{receiver_login}.",
        html=(
            '<p style="color: #e0d8cc; font-size: 16px;">Gift sent!</p>'
            f'<p style="color: #e0d8cc;">You gifted <strong style="color: #c8e64a;">{escape_html(name)}</strong> '
            f"to <strong>@{escape_html(receiver_login)}</strong>.</p>"
            f"{build_button('View Their Building', url)}"
        ),
        action_url=url,
        priority=Priority.HIGH,
    )


def gift_received(
    receiver_id: int,
    giver_login: str,
    receiver_login: str,
    purchase_id: int,
    item_id: str,
    base_url: str = SITE_URL,
) -> NotificationPayload:
    name = item_name(item_id)
    url = _profile_url(receiver_login, base_url)
    return NotificationPayload(
        type="gift_received",
        category=Category.SOCIAL,
        developer_id=receiver_id,
        dedup_key=f"gift_received:{purchase_id}",
        title=f"@{giver_login} gifted you {name}!",
        body=f"@{giver_login} sent you {name}. It's now on your building!",
        html=(
            '<p style="color: #e0d8cc; font-size: 16px;">You received a gift!</p>'
            f'<p style="color: #e0d8cc;"><strong>@{escape_html(giver_login)}</strong> gifted you '
            f'<strong style="color: #c8e64a;">{escape_html(name)}</strong>. '
            "It's now available on your building!</p>"
            f"{build_button('Check Your Building', url)}"
        ),
        action_url=url,
        priority=Priority.HIGH,
    )


# ---------------------------------------------------------------------------
# Kudos
# ---------------------------------------------------------------------------
def kudos_received(
    receiver_id: int,
    giver_login: str,
    receiver_login: str,
    given_date: str,
    base_url: str = SITE_URL,
) -> NotificationPayload:
    url = _profile_url(receiver_login, base_url)
    return NotificationPayload(
        type="kudos_received",
        category=Category.SOCIAL,
        developer_id=receiver_id,
        dedup_key=f"kudos:{giver_login}:{receiver_id}:{given_date}",
        title=f"@{giver_login} gave you kudos!",
        body=f"@{giver_login} gave you kudos.",
        html=(
            f'<p style="color: #e0d8cc; font-size: 16px;"><strong>@{escape_html(giver_login)}</strong> '
            "gave you kudos!</p>"
            f"{build_button('View Your Building', url)}"
        ),
        action_url=url,
        priority=Priority.LOW,
        batch_key=f"kudos:{receiver_id}",
        batch_event_data={"giver": giver_login},
    )


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------
def streak_milestone(
    developer_id: int,
    login: str,
    streak: int,
    longest: int,
    reward_item_name: str | None = None,
    base_url: str = SITE_URL,
) -> NotificationPayload | None:
    if streak not in STREAK_MILESTONES:
        return None
    emoji, tagline = STREAK_MESSAGES[streak]
    reward_html = (
        f'<p style="color: #c8e64a; font-size: 14px;">Reward unlocked: '
        f"<strong>{escape_html(reward_item_name)}</strong></p>"
        if reward_item_name
        else ""
    )
    url = _profile_url(login, base_url)
    return NotificationPayload(
        type="streak_milestone",
        category=Category.SOCIAL,
        developer_id=developer_id,
        dedup_key=f"streak_milestone:{developer_id}:{streak}",
        title=f"{streak}-day streak! {tagline}",
        body=(
            f"{streak}-day streak! {tagline}"
            + (f" Reward: {reward_item_name}" if reward_item_name else "")
        ),
        html=(
            '<div style="text-align: center;">'
            f'<p style="font-size: 40px; margin: 0;">{emoji}</p>'
            f'<p style="color: #c8e64a; font-size: 24px; font-weight: bold; margin: 8px 0;">{streak}-day streak!</p>'
            f'<p style="color: #e0d8cc; font-size: 16px; margin-top: 0;">{tagline}</p>'
            "</div>"
            f"{reward_html}"
            f'<p style="color: #666; font-size: 13px; text-align: center;">Longest streak: {longest} days</p>'
            f"{build_button('Keep It Going', url)}"
        ),
        action_url=url,
        priority=Priority.HIGH,
    )


def streak_reminder(
    developer_id: int,
    streak: int,
    has_freeze: bool,
    date: str,
    base_url: str = SITE_URL,
) -> NotificationPayload:
    freeze_note = (
        '<p style="color: #666; font-size: 13px;">You have a streak freeze, but don\'t waste it!</p>'
        if has_freeze
        else ""
    )
    return NotificationPayload(
        type="streak_reminder",
        category=Category.STREAK_REMINDERS,
        developer_id=developer_id,
        dedup_key=f"streak_reminder:{developer_id}:{date}",
        skip_if_active=True,
        title=f"Don't lose your {streak}-day streak!",
        body=f"You haven't checked in today. Don't break your {streak}-day streak!",
        html=(
            '<div style="text-align: center;">'
            f'<p style="color: #ff6b6b; font-size: 20px; font-weight: bold;">Your {streak}-day streak is at risk!</p>'
            '<p style="color: #e0d8cc;">You haven\'t checked in today. '
            "Check in before midnight to keep your streak alive.</p>"
            f"{freeze_note}</div>"
            f"{build_button('Check In Now', base_url)}"
        ),
        action_url=base_url,
        priority=Priority.HIGH,
    )


def streak_broken(
    developer_id: int, previous_streak: int, date: str, base_url: str = SITE_URL,
) -> NotificationPayload:
    return NotificationPayload(
        type="streak_broken",
        category=Category.STREAK_REMINDERS,
        developer_id=developer_id,
        dedup_key=f"streak_broken:{developer_id}:{date}",
        title=f"Your {previous_streak}-day streak ended. Start fresh!",
        body=f"Your {previous_streak}-day streak has ended. Check in today to start a new one!",
        html=(
            '<div style="text-align: center;">'
            f'<p style="color: #e0d8cc; font-size: 16px;">Your <strong style="color: #ff6b6b;">'
            f"{previous_streak}-day</strong> streak ended.</p>"
            '<p style="color: #e0d8cc;">Every streak starts with day 1. Check in now to begin again!</p>'
            "</div>"
            f"{build_button('Start Fresh', base_url)}"
        ),
        action_url=base_url,
        priority=Priority.HIGH,
    )


# ---------------------------------------------------------------------------
# Community milestones
# ---------------------------------------------------------------------------
def community_milestone(
    developer_id: int, login: str, milestone: int, base_url: str = SITE_URL,
) -> NotificationPayload:
    formatted = f"{milestone:,}"
    return NotificationPayload(
        type="community_milestone",
        category=Category.TRANSACTIONAL,
        developer_id=developer_id,
        dedup_key=f"community_milestone:{milestone}:{developer_id}",
        title=f"Git City hit {formatted} developers!",
        body=f"The community just reached {formatted} developers. You're one of them!",
        html=(
            '<div style="text-align: center;">'
            f'<p style="color: #c8e64a; font-size: 24px; font-weight: bold; margin-bottom: 4px;">{formatted}</p>'
            '<p style="color: #e0d8cc; font-size: 16px; margin-top: 0;">developers in Git City</p></div>'
            '<p style="color: #e0d8cc; text-align: center;">'
            f"The community just hit a new milestone, and you're part of it, @{escape_html(login)}!</p>"
            f"{build_button('Visit Git City', base_url)}"
        ),
        action_url=base_url,
        priority=Priority.LOW,
    )


def _claimed_with_email(engine: Engine, offset: int, limit: int) -> list[tuple[int, str]]:
    with get_session(engine) as session:
        rows = session.execute(
            select(Developer.id, Developer.github_login)
            .where(Developer.claimed.is_(True), Developer.email.is_not(None))
            .order_by(Developer.id)
            .offset(offset)
            .limit(limit)
        ).all()
    return [(row.id, row.github_login) for row in rows]


async def notify_community_milestone(notifier: Notifier, milestone: int) -> dict[str, int]:
    """Email every claimed developer with an address, in chunks of 50."""
    stats = {"sent": 0, "errors": 0}
    offset = 0
    while True:
        devs = await run_db(_claimed_with_email, notifier.engine, offset, COMMUNITY_CHUNK_SIZE)
        if not devs:
            break
        for dev_id, login in devs:
            try:
                await notifier.send(
                    community_milestone(dev_id, login, milestone, notifier.base_url)
                )
                stats["sent"] += 1
            except Exception:
                logger.exception("Milestone %s notification failed for dev %s", milestone, dev_id)
                stats["errors"] += 1
        if len(devs) < COMMUNITY_CHUNK_SIZE:
            break
        offset += COMMUNITY_CHUNK_SIZE
    return stats
