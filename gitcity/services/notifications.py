"""
gitcity.services.notifications — Notification Pipeline
========================================================

Every outgoing notification flows through :meth:`Notifier.send`, once per
target channel (``email`` by default):

    1. ``skip_if_active`` → skip when the developer was online < 5 min ago.
    2. Channel master toggle (``email_enabled`` / ``push_enabled``).
    3. Category toggle; ``channel_overrides`` win over the flat toggle.
    4. Dedup on ``(dedup_key, channel)`` in ``notification_log``.
    5. Per-channel hourly/daily rate limit on *sent* rows.  A limited
       notification that carries a ``batch_key`` is batched instead.
    6. Digest batching for developers who chose a non-realtime digest.
    7. Channel dispatch (Resend email, push placeholder, in-app log).

``force_send`` (receipts) bypasses steps 2, 3 and 6.  Closed batches are
turned into one digest each by :meth:`Notifier.flush_pending_batches`
(run from cron).

Database work is synchronous and runs on a worker thread through
:func:`~gitcity.database.engine.run_db`; only the Resend call is awaited
on the event loop.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from urllib.parse import urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from gitcity.constants import as_utc, utcnow
from gitcity.database.engine import get_session, run_db
from gitcity.database.models import (
    Developer,
    NotificationBatch,
    NotificationBatchItem,
    NotificationLog,
    NotificationPreference,
    NotificationSuppression,
    PushSubscription,
)
from gitcity.services.email_template import SITE_URL, escape_html, wrap_in_base_template
from gitcity.services.resend_client import Mailer, ResendError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums & limits
# ---------------------------------------------------------------------------
class Channel(enum.StrEnum):
    EMAIL = "email"
    PUSH = "push"
    IN_APP = "in_app"


class Category(enum.StrEnum):
    TRANSACTIONAL = "transactional"
    SOCIAL = "social"
    DIGEST = "digest"
    MARKETING = "marketing"
    STREAK_REMINDERS = "streak_reminders"


class Priority(enum.StrEnum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


DIGEST_FREQUENCIES: tuple[str, ...] = ("realtime", "hourly", "daily", "weekly")
UNSUBSCRIBE_CATEGORIES: tuple[str, ...] = tuple(Category) + ("all",)

# channel → (per hour, per day)
RATE_LIMITS: dict[Channel, tuple[int, int]] = {
    Channel.EMAIL: (5, 10),
    Channel.PUSH: (10, 30),
    Channel.IN_APP: (100, 500),
}

RECENTLY_ACTIVE_MINUTES = 5
DEFAULT_BATCH_WINDOW_MINUTES = 60
FLUSH_BATCH_LIMIT = 100
DIGEST_MAX_ITEMS = 10


# ---------------------------------------------------------------------------
# Payload & result
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class NotificationPayload:
    type: str
    category: Category
    developer_id: int
    dedup_key: str
    title: str
    body: str
    html: str | None = None
    action_url: str | None = None
    icon_url: str | None = None
    data: dict | None = None

    force_send: bool = False
    channels: tuple[Channel, ...] = (Channel.EMAIL,)
    skip_if_active: bool = False
    priority: Priority = Priority.NORMAL

    batch_key: str | None = None
    # None → the Notifier's configured window
    batch_window_minutes: int | None = None
    batch_event_data: dict = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SendResult:
    channel: Channel
    success: bool
    provider_id: str | None = None
    skipped: str | None = None
    batched: bool = False


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NotificationPrefs:
    email_enabled: bool = True
    push_enabled: bool = True
    transactional: bool = True
    social: bool = True
    digest: bool = True
    marketing: bool = False
    streak_reminders: bool = True
    digest_frequency: str = "realtime"
    quiet_hours_start: int | None = None
    quiet_hours_end: int | None = None
    channel_overrides: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: NotificationPreference | None) -> NotificationPrefs:
        if row is None:
            return cls()
        defaults = cls()

        def pick(name: str):
            value = getattr(row, name)
            return getattr(defaults, name) if value is None else value

        return cls(
            email_enabled=pick("email_enabled"),
            push_enabled=pick("push_enabled"),
            transactional=pick("transactional"),
            social=pick("social"),
            digest=pick("digest"),
            marketing=pick("marketing"),
            streak_reminders=pick("streak_reminders"),
            digest_frequency=pick("digest_frequency"),
            quiet_hours_start=row.quiet_hours_start,
            quiet_hours_end=row.quiet_hours_end,
            channel_overrides=dict(row.channel_overrides or {}),
        )

    def category_enabled(self, channel: str, category: str) -> bool:
        """``channel_overrides[channel][category]`` wins over the flat toggle."""
        override = (self.channel_overrides.get(channel) or {}).get(category)
        if isinstance(override, bool):
            return override
        return bool(getattr(self, category, True))

    def to_dict(self) -> dict:
        return {
            "email_enabled": self.email_enabled,
            "push_enabled": self.push_enabled,
            "transactional": self.transactional,
            "social": self.social,
            "digest": self.digest,
            "marketing": self.marketing,
            "streak_reminders": self.streak_reminders,
            "digest_frequency": self.digest_frequency,
            "quiet_hours_start": self.quiet_hours_start,
            "quiet_hours_end": self.quiet_hours_end,
            "channel_overrides": self.channel_overrides,
        }


def get_preferences(session: Session, developer_id: int) -> NotificationPrefs:
    return NotificationPrefs.from_row(session.get(NotificationPreference, developer_id))


def is_in_quiet_hours(
    start: int | None,
    end: int | None,
    tz_name: str | None,
    now: datetime | None = None,
) -> bool:
    """True when the developer's local hour is inside ``[start, end)``.

    Handles wrap-around windows such as 22 → 7.  Unknown time zones fall
    back to UTC.
    """
    if start is None or end is None:
        return False
    now = now or utcnow()
    try:
        local = now.astimezone(ZoneInfo(tz_name or "UTC"))
    except (ZoneInfoNotFoundError, ValueError):
        local = now
    hour = local.hour
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


# ---------------------------------------------------------------------------
# Unsubscribe tokens
# ---------------------------------------------------------------------------
def _unsubscribe_secret() -> str:
    secret = os.getenv("UNSUBSCRIBE_HMAC_SECRET") or os.getenv("CRON_SECRET")
    if not secret:
        raise RuntimeError("UNSUBSCRIBE_HMAC_SECRET (or CRON_SECRET) is not set")
    return secret


def generate_hmac_token(developer_id: int, category: str) -> str:
    return hmac.new(
        _unsubscribe_secret().encode(),
        f"{developer_id}:{category}".encode(),
        hashlib.sha256,
    ).hexdigest()[:32]


def verify_hmac_token(developer_id: int, category: str, token: str) -> bool:
    expected = generate_hmac_token(developer_id, category)
    return hmac.compare_digest(expected, token)


def build_unsubscribe_url(base_url: str, developer_id: int, category: str) -> str:
    query = urlencode({
        "dev": developer_id,
        "cat": category,
        "token": generate_hmac_token(developer_id, category),
    })
    return f"{base_url.rstrip('/')}/api/unsubscribe?{query}"


# ---------------------------------------------------------------------------
# Digest building
# ---------------------------------------------------------------------------
def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'s' if n > 1 else ''}"


def build_digest_from_batch(
    batch_id: int,
    developer_id: int,
    notification_type: str,
    channel: str,
    items: list[dict],
    base_url: str = SITE_URL,
) -> NotificationPayload | None:
    """Summarise a closed batch into a single high-priority digest."""
    count = len(items)
    if count == 0:
        return None

    if notification_type == "raid_alert":
        title = f"Your building was raided {count} time{'s' if count > 1 else ''}!"
        body = f"{_plural(count, 'raid')} while you were away."
    elif notification_type == "achievement_unlocked":
        title = f"{_plural(count, 'new achievement')} unlocked!"
        body = f"You unlocked {_plural(count, 'achievement')}."
    elif notification_type == "kudos_received":
        title = f"You received {count} kudos!"
        body = f"{_plural(count, 'developer')} gave you kudos."
    else:
        title = f"{_plural(count, 'new notification')}"
        body = f"You have {_plural(count, 'new notification')}."

    event_list = "".join(
        '<li style="margin-bottom: 4px; color: #e0d8cc;">'
        f"{escape_html(str(item.get('body') or item.get('title') or 'New event'))}</li>"
        for item in items[:DIGEST_MAX_ITEMS]
    )
    remaining = (
        f'<p style="color: #666; font-size: 13px;">...and {count - DIGEST_MAX_ITEMS} more</p>'
        if count > DIGEST_MAX_ITEMS
        else ""
    )

    return NotificationPayload(
        type=f"{notification_type}_digest",
        category=Category.DIGEST,
        developer_id=developer_id,
        dedup_key=f"digest:{batch_id}",
        title=title,
        body=body,
        html=(
            f'<p style="color: #e0d8cc; font-size: 15px;">{body}</p>'
            f'<ul style="padding-left: 20px; margin: 16px 0;">{event_list}</ul>'
            f"{remaining}"
        ),
        action_url=base_url,
        priority=Priority.HIGH,
        channels=(Channel(channel),),
    )


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------
class Notifier:
    """Runs the notification pipeline against one database + one mailer."""

    def __init__(
        self,
        engine: Engine,
        mailer: Mailer,
        *,
        base_url: str = SITE_URL,
        clock: Callable[[], datetime] = utcnow,
        batch_window_minutes: int = DEFAULT_BATCH_WINDOW_MINUTES,
    ) -> None:
        self.engine = engine
        self.mailer = mailer
        self.base_url = base_url.rstrip("/")
        self.clock = clock
        self.batch_window_minutes = batch_window_minutes

    # -- public API ---------------------------------------------------------

    async def send(self, payload: NotificationPayload) -> list[SendResult]:
        channels = payload.channels or (Channel.EMAIL,)

        if payload.skip_if_active and await run_db(self._recently_active, payload.developer_id):
            return [
                SendResult(channel=ch, success=False, skipped="user_recently_active")
                for ch in channels
            ]

        prefs = await run_db(self._load_prefs, payload.developer_id)

        results: list[SendResult] = []
        for channel in channels:
            try:
                results.append(await self._process_channel(Channel(channel), payload, prefs))
            except Exception:
                logger.exception(
                    "%s notification %s failed for dev %s",
                    channel, payload.type, payload.developer_id,
                )
                results.append(SendResult(channel=channel, success=False, skipped="send_error"))
        return results

    async def send_safe(self, payload: NotificationPayload) -> None:
        """Fire-and-forget variant for background tasks.  Never raises."""
        try:
            await self.send(payload)
        except Exception:
            logger.exception(
                "Async notification %s failed for dev %s", payload.type, payload.developer_id
            )

    async def flush_pending_batches(self) -> int:
        """Turn every closed, unprocessed batch into one digest.

        Returns the number of batches that produced a digest.
        """
        batches = await run_db(self._closed_batches)
        flushed = 0
        for batch_id, developer_id, notification_type, channel, items in batches:
            try:
                digest = build_digest_from_batch(
                    batch_id, developer_id, notification_type, channel, items, self.base_url,
                )
                if digest is not None:
                    await self.send(digest)
                await run_db(self._mark_batch_processed, batch_id)
                if digest is not None:
                    flushed += 1
            except Exception:
                logger.exception("Failed to flush notification batch %s", batch_id)
        return flushed

    # -- pipeline -----------------------------------------------------------

    async def _process_channel(
        self, channel: Channel, payload: NotificationPayload, prefs: NotificationPrefs,
    ) -> SendResult:
        gated = await run_db(self._gate, channel, payload, prefs)
        if gated is not None:
            return gated

        if channel == Channel.EMAIL:
            return await self._dispatch_email(payload)
        if channel == Channel.PUSH:
            return await run_db(self._dispatch_push, payload, prefs)
        return await run_db(self._dispatch_in_app, payload)

    def _gate(
        self, channel: Channel, payload: NotificationPayload, prefs: NotificationPrefs,
    ) -> SendResult | None:
        """Steps 2–6.  Returns a result when the notification stops here."""
        if not payload.force_send:
            if channel == Channel.EMAIL and not prefs.email_enabled:
                return SendResult(channel=channel, success=False, skipped="channel_disabled")
            if channel == Channel.PUSH and not prefs.push_enabled:
                return SendResult(channel=channel, success=False, skipped="channel_disabled")
            if not prefs.category_enabled(channel, payload.category):
                return SendResult(channel=channel, success=False, skipped="category_disabled")

        with get_session(self.engine) as session:
            if payload.dedup_key:
                existing = session.scalar(
                    select(NotificationLog.id).where(
                        NotificationLog.dedup_key == payload.dedup_key,
                        NotificationLog.channel == channel,
                    ).limit(1)
                )
                if existing is not None:
                    return SendResult(channel=channel, success=False, skipped="duplicate")

            limited = self._rate_limited(session, payload.developer_id, channel)
            if limited:
                if payload.batch_key and payload.priority != Priority.HIGH:
                    return self._add_to_batch(session, channel, payload)
                return SendResult(
                    channel=channel, success=False, skipped=f"rate_limited:{limited}"
                )

            if self._should_batch(payload, prefs):
                return self._add_to_batch(session, channel, payload)

        return None

    @staticmethod
    def _should_batch(payload: NotificationPayload, prefs: NotificationPrefs) -> bool:
        if payload.priority == Priority.HIGH or payload.force_send:
            return False
        if not payload.batch_key:
            return False
        return prefs.digest_frequency != "realtime"

    def _rate_limited(self, session: Session, developer_id: int, channel: Channel) -> str | None:
        per_hour, per_day = RATE_LIMITS[channel]
        now = self.clock()

        def sent_since(cutoff: datetime) -> int:
            return session.scalar(
                select(func.count()).select_from(NotificationLog).where(
                    NotificationLog.developer_id == developer_id,
                    NotificationLog.channel == channel,
                    NotificationLog.status == "sent",
                    NotificationLog.created_at >= cutoff,
                )
            ) or 0

        if sent_since(now - timedelta(hours=1)) >= per_hour:
            return "hourly"
        if sent_since(now - timedelta(days=1)) >= per_day:
            return "daily"
        return None

    def _add_to_batch(
        self, session: Session, channel: Channel, payload: NotificationPayload,
    ) -> SendResult:
        batch_key = f"{payload.batch_key}:{channel}"
        now = self.clock()

        batch = session.scalar(
            select(NotificationBatch).where(
                NotificationBatch.batch_key == batch_key,
                NotificationBatch.channel == channel,
                NotificationBatch.processed_at.is_(None),
                NotificationBatch.closes_at > now,
            ).order_by(NotificationBatch.id).limit(1)
        )
        if batch is None:
            window = payload.batch_window_minutes or self.batch_window_minutes
            batch = NotificationBatch(
                batch_key=batch_key,
                developer_id=payload.developer_id,
                notification_type=payload.type,
                channel=channel,
                closes_at=now + timedelta(minutes=window),
                created_at=now,
            )
            session.add(batch)
            session.flush()

        session.add(NotificationBatchItem(
            batch_id=batch.id,
            event_data={
                "type": payload.type,
                "title": payload.title,
                "body": payload.body,
                "action_url": payload.action_url,
                **payload.batch_event_data,
            },
            created_at=now,
        ))
        return SendResult(channel=channel, success=True, batched=True)

    # -- dispatch -----------------------------------------------------------

    async def _dispatch_email(self, payload: NotificationPayload) -> SendResult:
        email, suppressed = await run_db(self._email_target, payload.developer_id)
        if not email:
            return SendResult(channel=Channel.EMAIL, success=False, skipped="no_email")
        if suppressed:
            return SendResult(
                channel=Channel.EMAIL, success=False, skipped=f"suppressed:{suppressed}"
            )

        # Receipts still carry an unsubscribe link; it turns off email entirely.
        unsub_category = "all" if payload.force_send else str(payload.category)
        unsub_url = build_unsubscribe_url(self.base_url, payload.developer_id, unsub_category)
        body_html = payload.html or f"<p>{escape_html(payload.body)}</p>"

        provider_id: str | None = None
        error: str | None = None
        try:
            provider_id = await self.mailer.send_email(
                to=email,
                subject=payload.title,
                html=wrap_in_base_template(body_html, unsub_url),
                headers={
                    "List-Unsubscribe": f"<{unsub_url}>",
                    "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
                },
            )
        except ResendError as exc:
            error = str(exc)

        await run_db(
            self._log, payload, Channel.EMAIL,
            status="failed" if error else "sent",
            provider_id=provider_id,
            error_message=error,
        )

        if error:
            logger.error("Resend error for dev %s: %s", payload.developer_id, error)
            return SendResult(channel=Channel.EMAIL, success=False, skipped="resend_error")
        return SendResult(channel=Channel.EMAIL, success=True, provider_id=provider_id)

    def _dispatch_push(self, payload: NotificationPayload, prefs: NotificationPrefs) -> SendResult:
        with get_session(self.engine) as session:
            subs = session.scalars(
                select(PushSubscription).where(
                    PushSubscription.developer_id == payload.developer_id,
                    PushSubscription.active.is_(True),
                )
            ).all()
            if not subs:
                return SendResult(channel=Channel.PUSH, success=False, skipped="no_push_token")

            if not payload.force_send:
                dev = session.get(Developer, payload.developer_id)
                if is_in_quiet_hours(
                    prefs.quiet_hours_start,
                    prefs.quiet_hours_end,
                    dev.timezone if dev else None,
                    self.clock(),
                ):
                    return SendResult(channel=Channel.PUSH, success=False, skipped="quiet_hours")

        # No push transport yet: record the intent so volume can be measured.
        self._log(payload, Channel.PUSH, status="pending_implementation")
        return SendResult(channel=Channel.PUSH, success=False, skipped="push_not_implemented")

    def _dispatch_in_app(self, payload: NotificationPayload) -> SendResult:
        self._log(payload, Channel.IN_APP, status="sent")
        return SendResult(channel=Channel.IN_APP, success=True)

    # -- sync DB helpers ----------------------------------------------------

    def _recently_active(self, developer_id: int) -> bool:
        with get_session(self.engine) as session:
            last_active = session.scalar(
                select(Developer.last_active_at).where(Developer.id == developer_id)
            )
        last_active = as_utc(last_active)
        if last_active is None:
            return False
        return last_active > self.clock() - timedelta(minutes=RECENTLY_ACTIVE_MINUTES)

    def _load_prefs(self, developer_id: int) -> NotificationPrefs:
        with get_session(self.engine) as session:
            return get_preferences(session, developer_id)

    def _email_target(self, developer_id: int) -> tuple[str | None, str | None]:
        """Return ``(email, suppression_reason)`` for a developer."""
        with get_session(self.engine) as session:
            email = session.scalar(select(Developer.email).where(Developer.id == developer_id))
            if not email:
                return None, None
            reason = session.scalar(
                select(NotificationSuppression.reason).where(
                    NotificationSuppression.identifier == email,
                    NotificationSuppression.channel == Channel.EMAIL,
                )
            )
        return email, reason

    def _log(
        self,
        payload: NotificationPayload,
        channel: Channel,
        *,
        status: str,
        provider_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        now = self.clock()
        with get_session(self.engine) as session:
            session.add(NotificationLog(
                developer_id=payload.developer_id,
                channel=channel,
                notification_type=payload.type,
                category=payload.category,
                title=payload.title,
                body=payload.body[:200],
                dedup_key=payload.dedup_key or None,
                status=status,
                provider_id=provider_id,
                error_message=error_message,
                sent_at=now if status == "sent" else None,
                created_at=now,
            ))

    def _closed_batches(self) -> list[tuple[int, int, str, str, list[dict]]]:
        now = self.clock()
        with get_session(self.engine) as session:
            batches = session.scalars(
                select(NotificationBatch).where(
                    NotificationBatch.processed_at.is_(None),
                    NotificationBatch.closes_at <= now,
                ).order_by(NotificationBatch.closes_at).limit(FLUSH_BATCH_LIMIT)
            ).all()
            return [
                (
                    b.id,
                    b.developer_id,
                    b.notification_type,
                    b.channel,
                    [dict(item.event_data or {}) for item in b.items],
                )
                for b in batches
            ]

    def _mark_batch_processed(self, batch_id: int) -> None:
        with get_session(self.engine) as session:
            batch = session.get(NotificationBatch, batch_id)
            if batch is not None:
                batch.processed_at = self.clock()
