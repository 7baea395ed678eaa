"""
gitcity.services.feed_service — Public Activity Feed
======================================================

Append-only event stream shown in the city ticker.  Writers call
:func:`add_event` inside their own transaction; readers page backwards
with an event-id cursor.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from gitcity.constants import as_utc, utcnow
from gitcity.database.models import ActivityFeed, Developer

logger = logging.getLogger(__name__)

MAX_FEED_LIMIT = 50
DEFAULT_FEED_LIMIT = 20
MIN_TODAY_EVENTS = 8
BACKFILL_WINDOW = timedelta(days=7)
RETENTION = timedelta(days=30)
PRUNE_PROBABILITY = 0.01


def add_event(
    session: Session,
    event_type: str,
    actor_id: int | None,
    *,
    target_id: int | None = None,
    metadata: dict | None = None,
) -> ActivityFeed:
    event = ActivityFeed(
        event_type=event_type,
        actor_id=actor_id,
        target_id=target_id,
        metadata_=metadata or {},
    )
    session.add(event)
    return event


def prune_old_events(session: Session, now: datetime | None = None) -> int:
    """Delete events older than ``RETENTION``.  Returns the number removed."""
    cutoff = (now or utcnow()) - RETENTION
    removed = session.execute(delete(ActivityFeed).where(ActivityFeed.created_at < cutoff)).rowcount or 0
    if removed:
        logger.info("Pruned %d feed events older than %s", removed, cutoff.date())
    return removed


def maybe_prune(session: Session, roll: Callable[[], float] | None = None) -> int:
    """Piggyback cleanup: prune on roughly one request in a hundred."""
    if (roll or random.random)() >= PRUNE_PROBABILITY:
        return 0
    return prune_old_events(session)


def _serialize(session: Session, events: list[ActivityFeed]) -> list[dict]:
    dev_ids = {e.actor_id for e in events if e.actor_id} | {e.target_id for e in events if e.target_id}
    devs: dict[int, dict] = {}
    if dev_ids:
        for dev in session.scalars(select(Developer).where(Developer.id.in_(dev_ids))):
            devs[dev.id] = {"login": dev.github_login, "avatar_url": dev.avatar_url}

    return [
        {
            "id": e.id,
            "event_type": e.event_type,
            "actor_id": e.actor_id,
            "target_id": e.target_id,
            "metadata": e.metadata_ or {},
            "created_at": as_utc(e.created_at).isoformat() if e.created_at else None,
            "actor": devs.get(e.actor_id) if e.actor_id else None,
            "target": devs.get(e.target_id) if e.target_id else None,
        }
        for e in events
    ]


def list_events(
    session: Session,
    limit: int = DEFAULT_FEED_LIMIT,
    before: int | None = None,
    *,
    today: bool = False,
    now: datetime | None = None,
) -> dict:
    """Newest events first.  ``before`` is the id of the last event already seen.

    ``today`` keeps only events since UTC midnight.  When that leaves fewer
    than ``MIN_TODAY_EVENTS`` on the first page, the last seven days are
    served instead so the ticker is never empty on a quiet day.
    """
    limit = min(MAX_FEED_LIMIT, max(1, limit))
    now = now or utcnow()
    newest_first = select(ActivityFeed).order_by(ActivityFeed.created_at.desc(), ActivityFeed.id.desc())

    stmt = newest_first
    if today:
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        stmt = stmt.where(ActivityFeed.created_at >= midnight)

    if before is not None:
        cursor = session.get(ActivityFeed, before)
        if cursor is not None:
            stmt = stmt.where(
                (ActivityFeed.created_at < cursor.created_at)
                | ((ActivityFeed.created_at == cursor.created_at) & (ActivityFeed.id < cursor.id))
            )

    events = list(session.scalars(stmt.limit(limit)))

    if today and before is None and len(events) < MIN_TODAY_EVENTS:
        recent = list(session.scalars(
            newest_first.where(ActivityFeed.created_at >= now - BACKFILL_WINDOW).limit(limit)
        ))
        if len(recent) > len(events):
            events = recent

    return {"events": _serialize(session, events), "has_more": len(events) == limit}
