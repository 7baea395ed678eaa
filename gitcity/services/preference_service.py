"""
gitcity.services.preference_service — Notification Preferences & Unsubscribe
==============================================================================

``transactional`` is deliberately absent from :data:`UPDATABLE_FIELDS`:
purchase receipts always go out.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gitcity.database.models import Developer, NotificationPreference
from gitcity.services.errors import ServiceError
from gitcity.services.notifications import (
    DIGEST_FREQUENCIES,
    UNSUBSCRIBE_CATEGORIES,
    NotificationPrefs,
    get_preferences,
    verify_hmac_token,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS: tuple[str, ...] = (
    "email_enabled",
    "push_enabled",
    "social",
    "digest",
    "marketing",
    "streak_reminders",
    "digest_frequency",
    "quiet_hours_start",
    "quiet_hours_end",
    "channel_overrides",
)


def _valid_hour(value: object) -> bool:
    if value is None:
        return True
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 23


def _upsert(session: Session, developer_id: int, changes: dict) -> NotificationPreference:
    row = session.get(NotificationPreference, developer_id)
    if row is None:
        defaults = NotificationPrefs().to_dict()
        try:
            with session.begin_nested():   # SAVEPOINT
                row = NotificationPreference(developer_id=developer_id, **defaults)
                session.add(row)
                session.flush()
        except IntegrityError:
            # Created by a concurrent request; update that row instead.
            row = session.get(NotificationPreference, developer_id)
    for key, value in changes.items():
        setattr(row, key, value)
    session.flush()
    return row


def read_preferences(session: Session, developer_id: int) -> dict:
    return get_preferences(session, developer_id).to_dict()


def update_preferences(session: Session, developer_id: int, body: dict) -> dict:
    """Apply the allowed keys of *body*.  Unknown keys are ignored."""
    changes = {k: body[k] for k in UPDATABLE_FIELDS if k in body}

    frequency = changes.get("digest_frequency")
    if frequency and frequency not in DIGEST_FREQUENCIES:
        raise ServiceError(400, "Invalid digest_frequency")
    for key in ("quiet_hours_start", "quiet_hours_end"):
        if key in changes and not _valid_hour(changes[key]):
            raise ServiceError(400, f"{key} must be 0-23")
    if "channel_overrides" in changes and not isinstance(changes["channel_overrides"], dict):
        raise ServiceError(400, "channel_overrides must be an object")

    if not changes:
        raise ServiceError(400, "No valid fields to update")

    _upsert(session, developer_id, changes)
    logger.info("Dev %s updated notification prefs: %s", developer_id, ", ".join(sorted(changes)))
    return read_preferences(session, developer_id)


def check_unsubscribe(developer_id: int | None, category: str, token: str) -> str | None:
    """Return ``None`` when the link is genuine, else ``invalid`` / ``invalid_token``."""
    if not developer_id or category not in UNSUBSCRIBE_CATEGORIES or not token:
        return "invalid"
    if not verify_hmac_token(developer_id, category, token):
        return "invalid_token"
    return None


def unsubscribe(session: Session, developer_id: int, category: str) -> None:
    """``all`` turns email off entirely; a category turns only that one off."""
    if session.get(Developer, developer_id) is None:
        raise ServiceError(404, "Developer not found")
    field = "email_enabled" if category == "all" else category
    _upsert(session, developer_id, {field: False})
    logger.info("Dev %s unsubscribed from %s", developer_id, category)
