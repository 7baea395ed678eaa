"""
gitcity.api.routes.notifications — Preferences & one-click unsubscribe
========================================================================

Unsubscribe links carry an HMAC token instead of requiring sign-in.
``POST`` serves RFC 8058 one-click clients; ``GET`` serves humans clicking
the link and redirects to the confirmation page.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from gitcity.api.deps import AuthUser, get_config, get_current_user, get_session
from gitcity.config import GitCityConfig
from gitcity.services import preference_service
from gitcity.services.developers import require_developer
from gitcity.services.errors import ServiceError

router = APIRouter(tags=["notifications"])


def _parse_dev_id(raw: str | None) -> int | None:
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


@router.get("/notification-preferences")
def get_preferences(
    user: AuthUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    dev = require_developer(session, user.login)
    return preference_service.read_preferences(session, dev.id)


@router.patch("/notification-preferences")
def update_preferences(
    body: dict[str, Any] = Body(...),
    user: AuthUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    dev = require_developer(session, user.login)
    result = preference_service.update_preferences(session, dev.id, body)
    session.commit()
    return result


@router.post("/unsubscribe")
def unsubscribe_one_click(
    dev: str | None = Query(None),
    cat: str = Query(""),
    token: str = Query(""),
    session: Session = Depends(get_session),
):
    dev_id = _parse_dev_id(dev)
    error = preference_service.check_unsubscribe(dev_id, cat, token)
    if error == "invalid":
        raise HTTPException(400, "Invalid parameters")
    if error == "invalid_token":
        raise HTTPException(403, "Invalid token")
    preference_service.unsubscribe(session, dev_id, cat)
    session.commit()
    return {"ok": True, "category": cat}


@router.get("/unsubscribe")
def unsubscribe_link(
    dev: str | None = Query(None),
    cat: str = Query(""),
    token: str = Query(""),
    session: Session = Depends(get_session),
    cfg: GitCityConfig = Depends(get_config),
):
    dev_id = _parse_dev_id(dev)
    error = preference_service.check_unsubscribe(dev_id, cat, token)
    if error is None:
        try:
            preference_service.unsubscribe(session, dev_id, cat)
            session.commit()
        except ServiceError:
            error = "invalid"

    query = {"error": error} if error else {"success": "true", "cat": cat}
    return RedirectResponse(f"{cfg.base_url}/unsubscribe?{urlencode(query)}")
