"""
gitcity.api.routes.achievements — Achievement catalog & unlocks
=================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from gitcity.api.deps import AuthUser, get_current_user, get_session
from gitcity.services import achievement_service
from gitcity.services.developers import require_developer

router = APIRouter(prefix="/achievements", tags=["achievements"])


@router.get("")
def list_achievements(session: Session = Depends(get_session)):
    return achievement_service.list_catalog(session)


@router.post("/mark-seen")
def mark_seen(
    user: AuthUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    dev = require_developer(session, user.login)
    achievement_service.mark_seen(session, dev.id)
    session.commit()
    return {"ok": True}


@router.get("/{login}")
def developer_achievements(login: str, session: Session = Depends(get_session)):
    dev = require_developer(session, login)
    return {
        "login": dev.github_login,
        "achievements": achievement_service.list_for_developer(session, dev.id),
        "unseen_count": achievement_service.unseen_count(session, dev.id),
    }
