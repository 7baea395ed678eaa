"""
gitcity.services.developers — Developer Lookups
=================================================
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from gitcity.database.models import Developer
from gitcity.services.errors import ServiceError


def find_by_login(session: Session, login: str) -> Developer | None:
    return session.scalar(
        select(Developer).where(Developer.github_login == login.lower())
    )


def require_claimed(session: Session, login: str) -> Developer:
    """Return the caller's developer row or raise 403 when unclaimed."""
    if not login:
        raise ServiceError(400, "No GitHub login")
    dev = find_by_login(session, login)
    if dev is None or not dev.claimed:
        raise ServiceError(403, "Must claim building first")
    return dev


def require_developer(session: Session, login: str) -> Developer:
    if not login:
        raise ServiceError(400, "No GitHub login")
    dev = find_by_login(session, login)
    if dev is None:
        raise ServiceError(404, "Developer not found")
    return dev
