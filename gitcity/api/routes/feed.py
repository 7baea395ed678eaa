"""
gitcity.api.routes.feed — Activity feed
=========================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from gitcity.api.deps import get_session
from gitcity.services import feed_service

router = APIRouter(prefix="/feed", tags=["feed"])

CACHE_CONTROL = "public, s-maxage=30, stale-while-revalidate=60"


@router.get("")
def get_feed(
    response: Response,
    limit: int = Query(feed_service.DEFAULT_FEED_LIMIT, ge=1),
    before: int | None = Query(None),
    today: str | None = Query(None),
    session: Session = Depends(get_session),
):
    if feed_service.maybe_prune(session):
        session.commit()
    response.headers["Cache-Control"] = CACHE_CONTROL
    return feed_service.list_events(session, limit=limit, before=before, today=today == "1")
