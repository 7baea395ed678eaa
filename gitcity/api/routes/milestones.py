"""
gitcity.api.routes.milestones — Community population milestones
==================================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from gitcity.api.deps import get_notifier, get_session, verify_cron_secret
from gitcity.services import milestone_service
from gitcity.services.notification_senders import notify_community_milestone
from gitcity.services.notifications import Notifier

router = APIRouter(prefix="/milestones", tags=["milestones"])


@router.get("")
def list_milestones(session: Session = Depends(get_session)):
    return milestone_service.list_milestones(session)


@router.post("", dependencies=[Depends(verify_cron_secret)])
def celebrate(
    background: BackgroundTasks,
    body: dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    total = body.get("total_developers")
    if isinstance(total, bool) or not isinstance(total, (int, float)):
        raise HTTPException(400, "missing total_developers")

    result = milestone_service.record_milestone(session, int(total))
    if result is None:
        return {"celebrated": False}
    session.commit()

    if result.is_new:
        background.add_task(notify_community_milestone, notifier, result.milestone)
    return {
        "celebrated": True,
        "milestone": result.milestone,
        "reached_at": result.reached_at.isoformat(),
    }
