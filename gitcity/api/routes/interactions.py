"""
gitcity.api.routes.interactions — Districts, kudos & daily check-in
=====================================================================

Authenticated, rate-limited actions of a signed-in developer.
Notifications are handed to :class:`BackgroundTasks` so they go out
after the transaction has committed and the response is sent.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from gitcity.api.deps import AuthUser, get_config, get_current_user, get_notifier, get_session
from gitcity.api.rate_limit import enforce_rate_limit
from gitcity.config import GitCityConfig
from gitcity.services import social_service
from gitcity.services.notifications import NotificationPayload, Notifier

router = APIRouter(tags=["interactions"])


class DistrictChange(BaseModel):
    district_id: str


class KudosRequest(BaseModel):
    receiver_login: str


def _dispatch(
    background: BackgroundTasks, notifier: Notifier, payloads: list[NotificationPayload],
) -> None:
    for payload in payloads:
        background.add_task(notifier.send_safe, payload)


@router.post("/district/change")
def change_district(
    body: DistrictChange,
    user: AuthUser = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    enforce_rate_limit(f"district:{user.id}", 2, 60)
    result = social_service.change_district(session, user.login, body.district_id)
    session.commit()
    return result


@router.post("/interactions/kudos")
def give_kudos(
    body: KudosRequest,
    background: BackgroundTasks,
    user: AuthUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    cfg: GitCityConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
):
    enforce_rate_limit(f"kudos:{user.id}", 1, 1)
    result = social_service.give_kudos(session, user.login, body.receiver_login, cfg.base_url)
    session.commit()
    _dispatch(background, notifier, result.notifications)
    return {"ok": True}


@router.post("/checkin")
def checkin(
    background: BackgroundTasks,
    user: AuthUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    cfg: GitCityConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
):
    enforce_rate_limit(f"checkin:{user.id}", 1, 5)
    body, notifications = social_service.perform_checkin(session, user.login, cfg.base_url)
    session.commit()
    _dispatch(background, notifier, notifications)
    return body
