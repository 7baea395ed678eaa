"""
gitcity.api.routes.sky_ads — Sky ad serving, self-serve checkout & admin
==========================================================================
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from gitcity.api.deps import (
    AuthUser,
    PaymentClients,
    get_config,
    get_current_admin,
    get_engine,
    get_payments,
    get_session,
)
from gitcity.api.rate_limit import client_ip, enforce_rate_limit
from gitcity.config import GitCityConfig
from gitcity.database.engine import get_session as db_session
from gitcity.database.engine import run_db
from gitcity.engine.sky_ads import SKY_AD_PLANS, get_price_cents
from gitcity.services import sky_ad_service
from gitcity.services.stripe_client import StripeError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sky-ads", tags=["sky-ads"])

CACHE_CONTROL = "public, s-maxage=60, stale-while-revalidate=120"
CHECKOUT_EXPIRY_SECONDS = 30 * 60
SLOW_DOWN = "Too many requests. Try again in a few seconds."


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class CheckoutBody(BaseModel):
    plan_id: str | None = None
    text: str | None = None
    color: str | None = None
    bgColor: str | None = None
    currency: str | None = None


class SetupBody(BaseModel):
    text: str | None = None
    brand: str | None = None
    description: str | None = None
    link: str | None = None


class TrackBody(BaseModel):
    ad_id: str | None = None
    event_type: str | None = None
    event_types: list[str] | None = None
    github_login: str | None = None


class AdCreate(BaseModel):
    id: str | None = None
    brand: str | None = None
    text: str | None = None
    description: str | None = None
    color: str | None = None
    bg_color: str | None = None
    link: str | None = None
    vehicle: str | None = None
    priority: int | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None


class AdUpdate(BaseModel):
    id: str | None = None
    active: bool | None = None
    brand: str | None = None
    text: str | None = None
    description: str | None = None
    color: str | None = None
    bg_color: str | None = None
    link: str | None = None
    vehicle: str | None = None
    priority: int | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None


class BatchBody(BaseModel):
    ids: list[str] | None = None
    action: str | None = None


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------
@router.get("")
def list_sky_ads(
    response: Response,
    session: Session = Depends(get_session),
    cfg: GitCityConfig = Depends(get_config),
):
    response.headers["Cache-Control"] = CACHE_CONTROL
    return sky_ad_service.list_active_ads(session, interval=cfg.ad_rotation_interval_seconds)


@router.post("/checkout")
async def checkout(
    body: CheckoutBody,
    request: Request,
    engine: Engine = Depends(get_engine),
    cfg: GitCityConfig = Depends(get_config),
    payments: PaymentClients = Depends(get_payments),
):
    enforce_rate_limit(f"checkout:{client_ip(request)}", 1, 10, SLOW_DOWN)

    country = request.headers.get("x-vercel-ip-country") or request.headers.get("cf-ipcountry")
    currency = sky_ad_service.resolve_currency(country, body.currency)
    text = sky_ad_service.validate_checkout(body.plan_id, body.text, body.color, body.bgColor)
    plan = SKY_AD_PLANS[body.plan_id]

    pending = await run_db(
        sky_ad_service.create_pending_ad, engine,
        plan_id=plan.id, text=text, color=body.color, bg_color=body.bgColor,
    )
    try:
        stripe_session = await payments.stripe.create_checkout_session(
            name=f"Git City Ad: {plan.label}",
            description=f"{plan.label} ad for {plan.duration_days} days on Git City",
            amount_cents=get_price_cents(plan.id, currency),
            currency=currency,
            success_url=f"{cfg.base_url}/advertise/setup/{pending.tracking_token}",
            cancel_url=f"{cfg.base_url}/advertise",
            metadata={"sky_ad_id": pending.ad_id, "type": "sky_ad"},
            expires_in_seconds=CHECKOUT_EXPIRY_SECONDS,
        )
    except StripeError:
        logger.exception("Stripe checkout creation failed for ad %s", pending.ad_id)
        await run_db(sky_ad_service.delete_ad, engine, pending.ad_id)
        raise HTTPException(500, "Payment setup failed")

    await run_db(sky_ad_service.attach_checkout_session, engine, pending.ad_id, stripe_session["id"])
    return {"url": stripe_session["url"]}


@router.get("/setup/{token}")
def get_setup(token: str, session: Session = Depends(get_session)):
    return sky_ad_service.get_setup(session, token)


@router.put("/setup/{token}")
def update_setup(
    token: str,
    body: SetupBody,
    request: Request,
    session: Session = Depends(get_session),
):
    enforce_rate_limit(f"setup:{client_ip(request)}", 1, 5, SLOW_DOWN)
    result = sky_ad_service.update_setup(session, token, body.model_dump(exclude_none=True))
    session.commit()
    return result


@router.post("/track", status_code=201)
def track(
    body: TrackBody,
    request: Request,
    session: Session = Depends(get_session),
    cfg: GitCityConfig = Depends(get_config),
):
    origin = request.headers.get("origin") or request.headers.get("referer")
    if not sky_ad_service.is_allowed_origin(origin, cfg.tracking_origins):
        raise HTTPException(403, "Forbidden")
    user_agent = request.headers.get("user-agent")
    if sky_ad_service.is_bot(user_agent):
        raise HTTPException(403, "Forbidden")

    ip = client_ip(request)
    enforce_rate_limit(f"ad:{ip}", 120, 60)

    if not body.ad_id:
        raise HTTPException(400, "Invalid payload")
    types = sky_ad_service.parse_event_types(body.event_type, body.event_types)
    if not types:
        raise HTTPException(400, "Invalid event type")

    sky_ad_service.track_events(
        session,
        ad_id=body.ad_id,
        event_types=types,
        ip=ip,
        user_agent=user_agent,
        github_login=body.github_login,
        country=request.headers.get("x-vercel-ip-country"),
    )
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------
@router.get("/manage")
def manage_list(
    admin: AuthUser = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    return sky_ad_service.list_all_ads(session)


@router.post("/manage", status_code=201)
def manage_create(
    body: AdCreate,
    admin: AuthUser = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    with db_session(engine) as session:
        return sky_ad_service.create_ad(session, body.model_dump())


@router.put("/manage")
def manage_update(
    body: AdUpdate,
    admin: AuthUser = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    data: dict[str, Any] = body.model_dump(exclude_unset=True)
    ad_id = data.pop("id", None)
    with db_session(engine) as session:
        return sky_ad_service.update_ad(session, ad_id, data)


@router.delete("/manage")
def manage_delete(
    id: str | None = Query(None),
    admin: AuthUser = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    with db_session(engine) as session:
        return sky_ad_service.remove_ad(session, id)


@router.patch("/manage")
def manage_batch(
    body: BatchBody,
    admin: AuthUser = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    with db_session(engine) as session:
        return sky_ad_service.batch_action(session, body.ids, body.action)
