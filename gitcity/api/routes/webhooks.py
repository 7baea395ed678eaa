"""
gitcity.api.routes.webhooks — Provider callbacks
==================================================

Signatures are checked against the raw body before anything is parsed.
Once verified, an event is always acknowledged with ``{"received": true}``;
handler failures are logged by :mod:`gitcity.services.webhook_service`.
"""

from __future__ import annotations

import hmac
import json
import logging
import os

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy import Engine

from gitcity.api.deps import get_config, get_engine, get_notifier
from gitcity.config import GitCityConfig
from gitcity.database.engine import run_db
from gitcity.services import webhook_service
from gitcity.services.abacatepay_client import extract_pix_id, verify_signature
from gitcity.services.notifications import NotificationPayload, Notifier
from gitcity.services.nowpayments_client import verify_ipn_signature
from gitcity.services.stripe_client import SignatureVerificationError, verify_webhook
from gitcity.services.webhook_service import SvixVerificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

RECEIVED = {"received": True}


def _dispatch(
    background: BackgroundTasks, notifier: Notifier, payloads: list[NotificationPayload],
) -> None:
    for payload in payloads:
        background.add_task(notifier.send_safe, payload)


def _parse_json(raw: bytes) -> dict:
    try:
        body = json.loads(raw)
    except ValueError:
        raise HTTPException(400, "Invalid body")
    if not isinstance(body, dict):
        raise HTTPException(400, "Invalid body")
    return body


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    background: BackgroundTasks,
    engine: Engine = Depends(get_engine),
    cfg: GitCityConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
):
    raw = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(400, "Missing signature")
    try:
        verify_webhook(raw, signature, os.getenv("STRIPE_WEBHOOK_SECRET"))
    except SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature rejected: %s", exc)
        raise HTTPException(400, "Invalid signature")

    event = _parse_json(raw)
    payloads = await run_db(webhook_service.handle_stripe_event, engine, event, cfg.base_url)
    _dispatch(background, notifier, payloads)
    return RECEIVED


@router.post("/abacatepay")
async def abacatepay_webhook(
    request: Request,
    background: BackgroundTasks,
    engine: Engine = Depends(get_engine),
    cfg: GitCityConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
):
    secret = os.getenv("ABACATEPAY_WEBHOOK_SECRET")
    if not secret:
        logger.error("ABACATEPAY_WEBHOOK_SECRET is not configured")
        raise HTTPException(500, "Server misconfigured")
    if not hmac.compare_digest(request.query_params.get("webhookSecret", ""), secret):
        raise HTTPException(401, "Unauthorized")

    raw = await request.body()
    signature = request.headers.get("x-webhook-signature")
    if signature and not verify_signature(raw, signature, os.getenv("ABACATEPAY_PUBLIC_KEY")):
        raise HTTPException(401, "Invalid signature")

    body = _parse_json(raw)
    payloads = await run_db(
        webhook_service.handle_abacatepay_event,
        engine, body.get("event"), extract_pix_id(body.get("data")), cfg.base_url,
    )
    _dispatch(background, notifier, payloads)
    return RECEIVED


@router.post("/nowpayments")
async def nowpayments_webhook(
    request: Request,
    background: BackgroundTasks,
    engine: Engine = Depends(get_engine),
    cfg: GitCityConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
):
    body = _parse_json(await request.body())
    if not verify_ipn_signature(
        body, request.headers.get("x-nowpayments-sig"), os.getenv("NOWPAYMENTS_IPN_SECRET"),
    ):
        raise HTTPException(401, "Invalid signature")

    payloads = await run_db(webhook_service.handle_nowpayments_event, engine, body, cfg.base_url)
    _dispatch(background, notifier, payloads)
    return RECEIVED


@router.post("/resend")
async def resend_webhook(request: Request, engine: Engine = Depends(get_engine)):
    raw = await request.body()
    secret = os.getenv("RESEND_WEBHOOK_SECRET")
    if secret:
        headers = {
            name: request.headers.get(name)
            for name in ("svix-id", "svix-timestamp", "svix-signature")
        }
        try:
            webhook_service.verify_svix(raw, headers, secret)
        except SvixVerificationError as exc:
            logger.warning("Resend webhook rejected: %s", exc)
            raise HTTPException(401, "Invalid signature")

    body = _parse_json(raw)
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    await run_db(webhook_service.handle_resend_event, engine, body.get("type"), data)
    return RECEIVED
