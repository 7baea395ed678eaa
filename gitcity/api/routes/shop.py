"""
gitcity.api.routes.shop — Item checkout & owned items
=======================================================

Checkout is async: the pending purchase is written through
:func:`~gitcity.database.engine.run_db`, then the provider is called.
A provider failure discards the pending row so the next attempt starts
clean.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import Engine

from gitcity.api.deps import (
    AuthUser,
    PaymentClients,
    get_config,
    get_current_user,
    get_engine,
    get_payments,
)
from gitcity.api.rate_limit import enforce_rate_limit
from gitcity.config import GitCityConfig
from gitcity.database.engine import run_db
from gitcity.database.models import PaymentProvider
from gitcity.services import shop_service
from gitcity.services.abacatepay_client import AbacatePayError
from gitcity.services.nowpayments_client import NowPaymentsError
from gitcity.services.shop_service import CheckoutPlan
from gitcity.services.stripe_client import StripeError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["shop"])

PROVIDER_ERRORS = (StripeError, AbacatePayError, NowPaymentsError)


class CheckoutRequest(BaseModel):
    item_id: str
    provider: str = PaymentProvider.STRIPE
    gifted_to_login: str | None = None


async def _stripe_checkout(
    plan: CheckoutPlan, payments: PaymentClients, cfg: GitCityConfig, engine: Engine,
) -> dict:
    metadata = {
        "developer_id": str(plan.developer_id),
        "item_id": plan.item_id,
        "github_login": plan.login,
    }
    if plan.gifted_to is not None:
        metadata["gifted_to"] = str(plan.gifted_to)
    session = await payments.stripe.create_checkout_session(
        name=plan.item_name,
        description=f"Git City item for {plan.login}",
        amount_cents=plan.amount_cents,
        currency=plan.currency,
        success_url=f"{cfg.base_url}/shop/{plan.login}?purchased={plan.item_id}",
        cancel_url=f"{cfg.base_url}/shop/{plan.login}",
        metadata=metadata,
    )
    await run_db(shop_service.attach_provider_tx, engine, plan.purchase_id, session["id"])
    return {"url": session["url"]}


async def _abacatepay_checkout(
    plan: CheckoutPlan, payments: PaymentClients, engine: Engine,
) -> dict:
    qr = await payments.abacatepay.create_pix_qr_code(
        amount_cents=plan.amount_cents,
        description=f"Git City: {plan.item_name}",
        metadata={"developer_id": str(plan.developer_id), "item_id": plan.item_id},
    )
    await run_db(shop_service.attach_provider_tx, engine, plan.purchase_id, qr.pix_id)
    return {
        "brCode": qr.br_code,
        "brCodeBase64": qr.br_code_base64,
        "purchase_id": plan.purchase_id,
    }


async def _nowpayments_checkout(
    plan: CheckoutPlan, payments: PaymentClients, cfg: GitCityConfig,
) -> dict:
    invoice = await payments.nowpayments.create_invoice(
        amount_usd_cents=plan.amount_cents,
        order_id=f"{plan.developer_id}:{plan.item_id}",
        description=f"{plan.item_name} - {plan.login}",
        ipn_callback_url=f"{cfg.base_url}/api/webhooks/nowpayments",
        success_url=f"{cfg.base_url}/shop/{plan.login}?purchased={plan.item_id}",
        cancel_url=f"{cfg.base_url}/shop/{plan.login}",
    )
    return {"url": invoice.invoice_url}


@router.post("/checkout")
async def checkout(
    body: CheckoutRequest,
    user: AuthUser = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    cfg: GitCityConfig = Depends(get_config),
    payments: PaymentClients = Depends(get_payments),
):
    enforce_rate_limit(f"shop_checkout:{user.id}", 1, 10)

    plan = await run_db(
        shop_service.prepare_checkout, engine,
        user_id=user.id,
        login=user.login,
        item_id=body.item_id,
        provider=body.provider,
        gifted_to_login=body.gifted_to_login,
    )
    try:
        if plan.provider == PaymentProvider.ABACATEPAY:
            return await _abacatepay_checkout(plan, payments, engine)
        if plan.provider == PaymentProvider.NOWPAYMENTS:
            return await _nowpayments_checkout(plan, payments, cfg)
        return await _stripe_checkout(plan, payments, cfg, engine)
    except PROVIDER_ERRORS:
        logger.exception("Checkout via %s failed for purchase %s", plan.provider, plan.purchase_id)
        await run_db(shop_service.discard_pending, engine, plan.purchase_id)
        raise HTTPException(500, "Failed to create checkout session")


@router.get("/items/{login}")
async def developer_items(login: str, engine: Engine = Depends(get_engine)):
    return await run_db(shop_service.items_for_login, engine, login)
