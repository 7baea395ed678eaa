"""
gitcity.services.shop_service — Item Checkout
===============================================

Checkout is split around the payment provider call:

    1. :func:`prepare_checkout` validates the request and writes a
       *pending* purchase (sync, on a worker thread).
    2. The route awaits Stripe / AbacatePay / NOWPayments.
    3. :func:`attach_provider_tx` or :func:`discard_pending` records the
       outcome.

The purchase is completed later by the provider's webhook.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import Engine, select

from gitcity.database.engine import get_session
from gitcity.database.models import Item, PaymentProvider, Purchase, PurchaseStatus
from gitcity.services import item_service
from gitcity.services.developers import find_by_login
from gitcity.services.errors import ServiceError

logger = logging.getLogger(__name__)

CHECKOUT_PROVIDERS: tuple[str, ...] = (
    PaymentProvider.STRIPE,
    PaymentProvider.ABACATEPAY,
    PaymentProvider.NOWPAYMENTS,
)


@dataclass(frozen=True, slots=True)
class CheckoutPlan:
    purchase_id: int
    developer_id: int
    login: str
    item_id: str
    item_name: str
    provider: str
    amount_cents: int
    currency: str
    gifted_to: int | None = None


def prepare_checkout(
    engine: Engine,
    *,
    user_id: str,
    login: str,
    item_id: str,
    provider: str,
    gifted_to_login: str | None = None,
) -> CheckoutPlan:
    if provider not in CHECKOUT_PROVIDERS:
        raise ServiceError(400, "Invalid item_id or provider")
    if not login:
        raise ServiceError(400, "No GitHub login found")

    with get_session(engine) as session:
        dev = find_by_login(session, login)
        if dev is None or not dev.claimed:
            raise ServiceError(403, "You must claim your building first")
        if dev.claimed_by != user_id:
            raise ServiceError(403, "This building is not yours")

        gifted_to: int | None = None
        if gifted_to_login:
            if gifted_to_login.lower() == dev.github_login:
                raise ServiceError(400, "Cannot gift to yourself")
            receiver = find_by_login(session, gifted_to_login)
            if receiver is None or not receiver.claimed:
                raise ServiceError(400, "Receiver must have claimed building")
            if item_service.owns_item(session, receiver.id, item_id):
                raise ServiceError(409, "Receiver already owns this item")
            gifted_to = receiver.id

        item = session.get(Item, item_id)
        if item is None or not item.is_active:
            raise ServiceError(404, "Item not found or inactive")

        if gifted_to is None and item_service.owns_item(session, dev.id, item_id):
            raise ServiceError(409, "Already owned")

        item_service.clear_pending(session, dev.id, item_id)

        if provider == PaymentProvider.ABACATEPAY:
            amount, currency = item.price_brl_cents, "brl"
        else:
            amount, currency = item.price_usd_cents, "usd"

        purchase = item_service.create_pending_purchase(
            session,
            developer_id=dev.id,
            item_id=item_id,
            provider=provider,
            amount_cents=amount,
            currency=currency,
            gifted_to=gifted_to,
            # NOWPayments reports back by order id until the payment id is known.
            provider_tx_id=f"{dev.id}:{item_id}" if provider == PaymentProvider.NOWPAYMENTS else None,
        )
        return CheckoutPlan(
            purchase_id=purchase.id,
            developer_id=dev.id,
            login=dev.github_login,
            item_id=item_id,
            item_name=item.name,
            provider=provider,
            amount_cents=amount,
            currency=currency,
            gifted_to=gifted_to,
        )


def attach_provider_tx(engine: Engine, purchase_id: int, provider_tx_id: str) -> None:
    with get_session(engine) as session:
        purchase = session.get(Purchase, purchase_id)
        if purchase is not None:
            purchase.provider_tx_id = provider_tx_id


def discard_pending(engine: Engine, purchase_id: int) -> None:
    with get_session(engine) as session:
        purchase = session.get(Purchase, purchase_id)
        if purchase is not None and purchase.status == PurchaseStatus.PENDING:
            session.delete(purchase)


def items_for_login(engine: Engine, login: str) -> dict:
    with get_session(engine) as session:
        dev = find_by_login(session, login)
        if dev is None:
            raise ServiceError(404, "Developer not found")
        owned = item_service.owned_items(session, dev.id)
        catalog = {
            item.id: item
            for item in session.scalars(select(Item).where(Item.id.in_(owned)))
        } if owned else {}
        return {
            "login": dev.github_login,
            "owned_items": owned,
            "items": [
                {
                    "id": item_id,
                    "name": catalog[item_id].name if item_id in catalog else item_id,
                    "zone": catalog[item_id].zone if item_id in catalog else None,
                }
                for item_id in owned
            ],
            "loadout": item_service.get_loadout(session, dev.id),
            "streak_freezes_available": dev.streak_freezes_available or 0,
        }
