"""
gitcity.services.item_service — Item Ownership, Loadout & Purchase Completion
===============================================================================

Ownership is derived from ``purchases``: a completed row belongs to
``gifted_to`` when set, otherwise to the buyer.  The loadout (which item
shows in each of the crown / roof / aura zones) is a single
``developer_customizations`` row with ``item_id = "loadout"``.

:func:`complete_purchase` is the one place a paid purchase turns into an
owned item; every payment webhook funnels through it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from gitcity.constants import (
    FREE_CLAIM_ITEM,
    STREAK_FREEZE_ITEM,
    ZONE_ITEMS,
    zone_for_item,
)
from gitcity.database.models import (
    Developer,
    DeveloperCustomization,
    FeedEventType,
    PaymentProvider,
    Purchase,
    PurchaseStatus,
    StreakFreezeLog,
)
from gitcity.services import feed_service

logger = logging.getLogger(__name__)

LOADOUT_KEY = "loadout"


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------
def _owned_clause(developer_id: int):
    return or_(
        Purchase.gifted_to == developer_id,
        (Purchase.developer_id == developer_id) & Purchase.gifted_to.is_(None),
    )


def owned_items(session: Session, developer_id: int) -> list[str]:
    rows = session.scalars(
        select(Purchase.item_id)
        .where(_owned_clause(developer_id), Purchase.status == PurchaseStatus.COMPLETED)
        .order_by(Purchase.id)
    ).all()
    return list(dict.fromkeys(rows))


def owns_item(session: Session, developer_id: int, item_id: str) -> bool:
    return session.scalar(
        select(Purchase.id).where(
            _owned_clause(developer_id),
            Purchase.item_id == item_id,
            Purchase.status == PurchaseStatus.COMPLETED,
        ).limit(1)
    ) is not None


def get_loadout(session: Session, developer_id: int) -> dict:
    row = session.get(DeveloperCustomization, (developer_id, LOADOUT_KEY))
    config = dict(row.config) if row is not None and row.config else {}
    return {zone: config.get(zone) for zone in ZONE_ITEMS}


def grant_free_claim_item(session: Session, developer_id: int) -> bool:
    """Give a freshly claimed building its free item.  False if already owned."""
    if owns_item(session, developer_id, FREE_CLAIM_ITEM):
        return False
    session.add(Purchase(
        developer_id=developer_id,
        item_id=FREE_CLAIM_ITEM,
        provider=PaymentProvider.FREE,
        provider_tx_id=f"free_claim_{developer_id}",
        amount_cents=0,
        currency="usd",
        status=PurchaseStatus.COMPLETED,
    ))
    session.flush()
    auto_equip_if_solo(session, developer_id, FREE_CLAIM_ITEM)
    return True


def auto_equip_if_solo(session: Session, developer_id: int, item_id: str) -> bool:
    """Equip *item_id* when it is the only owned item in its zone."""
    zone = zone_for_item(item_id)
    if zone is None:
        return False

    zone_items = set(ZONE_ITEMS[zone])
    owned_in_zone = [i for i in owned_items(session, developer_id) if i in zone_items]
    if len(owned_in_zone) != 1:
        return False

    row = session.get(DeveloperCustomization, (developer_id, LOADOUT_KEY))
    if row is None:
        row = DeveloperCustomization(
            developer_id=developer_id,
            item_id=LOADOUT_KEY,
            config={z: None for z in ZONE_ITEMS},
        )
        session.add(row)
    # Reassign so the JSON column is flagged dirty.
    row.config = {**(row.config or {}), zone: item_id}
    return True


# ---------------------------------------------------------------------------
# Checkout bookkeeping
# ---------------------------------------------------------------------------
def clear_pending(session: Session, developer_id: int, item_id: str) -> int:
    """Drop earlier pending rows for this buyer/item so a retry starts over."""
    result = session.execute(
        delete(Purchase).where(
            Purchase.developer_id == developer_id,
            Purchase.item_id == item_id,
            Purchase.status == PurchaseStatus.PENDING,
        )
    )
    return result.rowcount or 0


def create_pending_purchase(
    session: Session,
    *,
    developer_id: int,
    item_id: str,
    provider: str,
    amount_cents: int,
    currency: str,
    gifted_to: int | None = None,
    provider_tx_id: str | None = None,
) -> Purchase:
    purchase = Purchase(
        developer_id=developer_id,
        item_id=item_id,
        provider=provider,
        provider_tx_id=provider_tx_id,
        amount_cents=amount_cents,
        currency=currency,
        status=PurchaseStatus.PENDING,
        gifted_to=gifted_to,
    )
    session.add(purchase)
    session.flush()
    return purchase


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CompletedPurchase:
    """What the webhook needs to send receipts after commit."""

    purchase_id: int
    item_id: str
    buyer_id: int
    buyer_login: str
    receiver_id: int | None = None
    receiver_login: str | None = None


def grant_streak_freeze(session: Session, developer_id: int, action: str) -> None:
    dev = session.get(Developer, developer_id)
    if dev is None:
        return
    dev.streak_freezes_available = (dev.streak_freezes_available or 0) + 1
    session.add(StreakFreezeLog(developer_id=developer_id, action=action))


def complete_purchase(
    session: Session, purchase: Purchase, provider_tx_id: str | None = None,
) -> CompletedPurchase:
    """Mark *purchase* completed and apply its effects.

    A streak freeze is credited instead of equipped.  Every completion
    lands in the activity feed as ``item_purchased`` or ``gift_sent``.
    """
    purchase.status = PurchaseStatus.COMPLETED
    if provider_tx_id:
        purchase.provider_tx_id = provider_tx_id
    session.flush()

    buyer = session.get(Developer, purchase.developer_id)
    buyer_login = buyer.github_login if buyer else ""

    if purchase.item_id == STREAK_FREEZE_ITEM:
        grant_streak_freeze(session, purchase.owner_id, "purchased")
        feed_service.add_event(
            session, FeedEventType.ITEM_PURCHASED, purchase.developer_id,
            metadata={"login": buyer_login, "item_id": STREAK_FREEZE_ITEM},
        )
        return CompletedPurchase(purchase.id, purchase.item_id, purchase.developer_id, buyer_login)

    auto_equip_if_solo(session, purchase.owner_id, purchase.item_id)

    if purchase.gifted_to is not None:
        receiver = session.get(Developer, purchase.gifted_to)
        receiver_login = receiver.github_login if receiver else "unknown"
        feed_service.add_event(
            session, FeedEventType.GIFT_SENT, purchase.developer_id,
            target_id=purchase.gifted_to,
            metadata={
                "giver_login": buyer_login,
                "receiver_login": receiver_login,
                "item_id": purchase.item_id,
            },
        )
        return CompletedPurchase(
            purchase.id, purchase.item_id, purchase.developer_id, buyer_login,
            receiver_id=purchase.gifted_to, receiver_login=receiver_login,
        )

    feed_service.add_event(
        session, FeedEventType.ITEM_PURCHASED, purchase.developer_id,
        metadata={"login": buyer_login, "item_id": purchase.item_id},
    )
    return CompletedPurchase(purchase.id, purchase.item_id, purchase.developer_id, buyer_login)
