"""
gitcity.services.webhook_service — Payment & Email Provider Callbacks
=======================================================================

Routes verify the provider signature first; the handlers here only see
authenticated events.  Each handler runs in its own transaction and
returns the notifications to send once that transaction has committed.

A handler never raises: providers retry on non-2xx, and a business-logic
failure would only make them retry forever.  Failures are logged and the
event is acknowledged.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from collections.abc import Callable

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gitcity.constants import STREAK_FREEZE_ITEM, utcnow
from gitcity.database.engine import get_session
from gitcity.database.models import (
    NotificationLog,
    NotificationSuppression,
    PaymentProvider,
    Purchase,
    PurchaseStatus,
)
from gitcity.services import item_service, notification_senders, sky_ad_service
from gitcity.services.email_template import SITE_URL
from gitcity.services.item_service import CompletedPurchase
from gitcity.services.notifications import NotificationPayload

logger = logging.getLogger(__name__)

SVIX_TOLERANCE_SECONDS = 300


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------
def receipts_for(completed: CompletedPurchase, base_url: str = SITE_URL) -> list[NotificationPayload]:
    """Receipt for a plain purchase; sent + received notes for a gift."""
    if completed.receiver_id is not None:
        receiver_login = completed.receiver_login or "unknown"
        return [
            notification_senders.gift_sent(
                completed.buyer_id, receiver_login, completed.purchase_id, completed.item_id, base_url,
            ),
            notification_senders.gift_received(
                completed.receiver_id, completed.buyer_login or "someone", receiver_login,
                completed.purchase_id, completed.item_id, base_url,
            ),
        ]
    return [
        notification_senders.purchase_confirmation(
            completed.buyer_id, completed.buyer_login, completed.purchase_id, completed.item_id, base_url,
        )
    ]


def _run(
    engine: Engine, provider: str, handler: Callable[[Session], list[NotificationPayload]],
) -> list[NotificationPayload]:
    try:
        with get_session(engine) as session:
            return handler(session)
    except Exception:
        logger.exception("%s webhook handler error", provider)
        return []


def _set_pending_status(session: Session, provider: str, tx_id: str, status: PurchaseStatus) -> int:
    result = session.execute(
        update(Purchase)
        .where(
            Purchase.provider == provider,
            Purchase.provider_tx_id == tx_id,
            Purchase.status == PurchaseStatus.PENDING,
        )
        .values(status=status)
    )
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------
def _payment_intent_id(obj: dict) -> str | None:
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


def _stripe_checkout_completed(session: Session, obj: dict, base_url: str) -> list[NotificationPayload]:
    metadata = obj.get("metadata") or {}

    if metadata.get("type") == "sky_ad" and metadata.get("sky_ad_id"):
        email = (obj.get("customer_details") or {}).get("email") or obj.get("customer_email")
        sky_ad_service.activate_from_checkout(session, metadata["sky_ad_id"], email)
        return []

    developer_id = metadata.get("developer_id")
    item_id = metadata.get("item_id")
    if not developer_id or not item_id:
        logger.error("Missing metadata in Stripe session %s", obj.get("id"))
        return []

    developer_id = int(developer_id)
    tx_id = _payment_intent_id(obj) or obj.get("id")

    pending = session.scalar(
        select(Purchase).where(
            Purchase.developer_id == developer_id,
            Purchase.item_id == item_id,
            Purchase.provider == PaymentProvider.STRIPE,
            Purchase.status == PurchaseStatus.PENDING,
        ).order_by(Purchase.id.desc()).limit(1)
    )
    if pending is not None:
        return receipts_for(item_service.complete_purchase(session, pending, tx_id), base_url)

    already = session.scalar(
        select(Purchase.id).where(
            Purchase.developer_id == developer_id,
            Purchase.item_id == item_id,
            Purchase.status == PurchaseStatus.COMPLETED,
        ).limit(1)
    )
    if already is not None:
        # Duplicate delivery.
        return []

    # The pending row was cleaned up before payment landed: record it anyway.
    purchase = Purchase(
        developer_id=developer_id,
        item_id=item_id,
        provider=PaymentProvider.STRIPE,
        provider_tx_id=tx_id,
        amount_cents=obj.get("amount_total") or 0,
        currency=obj.get("currency") or "usd",
        status=PurchaseStatus.COMPLETED,
    )
    session.add(purchase)
    session.flush()
    item_service.auto_equip_if_solo(session, developer_id, item_id)
    logger.warning("Stripe session %s completed without a pending purchase", obj.get("id"))
    return []


def _stripe_charge_refunded(session: Session, obj: dict) -> list[NotificationPayload]:
    intent = _payment_intent_id(obj)
    if intent:
        session.execute(
            update(Purchase)
            .where(Purchase.provider_tx_id == intent, Purchase.status == PurchaseStatus.COMPLETED)
            .values(status=PurchaseStatus.REFUNDED)
        )
    return []


def handle_stripe_event(engine: Engine, event: dict, base_url: str = SITE_URL) -> list[NotificationPayload]:
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    def handler(session: Session) -> list[NotificationPayload]:
        if event_type == "checkout.session.completed":
            return _stripe_checkout_completed(session, obj, base_url)
        if event_type == "charge.refunded":
            return _stripe_charge_refunded(session, obj)
        return []

    return _run(engine, "Stripe", handler)


# ---------------------------------------------------------------------------
# AbacatePay
# ---------------------------------------------------------------------------
ABACATEPAY_PAID = frozenset({"billing.paid", "pixQrCode.paid"})
ABACATEPAY_EXPIRED = frozenset({"pix.expired", "pixQrCode.expired"})


def handle_abacatepay_event(
    engine: Engine, event: str | None, pix_id: str | None, base_url: str = SITE_URL,
) -> list[NotificationPayload]:
    if not pix_id:
        return []

    def handler(session: Session) -> list[NotificationPayload]:
        if event in ABACATEPAY_PAID:
            purchase = session.scalar(
                select(Purchase).where(
                    Purchase.provider == PaymentProvider.ABACATEPAY,
                    Purchase.provider_tx_id == pix_id,
                )
            )
            if purchase is None or purchase.status != PurchaseStatus.PENDING:
                return []
            return receipts_for(item_service.complete_purchase(session, purchase), base_url)
        if event in ABACATEPAY_EXPIRED:
            _set_pending_status(session, PaymentProvider.ABACATEPAY, pix_id, PurchaseStatus.EXPIRED)
        return []

    return _run(engine, "AbacatePay", handler)


# ---------------------------------------------------------------------------
# NOWPayments
# ---------------------------------------------------------------------------
NOWPAYMENTS_PAID = frozenset({"finished", "confirmed"})
NOWPAYMENTS_CLOSED = {
    "expired": PurchaseStatus.EXPIRED,
    "failed": PurchaseStatus.EXPIRED,
    "refunded": PurchaseStatus.REFUNDED,
}


def handle_nowpayments_event(engine: Engine, body: dict, base_url: str = SITE_URL) -> list[NotificationPayload]:
    status = body.get("payment_status")
    order_id = body.get("order_id")
    payment_id = str(body["payment_id"]) if body.get("payment_id") else None
    if not order_id:
        return []
    order_id = str(order_id)

    def handler(session: Session) -> list[NotificationPayload]:
        if status in NOWPAYMENTS_PAID:
            purchase = session.scalar(
                select(Purchase).where(
                    Purchase.provider == PaymentProvider.NOWPAYMENTS,
                    Purchase.status == PurchaseStatus.PENDING,
                    Purchase.provider_tx_id == order_id,
                ).order_by(Purchase.id.desc()).limit(1)
            )
            if purchase is None:
                return []
            completed = item_service.complete_purchase(session, purchase, payment_id or order_id)
            if completed.item_id == STREAK_FREEZE_ITEM:
                return []
            return receipts_for(completed, base_url)
        if status in NOWPAYMENTS_CLOSED:
            _set_pending_status(session, PaymentProvider.NOWPAYMENTS, order_id, NOWPAYMENTS_CLOSED[status])
        return []

    return _run(engine, "NOWPayments", handler)


# ---------------------------------------------------------------------------
# Resend (Svix-signed)
# ---------------------------------------------------------------------------
class SvixVerificationError(ValueError):
    """Raised when a Resend webhook's Svix headers don't check out."""


def compute_svix_signature(secret: str, msg_id: str, timestamp: str, payload: bytes) -> str:
    key = base64.b64decode(secret.removeprefix("whsec_"))
    signed = f"{msg_id}.{timestamp}.".encode() + payload
    return base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()


def verify_svix(
    payload: bytes,
    headers: dict[str, str | None],
    secret: str,
    *,
    tolerance: int = SVIX_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """Check ``svix-id`` / ``svix-timestamp`` / ``svix-signature``.

    The signature header holds space-separated ``v1,<base64>`` entries;
    any one matching is enough.
    """
    msg_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signature = headers.get("svix-signature")
    if not msg_id or not timestamp or not signature:
        raise SvixVerificationError("Missing signature")
    try:
        ts = int(timestamp)
    except ValueError as exc:
        raise SvixVerificationError("Invalid timestamp") from exc
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        raise SvixVerificationError("Timestamp outside the tolerance zone")

    expected = compute_svix_signature(secret, msg_id, timestamp, payload)
    for entry in signature.split():
        version, _, sig = entry.partition(",")
        if version == "v1" and hmac.compare_digest(expected, sig):
            return
    raise SvixVerificationError("Invalid signature")


SUPPRESSION_REASONS = {"email.bounced": "bounce", "email.complained": "complaint"}
FAILURE_STATUS = {"email.bounced": "bounced", "email.complained": "complained"}
FIRST_SEEN_COLUMNS = {"email.opened": "opened_at", "email.clicked": "clicked_at"}


def _find_suppression(session: Session, email: str) -> NotificationSuppression | None:
    return session.scalar(
        select(NotificationSuppression).where(
            NotificationSuppression.identifier == email,
            NotificationSuppression.channel == "email",
        )
    )


def _suppress(session: Session, email: str, reason: str) -> None:
    row = _find_suppression(session, email)
    if row is None:
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(NotificationSuppression(identifier=email, channel="email", reason=reason))
                session.flush()
            return
        except IntegrityError:
            # Another delivery event suppressed this address first.
            row = _find_suppression(session, email)
    row.reason = reason


def handle_resend_event(engine: Engine, event_type: str | None, data: dict) -> None:
    """Feed delivery lifecycle events back into ``notification_log``."""
    recipients = data.get("to") or []
    email = recipients[0] if isinstance(recipients, list) and recipients else None
    email_id = data.get("email_id")

    def handler(session: Session) -> list[NotificationPayload]:
        now = utcnow()
        if event_type in SUPPRESSION_REASONS:
            if email:
                _suppress(session, email, SUPPRESSION_REASONS[event_type])
            if email_id:
                session.execute(
                    update(NotificationLog)
                    .where(NotificationLog.provider_id == email_id)
                    .values(status=FAILURE_STATUS[event_type], error_message=SUPPRESSION_REASONS[event_type])
                )
        elif event_type == "email.delivered" and email_id:
            session.execute(
                update(NotificationLog)
                .where(NotificationLog.provider_id == email_id, NotificationLog.delivered_at.is_(None))
                .values(status="delivered", delivered_at=now)
            )
        elif event_type in FIRST_SEEN_COLUMNS and email_id:
            column = getattr(NotificationLog, FIRST_SEEN_COLUMNS[event_type])
            session.execute(
                update(NotificationLog)
                .where(NotificationLog.provider_id == email_id, column.is_(None))
                .values({column: now})
            )
        return []

    _run(engine, "Resend", handler)
