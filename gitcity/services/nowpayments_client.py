"""
gitcity.services.nowpayments_client — Crypto Invoices via NOWPayments
=======================================================================

The buyer lands on a hosted invoice page and picks a coin there.  The
``order_id`` (``"{developer_id}:{item_id}"``) doubles as the pending
purchase's ``provider_tx_id`` until the IPN callback swaps in the real
``payment_id``.

IPN signatures are HMAC-SHA512 (hex) over the JSON body with every
object's keys sorted recursively and no whitespace.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

NOWPAYMENTS_API_URL = "https://api.nowpayments.io/v1"
NOWPAYMENTS_SANDBOX_URL = "https://api-sandbox.nowpayments.io/v1"


class NowPaymentsError(RuntimeError):
    """Raised when NOWPayments rejects a request or is not configured."""


@dataclass(frozen=True, slots=True)
class Invoice:
    invoice_id: str
    invoice_url: str


def sort_keys_recursive(value: Any) -> Any:
    """Sort dict keys at every level.  Lists keep their order and contents."""
    if isinstance(value, dict):
        return {k: sort_keys_recursive(value[k]) for k in sorted(value)}
    return value


def compute_ipn_signature(body: dict, secret: str) -> str:
    canonical = json.dumps(
        sort_keys_recursive(body), separators=(",", ":"), ensure_ascii=False
    )
    return hmac.new(secret.encode(), canonical.encode(), hashlib.sha512).hexdigest()


def verify_ipn_signature(body: dict, signature: str | None, secret: str | None) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_ipn_signature(body, secret), signature)


class NowPaymentsClient:
    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = NOWPAYMENTS_API_URL,
        timeout: float = 15.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> NowPaymentsClient:
        sandbox = os.getenv("NOWPAYMENTS_SANDBOX", "").lower() == "true"
        return cls(
            os.getenv("NOWPAYMENTS_API_KEY"),
            base_url=NOWPAYMENTS_SANDBOX_URL if sandbox else NOWPAYMENTS_API_URL,
        )

    async def create_invoice(
        self,
        *,
        amount_usd_cents: int,
        order_id: str,
        description: str,
        ipn_callback_url: str,
        success_url: str,
        cancel_url: str,
    ) -> Invoice:
        if not self.api_key:
            raise NowPaymentsError("NOWPAYMENTS_API_KEY is not set")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/invoice",
                    json={
                        "price_amount": amount_usd_cents / 100,
                        "price_currency": "usd",
                        "order_id": order_id,
                        "order_description": description,
                        "ipn_callback_url": ipn_callback_url,
                        "success_url": success_url,
                        "cancel_url": cancel_url,
                    },
                    headers={"x-api-key": self.api_key},
                )
            except httpx.HTTPError as exc:
                raise NowPaymentsError(f"NOWPayments request failed: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning("NOWPayments rejected invoice: %s %s", resp.status_code, resp.text)
            raise NowPaymentsError(f"NOWPayments error {resp.status_code}")

        data = resp.json() or {}
        if not data.get("invoice_url") or not data.get("id"):
            raise NowPaymentsError(f"NOWPayments: unexpected response: {data!r}")
        return Invoice(invoice_id=str(data["id"]), invoice_url=data["invoice_url"])
