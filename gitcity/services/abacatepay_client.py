"""
gitcity.services.abacatepay_client — PIX Payments via AbacatePay
==================================================================

BRL checkout for Brazilian buyers: a PIX QR code is created per purchase
and its id is stored as the purchase's ``provider_tx_id``.  The webhook
reports ``billing.paid`` / ``pixQrCode.paid`` against that id.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

ABACATEPAY_API_URL = "https://api.abacatepay.com/v1"
PIX_EXPIRES_IN_SECONDS = 30 * 60


class AbacatePayError(RuntimeError):
    """Raised when AbacatePay rejects a request or is not configured."""


@dataclass(frozen=True, slots=True)
class PixQrCode:
    pix_id: str
    br_code: str
    br_code_base64: str


def compute_signature(raw_body: bytes, key: str) -> str:
    return base64.b64encode(hmac.new(key.encode(), raw_body, hashlib.sha256).digest()).decode()


def verify_signature(raw_body: bytes, signature: str, key: str | None) -> bool:
    """Check ``x-webhook-signature`` (base64 HMAC-SHA256 keyed by the public key)."""
    if not key:
        return False
    return hmac.compare_digest(compute_signature(raw_body, key), signature)


def extract_pix_id(data: dict | None) -> str | None:
    """``billing.paid`` nests the id under ``pixQrCode``; ``pixQrCode.*`` events don't."""
    if not isinstance(data, dict):
        return None
    nested = data.get("pixQrCode")
    if isinstance(nested, dict) and nested.get("id"):
        return str(nested["id"])
    return str(data["id"]) if data.get("id") else None


class AbacatePayClient:
    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = ABACATEPAY_API_URL,
        timeout: float = 15.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> AbacatePayClient:
        return cls(os.getenv("ABACATEPAY_API_KEY"))

    async def create_pix_qr_code(
        self,
        *,
        amount_cents: int,
        description: str,
        metadata: dict[str, str],
    ) -> PixQrCode:
        if not self.api_key:
            raise AbacatePayError("ABACATEPAY_API_KEY is not set")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/pixQrCode/create",
                    json={
                        "amount": amount_cents,
                        "expiresIn": PIX_EXPIRES_IN_SECONDS,
                        "description": description[:140],
                        "metadata": metadata,
                    },
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            except httpx.HTTPError as exc:
                raise AbacatePayError(f"AbacatePay request failed: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning("AbacatePay rejected PIX: %s %s", resp.status_code, resp.text)
            raise AbacatePayError(f"AbacatePay error {resp.status_code}")

        data = (resp.json() or {}).get("data") or {}
        if not data.get("id") or not data.get("brCode"):
            raise AbacatePayError("AbacatePay returned an incomplete PIX QR code")
        return PixQrCode(
            pix_id=str(data["id"]),
            br_code=data["brCode"],
            br_code_base64=data.get("brCodeBase64", ""),
        )
