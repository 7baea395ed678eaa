"""
gitcity.services.stripe_client — Stripe Checkout over HTTP
============================================================

Creates hosted Checkout sessions (shop items and sky ads) and verifies
``Stripe-Signature`` headers on incoming webhooks.

Stripe's REST API takes ``application/x-www-form-urlencoded`` bodies with
bracketed keys (``line_items[0][price_data][currency]``);
:func:`_flatten_form` produces them from nested dicts.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import time
from typing import Any

import httpx

logger = logging.getLogger(__name__)

STRIPE_API_URL = "https://api.stripe.com/v1"
SIGNATURE_TOLERANCE_SECONDS = 300


class StripeError(RuntimeError):
    """Raised when Stripe rejects a request or is not configured."""


class SignatureVerificationError(ValueError):
    """Raised when a webhook signature header is missing, stale or wrong."""


# ---------------------------------------------------------------------------
# Webhook signatures
# ---------------------------------------------------------------------------
def compute_signature(payload: bytes, timestamp: int | str, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_webhook(
    payload: bytes,
    header: str | None,
    secret: str | None,
    *,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """Validate a ``Stripe-Signature: t=…,v1=…`` header against *payload*."""
    if not secret:
        raise SignatureVerificationError("STRIPE_WEBHOOK_SECRET is not set")
    if not header:
        raise SignatureVerificationError("Missing signature")

    timestamp: str | None = None
    candidates: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            candidates.append(value)

    if timestamp is None or not candidates:
        raise SignatureVerificationError("Malformed signature header")
    try:
        ts = int(timestamp)
    except ValueError as exc:
        raise SignatureVerificationError("Malformed signature timestamp") from exc

    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        raise SignatureVerificationError("Timestamp outside the tolerance zone")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise SignatureVerificationError("No signatures found matching the expected signature")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
def _flatten_form(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for key, value in data.items():
        full = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(_flatten_form(value, full))
        elif isinstance(value, list):
            for i, entry in enumerate(value):
                if isinstance(entry, dict):
                    pairs.extend(_flatten_form(entry, f"{full}[{i}]"))
                else:
                    pairs.append((f"{full}[{i}]", str(entry)))
        elif isinstance(value, bool):
            pairs.append((full, "true" if value else "false"))
        else:
            pairs.append((full, str(value)))
    return pairs


class StripeClient:
    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = STRIPE_API_URL,
        timeout: float = 15.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> StripeClient:
        return cls(os.getenv("STRIPE_SECRET_KEY"))

    async def create_checkout_session(
        self,
        *,
        name: str,
        description: str,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        customer_email: str | None = None,
        expires_in_seconds: int | None = None,
    ) -> dict[str, Any]:
        """Create a one-item ``payment`` session.  Returns ``{"id", "url", ...}``."""
        if not self.api_key:
            raise StripeError("STRIPE_SECRET_KEY is not set")

        form: dict[str, Any] = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": name, "description": description},
                    "unit_amount": amount_cents,
                },
                "quantity": 1,
            }],
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_email": customer_email,
        }
        if expires_in_seconds:
            form["expires_at"] = int(time.time()) + expires_in_seconds

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/checkout/sessions",
                    data=dict(_flatten_form(form)),
                    auth=(self.api_key, ""),
                )
            except httpx.HTTPError as exc:
                raise StripeError(f"Stripe request failed: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning("Stripe rejected checkout: %s %s", resp.status_code, resp.text)
            raise StripeError(f"Stripe error {resp.status_code}")

        session = resp.json()
        if not session.get("id") or not session.get("url"):
            raise StripeError("Stripe returned a session without id/url")
        return session
