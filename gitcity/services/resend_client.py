"""
gitcity.services.resend_client — Resend Email API
===================================================

Thin async wrapper over ``POST https://api.resend.com/emails``.  Anything
that sends mail (the notification engine and the ad-expiry cron) depends
on the :class:`Mailer` protocol, so tests swap in a recording fake.
"""

from __future__ import annotations

import logging
import os
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com"
DEFAULT_FROM = "Git City <noreply@thegitcity.com>"


class ResendError(RuntimeError):
    """Raised when Resend rejects a send or is not configured."""


class Mailer(Protocol):
    async def send_email(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        headers: dict[str, str] | None = None,
    ) -> str | None: ...


class ResendClient:
    """Send transactional email through Resend.

    Returns the Resend message id, which the webhook later reports back
    in ``data.email_id`` for delivery/open/bounce events.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        sender: str = DEFAULT_FROM,
        base_url: str = RESEND_API_URL,
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_env(cls, sender: str = DEFAULT_FROM) -> ResendClient:
        return cls(os.getenv("RESEND_API_KEY"), sender=sender)

    async def send_email(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        headers: dict[str, str] | None = None,
    ) -> str | None:
        if not self.api_key:
            raise ResendError("RESEND_API_KEY is not set")

        payload: dict[str, object] = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if headers:
            payload["headers"] = headers

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/emails",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            except httpx.HTTPError as exc:
                raise ResendError(f"Resend request failed: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning("Resend rejected email %r: %s %s", subject, resp.status_code, resp.text)
            raise ResendError(f"Resend error {resp.status_code}: {resp.text}")

        return resp.json().get("id")
