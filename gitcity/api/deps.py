"""
gitcity.api.deps — FastAPI dependency injection
=================================================

Users sign in through Supabase Auth (GitHub OAuth).  The frontend forwards
the Supabase access token as ``Authorization: Bearer <jwt>``; we verify
it locally with the project's JWT secret (HS256, audience
``authenticated``).  The GitHub login comes from ``user_metadata``.
"""

from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from gitcity.config import GitCityConfig, load_config
from gitcity.database.engine import create_db_engine
from gitcity.services.abacatepay_client import AbacatePayClient
from gitcity.services.notifications import Notifier
from gitcity.services.nowpayments_client import NowPaymentsClient
from gitcity.services.resend_client import ResendClient
from gitcity.services.stripe_client import StripeClient

_WEAK_SECRETS = frozenset({
    "super-secret-jwt-token-with-at-least-32-characters-long",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"


def _load_jwt_secret() -> str:
    """Load and validate SUPABASE_JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("SUPABASE_JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "SUPABASE_JWT_SECRET environment variable is not set. "
            "Copy it from Supabase → Project Settings → API → JWT Secret."
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"SUPABASE_JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"SUPABASE_JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> GitCityConfig:
    return load_config()


def get_session(engine: Annotated[Engine, Depends(get_engine)]):
    with Session(engine) as session:
        yield session


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    cfg = get_config()
    return Notifier(
        get_engine(),
        ResendClient.from_env(sender=cfg.email_from),
        base_url=cfg.base_url,
        batch_window_minutes=cfg.notification_batch_window_minutes,
    )


@dataclass(frozen=True, slots=True)
class PaymentClients:
    stripe: StripeClient
    abacatepay: AbacatePayClient
    nowpayments: NowPaymentsClient


@lru_cache(maxsize=1)
def get_payments() -> PaymentClients:
    return PaymentClients(
        stripe=StripeClient.from_env(),
        abacatepay=AbacatePayClient.from_env(),
        nowpayments=NowPaymentsClient.from_env(),
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AuthUser:
    id: str
    login: str
    email: str | None = None


def user_from_claims(payload: dict) -> AuthUser:
    meta = payload.get("user_metadata") or {}
    login = (meta.get("user_name") or meta.get("preferred_username") or "").lower()
    return AuthUser(id=str(payload.get("sub", "")), login=login, email=payload.get("email"))


def get_current_user(authorization: Annotated[str | None, Header()] = None) -> AuthUser:
    """Validate the Supabase JWT and return the caller.  Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(
            token, JWT_SECRET, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE,
        )
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return user_from_claims(payload)


def get_current_admin(
    user: Annotated[AuthUser, Depends(get_current_user)],
    cfg: Annotated[GitCityConfig, Depends(get_config)],
) -> AuthUser:
    if not cfg.is_admin(user.login):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Forbidden")
    return user


def verify_cron_secret(authorization: Annotated[str | None, Header()] = None) -> None:
    """Scheduled jobs authenticate with ``Authorization: Bearer $CRON_SECRET``."""
    secret = os.getenv("CRON_SECRET")
    if not secret or not hmac.compare_digest(
        (authorization or "").encode(), f"Bearer {secret}".encode(),
    ):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized")
