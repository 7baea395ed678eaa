"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os

# ---------------------------------------------------------------------------
# Secrets must be in place before gitcity.api.deps is imported: it
# validates SUPABASE_JWT_SECRET at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("SUPABASE_JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("UNSUBSCRIBE_HMAC_SECRET", "test-unsubscribe-secret")
os.environ.setdefault("IP_HASH_SECRET", "test-ip-salt")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_stripe")
os.environ.setdefault("ABACATEPAY_WEBHOOK_SECRET", "test-abacate-secret")
os.environ.setdefault("ABACATEPAY_PUBLIC_KEY", "test-abacate-public-key")
os.environ.setdefault("NOWPAYMENTS_IPN_SECRET", "test-ipn-secret")

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from gitcity.api import deps as _deps  # noqa: E402
from gitcity.api.main import app  # noqa: E402
from gitcity.api import rate_limit  # noqa: E402
from gitcity.config import GitCityConfig  # noqa: E402
from gitcity.database.engine import init_db  # noqa: E402
from gitcity.database.models import Developer  # noqa: E402
from gitcity.services.abacatepay_client import PixQrCode  # noqa: E402
from gitcity.services.nowpayments_client import Invoice  # noqa: E402

_jsonb_sqlite_registered = False

BASE_URL = "https://thegitcity.com"
CRON_HEADERS = {"Authorization": f"Bearer {os.environ['CRON_SECRET']}"}

# The routers bound these when gitcity.api.main was imported above.  Keep
# them: test_jwt_startup reloads the deps module, which creates new ones.
_GET_ENGINE = _deps.get_engine
_GET_CONFIG = _deps.get_config
_GET_NOTIFIER = _deps.get_notifier
_GET_PAYMENTS = _deps.get_payments


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def run_async(coro):
    """Run an async coroutine without pytest-asyncio."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with every table and the seeded catalog.

    Uses StaticPool so all threads share the same in-memory database
    (``run_db`` hops to a worker thread).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine: each Session gets its own connection.

    Two sessions on it behave like two concurrent requests, which the
    shared in-memory connection of ``db_engine`` cannot show.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'gitcity.db'}", echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


def run_after_first_call(monkeypatch, owner, name: str, concurrent, when=None) -> list:
    """Run *concurrent* right after the first matching call to ``owner.name``.

    Lets another session commit between a service's existence check and
    its insert.  Returns a list that holds ``True`` once *concurrent* ran.
    """
    original = getattr(owner, name)
    fired: list = []

    def wrapper(*args, **kwargs):
        result = original(*args, **kwargs)
        if not fired and (when is None or when(*args, **kwargs)):
            fired.append(True)
            concurrent()
        return result

    monkeypatch.setattr(owner, name, wrapper)
    return fired


def make_developer(
    session: Session,
    dev_id: int,
    login: str,
    *,
    claimed: bool = True,
    email: str | None = "",
    **fields,
) -> Developer:
    """Insert and commit a developer.  Claimed rows are owned by ``user-{id}``."""
    dev = Developer(
        id=dev_id,
        github_login=login.lower(),
        claimed=claimed,
        claimed_by=f"user-{dev_id}" if claimed else None,
        email=f"{login.lower()}@example.com" if email == "" else email,
        **fields,
    )
    session.add(dev)
    session.commit()
    return dev


# ---------------------------------------------------------------------------
# Fakes for outbound providers
# ---------------------------------------------------------------------------
class FakeMailer:
    """Records every email instead of calling Resend."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send_email(self, *, to, subject, html, headers=None):
        self.sent.append({"to": to, "subject": subject, "html": html, "headers": headers or {}})
        return f"email_{len(self.sent)}"

    def subjects_to(self, address: str) -> list[str]:
        return [m["subject"] for m in self.sent if m["to"] == address]


class FakeStripe:
    def __init__(self) -> None:
        self.sessions: list[dict] = []
        self.fail = False

    async def create_checkout_session(self, **kwargs):
        from gitcity.services.stripe_client import StripeError

        if self.fail:
            raise StripeError("boom")
        self.sessions.append(kwargs)
        n = len(self.sessions)
        return {"id": f"cs_test_{n}", "url": f"https://checkout.stripe.com/c/cs_test_{n}"}


class FakeAbacatePay:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def create_pix_qr_code(self, **kwargs):
        self.calls.append(kwargs)
        return PixQrCode(pix_id="pix_char_1", br_code="000201BR", br_code_base64="data:image/png;base64,AAA")


class FakeNowPayments:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def create_invoice(self, **kwargs):
        self.calls.append(kwargs)
        return Invoice(invoice_id="inv_1", invoice_url="https://nowpayments.io/payment/?iid=inv_1")


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def payments():
    return _deps.PaymentClients(stripe=FakeStripe(), abacatepay=FakeAbacatePay(), nowpayments=FakeNowPayments())


@pytest.fixture
def test_config() -> GitCityConfig:
    return GitCityConfig(
        site_name="Git City",
        base_url=BASE_URL,
        email_from="Git City <noreply@thegitcity.com>",
        admin_logins=("cityadmin",),
    )


@pytest.fixture
def notifier(db_engine, mailer):
    from gitcity.services.notifications import Notifier

    return Notifier(db_engine, mailer, base_url=BASE_URL)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def make_token(sub: str, login: str, email: str | None = None) -> str:
    """Create a Supabase-style access token for *login*."""
    import jwt

    from gitcity.api.deps import JWT_ALGORITHM, JWT_AUDIENCE, JWT_SECRET

    return jwt.encode(
        {
            "sub": sub,
            "aud": JWT_AUDIENCE,
            "email": email,
            "user_metadata": {"user_name": login},
        },
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def auth(sub: str, login: str) -> dict:
    return {"Authorization": f"Bearer {make_token(sub, login)}"}


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------
@pytest.fixture
def client(db_engine, test_config, notifier, payments):
    """TestClient wired to the SQLite engine and fake providers.

    Not used as a context manager, so the lifespan (which would build a
    Postgres engine) never runs.
    """
    from fastapi.testclient import TestClient

    # Override both the originally bound providers and the current ones:
    # after a reload of gitcity.api.deps, string annotations resolve to
    # the reloaded functions.
    for get_engine in (_GET_ENGINE, _deps.get_engine):
        app.dependency_overrides[get_engine] = lambda: db_engine
    for get_config in (_GET_CONFIG, _deps.get_config):
        app.dependency_overrides[get_config] = lambda: test_config
    for get_notifier in (_GET_NOTIFIER, _deps.get_notifier):
        app.dependency_overrides[get_notifier] = lambda: notifier
    for get_payments in (_GET_PAYMENTS, _deps.get_payments):
        app.dependency_overrides[get_payments] = lambda: payments
    rate_limit.reset()

    yield TestClient(app, raise_server_exceptions=False)

    app.dependency_overrides.clear()
    rate_limit.reset()
