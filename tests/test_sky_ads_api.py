"""
tests/test_sky_ads_api.py — Sky Ad Serving, Checkout, Tracking & Admin
========================================================================
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import CRON_HEADERS, auth, make_developer, run_async
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from gitcity.constants import utcnow
from gitcity.database.models import SkyAd, SkyAdEvent
from gitcity.engine.sky_ads import DEFAULT_SKY_ADS
from gitcity.services import sky_ad_service

BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"
SITE = {"origin": "https://thegitcity.com", "user-agent": BROWSER_UA}


def _add_ad(db_engine, ad_id: str = "acme", **fields) -> None:
    defaults = dict(brand="Acme", text="ACME ROCKETS", vehicle="plane", priority=50, active=True)
    defaults.update(fields)
    with Session(db_engine) as session:
        session.add(SkyAd(id=ad_id, **defaults))
        session.commit()


def _ads(db_engine) -> list[SkyAd]:
    with Session(db_engine) as session:
        return list(session.scalars(select(SkyAd).order_by(SkyAd.id)))


def _event_count(db_engine) -> int:
    with Session(db_engine) as session:
        return session.scalar(select(func.count()).select_from(SkyAdEvent))


# ---------------------------------------------------------------------------
# Serving
# ---------------------------------------------------------------------------
class TestServing:
    def test_defaults_when_nothing_is_live(self, client):
        resp = client.get("/api/sky-ads")
        assert resp.status_code == 200
        assert resp.headers["cache-control"].startswith("public, s-maxage=60")
        # House ads keep their fixed order; rotation only applies to live ads.
        assert [ad["id"] for ad in resp.json()] == [ad.id for ad in DEFAULT_SKY_ADS]
        assert [ad["id"] for ad in client.get("/api/sky-ads").json()] == ["gitcity", "samuel", "build", "advertise"]

    def test_live_ads_replace_defaults(self, client, db_engine):
        _add_ad(db_engine)
        _add_ad(db_engine, "paused", active=False)
        _add_ad(db_engine, "ended", ends_at=utcnow() - timedelta(days=1))

        body = client.get("/api/sky-ads").json()
        assert [ad["id"] for ad in body] == ["acme"]
        assert "utm_source=gitcity" not in (body[0]["tracked_link"] or "")

    def test_tracked_link_carries_utm(self, client, db_engine):
        _add_ad(db_engine, link="https://acme.dev")
        [ad] = client.get("/api/sky-ads").json()
        assert ad["tracked_link"].startswith("https://acme.dev")
        assert "utm_source=gitcity" in ad["tracked_link"]


# ---------------------------------------------------------------------------
# Self-serve checkout
# ---------------------------------------------------------------------------
CHECKOUT = {"plan_id": "plane_weekly", "text": "SHIP FASTER", "color": "#ffffff", "bgColor": "#000000"}


class TestCheckout:
    def test_creates_inactive_ad_and_stripe_session(self, client, db_engine, payments):
        resp = client.post("/api/sky-ads/checkout", json=CHECKOUT)
        assert resp.status_code == 200
        assert resp.json() == {"url": "https://checkout.stripe.com/c/cs_test_1"}

        [ad] = _ads(db_engine)
        assert ad.id.startswith("ad-")
        assert ad.active is False
        assert ad.vehicle == "plane"
        assert ad.priority == 50
        assert ad.stripe_session_id == "cs_test_1"
        assert len(ad.tracking_token) == 24

        [stripe] = payments.stripe.sessions
        assert stripe["metadata"] == {"sky_ad_id": ad.id, "type": "sky_ad"}
        assert stripe["currency"] == "usd"
        assert stripe["amount_cents"] == 1900
        assert stripe["success_url"] == f"https://thegitcity.com/advertise/setup/{ad.tracking_token}"

    def test_brazilian_visitors_pay_in_brl(self, client, payments):
        client.post("/api/sky-ads/checkout", json=CHECKOUT, headers={"cf-ipcountry": "BR"})
        assert payments.stripe.sessions[0]["currency"] == "brl"

    @pytest.mark.parametrize("override,detail", [
        ({"plan_id": "rocket_weekly"}, "Invalid plan"),
        ({"text": "   "}, "Text is required"),
        ({"text": "X" * 81}, "Text must be 80 characters or less"),
        ({"color": "white"}, "Invalid text color (use #RRGGBB)"),
        ({"bgColor": "#12345"}, "Invalid background color (use #RRGGBB)"),
    ])
    def test_rejects_bad_requests(self, client, db_engine, override, detail):
        resp = client.post("/api/sky-ads/checkout", json={**CHECKOUT, **override})
        assert resp.status_code == 400
        assert resp.json() == {"detail": detail}
        assert _ads(db_engine) == []

    def test_stripe_failure_removes_pending_ad(self, client, db_engine, payments):
        payments.stripe.fail = True
        resp = client.post("/api/sky-ads/checkout", json=CHECKOUT)
        assert resp.status_code == 500
        assert resp.json() == {"detail": "Payment setup failed"}
        assert _ads(db_engine) == []

    def test_rate_limited_per_ip(self, client):
        client.post("/api/sky-ads/checkout", json=CHECKOUT)
        resp = client.post("/api/sky-ads/checkout", json=CHECKOUT)
        assert resp.status_code == 429


# ---------------------------------------------------------------------------
# Setup page
# ---------------------------------------------------------------------------
TOKEN = "k3y8a1b2c3d4e5f6g7h8i9j0"


class TestSetup:
    @pytest.fixture(autouse=True)
    def _paid_ad(self, db_engine):
        _add_ad(db_engine, "ad-paid", brand="", tracking_token=TOKEN, plan_id="plane_weekly")

    def test_get_returns_ad_and_stats(self, client):
        resp = client.get(f"/api/sky-ads/setup/{TOKEN}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == "ad-paid"
        assert body["brand"] is None
        assert body["stats"] == {"impressions": 0, "clicks": 0, "cta_clicks": 0}

    def test_put_updates_fields(self, client, db_engine):
        resp = client.put(
            f"/api/sky-ads/setup/{TOKEN}",
            json={"brand": "Acme", "link": "https://acme.dev", "description": "Rockets"},
        )
        assert resp.json() == {"ok": True}
        [ad] = _ads(db_engine)
        assert (ad.brand, ad.link, ad.description) == ("Acme", "https://acme.dev", "Rockets")
        assert ad.text == "ACME ROCKETS"

    @pytest.mark.parametrize("body,detail", [
        ({"text": "  "}, "Ad text cannot be empty"),
        ({"link": "http://acme.dev"}, "Link must start with https:// or mailto:"),
        ({"link": "https://192.168.0.1/promo"}, "This link is not allowed"),
    ])
    def test_put_rejections(self, client, body, detail):
        resp = client.put(f"/api/sky-ads/setup/{TOKEN}", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"detail": detail}

    def test_short_token_is_400(self, client):
        resp = client.get("/api/sky-ads/setup/abc")
        assert resp.status_code == 400
        assert resp.json() == {"detail": "Invalid token"}

    def test_unknown_token_is_404(self, client):
        resp = client.get("/api/sky-ads/setup/" + "z" * 24)
        assert resp.status_code == 404
        assert resp.json() == {"detail": "Ad not found"}


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------
class TestTracking:
    @pytest.fixture(autouse=True)
    def _ad(self, db_engine):
        _add_ad(db_engine)

    def test_impression_is_stored(self, client, db_engine):
        resp = client.post(
            "/api/sky-ads/track",
            json={"ad_id": "acme", "event_type": "impression", "github_login": "Alice"},
            headers=SITE,
        )
        assert resp.status_code == 201
        assert resp.json() == {"ok": True}

        with Session(db_engine) as session:
            event = session.scalar(select(SkyAdEvent))
        assert event.event_type == "impression"
        assert event.github_login == "alice"
        assert len(event.ip_hash) == 64

    def test_clicks_are_deduped_per_ip_for_an_hour(self, client, db_engine):
        payload = {"ad_id": "acme", "event_types": ["click", "impression"]}
        client.post("/api/sky-ads/track", json=payload, headers=SITE)
        client.post("/api/sky-ads/track", json=payload, headers=SITE)

        with Session(db_engine) as session:
            types = sorted(session.scalars(select(SkyAdEvent.event_type)))
        assert types == ["click", "impression", "impression"]

    def test_house_ads_are_not_stored(self, client, db_engine):
        resp = client.post(
            "/api/sky-ads/track", json={"ad_id": "gitcity", "event_type": "impression"}, headers=SITE,
        )
        assert resp.status_code == 201
        assert _event_count(db_engine) == 0

    @pytest.mark.parametrize("headers", [
        {"origin": "https://evil.example", "user-agent": BROWSER_UA},
        {"origin": "https://thegitcity.com", "user-agent": "curl/8.4.0"},
        {"user-agent": "python-requests/2.32"},
    ])
    def test_forbidden_callers(self, client, db_engine, headers):
        resp = client.post(
            "/api/sky-ads/track", json={"ad_id": "acme", "event_type": "impression"}, headers=headers,
        )
        assert resp.status_code == 403
        assert _event_count(db_engine) == 0

    @pytest.mark.parametrize("body,detail", [
        ({"event_type": "impression"}, "Invalid payload"),
        ({"ad_id": "acme", "event_type": "hover"}, "Invalid event type"),
        ({"ad_id": "acme", "event_types": ["hover"]}, "Invalid event type"),
    ])
    def test_bad_payloads(self, client, body, detail):
        resp = client.post("/api/sky-ads/track", json=body, headers=SITE)
        assert resp.status_code == 400
        assert resp.json() == {"detail": detail}

    def test_event_totals_show_up_in_admin_list(self, client, db_engine):
        client.post(
            "/api/sky-ads/track",
            json={"ad_id": "acme", "event_types": ["impression", "cta_click"]},
            headers=SITE,
        )
        with Session(db_engine) as session:
            make_developer(session, 9, "cityadmin")

        [ad] = client.get("/api/sky-ads/manage", headers=auth("user-9", "cityadmin")).json()
        assert ad["stats"] == {"impressions": 1, "clicks": 1, "cta_clicks": 1}


class TestTrackingHelpers:
    def test_missing_origin_is_allowed(self):
        assert sky_ad_service.is_allowed_origin(None, ("https://thegitcity.com",))
        assert not sky_ad_service.is_allowed_origin("not a url", ("https://thegitcity.com",))

    def test_referer_path_is_ignored(self):
        assert sky_ad_service.is_allowed_origin(
            "https://thegitcity.com/dev/alice", ("https://thegitcity.com",),
        )

    def test_parse_event_types_dedupes(self):
        assert sky_ad_service.parse_event_types("click", ["click", "impression", "bogus"]) == [
            "click", "impression",
        ]

    def test_resolve_currency(self):
        assert sky_ad_service.resolve_currency("br", None) == "brl"
        assert sky_ad_service.resolve_currency("US", "brl") == "brl"
        assert sky_ad_service.resolve_currency(None, "eur") == "usd"


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------
class TestManage:
    @pytest.fixture
    def admin(self, db_engine):
        with Session(db_engine) as session:
            make_developer(session, 9, "cityadmin")
        return auth("user-9", "cityadmin")

    def test_requires_admin(self, client):
        assert client.get("/api/sky-ads/manage").status_code == 401
        resp = client.get("/api/sky-ads/manage", headers=auth("user-1", "alice"))
        assert resp.status_code == 403

    def test_create_update_delete(self, client, admin, db_engine):
        resp = client.post(
            "/api/sky-ads/manage",
            json={"id": "acme", "brand": "Acme", "text": "ACME", "vehicle": "blimp"},
            headers=admin,
        )
        assert resp.status_code == 201
        assert resp.json()["active"] is True
        assert resp.json()["vehicle"] == "blimp"

        resp = client.put(
            "/api/sky-ads/manage", json={"id": "acme", "priority": 70, "active": False}, headers=admin,
        )
        assert resp.status_code == 200
        assert (resp.json()["priority"], resp.json()["active"]) == (70, False)

        resp = client.delete("/api/sky-ads/manage?id=acme", headers=admin)
        assert resp.json() == {"ok": True}
        assert _ads(db_engine) == []

    def test_create_rejections(self, client, admin, db_engine):
        resp = client.post("/api/sky-ads/manage", json={"id": "acme"}, headers=admin)
        assert resp.json() == {"detail": "Missing required fields: id, brand, text"}

        _add_ad(db_engine)
        resp = client.post(
            "/api/sky-ads/manage", json={"id": "acme", "brand": "A", "text": "B"}, headers=admin,
        )
        assert resp.status_code == 400
        assert resp.json() == {"detail": "Ad 'acme' already exists"}

    @pytest.mark.parametrize("body,status,detail", [
        ({"priority": 1}, 400, "Missing ad id"),
        ({"id": "acme"}, 400, "No valid fields to update"),
        ({"id": "acme", "vehicle": "rocket"}, 400, "Invalid vehicle"),
        ({"id": "ghost", "priority": 1}, 404, "Ad not found"),
    ])
    def test_update_rejections(self, client, admin, db_engine, body, status, detail):
        _add_ad(db_engine)
        resp = client.put("/api/sky-ads/manage", json=body, headers=admin)
        assert resp.status_code == status
        assert resp.json() == {"detail": detail}

    def test_batch_pause_and_resume(self, client, admin, db_engine):
        _add_ad(db_engine, "a")
        _add_ad(db_engine, "b")

        resp = client.patch(
            "/api/sky-ads/manage", json={"ids": ["a", "b"], "action": "pause"}, headers=admin,
        )
        assert resp.json() == {"ok": True, "affected": 2}
        assert [ad.active for ad in _ads(db_engine)] == [False, False]

        client.patch("/api/sky-ads/manage", json={"ids": ["a"], "action": "resume"}, headers=admin)
        assert [ad.active for ad in _ads(db_engine)] == [True, False]

    def test_batch_counts_only_rows_it_touched(self, client, admin, db_engine):
        _add_ad(db_engine, "a")
        _add_ad(db_engine, "b")

        resp = client.patch(
            "/api/sky-ads/manage", json={"ids": ["a", "ghost"], "action": "pause"}, headers=admin,
        )
        assert resp.json() == {"ok": True, "affected": 1}

        resp = client.patch(
            "/api/sky-ads/manage", json={"ids": ["a", "b", "ghost"], "action": "delete"}, headers=admin,
        )
        assert resp.json() == {"ok": True, "affected": 2}
        assert _ads(db_engine) == []

    @pytest.mark.parametrize("body,detail", [
        ({"action": "pause"}, "Missing ids array"),
        ({"ids": [], "action": "pause"}, "Missing ids array"),
        ({"ids": ["a"], "action": "archive"}, "Invalid action. Use: pause, resume, delete"),
    ])
    def test_batch_rejections(self, client, admin, body, detail):
        resp = client.patch("/api/sky-ads/manage", json=body, headers=admin)
        assert resp.status_code == 400
        assert resp.json() == {"detail": detail}


# ---------------------------------------------------------------------------
# Expiry cron
# ---------------------------------------------------------------------------
class TestExpiry:
    def test_cron_requires_secret(self, client):
        assert client.get("/api/cron/ad-expiry").status_code == 401

    def test_expiring_and_expired_emails(self, client, db_engine, mailer):
        now = utcnow()
        _add_ad(db_engine, "soon", brand="Soon", purchaser_email="soon@acme.dev",
                tracking_token="soon-token-123", ends_at=now + timedelta(hours=30))
        _add_ad(db_engine, "done", brand="Done", purchaser_email="done@acme.dev",
                ends_at=now - timedelta(hours=1))
        _add_ad(db_engine, "later", brand="Later", purchaser_email="later@acme.dev",
                ends_at=now + timedelta(days=5))

        resp = client.get("/api/cron/ad-expiry", headers=CRON_HEADERS)
        assert resp.json() == {"ok": True, "expiring": 1, "expired": 1, "errors": 0}

        assert mailer.subjects_to("soon@acme.dev") == ["Your Git City ad expires in 2 days"]
        assert mailer.subjects_to("done@acme.dev") == ['Your Git City ad "Done" has ended']
        assert mailer.subjects_to("later@acme.dev") == []
        states = {ad.id: ad.expiry_notified for ad in _ads(db_engine)}
        assert states == {"soon": "expiring", "done": "expired", "later": None}

    def test_each_stage_is_sent_once(self, db_engine, mailer):
        _add_ad(db_engine, "done", brand="Done", purchaser_email="done@acme.dev",
                ends_at=utcnow() - timedelta(hours=1))

        first = run_async(sky_ad_service.run_ad_expiry(db_engine, mailer))
        second = run_async(sky_ad_service.run_ad_expiry(db_engine, mailer))

        assert first["expired"] == 1
        assert second == {"expiring": 0, "expired": 0, "errors": 0}
        assert len(mailer.sent) == 1

    def test_failed_send_is_retried_next_run(self, db_engine):
        class BrokenMailer:
            async def send_email(self, **kwargs):
                raise RuntimeError("resend down")

        _add_ad(db_engine, "done", brand="Done", purchaser_email="done@acme.dev",
                ends_at=utcnow() - timedelta(hours=1))

        result = run_async(sky_ad_service.run_ad_expiry(db_engine, BrokenMailer()))
        assert result == {"expiring": 0, "expired": 0, "errors": 1}
        assert _ads(db_engine)[0].expiry_notified is None
