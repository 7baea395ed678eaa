"""
tests/test_preferences.py — Notification Preferences & Unsubscribe Routes
===========================================================================
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest
from conftest import auth, make_developer, run_after_first_call
from sqlalchemy.orm import Session

from gitcity.database.models import NotificationPreference
from gitcity.services import preference_service
from gitcity.services.notifications import generate_hmac_token


@pytest.fixture
def alice(db_engine):
    with Session(db_engine) as session:
        make_developer(session, 1, "alice")
    return auth("user-1", "alice")


def _prefs_row(db_engine) -> NotificationPreference | None:
    with Session(db_engine) as session:
        return session.get(NotificationPreference, 1)


class TestPreferencesApi:
    def test_defaults_without_a_row(self, client, alice):
        resp = client.get("/api/notification-preferences", headers=alice)
        assert resp.status_code == 200
        body = resp.json()
        assert body["email_enabled"] is True
        assert body["marketing"] is False
        assert body["digest_frequency"] == "realtime"
        assert body["channel_overrides"] == {}

    def test_patch_updates_allowed_fields(self, client, alice, db_engine):
        resp = client.patch(
            "/api/notification-preferences",
            json={"social": False, "digest_frequency": "daily", "quiet_hours_start": 22},
            headers=alice,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["social"] is False
        assert body["digest_frequency"] == "daily"
        assert body["quiet_hours_start"] == 22

        row = _prefs_row(db_engine)
        assert row.social is False
        assert row.email_enabled is True

    def test_transactional_cannot_be_turned_off(self, client, alice):
        resp = client.patch(
            "/api/notification-preferences", json={"transactional": False}, headers=alice,
        )
        assert resp.status_code == 400
        assert resp.json() == {"detail": "No valid fields to update"}

    @pytest.mark.parametrize("body,detail", [
        ({"digest_frequency": "monthly"}, "Invalid digest_frequency"),
        ({"quiet_hours_end": 24}, "quiet_hours_end must be 0-23"),
        ({"quiet_hours_start": True}, "quiet_hours_start must be 0-23"),
        ({"channel_overrides": ["email"]}, "channel_overrides must be an object"),
    ])
    def test_rejects_bad_values(self, client, alice, body, detail):
        resp = client.patch("/api/notification-preferences", json=body, headers=alice)
        assert resp.status_code == 400
        assert resp.json() == {"detail": detail}

    def test_requires_auth(self, client):
        assert client.get("/api/notification-preferences").status_code == 401


class TestPreferenceUpsert:
    def test_row_created_concurrently_is_updated(self, file_engine, monkeypatch):
        with Session(file_engine) as setup:
            make_developer(setup, 1, "alice")

        def other_request():
            with Session(file_engine) as other:
                other.add(NotificationPreference(developer_id=1, quiet_hours_start=22))
                other.commit()

        with Session(file_engine) as session:
            fired = run_after_first_call(
                monkeypatch, session, "get", other_request,
                when=lambda entity, *args, **kwargs: entity is NotificationPreference,
            )
            body = preference_service.update_preferences(session, 1, {"social": False})
            session.commit()

        assert fired
        assert body["social"] is False
        row = _prefs_row(file_engine)
        assert row.social is False
        assert row.quiet_hours_start == 22


class TestUnsubscribe:
    def test_one_click_post_turns_off_category(self, client, alice, db_engine):
        token = generate_hmac_token(1, "digest")
        resp = client.post(f"/api/unsubscribe?dev=1&cat=digest&token={token}")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "category": "digest"}
        assert _prefs_row(db_engine).digest is False

    def test_all_turns_off_email(self, client, alice, db_engine):
        token = generate_hmac_token(1, "all")
        client.post(f"/api/unsubscribe?dev=1&cat=all&token={token}")
        row = _prefs_row(db_engine)
        assert row.email_enabled is False
        assert row.social is True

    def test_bad_token_is_403(self, client, alice):
        resp = client.post("/api/unsubscribe?dev=1&cat=digest&token=" + "0" * 32)
        assert resp.status_code == 403
        assert resp.json() == {"detail": "Invalid token"}

    @pytest.mark.parametrize("query", [
        "cat=digest&token=abc",
        "dev=x&cat=digest&token=abc",
        "dev=1&cat=spam&token=abc",
        "dev=1&cat=digest",
    ])
    def test_bad_parameters_are_400(self, client, alice, query):
        resp = client.post(f"/api/unsubscribe?{query}")
        assert resp.status_code == 400

    def test_unknown_developer_is_404(self, client):
        token = generate_hmac_token(999, "social")
        resp = client.post(f"/api/unsubscribe?dev=999&cat=social&token={token}")
        assert resp.status_code == 404

    def test_get_redirects_to_confirmation(self, client, alice, db_engine):
        token = generate_hmac_token(1, "social")
        resp = client.get(
            f"/api/unsubscribe?dev=1&cat=social&token={token}", follow_redirects=False,
        )
        assert resp.status_code == 307
        location = urlsplit(resp.headers["location"])
        assert location.netloc == "thegitcity.com"
        assert location.path == "/unsubscribe"
        assert parse_qs(location.query) == {"success": ["true"], "cat": ["social"]}
        assert _prefs_row(db_engine).social is False

    def test_get_with_bad_token_redirects_with_error(self, client, alice, db_engine):
        resp = client.get(
            "/api/unsubscribe?dev=1&cat=social&token=nope", follow_redirects=False,
        )
        assert parse_qs(urlsplit(resp.headers["location"]).query) == {"error": ["invalid_token"]}
        assert _prefs_row(db_engine) is None

    def test_get_for_unknown_developer_redirects_invalid(self, client):
        token = generate_hmac_token(999, "social")
        resp = client.get(
            f"/api/unsubscribe?dev=999&cat=social&token={token}", follow_redirects=False,
        )
        assert parse_qs(urlsplit(resp.headers["location"]).query) == {"error": ["invalid"]}
