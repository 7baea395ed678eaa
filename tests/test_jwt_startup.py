"""
tests/test_jwt_startup — JWT Secret Validation at Startup
===========================================================
The API must refuse to start when SUPABASE_JWT_SECRET is missing, blank,
too short, or a known weak default.
"""

from __future__ import annotations

import importlib
import os
from unittest.mock import patch

import jwt
import pytest
from fastapi import HTTPException


class TestJWTSecretValidation:
    """Prove that _load_jwt_secret() rejects bad secrets and accepts good ones."""

    def _call_load(self) -> str:
        """Re-import the validator so it runs fresh against patched env."""
        import gitcity.api.deps as deps_mod
        importlib.reload(deps_mod)
        return deps_mod.JWT_SECRET

    def test_rejects_missing_secret(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("SUPABASE_JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="SUPABASE_JWT_SECRET environment variable is not set"):
                self._call_load()

    def test_rejects_empty_secret(self):
        with patch.dict(os.environ, {"SUPABASE_JWT_SECRET": ""}):
            with pytest.raises(RuntimeError, match="not set"):
                self._call_load()

    def test_rejects_supabase_sample_secret(self):
        sample = "super-secret-jwt-token-with-at-least-32-characters-long"
        with patch.dict(os.environ, {"SUPABASE_JWT_SECRET": sample}):
            with pytest.raises(RuntimeError, match="known weak default"):
                self._call_load()

    def test_rejects_short_secret(self):
        with patch.dict(os.environ, {"SUPABASE_JWT_SECRET": "tooshort"}):
            with pytest.raises(RuntimeError, match="too short"):
                self._call_load()

    def test_accepts_strong_secret(self):
        good_secret = "a" * 64
        with patch.dict(os.environ, {"SUPABASE_JWT_SECRET": good_secret}):
            assert self._call_load() == good_secret

    @pytest.fixture(autouse=True)
    def _restore_jwt_secret(self):
        """Ensure the secret is restored after each test so other tests work."""
        original = os.environ.get("SUPABASE_JWT_SECRET")
        yield
        if original is not None:
            os.environ["SUPABASE_JWT_SECRET"] = original
        else:
            os.environ.pop("SUPABASE_JWT_SECRET", None)
        import gitcity.api.deps as deps_mod
        try:
            importlib.reload(deps_mod)
        except RuntimeError:
            pass  # test env may not have a valid secret set yet


class TestCurrentUser:
    """Token decoding in get_current_user."""

    def _deps(self):
        import gitcity.api.deps as deps_mod
        return deps_mod

    def _token(self, **claims) -> str:
        deps = self._deps()
        payload = {"sub": "user-1", "aud": deps.JWT_AUDIENCE, **claims}
        return jwt.encode(payload, deps.JWT_SECRET, algorithm=deps.JWT_ALGORITHM)

    def test_login_comes_from_user_name_lowercased(self):
        token = self._token(user_metadata={"user_name": "OctoCat"}, email="o@example.com")
        user = self._deps().get_current_user(f"Bearer {token}")
        assert user.id == "user-1"
        assert user.login == "octocat"
        assert user.email == "o@example.com"

    def test_preferred_username_is_a_fallback(self):
        token = self._token(user_metadata={"preferred_username": "Hubot"})
        assert self._deps().get_current_user(f"Bearer {token}").login == "hubot"

    def test_missing_header_is_unauthorized(self):
        with pytest.raises(HTTPException) as exc_info:
            self._deps().get_current_user(None)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Unauthorized"

    def test_wrong_audience_is_invalid(self):
        deps = self._deps()
        token = jwt.encode({"sub": "user-1", "aud": "anon"}, deps.JWT_SECRET, algorithm="HS256")
        with pytest.raises(HTTPException) as exc_info:
            deps.get_current_user(f"Bearer {token}")
        assert exc_info.value.detail == "Invalid token"

    def test_wrong_signature_is_invalid(self):
        deps = self._deps()
        token = jwt.encode({"sub": "user-1", "aud": deps.JWT_AUDIENCE}, "z" * 40, algorithm="HS256")
        with pytest.raises(HTTPException) as exc_info:
            deps.get_current_user(f"Bearer {token}")
        assert exc_info.value.status_code == 401


class TestCronSecret:
    """verify_cron_secret compares the bearer header in constant time."""

    def _verify(self):
        import gitcity.api.deps as deps_mod
        return deps_mod.verify_cron_secret

    def test_matching_header_passes(self):
        assert self._verify()(f"Bearer {os.environ['CRON_SECRET']}") is None

    @pytest.mark.parametrize("header", [
        None,
        "",
        "Bearer wrong",
        os.environ.get("CRON_SECRET", ""),
        "Bearer ñ",
    ])
    def test_other_headers_are_unauthorized(self, header):
        with pytest.raises(HTTPException) as exc_info:
            self._verify()(header)
        assert exc_info.value.status_code == 401

    def test_unset_secret_rejects_everything(self, monkeypatch):
        monkeypatch.delenv("CRON_SECRET")
        with pytest.raises(HTTPException):
            self._verify()("Bearer ")


class TestProtectedRoutes:
    def test_kudos_requires_token(self, client):
        resp = client.post("/api/interactions/kudos", json={"receiver_login": "bob"})
        assert resp.status_code == 401

    def test_cron_requires_secret(self, client):
        assert client.get("/api/cron/flush-batches").status_code == 401
        resp = client.get(
            "/api/cron/flush-batches", headers={"Authorization": "Bearer wrong"},
        )
        assert resp.status_code == 401

    def test_manage_requires_admin(self, client):
        from conftest import auth

        resp = client.get("/api/sky-ads/manage", headers=auth("user-5", "someone"))
        assert resp.status_code == 403
        assert resp.json() == {"detail": "Forbidden"}

    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
