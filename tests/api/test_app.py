"""Tests for the FastAPI application: public routes, error envelope and admin API."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
from starlette.testclient import TestClient

from jengahacks.api import create_app
from jengahacks.captcha import CaptchaVerifier
from jengahacks.config.core import Settings
from jengahacks.store.memory import MemoryAbuseStore, MemoryRegistrationStore

ADMIN_KEY = "s3cret-admin"


def _captcha(body=None, status=200, secret="captcha-secret"):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status, json=body if body is not None else {"success": True, "score": 0.9})

    verifier = CaptchaVerifier(secret, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return verifier, seen


def _client(clock, verifier=None, **settings):
    settings.setdefault("api", {"admin_key": ADMIN_KEY})
    app = create_app(
        Settings(**settings),
        abuse_store=MemoryAbuseStore(),
        registration_store=MemoryRegistrationStore(),
        captcha_verifier=verifier or _captcha()[0],
        clock=clock,
    )
    return TestClient(app)


def _form(email="amina@example.com", **extra):
    body = {"full_name": "Amina Otieno", "email": email}
    body.update(extra)
    return body


@pytest.fixture
def client(clock):
    return _client(clock)


class TestRegister:
    def test_admitted(self, client):
        """A clean registration is admitted with an access token."""
        resp = client.post("/register", json=_form(email="  Amina@Example.COM "))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert resp.json()["success"] is True
        assert data["email"] == "amina@example.com"
        assert data["is_waitlist"] is False
        assert data["access_token"]

    def test_response_headers(self, client):
        """Security headers and a server-side request id are set."""
        resp = client.post("/register", json=_form(), headers={"X-Request-ID": "client-chosen"})
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["x-frame-options"] == "DENY"
        assert resp.headers["x-request-id"] != "client-chosen"
        assert len(resp.headers["x-request-id"]) == 32

    def test_missing_field_is_validation_error(self, client):
        resp = client.post("/register", json={"full_name": "Amina Otieno"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"
        assert resp.json()["field"] == "email"

    def test_invalid_email(self, client):
        resp = client.post("/register", json=_form(email="not-an-email"))
        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert resp.json()["field"] == "email"

    def test_duplicate_then_rate_limited(self, client):
        """Second attempt is a duplicate; the third trips the email limit."""
        assert client.post("/register", json=_form()).status_code == 200

        second = client.post("/register", json=_form())
        assert second.status_code == 409
        assert second.json()["code"] == "DUPLICATE_EMAIL"

        third = client.post("/register", json=_form())
        assert third.status_code == 429
        assert third.json()["code"] == "RATE_LIMIT_EXCEEDED"
        assert third.json()["retry_after"] == 3600
        assert third.headers["retry-after"] == "3600"

    def test_forwarded_ip_is_rate_limited(self, client):
        headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
        for i in range(5):
            resp = client.post("/register", json=_form(email=f"u{i}@example.com"), headers=headers)
            assert resp.status_code == 200
        resp = client.post("/register", json=_form(email="u9@example.com"), headers=headers)
        assert resp.status_code == 429
        # A different client address is unaffected
        other = client.post("/register", json=_form(email="u9@example.com"), headers={"X-Forwarded-For": "198.51.100.1"})
        assert other.status_code == 200

    def test_blocked_ip(self, client):
        resp = client.post(
            "/admin/blocks",
            json={"identifier": "203.0.113.9", "dimension": "ip", "reason": "spam"},
            headers={"X-Admin-Key": ADMIN_KEY},
        )
        assert resp.json()["created"] is True

        resp = client.post("/register", json=_form(), headers={"X-Forwarded-For": "203.0.113.9"})
        assert resp.status_code == 403
        assert resp.json()["code"] == "BLOCKED"

    def test_waitlist_when_full(self, clock):
        client = _client(clock, registration={"capacity": 1})
        client.post("/register", json=_form(email="a@example.com"))
        resp = client.post("/register", json=_form(email="b@example.com"))
        data = resp.json()["data"]
        assert data["is_waitlist"] is True
        assert data["waitlist_position"] == 1

    def test_unhandled_error_is_generic_500(self, client):
        client.app.state.services.admission.admit = AsyncMock(side_effect=RuntimeError("boom"))
        safe = TestClient(client.app, raise_server_exceptions=False)
        resp = safe.post("/register", json=_form())
        assert resp.status_code == 500
        assert resp.json() == {
            "success": False,
            "error": "An error occurred. Please try again later.",
            "code": "INTERNAL_ERROR",
        }


class TestCaptcha:
    def test_required_captcha_passes(self, clock):
        verifier, seen = _captcha({"success": True, "score": 0.7})
        client = _client(clock, verifier=verifier, captcha={"required": True})
        resp = client.post(
            "/register",
            json=_form(captcha_token="tok"),
            headers={"X-Forwarded-For": "203.0.113.9"},
        )
        assert resp.status_code == 200
        assert b"remoteip=203.0.113.9" in seen[0].content

    def test_required_captcha_missing_token(self, clock):
        client = _client(clock, verifier=_captcha()[0], captcha={"required": True})
        resp = client.post("/register", json=_form())
        assert resp.status_code == 400
        assert resp.json()["field"] == "captcha_token"

    def test_low_score_rejected(self, clock):
        verifier, _ = _captcha({"success": True, "score": 0.1})
        client = _client(clock, verifier=verifier, captcha={"required": True})
        resp = client.post("/register", json=_form(captcha_token="tok"))
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    def test_verify_endpoint(self, clock):
        verifier, _ = _captcha({"success": True, "score": 0.9, "hostname": "jengahacks.africa"})
        client = _client(clock, verifier=verifier)
        resp = client.post("/verify-captcha", json={"token": "tok"})
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.json()["hostname"] == "jengahacks.africa"

    def test_upstream_failure_is_internal_error(self, clock):
        verifier, _ = _captcha({"error": "down"}, status=503)
        resp = _client(clock, verifier=verifier).post("/verify-captcha", json={"token": "tok"})
        assert resp.status_code == 500
        assert resp.json()["code"] == "INTERNAL_ERROR"

    def test_missing_secret_is_internal_error(self, clock):
        verifier, seen = _captcha(secret=None)
        resp = _client(clock, verifier=verifier).post("/verify-captcha", json={"token": "tok"})
        assert resp.status_code == 500
        assert seen == []


class TestSelfService:
    def _token(self, client):
        return client.post("/register", json=_form()).json()["data"]["access_token"]

    def test_get_update_cancel(self, client):
        token = self._token(client)

        resp = client.get(f"/registrations/{token}")
        assert resp.status_code == 200
        assert resp.json()["data"]["full_name"] == "Amina Otieno"
        assert "ip_address" not in resp.json()["data"]

        resp = client.patch(f"/registrations/{token}", json={"linkedin_url": "linkedin.com/in/amina"})
        assert resp.status_code == 200
        assert resp.json()["data"]["linkedin_url"] == "https://linkedin.com/in/amina"

        assert client.delete(f"/registrations/{token}").json() == {"success": True}
        resp = client.get(f"/registrations/{token}")
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"

    def test_patch_rejects_unknown_fields(self, client):
        token = self._token(client)
        resp = client.patch(f"/registrations/{token}", json={"email": "other@example.com"})
        assert resp.status_code == 400
        assert resp.json()["field"] == "email"

    def test_unknown_token(self, client):
        assert client.get("/registrations/nope").status_code == 404


class TestAdminAuth:
    def test_disabled_without_key(self, clock):
        client = _client(clock, api={"admin_key": None})
        resp = client.get("/admin/blocks", headers={"X-Admin-Key": "anything"})
        assert resp.status_code == 403

    def test_wrong_key(self, client):
        assert client.get("/admin/blocks").status_code == 401
        assert client.get("/admin/blocks", headers={"X-Admin-Key": "wrong"}).status_code == 401

    def test_correct_key(self, client):
        resp = client.get("/admin/blocks", headers={"X-Admin-Key": ADMIN_KEY})
        assert resp.status_code == 200
        assert resp.json() == {"blocks": [], "count": 0}


class TestAdminRoutes:
    headers = {"X-Admin-Key": ADMIN_KEY}

    def test_block_lookup_and_unblock(self, client):
        client.post(
            "/admin/blocks",
            json={"identifier": "Spam@Example.com", "dimension": "email", "reason": "spam", "ttl_seconds": 60},
            headers=self.headers,
        )
        resp = client.get("/admin/blocks/email/spam@example.com", headers=self.headers)
        assert resp.json()["blocked"] is True
        assert resp.json()["block"]["expires_at"] is not None

        assert client.delete("/admin/blocks/email/SPAM@example.com", headers=self.headers).json() == {
            "unblocked": True
        }
        assert client.get("/admin/blocks/email/spam@example.com", headers=self.headers).json()["blocked"] is False

    def test_malformed_identifier(self, client):
        resp = client.get("/admin/blocks/email/not-an-email", headers=self.headers)
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

    def test_unparsable_ip_is_never_blocked(self, client):
        resp = client.post(
            "/admin/blocks",
            json={"identifier": "not-an-ip", "dimension": "ip", "reason": "spam"},
            headers=self.headers,
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"

        for path in ("/admin/blocks/ip/garbage", "/admin/rate-limit/ip/garbage"):
            assert client.get(path, headers=self.headers).status_code == 400
        assert client.delete("/admin/blocks/ip/garbage", headers=self.headers).status_code == 400

    def test_rate_limit_info(self, client):
        client.post("/register", json=_form())
        resp = client.get("/admin/rate-limit/email/amina@example.com", headers=self.headers)
        assert resp.status_code == 200
        assert resp.json()["attempts"] == 1
        assert resp.json()["limit"] == 2

    def test_export_and_stats(self, client):
        for _ in range(3):
            client.post("/register", json=_form())

        resp = client.get("/admin/violations/export", headers=self.headers)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.headers["content-disposition"].startswith("attachment; filename=violations_")
        lines = resp.text.strip().splitlines()
        assert len(lines) == 2
        assert "amina@example.com" in lines[1]

        resp = client.get("/admin/violations/export?format=json&dimension=email", headers=self.headers)
        assert resp.json()[0]["attempt_count"] == 3

        stats = client.get("/admin/violations/stats", headers=self.headers).json()["stats"]
        assert stats[0]["violation_type"] == "email"

    def test_escalate_and_alerts(self, client):
        for _ in range(3):
            client.post("/register", json=_form())

        resp = client.post("/admin/escalate", json={"threshold": 1}, headers=self.headers)
        assert resp.json()["count"] == 1
        assert resp.json()["blocked"][0]["blocked_by"] == "auto-escalation"

        alerts = client.get("/admin/alerts", headers=self.headers).json()
        assert alerts["count"] == 1
        alert_id = alerts["alerts"][0]["id"]

        resp = client.post(f"/admin/alerts/{alert_id}/resolve", json={"resolved_by": "ops"}, headers=self.headers)
        assert resp.json() == {"resolved": True}
        resp = client.post(f"/admin/alerts/{alert_id}/resolve", headers=self.headers)
        assert resp.status_code == 404

    def test_pattern_detection_empty(self, client):
        resp = client.post("/admin/patterns/detect", headers=self.headers)
        assert resp.json() == {"patterns": [], "count": 0}

    def test_health_is_public(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
