"""
Security tests for the Gatekeeper API
Tests the storefront endpoints end-to-end: rate limiting, CSRF, validation and security headers
"""

import logging
import pytest

from gatekeeper.core.config import Settings
from gatekeeper.core.exceptions import ConfigurationError
from gatekeeper.main import create_app
from gatekeeper.middleware.security_middleware import SECURITY_HEADERS

VALID_LOGIN = {"email": "user@example.com", "password": "correct horse"}

VALID_BOOKING = {
    "listingId": "listing-123",
    "startDate": "2026-11-01",
    "endDate": "2026-11-03",
    "deliveryMethod": "pickup",
}


@pytest.mark.integration
class TestLoginEndpoint:
    """POST /api/auth/login behind the auth bucket"""

    def test_valid_login(self, client, csrf_headers):
        response = client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers)

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "email": "user@example.com"}

    def test_short_password_reports_single_field(self, client, csrf_headers):
        response = client.post(
            "/api/auth/login",
            json={"email": "a@b.com", "password": "short"},
            headers=csrf_headers,
        )

        assert response.status_code == 400
        assert response.json() == {
            "error": "validation_failed",
            "fields": [{"field": "password", "reason": "min_length"}],
        }

    def test_brute_force_is_rate_limited(self, client, csrf_headers):
        """auth bucket allows 3 per minute in tests"""
        for _ in range(3):
            client.post("/api/auth/login", json={"email": "a@b.com", "password": "guess"}, headers=csrf_headers)

        response = client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers)

        assert response.status_code == 429
        assert response.json() == {"error": "rate_limited", "retryAfterSeconds": 60}
        assert response.headers["Retry-After"] == "60"

    def test_rate_limit_recovers_after_window(self, client, csrf_headers, clock):
        for _ in range(3):
            client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers)
        assert client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers).status_code == 429

        clock.advance(60)

        assert client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers).status_code == 200

    def test_missing_csrf_token(self, client):
        response = client.post("/api/auth/login", json=VALID_LOGIN)

        assert response.status_code == 403
        assert response.json() == {"error": "forbidden"}

    def test_forged_csrf_token(self, client, csrf_headers):
        headers = {**csrf_headers, "X-CSRF-Token": "forged-token"}
        response = client.post("/api/auth/login", json=VALID_LOGIN, headers=headers)

        assert response.status_code == 403

    def test_cross_origin_request_rejected(self, client, csrf_headers):
        headers = {**csrf_headers, "Origin": "https://evil.example"}
        response = client.post("/api/auth/login", json=VALID_LOGIN, headers=headers)

        assert response.status_code == 403

    def test_csrf_cookie_as_session_token(self, client, test_settings):
        headers = {
            "X-CSRF-Token": "cookie-bound-token",
            "Cookie": f"{test_settings.CSRF_COOKIE_NAME}=cookie-bound-token",
        }
        response = client.post("/api/auth/login", json=VALID_LOGIN, headers=headers)

        assert response.status_code == 200

    def test_register_returns_created(self, client, csrf_headers):
        response = client.post(
            "/api/auth/register",
            json={
                "email": "new@example.com",
                "password": "long enough pw",
                "displayName": "Trail Runner",
                "firstName": "Sam",
                "lastName": "Lee",
            },
            headers=csrf_headers,
        )

        assert response.status_code == 201
        assert response.json()["displayName"] == "Trail Runner"


@pytest.mark.integration
class TestAuthenticatedEndpoints:
    """Endpoints that require an authenticated caller"""

    def test_booking_requires_user(self, client, csrf_headers):
        response = client.post("/api/bookings", json=VALID_BOOKING, headers=csrf_headers)

        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized"}

    def test_booking_with_user(self, client, csrf_headers):
        headers = {**csrf_headers, "X-Test-User": "alice"}
        response = client.post("/api/bookings", json={**VALID_BOOKING, "status": "confirmed"}, headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["deliveryMethod"] == "pickup"

    def test_payment_amount_and_currency(self, client, csrf_headers):
        headers = {**csrf_headers, "X-Test-User": "alice"}
        response = client.post(
            "/api/payments/create-intent",
            json={"amount": 49, "currency": "eur", "bookingId": "b-1"},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["fields"] == [
            {"field": "amount", "reason": "min"},
            {"field": "currency", "reason": "not_allowed"},
        ]

    def test_payment_amount_string_coerced(self, client, csrf_headers):
        headers = {**csrf_headers, "X-Test-User": "alice"}
        response = client.post(
            "/api/payments/create-intent",
            json={"amount": "1500", "currency": "usd", "bookingId": "b-1"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["amount"] == 1500

    def test_message_type_restricted(self, client, csrf_headers):
        headers = {**csrf_headers, "X-Test-User": "alice"}
        response = client.post(
            "/api/conversations/c-9/messages",
            json={"content": "Is the tent still available?", "type": "script"},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["fields"] == [{"field": "type", "reason": "not_allowed"}]

    def test_message_sent(self, client, csrf_headers):
        headers = {**csrf_headers, "X-Test-User": "alice"}
        response = client.post(
            "/api/conversations/c-9/messages",
            json={"content": "Is the tent still available?"},
            headers=headers,
        )

        assert response.json() == {"status": "sent", "conversationId": "c-9", "type": "text"}

    def test_users_have_separate_quotas(self, client, csrf_headers):
        """api bucket allows 5 per minute in tests, counted per user"""
        alice = {**csrf_headers, "X-Test-User": "alice"}
        bob = {**csrf_headers, "X-Test-User": "bob"}

        statuses = [
            client.post("/api/bookings", json=VALID_BOOKING, headers=alice).status_code
            for _ in range(6)
        ]

        assert statuses == [200] * 5 + [429]
        assert client.post("/api/bookings", json=VALID_BOOKING, headers=bob).status_code == 200


@pytest.mark.integration
class TestExemptEndpoints:
    """Endpoints that explicitly opt out of CSRF"""

    def test_webhook_without_csrf(self, client):
        response = client.post("/api/webhooks/payments", content=b'{"type": "payment_intent.succeeded"}')

        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_search_coerces_query(self, client):
        response = client.get("/api/search/listings", params={"category": "camping", "minPrice": "10"})

        assert response.status_code == 200
        assert response.json()["filters"] == {"category": "camping", "minPrice": 10}

    def test_search_rejects_unknown_category(self, client):
        response = client.get("/api/search/listings", params={"category": "bowling"})

        assert response.status_code == 400
        assert response.json()["fields"] == [{"field": "category", "reason": "not_allowed"}]


@pytest.mark.integration
class TestResponseHeaders:
    """Headers added to every response"""

    def test_security_headers_on_success(self, client):
        response = client.get("/")

        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value
        assert "X-Process-Time" in response.headers

    def test_security_headers_on_rejection(self, client):
        response = client.post("/api/auth/login", json=VALID_LOGIN)

        assert response.status_code == 403
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_rate_limit_headers_on_admitted_requests(self, client, csrf_headers):
        first = client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers)
        second = client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers)

        assert first.headers["X-RateLimit-Limit"] == "3"
        assert first.headers["X-RateLimit-Remaining"] == "2"
        assert second.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Reset"] == "60"

    def test_no_rate_limit_headers_without_bucket(self, client):
        response = client.get("/health")
        assert "X-RateLimit-Limit" not in response.headers


@pytest.mark.integration
class TestSecurityHealth:
    """/health/security reports limiter and rejection statistics"""

    def test_rejections_are_counted(self, client, csrf_headers):
        client.post("/api/auth/login", json=VALID_LOGIN)
        client.post("/api/bookings", json=VALID_BOOKING, headers=csrf_headers)

        stats = client.get("/health/security").json()

        assert stats["security_events"]["events"] == {
            "csrf_rejected": 1,
            "unauthorized_access_attempt": 1,
        }
        assert stats["security_events"]["total_violations"] == 2
        assert stats["rate_limiter"]["admitted"] == 2
        assert stats["rate_limiter"]["denied"] == 0


@pytest.mark.integration
class TestAdminEndpoints:
    """Admin-only operations behind the admin bucket"""

    def test_admin_resets_blocked_caller(self, client, csrf_headers):
        for _ in range(3):
            client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers)
        assert client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers).status_code == 429

        admin = {**csrf_headers, "X-Test-User": "ops", "X-Test-Admin": "true"}
        response = client.post(
            "/api/admin/rate-limits/reset",
            json={"bucket": "auth", "identity": "ip:testclient"},
            headers=admin,
        )

        assert response.status_code == 200
        assert response.json() == {"status": "reset", "bucket": "auth", "identity": "ip:testclient"}
        assert client.post("/api/auth/login", json=VALID_LOGIN, headers=csrf_headers).status_code == 200

    def test_regular_user_cannot_reset(self, client, csrf_headers):
        response = client.post(
            "/api/admin/rate-limits/reset",
            json={"bucket": "auth", "identity": "ip:testclient"},
            headers={**csrf_headers, "X-Test-User": "alice"},
        )

        assert response.status_code == 403
        assert response.json() == {"error": "admin_required"}

    def test_identity_format_enforced(self, client, csrf_headers):
        admin = {**csrf_headers, "X-Test-User": "ops", "X-Test-Admin": "true"}
        response = client.post(
            "/api/admin/rate-limits/reset",
            json={"bucket": "auth", "identity": "testclient"},
            headers=admin,
        )

        assert response.json()["fields"] == [{"field": "identity", "reason": "pattern"}]

    def test_unknown_bucket(self, client, csrf_headers):
        admin = {**csrf_headers, "X-Test-User": "ops", "X-Test-Admin": "true"}
        response = client.post(
            "/api/admin/rate-limits/reset",
            json={"bucket": "nope", "identity": "user:alice"},
            headers=admin,
        )

        assert response.status_code == 404


@pytest.mark.integration
class TestHostileInput:
    """Inputs that must end in a 400, never a 500"""

    def test_oversized_numeric_query(self, client):
        response = client.get("/api/search/listings", params={"minPrice": "9" * 5000})

        assert response.status_code == 400
        assert response.json()["fields"] == [{"field": "minPrice", "reason": "type_mismatch"}]

    def test_oversized_numeric_json_string(self, client, csrf_headers):
        response = client.post(
            "/api/payments/create-intent",
            json={"amount": "9" * 5000, "currency": "usd", "bookingId": "b-1"},
            headers={**csrf_headers, "X-Test-User": "alice"},
        )

        assert response.status_code == 400
        assert response.json()["fields"] == [{"field": "amount", "reason": "type_mismatch"}]

    def test_booking_date_format(self, client, csrf_headers):
        response = client.post(
            "/api/bookings",
            json={**VALID_BOOKING, "startDate": "next tuesday"},
            headers={**csrf_headers, "X-Test-User": "alice"},
        )

        assert response.json()["fields"] == [{"field": "startDate", "reason": "pattern"}]


@pytest.mark.integration
class TestStartupConfiguration:
    """Bad settings are reported before the app refuses to start"""

    def test_bad_bucket_logged_then_raised(self, caplog):
        config = Settings(RATE_LIMIT_BUCKETS={"auth": "five per whenever", "api": "5/minute"})

        with caplog.at_level(logging.WARNING, logger="gatekeeper.core.config"):
            with pytest.raises(ConfigurationError):
                create_app(config)

        assert any("Configuration problem" in record.getMessage() for record in caplog.records)
