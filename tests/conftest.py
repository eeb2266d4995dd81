# tests/conftest.py
"""
Shared fixtures for Gatekeeper tests.

Provides a controllable clock, raw Starlette requests for unit tests and a
fully wired test application for end-to-end pipeline tests.
"""

import pytest
from typing import Dict, Optional, Tuple

from fastapi import Request
from fastapi.testclient import TestClient

from gatekeeper.core.config import Settings
from gatekeeper.core.rate_limit_config import RateLimitBucket
from gatekeeper.main import create_app


TEST_BUCKETS = {
    "auth": "3/minute",
    "api": "5/minute",
    "payment": "2/hour",
    "upload": "10/hour",
    "admin": "200/15 minutes",
}

CSRF_TOKEN = "csrf-token-for-tests-0123456789"


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bucket():
    """60 second window, 3 requests"""
    return RateLimitBucket(name="auth", window_seconds=60, max_requests=3)


@pytest.fixture
def make_request():
    """Factory for raw Starlette requests"""

    def factory(
        method: str = "POST",
        path: str = "/test",
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
        query_string: bytes = b"",
        client: Tuple[str, int] = ("203.0.113.7", 50000),
    ) -> Request:
        raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in (headers or {}).items()
        ]
        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "scheme": "http",
            "path": path,
            "root_path": "",
            "query_string": query_string,
            "headers": raw_headers,
            "client": client,
            "server": ("testserver", 80),
        }

        async def receive():
            return {"type": "http.request", "body": body, "more_body": False}

        return Request(scope, receive)

    return factory


def attach_test_identity(app):
    """
    Stand-in for the upstream auth/session layer.

    X-Test-User becomes request.state.user_id, X-Test-Admin: true adds an admin
    user record and X-Test-Session-Token becomes the session-bound CSRF token.
    """

    @app.middleware("http")
    async def test_identity(request, call_next):
        user = request.headers.get("X-Test-User")
        if user:
            request.state.user_id = user
            if request.headers.get("X-Test-Admin") == "true":
                request.state.user = {"id": user, "is_admin": True}
        session_token = request.headers.get("X-Test-Session-Token")
        if session_token:
            request.state.session = {"csrf_token": session_token}
        return await call_next(request)

    return app


@pytest.fixture
def test_settings():
    return Settings(
        RATE_LIMIT_BUCKETS=dict(TEST_BUCKETS),
        RATE_LIMIT_SWEEP_INTERVAL=0,
        TRUST_PROXY_HEADERS=True,
    )


@pytest.fixture
def app(test_settings, clock):
    return attach_test_identity(create_app(test_settings, clock=clock))


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def csrf_headers():
    """Headers carrying a matching request and session token"""
    return {"X-CSRF-Token": CSRF_TOKEN, "X-Test-Session-Token": CSRF_TOKEN}


def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (full app through TestClient)"
    )
