"""
CSRF guard for the secure request pipeline.

The guard never issues tokens. A session collaborator upstream binds a token
to the caller's session; the guard reads it back and compares it with the
token the request carries, in constant time.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlsplit

from fastapi import Request

from gatekeeper.core.exceptions import CsrfRejected, csrf_error

logger = logging.getLogger(__name__)

SESSION_TOKEN_KEY = "csrf_token"

SessionTokenSource = Callable[[Request], Optional[str]]


def verify(request_token: Optional[str], session_token: Optional[str]) -> bool:
    """
    Compare a request-supplied token with the session-bound token.

    Both must be non-empty strings. The comparison runs over the UTF-8 bytes
    with ``secrets.compare_digest`` so its timing does not depend on how many
    leading characters match.
    """
    if not isinstance(request_token, str) or not isinstance(session_token, str):
        return False
    if not request_token or not session_token:
        return False
    return secrets.compare_digest(request_token.encode("utf-8"), session_token.encode("utf-8"))


def _token_from_session(session: Any) -> Optional[str]:
    if isinstance(session, Mapping):
        return session.get(SESSION_TOKEN_KEY)
    return getattr(session, SESSION_TOKEN_KEY)


def cookie_session_token_source(cookie_name: str) -> SessionTokenSource:
    """
    Session token reader used by default.

    Prefers a session object attached upstream at ``request.state.session``
    (mapping key or attribute ``csrf_token``) and falls back to the
    ``cookie_name`` cookie for double-submit deployments.
    """
    def source(request: Request) -> Optional[str]:
        session = getattr(request.state, "session", None)
        if session is not None:
            return _token_from_session(session)
        return request.cookies.get(cookie_name)

    return source


def _origin_matches_host(origin: str, host: Optional[str]) -> bool:
    if not host:
        return False
    origin_host = urlsplit(origin).netloc
    return origin_host.lower() == host.strip().lower()


@dataclass(frozen=True)
class CsrfGuard:
    """
    Verifies the CSRF token of a request against its session.

    Raises ``CsrfRejected`` on any failure, including a session collaborator
    that blows up while being read.
    """
    session_token_source: SessionTokenSource
    header_name: str = "X-CSRF-Token"
    check_origin: bool = True

    def check(self, request: Request) -> None:
        if self.check_origin:
            origin = request.headers.get("Origin")
            if origin and not _origin_matches_host(origin, request.headers.get("Host")):
                logger.warning(f"🛡️ Cross-origin request blocked: origin={origin}")
                raise csrf_error("origin_mismatch")

        request_token = request.headers.get(self.header_name)
        if not request_token:
            raise csrf_error("missing_request_token")

        try:
            session_token = self.session_token_source(request)
        except Exception as e:
            logger.warning(f"🔒 Session state unreadable during CSRF check: {type(e).__name__}")
            raise CsrfRejected(
                "CSRF verification failed",
                reason="session_unreadable",
                details={"error_type": type(e).__name__},
            ) from e

        if not session_token:
            raise csrf_error("missing_session_token")

        if not verify(request_token, session_token):
            raise csrf_error("token_mismatch")
