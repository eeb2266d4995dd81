"""
Security middleware for the Gatekeeper API
Handles security headers and monitoring of rejected requests
"""

from fastapi import Request, Response
import threading
import time
import logging
from typing import Any, Callable, Dict, Optional
from collections import Counter
from datetime import datetime, timezone

from gatekeeper.core.logging_config import SECURITY_LOGGER_NAME

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Content-Security-Policy": "; ".join([
        "default-src 'self'",
        "script-src 'self' https://js.stripe.com",
        "img-src 'self' data: https: blob:",
        "connect-src 'self' https://api.stripe.com",
        "frame-src https://js.stripe.com",
        "object-src 'none'",
        "base-uri 'self'",
    ]),
}


class SecurityHeadersMiddleware:
    """Adds security headers to every response, rejections included"""

    def __init__(self, headers: Optional[Dict[str, str]] = None, slow_request_seconds: float = 1.0):
        self.headers = dict(SECURITY_HEADERS if headers is None else headers)
        self.slow_request_seconds = slow_request_seconds

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        for name, value in self.headers.items():
            response.headers[name] = value
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        # Remove server header if present
        if "server" in response.headers:
            del response.headers["server"]

        # Log slow requests
        if process_time > self.slow_request_seconds:
            logger.warning(f"⏱️ Slow request: {request.url.path} took {process_time:.2f}s")

        return response


class SecurityEventMonitor:
    """Monitor and log requests rejected by the secure handler gates"""

    def __init__(self, violation_threshold: int = 10, max_tracked_identities: int = 10_000):
        """
        Args:
            violation_threshold: Rejections after which an identity is flagged
            max_tracked_identities: Size cap for the per-identity counts. When
                exceeded, the map is cut down to the most-rejected half.
        """
        self._lock = threading.Lock()
        self.events = Counter()       # event type -> count
        self.violations = Counter()   # identity -> rejection count
        self.violation_threshold = violation_threshold
        self.max_tracked_identities = max(1, max_tracked_identities)
        self.total_violations = 0
        self.pruned_identities = 0
        self.last_event: Optional[Dict[str, Any]] = None

    def record(self, event_type: str, identity: str, path: str, **details: Any) -> bool:
        """
        Record a security event.

        Returns:
            True once the identity reaches the violation threshold
        """
        event = {
            "type": event_type,
            "identity": identity,
            "path": path,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **details,
        }
        with self._lock:
            self.events[event_type] += 1
            self.violations[identity] += 1
            count = self.violations[identity]
            self.total_violations += 1
            self.last_event = event
            if len(self.violations) > self.max_tracked_identities:
                self._prune()

        security_logger.warning(f"🚦 Security event {event_type} #{count} from {identity} on {path}")

        if count >= self.violation_threshold:
            security_logger.error(f"🚫 {identity} exceeded violation threshold - consider blocking")
            return True
        return False

    def _prune(self) -> None:
        # Caller holds _lock. Ties keep the earlier-seen identity.
        keep = max(1, self.max_tracked_identities // 2)
        dropped = len(self.violations) - keep
        self.violations = Counter(dict(self.violations.most_common(keep)))
        self.pruned_identities += dropped
        logger.info(f"🧹 Dropped {dropped} low-count identities from security monitor")

    def get_stats(self) -> dict:
        """Get statistics about security events"""
        with self._lock:
            return {
                "events": dict(self.events),
                "total_violators": len(self.violations),
                "total_violations": self.total_violations,
                "pruned_identities": self.pruned_identities,
                "top_violators": self.violations.most_common(10),
            }
