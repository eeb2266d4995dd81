"""
Rate limiting configuration for the Gatekeeper pipeline
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from fastapi import Request
from limits import parse as parse_rate
from slowapi.util import get_remote_address

from gatekeeper.core.exceptions import config_error


@dataclass(frozen=True)
class RateLimitBucket:
    """Named rate-limit policy: at most max_requests per window_seconds"""
    name: str
    window_seconds: float
    max_requests: int

    def __post_init__(self):
        if self.window_seconds <= 0:
            raise config_error(f"Bucket '{self.name}' needs a positive window", "rate_limit")
        if self.max_requests < 1:
            raise config_error(f"Bucket '{self.name}' needs max_requests >= 1", "rate_limit")

    @classmethod
    def from_rate_string(cls, name: str, rate: str) -> "RateLimitBucket":
        """
        Build a bucket from a rate string such as "5/15 minutes" or "20 per hour".
        """
        try:
            item = parse_rate(rate)
        except ValueError as e:
            raise config_error(f"Invalid rate '{rate}' for bucket '{name}'", "rate_limit") from e
        return cls(name=name, window_seconds=float(item.get_expiry()), max_requests=item.amount)


# Bucket policies for the storefront API
DEFAULT_BUCKETS: Dict[str, str] = {
    "auth": "5/15 minutes",       # Login, registration, password reset
    "api": "100/15 minutes",      # General mutating API calls
    "upload": "10/hour",          # Image and attachment uploads
    "payment": "20/hour",         # Payment intents and checkout
    "admin": "200/15 minutes",    # Admin dashboard operations
}


def load_bucket_policies(rates: Mapping[str, str]) -> Dict[str, RateLimitBucket]:
    """Parse the configured rate strings into immutable bucket policies."""
    return {
        name: RateLimitBucket.from_rate_string(name, rate)
        for name, rate in rates.items()
    }


def get_real_ip(request: Request, trust_proxy_headers: bool = True) -> str:
    """
    Get the real IP address, considering proxy headers.
    Important for deployments behind load balancers.
    """
    if trust_proxy_headers:
        # X-Forwarded-For can contain multiple IPs, take the first
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

    # Fallback to direct connection IP
    return get_remote_address(request)


def get_user_id(request: Request) -> Optional[str]:
    """
    Authenticated user id attached by the upstream auth layer, if any.

    Looks at ``request.state.user_id`` first, then ``request.state.user``
    (an object with ``id``/``uid`` or a mapping with those keys).
    """
    state = request.state
    user_id = getattr(state, "user_id", None)
    if user_id:
        return str(user_id)

    user = getattr(state, "user", None)
    if user is None:
        return None
    if isinstance(user, Mapping):
        user_id = user.get("id") or user.get("uid")
    else:
        user_id = getattr(user, "id", None) or getattr(user, "uid", None)
    return str(user_id) if user_id else None


def is_admin_user(request: Request) -> bool:
    """
    True only when the upstream auth layer marked the caller as an admin.

    Reads ``request.state.is_admin``, then an ``is_admin``/``admin`` flag on
    ``request.state.user``. Only a literal ``True`` counts.
    """
    state = request.state
    if getattr(state, "is_admin", None) is True:
        return True

    user = getattr(state, "user", None)
    if user is None:
        return False
    for flag in ("is_admin", "admin"):
        value = user.get(flag) if isinstance(user, Mapping) else getattr(user, flag, None)
        if value is True:
            return True
    return False


def resolve_identity(request: Request, trust_proxy_headers: bool = True) -> str:
    """
    Key used to scope rate-limit counters.

    Authenticated callers are keyed by user id so rotating network origin
    does not reset their quota; anonymous callers are keyed by client IP and
    can never touch an authenticated user's counter.
    """
    user_id = get_user_id(request)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_real_ip(request, trust_proxy_headers)}"
