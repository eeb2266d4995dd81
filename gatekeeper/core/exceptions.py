# gatekeeper/core/exceptions.py
"""
Gatekeeper exceptions - standardized error taxonomy for the secure request pipeline.

Request-level errors know how to render themselves as a structured JSON
response, so every rejection returns a machine-parseable body. Errors raised
by business handlers are never wrapped here; they pass through unchanged.
"""

import math
from typing import Optional, Dict, Any, List, Sequence

from fastapi.responses import JSONResponse


class GatekeeperError(Exception):
    """Base exception for all gatekeeper errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize gatekeeper base exception.

        Args:
            message: Human-readable error message
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class RequestRejected(GatekeeperError):
    """A pipeline gate refused the request before the business handler ran"""

    status_code: int = 400
    error_code: str = "rejected"
    event_type: str = "request_rejected"

    def response_body(self) -> Dict[str, Any]:
        return {"error": self.error_code}

    def response_headers(self) -> Dict[str, str]:
        return {}

    def to_response(self) -> JSONResponse:
        """Render the rejection as the wire response for this error kind."""
        return JSONResponse(
            status_code=self.status_code,
            content=self.response_body(),
            headers=self.response_headers() or None,
        )


class RateLimitExceeded(RequestRejected):
    """Caller exhausted the quota of a rate-limit bucket"""

    status_code = 429
    error_code = "rate_limited"
    event_type = "rate_limit_exceeded"

    def __init__(
        self,
        message: str,
        bucket: str,
        retry_after_seconds: float,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize rate limit error.

        Args:
            message: Error description
            bucket: Name of the exhausted bucket
            retry_after_seconds: Time until the current window closes
            details: Additional context
        """
        super().__init__(message, details)
        self.bucket = bucket
        self.retry_after_seconds = max(0.0, retry_after_seconds)

        self.details['bucket'] = bucket
        self.details['retry_after_seconds'] = self.retry_after_seconds

    @property
    def retry_after_header(self) -> int:
        return max(1, math.ceil(self.retry_after_seconds))

    def response_body(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "retryAfterSeconds": math.ceil(self.retry_after_seconds),
        }

    def response_headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after_header)}


class CsrfRejected(RequestRejected):
    """CSRF token missing, mismatched, or session state unreadable"""

    status_code = 403
    error_code = "forbidden"
    event_type = "csrf_rejected"

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.reason = reason

        if reason:
            self.details['reason'] = reason


class AuthenticationRequired(RequestRejected):
    """Endpoint requires an authenticated caller and none is attached"""

    status_code = 401
    error_code = "unauthorized"
    event_type = "unauthorized_access_attempt"


class AdminRequired(RequestRejected):
    """Endpoint is restricted to administrators"""

    status_code = 403
    error_code = "admin_required"
    event_type = "admin_access_denied"


class MalformedPayload(RequestRejected):
    """Request payload could not be parsed into a field mapping"""

    status_code = 400
    error_code = "invalid_payload"
    event_type = "invalid_payload"


class SchemaValidationFailed(RequestRejected):
    """One or more declared fields failed their rules"""

    status_code = 400
    error_code = "validation_failed"
    event_type = "invalid_input"

    def __init__(
        self,
        message: str,
        fields: Sequence[Any],
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize schema validation error.

        Args:
            message: Error description
            fields: FieldError entries, in schema declaration order
            details: Additional validation context
        """
        super().__init__(message, details)
        self.fields = list(fields)
        self.details['field_count'] = len(self.fields)

    def field_list(self) -> List[Dict[str, str]]:
        return [{"field": f.field, "reason": f.reason} for f in self.fields]

    def response_body(self) -> Dict[str, Any]:
        return {"error": self.error_code, "fields": self.field_list()}


class ConfigurationError(GatekeeperError):
    """Errors in endpoint, schema or bucket configuration"""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize configuration error.

        Args:
            message: Error description
            component: Component with configuration issue
            details: Additional configuration context
        """
        super().__init__(message, details)
        self.component = component

        if component:
            self.details['component'] = component


# Convenience functions for creating common errors

def rate_limit_error(bucket: str, retry_after_seconds: float) -> RateLimitExceeded:
    """Create a rate limit error for a bucket."""
    return RateLimitExceeded(
        f"Rate limit exceeded for bucket '{bucket}'",
        bucket=bucket,
        retry_after_seconds=retry_after_seconds
    )


def csrf_error(reason: str) -> CsrfRejected:
    """Create a CSRF rejection with a reason code."""
    return CsrfRejected("CSRF verification failed", reason=reason)


def config_error(message: str, component: str) -> ConfigurationError:
    """Create a configuration error with component context."""
    return ConfigurationError(message, component=component)
