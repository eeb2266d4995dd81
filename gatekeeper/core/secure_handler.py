# gatekeeper/core/secure_handler.py
"""
Secure handler orchestrator.

Wraps a business handler in a fixed sequence of gates:

    rate limit -> CSRF -> authentication -> body parse -> schema validation -> handler

Each gate either passes or returns a rejection. The first rejection ends the
request with its structured error response; later gates do not run and the
business handler is never invoked, so a rejected request cannot cause any
application side effect.
"""

import functools
import inspect
import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from fastapi import Request
from starlette.concurrency import run_in_threadpool

from gatekeeper.core.exceptions import (
    AdminRequired,
    AuthenticationRequired,
    MalformedPayload,
    RequestRejected,
    SchemaValidationFailed,
    config_error,
    rate_limit_error,
)
from gatekeeper.core.rate_limit_config import RateLimitBucket, get_real_ip, get_user_id, is_admin_user, resolve_identity
from gatekeeper.core.rate_limiter import Admitted, RateLimiter
from gatekeeper.core.security.csrf import CsrfGuard
from gatekeeper.middleware.security_middleware import SecurityEventMonitor
from gatekeeper.models.schema_models import parse_schema
from gatekeeper.services.validation_service import validate

logger = logging.getLogger(__name__)

# Methods whose input comes from the query string instead of a body
QUERY_METHODS = frozenset({"GET", "HEAD", "DELETE"})


@dataclass(frozen=True)
class SecureHandlerConfig:
    """
    Per-endpoint pipeline configuration.

    ``require_csrf`` defaults to True; machine-to-machine endpoints must opt
    out explicitly. ``schema=None`` means the endpoint takes no validated
    input and the body is left untouched for the handler. ``require_admin``
    implies ``require_auth``.
    """
    rate_limit_bucket: Optional[str] = None
    require_csrf: bool = True
    schema: Optional[Mapping[str, Any]] = None
    require_auth: bool = False
    require_admin: bool = False

    def __post_init__(self):
        if self.schema is not None:
            object.__setattr__(self, "schema", MappingProxyType(parse_schema(self.schema)))


@dataclass
class HandlerContext:
    """What the business handler receives next to the request"""
    body: Dict[str, Any] = field(default_factory=dict)
    identity: Optional[str] = None
    user_id: Optional[str] = None
    is_admin: bool = False
    rate_limit: Optional[Admitted] = None


BusinessHandler = Callable[[Request, HandlerContext], Any]
Stage = Callable[[Request, SecureHandlerConfig, HandlerContext], Awaitable[Optional[RequestRejected]]]


def _is_async_callable(obj: Any) -> bool:
    while isinstance(obj, functools.partial):
        obj = obj.func
    return inspect.iscoroutinefunction(obj) or (
        callable(obj) and inspect.iscoroutinefunction(getattr(obj, "__call__", None))
    )


class SecureHandler:
    """
    Composes rate limiter, CSRF guard and schema validator around handlers.

    One instance is built at startup with the process-wide limiter and bucket
    policies; endpoint modules only call ``wrap`` or ``endpoint``.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        buckets: Mapping[str, RateLimitBucket],
        csrf_guard: CsrfGuard,
        monitor: Optional[SecurityEventMonitor] = None,
        trust_proxy_headers: bool = True
    ):
        self.rate_limiter = rate_limiter
        self.buckets = MappingProxyType(dict(buckets))
        self.csrf_guard = csrf_guard
        self.monitor = monitor or SecurityEventMonitor()
        self.trust_proxy_headers = trust_proxy_headers

        self._stages: List[Stage] = [
            self._check_rate_limit,
            self._check_csrf,
            self._check_auth,
            self._parse_body,
            self._validate_body,
        ]

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def wrap(self, config: SecureHandlerConfig, handler: BusinessHandler) -> Callable[[Request], Awaitable[Any]]:
        """
        Wrap a business handler with the pipeline.

        Raises:
            ConfigurationError: If the config names an unknown bucket
        """
        if config.rate_limit_bucket is not None and config.rate_limit_bucket not in self.buckets:
            raise config_error(
                f"Unknown rate limit bucket '{config.rate_limit_bucket}'",
                "secure_handler"
            )
        if not config.require_csrf:
            logger.info(f"⚠️ CSRF check disabled for {getattr(handler, '__name__', handler)}")

        async def endpoint(request: Request):
            return await self.handle(request, config, handler)

        # No functools.wraps: FastAPI would read the handler's signature
        endpoint.__name__ = getattr(handler, "__name__", "secure_endpoint")
        endpoint.__doc__ = handler.__doc__
        return endpoint

    def endpoint(self, config: SecureHandlerConfig) -> Callable[[BusinessHandler], Callable[[Request], Awaitable[Any]]]:
        """Decorator form of ``wrap``."""
        def decorator(handler: BusinessHandler):
            return self.wrap(config, handler)
        return decorator

    # ------------------------------------------------------------------
    # Request processing
    # ------------------------------------------------------------------

    async def handle(self, request: Request, config: SecureHandlerConfig, handler: BusinessHandler) -> Any:
        context = HandlerContext()

        for stage in self._stages:
            rejection = await stage(request, config, context)
            if rejection is not None:
                return self._reject(request, context, rejection)

        if _is_async_callable(handler):
            return await handler(request, context)
        return await run_in_threadpool(handler, request, context)

    def _reject(self, request: Request, context: HandlerContext, rejection: RequestRejected):
        identity = context.identity or f"ip:{get_real_ip(request, self.trust_proxy_headers)}"
        self.monitor.record(
            rejection.event_type,
            identity,
            request.url.path,
            method=request.method,
            **rejection.details
        )
        return rejection.to_response()

    def _resolve_identity(self, request: Request) -> str:
        try:
            return resolve_identity(request, self.trust_proxy_headers)
        except Exception as e:
            # Broken auth state: treat the caller as anonymous
            logger.warning(f"Identity resolution failed, using client address: {type(e).__name__}")
            return f"ip:{get_real_ip(request, self.trust_proxy_headers)}"

    async def _check_rate_limit(self, request, config, context) -> Optional[RequestRejected]:
        context.identity = self._resolve_identity(request)
        if config.rate_limit_bucket is None:
            return None

        bucket = self.buckets[config.rate_limit_bucket]
        decision = self.rate_limiter.admit(bucket, context.identity)
        if not decision.allowed:
            return rate_limit_error(bucket.name, decision.retry_after_seconds)

        context.rate_limit = decision
        request.state.rate_limit = decision
        return None

    async def _check_csrf(self, request, config, context) -> Optional[RequestRejected]:
        if not config.require_csrf:
            return None
        try:
            self.csrf_guard.check(request)
        except RequestRejected as rejection:
            return rejection
        return None

    async def _check_auth(self, request, config, context) -> Optional[RequestRejected]:
        try:
            context.user_id = get_user_id(request)
        except Exception as e:
            logger.warning(f"Unreadable auth state: {type(e).__name__}")
            context.user_id = None

        if (config.require_auth or config.require_admin) and not context.user_id:
            return AuthenticationRequired("Authentication required")

        if config.require_admin:
            try:
                context.is_admin = is_admin_user(request)
            except Exception as e:
                logger.warning(f"Unreadable admin claim: {type(e).__name__}")
                context.is_admin = False
            if not context.is_admin:
                return AdminRequired(
                    "Admin privileges required",
                    details={"user_id": context.user_id}
                )
        return None

    async def _parse_body(self, request, config, context) -> Optional[RequestRejected]:
        if config.schema is None:
            return None

        if request.method in QUERY_METHODS:
            context.body = dict(request.query_params)
            return None

        raw = await request.body()
        if not raw.strip():
            context.body = {}
            return None

        try:
            payload = json.loads(raw)
        except ValueError:
            return MalformedPayload("Request body is not valid JSON")

        if not isinstance(payload, dict):
            return MalformedPayload(
                "Request body must be a JSON object",
                details={"payload_type": type(payload).__name__}
            )

        context.body = payload
        return None

    async def _validate_body(self, request, config, context) -> Optional[RequestRejected]:
        if config.schema is None:
            return None

        result = validate(config.schema, context.body)
        if not result.valid:
            return SchemaValidationFailed("Request validation failed", fields=result.errors)

        context.body = result.body
        return None
