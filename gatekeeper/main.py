# gatekeeper/main.py
"""
Gatekeeper FastAPI Application

Every mutating storefront endpoint is registered through the SecureHandler,
which runs rate limiting, CSRF verification and schema validation before the
business handler. The handlers below are thin stand-ins for the storefront's
listing, booking, payment and messaging logic.
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import uuid

from gatekeeper.core.config import Settings, settings as default_settings, validate_required_settings
from gatekeeper.core.logging_config import setup_logging
from gatekeeper.core.rate_limit_config import load_bucket_policies
from gatekeeper.core.rate_limiter import Clock, RateLimiter
from gatekeeper.core.secure_handler import HandlerContext, SecureHandler, SecureHandlerConfig
from gatekeeper.core.security import CsrfGuard, cookie_session_token_source
from gatekeeper.middleware.security_middleware import SecurityEventMonitor, SecurityHeadersMiddleware

# Setup logging
logger = setup_logging()


# =============================================================================
# ENDPOINT CONFIGURATION
# =============================================================================

ISO_DATE = r"^\d{4}-\d{2}-\d{2}$"

LOGIN = SecureHandlerConfig(
    rate_limit_bucket="auth",
    schema={
        "email": {"required": True, "type": "email"},
        "password": {"required": True, "type": "string", "minLength": 8},
    },
)

REGISTER = SecureHandlerConfig(
    rate_limit_bucket="auth",
    schema={
        "email": {"required": True, "type": "email", "maxLength": 254},
        "password": {"required": True, "type": "string", "minLength": 8, "maxLength": 128},
        "displayName": {"required": True, "type": "string", "minLength": 2, "maxLength": 50, "sanitize": True},
        "firstName": {"required": True, "type": "string", "minLength": 1, "maxLength": 30},
        "lastName": {"required": True, "type": "string", "minLength": 1, "maxLength": 30},
    },
)

CREATE_BOOKING = SecureHandlerConfig(
    rate_limit_bucket="api",
    require_auth=True,
    schema={
        "listingId": {"required": True, "type": "string", "minLength": 1, "pattern": r"^[A-Za-z0-9_-]+$"},
        "startDate": {"required": True, "type": "string", "pattern": ISO_DATE},
        "endDate": {"required": True, "type": "string", "pattern": ISO_DATE},
        "deliveryMethod": {"required": True, "type": "string", "allowedValues": ["pickup", "delivery"]},
        "totalPrice": {"required": False, "type": "number", "min": 0.01},
    },
)

CREATE_PAYMENT_INTENT = SecureHandlerConfig(
    rate_limit_bucket="payment",
    require_auth=True,
    schema={
        "amount": {"required": True, "type": "number", "min": 50},  # cents
        "currency": {"required": True, "type": "string", "allowedValues": ["usd"]},
        "bookingId": {"required": True, "type": "string", "minLength": 1},
    },
)

SEND_MESSAGE = SecureHandlerConfig(
    rate_limit_bucket="api",
    require_auth=True,
    schema={
        "content": {"required": True, "type": "string", "minLength": 1, "maxLength": 1000, "sanitize": True},
        "type": {"required": False, "type": "string", "allowedValues": ["text", "image", "file"]},
    },
)

# Read-only search: no state change, so no CSRF token
SEARCH_LISTINGS = SecureHandlerConfig(
    rate_limit_bucket="api",
    require_csrf=False,
    schema={
        "query": {"required": False, "type": "string", "maxLength": 100},
        "category": {
            "required": False,
            "type": "string",
            "allowedValues": ["camping", "hiking", "skiing", "water-sports", "climbing", "biking"],
        },
        "minPrice": {"required": False, "type": "number", "min": 0},
        "maxPrice": {"required": False, "type": "number", "min": 0},
    },
)

# Administrative unblock of a rate-limited caller
RESET_RATE_LIMIT = SecureHandlerConfig(
    rate_limit_bucket="admin",
    require_admin=True,
    schema={
        "bucket": {"required": True, "type": "string", "minLength": 1, "maxLength": 50},
        "identity": {"required": True, "type": "string", "pattern": r"^(user|ip):\S+$"},
    },
)

# Machine-to-machine: the provider authenticates with a signature, not a session
PAYMENT_WEBHOOK = SecureHandlerConfig(
    rate_limit_bucket="api",
    require_csrf=False,
)


# =============================================================================
# BUSINESS HANDLERS
# =============================================================================

async def login(request: Request, context: HandlerContext):
    """Start a session for the given credentials"""
    logger.info(f"🔑 Login attempt for {context.body['email']}")
    return {"status": "ok", "email": context.body["email"]}


async def register(request: Request, context: HandlerContext):
    """Create a user account"""
    logger.info(f"👤 Registration for {context.body['email']}")
    return {"status": "created", "displayName": context.body["displayName"]}


async def create_booking(request: Request, context: HandlerContext):
    """Request a booking for a listing"""
    booking_id = str(uuid.uuid4())
    logger.info(f"📅 Booking {booking_id[:8]}... requested by {context.user_id}")
    return {"status": "pending", "bookingId": booking_id, **context.body}


async def create_payment_intent(request: Request, context: HandlerContext):
    """Create a payment intent for a booking"""
    logger.info(f"💳 Payment intent for booking {context.body['bookingId']}")
    return {
        "status": "requires_payment_method",
        "amount": context.body["amount"],
        "currency": context.body["currency"],
    }


async def send_message(request: Request, context: HandlerContext):
    """Post a message to a conversation"""
    conversation_id = request.path_params.get("conversation_id")
    return {
        "status": "sent",
        "conversationId": conversation_id,
        "type": context.body.get("type", "text"),
    }


def search_listings(request: Request, context: HandlerContext):
    """Search listings"""
    return {"results": [], "filters": context.body}


async def reset_rate_limit(request: Request, context: HandlerContext):
    """Clear one caller's counter in one bucket"""
    secure: SecureHandler = request.app.state.secure_handler
    bucket = secure.buckets.get(context.body["bucket"])
    if bucket is None:
        raise HTTPException(status_code=404, detail="Unknown rate limit bucket")

    secure.rate_limiter.reset(bucket, context.body["identity"])
    logger.info(f"🛠️ {context.user_id} reset {context.body['identity']} on '{bucket.name}'")
    return {"status": "reset", "bucket": bucket.name, "identity": context.body["identity"]}


async def payment_webhook(request: Request, context: HandlerContext):
    """Receive payment provider events"""
    payload = await request.body()
    logger.info(f"🪝 Webhook received ({len(payload)} bytes)")
    return {"received": True}


# =============================================================================
# APPLICATION
# =============================================================================

def build_secure_handler(config: Settings, clock: Optional[Clock] = None) -> SecureHandler:
    """Build the process-wide pipeline: one limiter, one guard, one monitor."""
    buckets = load_bucket_policies(config.RATE_LIMIT_BUCKETS)
    rate_limiter = RateLimiter(clock=clock, sweep_interval=config.RATE_LIMIT_SWEEP_INTERVAL)
    csrf_guard = CsrfGuard(
        session_token_source=cookie_session_token_source(config.CSRF_COOKIE_NAME),
        header_name=config.CSRF_HEADER_NAME,
        check_origin=config.CSRF_CHECK_ORIGIN,
    )
    return SecureHandler(
        rate_limiter=rate_limiter,
        buckets=buckets,
        csrf_guard=csrf_guard,
        monitor=SecurityEventMonitor(
            violation_threshold=config.SECURITY_VIOLATION_THRESHOLD,
            max_tracked_identities=config.SECURITY_MONITOR_MAX_IDENTITIES,
        ),
        trust_proxy_headers=config.TRUST_PROXY_HEADERS,
    )


def create_app(config: Optional[Settings] = None, clock: Optional[Clock] = None) -> FastAPI:
    """Create the FastAPI app with its pipeline constructed exactly once."""
    config = config or default_settings

    # Log every configuration problem before bucket parsing can raise
    settings_ok = validate_required_settings(config)
    secure = build_secure_handler(config, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan event handler for startup/shutdown"""
        logger.info("=" * 60)
        logger.info(f"🚀 {config.APP_NAME} API Starting...")
        logger.info("=" * 60)

        if not settings_ok:
            logger.warning("⚠️ Configuration problems found - check RATE_LIMIT_BUCKETS and CSRF settings")

        logger.info("📋 Rate limit buckets:")
        for bucket in secure.buckets.values():
            logger.info(f"  - {bucket.name}: {bucket.max_requests} per {bucket.window_seconds:.0f}s")
        logger.info("✅ API Ready!")

        yield

        logger.info(f"🛑 {config.APP_NAME} API shutting down...")
        logger.info(f"📊 Final security stats: {secure.monitor.get_stats()}")

    app = FastAPI(
        title=f"{config.APP_NAME} API",
        description="Storefront API behind the secure request pipeline",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.secure_handler = secure
    app.state.rate_limiter = secure.rate_limiter

    # Rate limit info middleware
    @app.middleware("http")
    async def add_rate_limit_headers(request: Request, call_next):
        """Add rate limit information to response headers"""
        response = await call_next(request)

        decision = getattr(request.state, "rate_limit", None)
        if decision is not None:
            response.headers["X-RateLimit-Limit"] = str(decision.limit)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
            response.headers["X-RateLimit-Reset"] = str(int(decision.reset_after_seconds))

        return response

    # Security headers middleware
    app.middleware("http")(SecurityHeadersMiddleware())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", config.CSRF_HEADER_NAME],
    )

    @app.get("/", status_code=200)
    def read_root():
        """Health check endpoint"""
        return {"status": "ok", "version": "1.0.0", "service": "gatekeeper"}

    @app.get("/health", status_code=200)
    def health():
        """Alternative health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now().isoformat()}

    @app.get("/health/security", status_code=200)
    def security_health():
        """Limiter and rejection statistics"""
        return {
            "rate_limiter": secure.rate_limiter.get_metrics(),
            "security_events": secure.monitor.get_stats(),
        }

    app.add_api_route("/api/auth/login", secure.wrap(LOGIN, login), methods=["POST"])
    app.add_api_route("/api/auth/register", secure.wrap(REGISTER, register), methods=["POST"], status_code=201)
    app.add_api_route("/api/bookings", secure.wrap(CREATE_BOOKING, create_booking), methods=["POST"])
    app.add_api_route(
        "/api/payments/create-intent",
        secure.wrap(CREATE_PAYMENT_INTENT, create_payment_intent),
        methods=["POST"],
    )
    app.add_api_route(
        "/api/conversations/{conversation_id}/messages",
        secure.wrap(SEND_MESSAGE, send_message),
        methods=["POST"],
    )
    app.add_api_route("/api/search/listings", secure.wrap(SEARCH_LISTINGS, search_listings), methods=["GET"])
    app.add_api_route(
        "/api/admin/rate-limits/reset",
        secure.wrap(RESET_RATE_LIMIT, reset_rate_limit),
        methods=["POST"],
    )
    app.add_api_route("/api/webhooks/payments", secure.wrap(PAYMENT_WEBHOOK, payment_webhook), methods=["POST"])

    return app


app = create_app()


# Main entry point
if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Starting server on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
