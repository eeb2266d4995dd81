# gatekeeper/core/config.py
import logging
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings

from gatekeeper.core.exceptions import ConfigurationError
from gatekeeper.core.rate_limit_config import DEFAULT_BUCKETS, load_bucket_policies

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Basic application settings"""
    APP_NAME: str = "Gatekeeper"
    DEBUG: bool = False

    # Rate limiting: bucket name -> rate string ("5/15 minutes")
    RATE_LIMIT_BUCKETS: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_BUCKETS))
    RATE_LIMIT_SWEEP_INTERVAL: float = 300.0
    TRUST_PROXY_HEADERS: bool = True

    # Security event monitor
    SECURITY_VIOLATION_THRESHOLD: int = 10
    SECURITY_MONITOR_MAX_IDENTITIES: int = 10_000

    # CSRF
    CSRF_HEADER_NAME: str = "X-CSRF-Token"
    CSRF_COOKIE_NAME: str = "csrf_token"
    CSRF_CHECK_ORIGIN: bool = True

    # CORS
    CORS_ORIGINS: List[str] = Field(default_factory=lambda: [
        "http://localhost:5173",
        "http://localhost:3000",
    ])

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }


# Settings as singleton, loaded once at startup
settings = Settings()


def validate_required_settings(current: Settings = None) -> bool:
    """Checks that the rate-limit buckets parse; logs what is wrong"""
    current = current or settings
    problems = []

    if not current.RATE_LIMIT_BUCKETS:
        problems.append("RATE_LIMIT_BUCKETS is empty")

    for name, rate in current.RATE_LIMIT_BUCKETS.items():
        try:
            load_bucket_policies({name: rate})
        except ConfigurationError as e:
            problems.append(e.message)

    if not current.CSRF_HEADER_NAME:
        problems.append("CSRF_HEADER_NAME is empty")

    if problems:
        for problem in problems:
            logger.warning(f"Configuration problem: {problem}")
        return False

    return True
