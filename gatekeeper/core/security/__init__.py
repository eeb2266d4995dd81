"""
Security module for the Gatekeeper pipeline.

Centralizes the request-level security checks:
- CSRF verification against the session-bound token
- Session token lookup from the upstream session collaborator

This module is designed to be a clean layer in front of the business
handlers, not intertwined with them.
"""

from .csrf import (
    CsrfGuard,
    SessionTokenSource,
    cookie_session_token_source,
    verify
)

__all__ = [
    'CsrfGuard',
    'SessionTokenSource',
    'cookie_session_token_source',
    'verify'
]
