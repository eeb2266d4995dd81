# gatekeeper/services/validation_service.py
"""
Input Validation Service for the secure request pipeline.

Validates a parsed request body against a declarative schema and returns
either a sanitized body (declared fields only, coerced to their declared
types) or the full list of field errors. Pure: no I/O, no hidden state.
"""

from typing import Optional, Dict, Any, Mapping, Tuple, Union
from dataclasses import dataclass, field
import logging
import math
import re

from gatekeeper.models.schema_models import (
    BooleanRule,
    EmailRule,
    NumberRule,
    Schema,
    StringRule,
)

logger = logging.getLogger(__name__)

# local@domain.tld, no whitespace anywhere
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_INT_PATTERN = re.compile(r"^[+-]?\d+$")

# Reason codes
REQUIRED = "required"
TYPE_MISMATCH = "type_mismatch"
MIN_LENGTH = "min_length"
MAX_LENGTH = "max_length"
BELOW_MIN = "min"
ABOVE_MAX = "max"
INVALID_EMAIL = "invalid_email"
NOT_ALLOWED = "not_allowed"
PATTERN_MISMATCH = "pattern"

# Markup removed from string rules declared with sanitize=True
_HTML_TAG = re.compile(r"<[^>]*>")
_WHITESPACE_RUN = re.compile(r"\s+")


@dataclass(frozen=True)
class FieldError:
    """A single failing field and why it failed"""
    field: str
    reason: str


@dataclass(frozen=True)
class ValidationResult:
    """Result of schema validation: either sanitized body or errors, never both"""
    valid: bool
    body: Dict[str, Any] = field(default_factory=dict)
    errors: Tuple[FieldError, ...] = ()

    @classmethod
    def ok(cls, body: Dict[str, Any]) -> "ValidationResult":
        return cls(valid=True, body=body)

    @classmethod
    def failed(cls, errors: Tuple[FieldError, ...]) -> "ValidationResult":
        return cls(valid=False, errors=errors)


class _Failure:
    """Sentinel carrier for a per-field failure reason"""
    __slots__ = ("reason",)

    def __init__(self, reason: str):
        self.reason = reason


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _coerce_number(value: Any) -> Optional[Union[int, float]]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        try:
            # int() refuses strings past the interpreter digit limit
            if _INT_PATTERN.match(text):
                return int(text)
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _sanitize_text(value: str) -> str:
    """Strip HTML tags and collapse whitespace runs."""
    return _WHITESPACE_RUN.sub(" ", _HTML_TAG.sub("", value)).strip()


def _coerce_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def _check_length(rule: Union[StringRule, EmailRule], value: str) -> Optional[_Failure]:
    length = len(value.strip())
    if rule.min_length is not None and length < rule.min_length:
        return _Failure(MIN_LENGTH)
    if rule.max_length is not None and length > rule.max_length:
        return _Failure(MAX_LENGTH)
    return None


def _check_field(rule, value: Any) -> Union[_Failure, Any]:
    """Coerce and check one present value; returns the typed value or a _Failure."""
    if isinstance(rule, StringRule):
        if not isinstance(value, str):
            return _Failure(TYPE_MISMATCH)
        failure = _check_length(rule, value)
        if failure:
            return failure
        if rule.pattern is not None and not re.search(rule.pattern, value.strip()):
            return _Failure(PATTERN_MISMATCH)
        # Enumerated strings are matched and returned trimmed
        typed = value.strip() if rule.allowed_values is not None else value

    elif isinstance(rule, EmailRule):
        if not isinstance(value, str):
            return _Failure(TYPE_MISMATCH)
        typed = value.strip()
        failure = _check_length(rule, typed)
        if failure:
            return failure
        if not EMAIL_PATTERN.match(typed):
            return _Failure(INVALID_EMAIL)

    elif isinstance(rule, NumberRule):
        typed = _coerce_number(value)
        if typed is None:
            return _Failure(TYPE_MISMATCH)
        if rule.min is not None and typed < rule.min:
            return _Failure(BELOW_MIN)
        if rule.max is not None and typed > rule.max:
            return _Failure(ABOVE_MAX)

    elif isinstance(rule, BooleanRule):
        typed = _coerce_boolean(value)
        if typed is None:
            return _Failure(TYPE_MISMATCH)

    else:
        raise TypeError(f"Unsupported field rule: {type(rule).__name__}")

    if rule.allowed_values is not None and typed not in rule.allowed_values:
        return _Failure(NOT_ALLOWED)

    return typed


def validate(schema: Schema, body: Mapping[str, Any]) -> ValidationResult:
    """
    Validate a body against a schema.

    Every declared field is checked in declaration order and at most one error
    is recorded per field, so the error count equals the number of failing
    fields. Fields not declared in the schema are dropped.

    Args:
        schema: Ordered mapping of field name -> FieldRule
        body: Parsed request body

    Returns:
        ValidationResult with the sanitized body, or with all field errors
    """
    sanitized: Dict[str, Any] = {}
    errors = []

    for name, rule in schema.items():
        value = body.get(name)
        if isinstance(rule, StringRule) and rule.sanitize and isinstance(value, str):
            value = _sanitize_text(value)

        if _is_empty(value):
            if rule.required:
                errors.append(FieldError(name, REQUIRED))
            continue

        outcome = _check_field(rule, value)
        if isinstance(outcome, _Failure):
            errors.append(FieldError(name, outcome.reason))
        else:
            sanitized[name] = outcome

    if errors:
        logger.debug(f"Validation failed for {len(errors)} field(s): {[e.field for e in errors]}")
        return ValidationResult.failed(tuple(errors))

    return ValidationResult.ok(sanitized)
