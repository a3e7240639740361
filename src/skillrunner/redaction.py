"""Secret and PII redaction for logs, errors and output summaries."""

from __future__ import annotations

import json
import re
from decimal import Decimal
from typing import Any, Iterable

REDACTED = "[redacted]"
MASKED = "[masked]"

DEFAULT_SUMMARY_LENGTH: int = 500
DEFAULT_ERROR_LENGTH: int = 500

_SENSITIVE_KEY_TERMS = (
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "passwd",
    "authorization",
    "bearer",
    "private_key",
    "privatekey",
    "access_key",
    "accesskey",
    "credential",
    "session",
    "jwt",
    "auth",
)

_SENSITIVE_VALUE_PREFIXES = (
    "sk-",
    "rk-",
    "ghp_",
    "github_pat_",
    "xoxb-",
    "xoxa-",
)

# Order matters: card numbers before phone numbers.
_JWT_SHAPE = re.compile(r"^eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*$")

_PII_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "[email]"),
    (re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b"), "[card]"),
    (re.compile(r"\+\d{1,4}[\s-]?\(?\d{1,4}\)?[\s-]?\d{1,4}[\s-]?\d{2,9}"), "[phone]"),
    (re.compile(r"\b\d{2,4}-\d{2,4}-\d{4}\b"), "[phone]"),
)


def truncate(text: str, max_length: int) -> str:
    if len(text) > max_length:
        return text[: max(max_length - 3, 0)] + "..."
    return text


def is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def is_sensitive_value(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    s = value.strip()
    if len(s) >= 24 and _JWT_SHAPE.match(s):
        return True
    if s.lower().startswith("bearer "):
        return True
    if s.startswith(_SENSITIVE_VALUE_PREFIXES):
        return True
    return "-----BEGIN" in s


def scrub_text(text: str) -> str:
    """Replace e-mail addresses, card and phone numbers with placeholders."""
    for pattern, placeholder in _PII_PATTERNS:
        text = pattern.sub(placeholder, text)
    return text


def contains_pii(value: Any) -> bool:
    """True when any string inside ``value`` matches a PII pattern."""
    if isinstance(value, str):
        return any(pattern.search(value) for pattern, _ in _PII_PATTERNS)
    if isinstance(value, dict):
        return any(contains_pii(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_pii(v) for v in value)
    return False


def sanitize_value(key: str | None, value: Any) -> Any:
    """Return a JSON-friendly copy of ``value`` with secrets and PII removed.

    Deterministic and idempotent, so sanitized data can be sanitized again.
    """
    if key is not None and is_sensitive_key(key):
        return REDACTED
    if isinstance(value, str):
        if value in (REDACTED, MASKED):
            return value
        if is_sensitive_value(value):
            return REDACTED
        return scrub_text(value)
    # bool is a subclass of int
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [sanitize_value(None, v) for v in value]
    if isinstance(value, dict):
        return {str(k): sanitize_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<bytes:{len(value)}>"
    return f"<{type(value).__name__}>"


def mask_fields(data: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    """Return a shallow copy of ``data`` with the listed fields masked."""
    masked = dict(data)
    for name in fields:
        if name in masked:
            masked[name] = MASKED
    return masked


def sanitize_error_message(message: str, max_length: int = DEFAULT_ERROR_LENGTH) -> str:
    text = message
    if is_sensitive_value(text):
        return REDACTED
    return truncate(scrub_text(text), max_length)


def summarize_output(output: Any, max_length: int = DEFAULT_SUMMARY_LENGTH) -> str | None:
    """Sanitized, truncated JSON rendering of a handler's output."""
    if output is None:
        return None
    text = json.dumps(sanitize_value(None, output), ensure_ascii=False, sort_keys=True)
    return truncate(text, max_length)


def safe_repr(obj: Any, max_length: int = 200) -> str:
    try:
        r = repr(obj)
    except Exception:  # repr of arbitrary objects can raise anything
        return "<repr failed>"
    return truncate(r, max_length)
