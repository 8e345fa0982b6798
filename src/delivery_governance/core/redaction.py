"""Secret redaction for audit payloads.

Applied to every audit payload before it is hashed and stored, so the stored
payload_hash always describes the redacted form. Two passes:

- keys that look like credentials have their whole value masked (including
  nested objects and lists)
- string values are scanned for credential-shaped substrings (JWTs, bearer
  tokens, GitHub/Slack tokens, AWS access keys, sk-/pk- API keys)
"""

import re
from collections.abc import Mapping
from typing import Any

REDACTED = "********"

# Matched against the key lowercased with "_" and "-" removed.
_SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = (
    "secret",
    "token",
    "password",
    "passwd",
    "apikey",
    "privatekey",
    "accesskey",
    "authorization",
    "cookie",
    "session",
    "credential",
    "bearer",
)
_SENSITIVE_EXACT_KEYS: frozenset[str] = frozenset({"auth", "key", "header", "headers", "jwt"})

_VALUE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"gh[pousr]_[A-Za-z0-9]{20,}"),
    re.compile(r"github_pat_[A-Za-z0-9_]{20,}"),
    re.compile(r"xox[abprs]-[A-Za-z0-9-]{10,}"),
    re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b"),
    re.compile(r"\b(?:sk|pk)-[A-Za-z0-9_-]{8,}"),
)


def is_sensitive_key(key: str) -> bool:
    normalized = key.lower().replace("_", "").replace("-", "")
    if normalized in _SENSITIVE_EXACT_KEYS:
        return True
    return any(fragment in normalized for fragment in _SENSITIVE_KEY_FRAGMENTS)


def redact_string(text: str) -> str:
    """Mask credential-shaped substrings of a string."""
    result = text
    for pattern in _VALUE_PATTERNS:
        result = pattern.sub(REDACTED, result)
    return result


def redact(value: Any) -> Any:
    """Return a redacted deep copy of a JSON-like value.

    Args:
        value: Mapping, list, string or scalar.

    Returns:
        The same structure with credential-shaped keys and values masked.
    """
    if isinstance(value, Mapping):
        return {
            str(key): REDACTED if is_sensitive_key(str(key)) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    if isinstance(value, str):
        return redact_string(value)
    return value
