from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

# Key fragments that mark a mapping entry as secret, matched case-insensitively
# against the key with dashes folded to underscores.
SENSITIVE_KEYS = {
    "API_KEY",
    "APIKEY",
    "SECRET",
    "AUTHORIZATION",
    "TOKEN",
    "PASSWORD",
}
_SENSITIVE_FRAGMENTS = tuple(key.casefold() for key in SENSITIVE_KEYS)


def mask_secret(value: str) -> str:
    """Keep just enough of a secret to tell two keys apart in logs."""

    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    if len(value) <= 2:
        return "*" * len(value)
    return f"{'*' * (len(value) - 2)}{value[-2:]}"


def _blank_value(match: re.Match[str]) -> str:
    return f"{match.group('prefix')}[REDACTED]"


def _mask_value(match: re.Match[str]) -> str:
    return f"{match.group('prefix')}{mask_secret(match.group('value'))}{match.group('suffix')}"


_TEXT_RULES: tuple[tuple[re.Pattern[str], Callable[[re.Match[str]], str]], ...] = (
    # Authorization: Bearer <token>
    (
        re.compile(r"(?im)(?P<prefix>authorization\s*[:=]\s*(?:bearer\s+)?)(?P<value>[^\s,;]+)"),
        _blank_value,
    ),
    # LEDGER_API_KEY=<key> as it appears in env dumps
    (re.compile(r"(?im)(?P<prefix>ledger_api_key\s*[:=]\s*)(?P<value>[^\s,;]+)"), _blank_value),
    # Gateway endpoints carry the key as a path segment: /api/<key>/subgraphs/...
    (
        re.compile(r"(?P<prefix>/api/)(?P<value>[A-Za-z0-9_\-]{8,})(?P<suffix>/)"),
        _mask_value,
    ),
    # ?api_key=<key>&... and friends
    (
        re.compile(r"(?i)(?P<prefix>[?&](?:api_key|apikey|token)=)(?P<value>[^&\s]+)(?P<suffix>)"),
        _mask_value,
    ),
)


def _is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    return normalized == "auth" or any(fragment in normalized for fragment in _SENSITIVE_FRAGMENTS)


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    redacted = str(text)
    for secret in known_secrets:
        if secret:
            redacted = redacted.replace(secret, mask_secret(secret))
    for pattern, replace in _TEXT_RULES:
        redacted = pattern.sub(replace, redacted)
    return redacted


def sanitize_mapping(d: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        name = str(key)
        if _is_sensitive_key(name):
            sanitized[name] = REDACTED if value is None else mask_secret(str(value))
        else:
            sanitized[name] = redact_value(value)
    return sanitized


def redact_value(value: Any) -> Any:
    """Recursively mask secrets in log payloads; non-string scalars pass through."""

    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, list):
        return [redact_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_value(item) for item in value)
    if isinstance(value, str):
        return sanitize_text(value)
    return value
