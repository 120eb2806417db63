from stakesync.security.redaction import (
    REDACTED,
    SENSITIVE_KEYS,
    redact_value,
    sanitize_mapping,
    sanitize_text,
)

__all__ = [
    "REDACTED",
    "SENSITIVE_KEYS",
    "redact_value",
    "sanitize_mapping",
    "sanitize_text",
]
