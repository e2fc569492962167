from accumbot.security.redaction import (
    REDACTED,
    SENSITIVE_KEYS,
    redact_data,
    sanitize_mapping,
    sanitize_text,
)

__all__ = [
    "REDACTED",
    "SENSITIVE_KEYS",
    "redact_data",
    "sanitize_mapping",
    "sanitize_text",
]
