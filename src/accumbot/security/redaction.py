from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import parse_qsl, urlencode

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = {
    "API_KEY",
    "API_SECRET",
    "SECRET",
    "SIGNATURE",
    "AUTHORIZATION",
    "TOKEN",
    "PASSWORD",
    "BINANCE_API_KEY",
    "BINANCE_API_SECRET",
    "X_MBX_APIKEY",
}

_SENSITIVE_PARTS = tuple(part.casefold() for part in SENSITIVE_KEYS)
_SENSITIVE_EXACT_COMPACT_KEYS = {"apikey", "secret", "apisecret", "signature", "token", "auth"}

_PLAIN_SECRET_PATTERNS = (
    re.compile(r"(?im)(x-mbx-apikey\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(binance_api_key_(?:live|testnet)\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(binance_api_secret_(?:live|testnet)\s*[:=]\s*)([^\s,;]+)"),
)

_QUERY_PARAM_PATTERN = re.compile(r"([?&]?)(apiKey|signature|token)=([^&\s]+)", re.IGNORECASE)


def _is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    compact = normalized.replace("_", "")
    return compact in _SENSITIVE_EXACT_COMPACT_KEYS or any(
        part in normalized for part in _SENSITIVE_PARTS
    )


def _mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    if len(value) <= 2:
        return "*" * len(value)
    return f"{'*' * (len(value) - 2)}{value[-2:]}"


def sanitize_mapping(d: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        key_str = str(key)
        if _is_sensitive_key(key_str):
            sanitized[key_str] = _mask_secret(str(value)) if value is not None else REDACTED
            continue
        sanitized[key_str] = redact_data(value)
    return sanitized


def _redact_match(match: re.Match[str]) -> str:
    return f"{match.group(1)}[REDACTED]"


def _sanitize_query_string(query: str) -> str:
    pairs = parse_qsl(query, keep_blank_values=True)
    sanitized_pairs = [
        (key, _mask_secret(value) if _is_sensitive_key(key) else value) for key, value in pairs
    ]
    return urlencode(sanitized_pairs)


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    try:
        redacted = str(text)
        for secret in known_secrets:
            if secret:
                redacted = redacted.replace(secret, _mask_secret(str(secret)))

        for pattern in _PLAIN_SECRET_PATTERNS:
            redacted = pattern.sub(_redact_match, redacted)

        redacted = _QUERY_PARAM_PATTERN.sub(
            lambda m: f"{m.group(1)}{m.group(2)}={_mask_secret(m.group(3))}", redacted
        )

        if "=" in redacted and "&" in redacted and " " not in redacted and "?" not in redacted:
            redacted = _sanitize_query_string(redacted)
        return redacted
    except Exception:  # noqa: BLE001
        return REDACTED


def redact_data(value: Any) -> Any:
    try:
        if isinstance(value, Mapping):
            return sanitize_mapping(value)
        if isinstance(value, list):
            return [redact_data(item) for item in value]
        if isinstance(value, tuple):
            return tuple(redact_data(item) for item in value)
        if isinstance(value, str):
            return sanitize_text(value)
        return value
    except Exception:  # noqa: BLE001
        return REDACTED
