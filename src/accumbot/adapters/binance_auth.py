from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping
from urllib.parse import urlencode

API_KEY_HEADER = "X-MBX-APIKEY"


def canonical_query(params: Mapping[str, object]) -> str:
    """Urlencode params in insertion order; the signature covers exactly this string."""
    return urlencode([(key, str(value)) for key, value in params.items() if value is not None])


def compute_signature(api_secret: str, query: str) -> str:
    return hmac.new(api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_query(
    params: Mapping[str, object],
    *,
    api_secret: str,
    timestamp_ms: int,
    recv_window_ms: int | None = None,
) -> str:
    signed_params = dict(params)
    if recv_window_ms is not None:
        signed_params["recvWindow"] = recv_window_ms
    signed_params["timestamp"] = timestamp_ms
    query = canonical_query(signed_params)
    return f"{query}&signature={compute_signature(api_secret, query)}"


def build_auth_headers(api_key: str) -> dict[str, str]:
    return {API_KEY_HEADER: api_key}
