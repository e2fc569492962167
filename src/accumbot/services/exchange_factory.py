from __future__ import annotations

import logging

from accumbot.adapters.binance_http import BinanceHttpClient
from accumbot.adapters.exchange import ExchangeClient
from accumbot.config import Settings

logger = logging.getLogger(__name__)


def build_exchange(settings: Settings) -> ExchangeClient:
    api_key, api_secret = settings.api_credentials()
    base_url = settings.rest_base_url()
    logger.info(
        "exchange_client_built",
        extra={
            "extra": {
                "mode": settings.bot_mode.value,
                "base_url": base_url,
                "credentials_present": bool(api_key and api_secret),
            }
        },
    )
    return BinanceHttpClient(
        base_url=base_url,
        api_key=api_key,
        api_secret=api_secret,
        mode=settings.bot_mode,
        timeout=settings.http_timeout_seconds,
        recv_window_ms=settings.recv_window_ms,
    )
