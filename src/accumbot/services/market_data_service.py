from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from accumbot.adapters.clock_sync import utc_now_ms
from accumbot.adapters.exchange import ExchangeClient
from accumbot.config import interval_to_ms
from accumbot.domain.models import ExchangeError
from accumbot.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)

_DAY_MS = 86_400_000


@dataclass(frozen=True)
class CandleSyncResult:
    symbol: str
    interval: str
    stored: int
    batches: int
    complete: bool


class MarketDataService:
    """Incremental kline ingestion; the (symbol, interval, open_time) key makes re-runs idempotent."""

    def __init__(
        self,
        *,
        exchange: ExchangeClient,
        uow_factory: UnitOfWorkFactory,
        backfill_days: int = 30,
        batch_limit: int = 1000,
        pause_seconds: float = 0.2,
        now_ms_fn: Callable[[], int] = utc_now_ms,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.exchange = exchange
        self.uow_factory = uow_factory
        self.backfill_days = backfill_days
        self.batch_limit = batch_limit
        self.pause_seconds = pause_seconds
        self.now_ms_fn = now_ms_fn
        self.sleep_fn = sleep_fn

    def sync_candles(self, symbol: str, interval: str) -> CandleSyncResult:
        interval_ms = interval_to_ms(interval)
        now_ms = self.now_ms_fn()
        with self.uow_factory() as uow:
            last_close = uow.candles.latest_close_time(symbol, interval)
        start_ms = (
            last_close + 1 if last_close is not None else now_ms - self.backfill_days * _DAY_MS
        )

        stored = 0
        batches = 0
        complete = False
        while start_ms < now_ms:
            try:
                candles = self.exchange.get_klines(
                    symbol, interval, start_ms=start_ms, limit=self.batch_limit
                )
            except (ExchangeError, httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "candle_sync_fetch_failed",
                    extra={
                        "extra": {
                            "symbol": symbol,
                            "interval": interval,
                            "start_ms": start_ms,
                            "stored": stored,
                            "error_type": type(exc).__name__,
                        }
                    },
                )
                break
            batches += 1
            if not candles:
                complete = True
                break

            closed = [candle for candle in candles if candle.close_time < now_ms]
            if closed:
                with self.uow_factory() as uow:
                    stored += uow.candles.upsert_many(closed)

            last_bar_close = candles[-1].close_time
            if now_ms - last_bar_close < interval_ms or not closed:
                complete = True
                break
            start_ms = closed[-1].close_time + 1
            if self.pause_seconds > 0:
                self.sleep_fn(self.pause_seconds)
        else:
            complete = True

        logger.info(
            "candle_sync_finished",
            extra={
                "extra": {
                    "symbol": symbol,
                    "interval": interval,
                    "stored": stored,
                    "batches": batches,
                    "complete": complete,
                }
            },
        )
        return CandleSyncResult(
            symbol=symbol, interval=interval, stored=stored, batches=batches, complete=complete
        )
