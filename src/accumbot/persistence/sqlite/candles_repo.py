from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from decimal import Decimal

from accumbot.domain.models import Candle

logger = logging.getLogger(__name__)


class SqliteCandlesRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "candles"}})
            raise PermissionError("UnitOfWork is read-only; candles writes are blocked")

    def latest_close_time(self, symbol: str, interval: str) -> int | None:
        row = self._conn.execute(
            "SELECT MAX(close_time) AS close_time FROM candles WHERE symbol = ? AND interval = ?",
            (symbol, interval),
        ).fetchone()
        return int(row["close_time"]) if row["close_time"] is not None else None

    def upsert_many(self, candles: Sequence[Candle]) -> int:
        self._ensure_writable()
        self._conn.executemany(
            """
            INSERT INTO candles(symbol, interval, open_time, open, high, low, close, volume, close_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(symbol, interval, open_time) DO UPDATE SET
                open = excluded.open,
                high = excluded.high,
                low = excluded.low,
                close = excluded.close,
                volume = excluded.volume,
                close_time = excluded.close_time
            """,
            [
                (
                    c.symbol,
                    c.interval,
                    c.open_time,
                    str(c.open),
                    str(c.high),
                    str(c.low),
                    str(c.close),
                    str(c.volume),
                    c.close_time,
                )
                for c in candles
            ],
        )
        return len(candles)

    def recent(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        """Newest first."""
        rows = self._conn.execute(
            """
            SELECT * FROM candles WHERE symbol = ? AND interval = ?
            ORDER BY open_time DESC LIMIT ?
            """,
            (symbol, interval, limit),
        ).fetchall()
        return [
            Candle(
                symbol=str(row["symbol"]),
                interval=str(row["interval"]),
                open_time=int(row["open_time"]),
                open=Decimal(str(row["open"])),
                high=Decimal(str(row["high"])),
                low=Decimal(str(row["low"])),
                close=Decimal(str(row["close"])),
                volume=Decimal(str(row["volume"])),
                close_time=int(row["close_time"]),
            )
            for row in rows
        ]

    def count(self, symbol: str, interval: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM candles WHERE symbol = ? AND interval = ?",
            (symbol, interval),
        ).fetchone()
        return int(row["n"])
