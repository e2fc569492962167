from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, date, datetime
from decimal import Decimal

from accumbot.domain.models import FeeStats, TradingSettings
from accumbot.persistence.sqlite.sqlite_connection import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = TradingSettings(
    trading_enabled=True,
    dry_run=True,
    max_open_buys=2,
    min_discount_net_fees=Decimal("0.6"),
)


class SqliteSettingsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "settings"}})
            raise PermissionError("UnitOfWork is read-only; settings writes are blocked")

    def get(self) -> TradingSettings | None:
        row = self._conn.execute("SELECT * FROM global_settings WHERE id = 1").fetchone()
        if row is None:
            return None
        return TradingSettings(
            trading_enabled=bool(row["trading_enabled"]),
            dry_run=bool(row["dry_run"]),
            max_open_buys=int(row["max_open_buys"]),
            min_discount_net_fees=Decimal(str(row["min_discount_net_fees"])),
            updated_at=from_db_ts(row["updated_at"]),
        )

    def ensure_default(self) -> TradingSettings:
        existing = self.get()
        if existing is not None:
            return existing
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO global_settings(
                id, trading_enabled, dry_run, max_open_buys, min_discount_net_fees, updated_at
            ) VALUES (1, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (
                int(DEFAULT_SETTINGS.trading_enabled),
                int(DEFAULT_SETTINGS.dry_run),
                DEFAULT_SETTINGS.max_open_buys,
                str(DEFAULT_SETTINGS.min_discount_net_fees),
                to_db_ts(datetime.now(UTC)),
            ),
        )
        logger.info("settings_seeded_with_defaults")
        seeded = self.get()
        assert seeded is not None
        return seeded

    def update(
        self,
        *,
        trading_enabled: bool | None = None,
        dry_run: bool | None = None,
        max_open_buys: int | None = None,
        min_discount_net_fees: Decimal | None = None,
    ) -> TradingSettings:
        self._ensure_writable()
        current = self.ensure_default()
        if max_open_buys is not None and max_open_buys < 0:
            raise ValueError("max_open_buys must be >= 0")
        if min_discount_net_fees is not None and min_discount_net_fees < 0:
            raise ValueError("min_discount_net_fees must be >= 0")
        self._conn.execute(
            """
            UPDATE global_settings SET
                trading_enabled = ?, dry_run = ?, max_open_buys = ?,
                min_discount_net_fees = ?, updated_at = ?
            WHERE id = 1
            """,
            (
                int(current.trading_enabled if trading_enabled is None else trading_enabled),
                int(current.dry_run if dry_run is None else dry_run),
                current.max_open_buys if max_open_buys is None else max_open_buys,
                str(
                    current.min_discount_net_fees
                    if min_discount_net_fees is None
                    else min_discount_net_fees
                ),
                to_db_ts(datetime.now(UTC)),
            ),
        )
        updated = self.get()
        assert updated is not None
        return updated


class SqliteSnapshotsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def upsert_fee_stats(self, day: date, env: str, stats: FeeStats) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "snapshots"}})
            raise PermissionError("UnitOfWork is read-only; snapshot writes are blocked")
        self._conn.execute(
            """
            INSERT INTO daily_snapshots(day, env, fee_p50, fee_p90, fee_sample_size, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(day, env) DO UPDATE SET
                fee_p50 = excluded.fee_p50,
                fee_p90 = excluded.fee_p90,
                fee_sample_size = excluded.fee_sample_size,
                updated_at = excluded.updated_at
            """,
            (
                day.isoformat(),
                env,
                str(stats.p50),
                str(stats.p90),
                stats.sample_size,
                to_db_ts(datetime.now(UTC)),
            ),
        )

    def get_fee_stats(self, day: date, env: str) -> FeeStats | None:
        row = self._conn.execute(
            "SELECT * FROM daily_snapshots WHERE day = ? AND env = ?", (day.isoformat(), env)
        ).fetchone()
        if row is None:
            return None
        return FeeStats(
            p50=Decimal(str(row["fee_p50"])),
            p90=Decimal(str(row["fee_p90"])),
            sample_size=int(row["fee_sample_size"]),
        )
