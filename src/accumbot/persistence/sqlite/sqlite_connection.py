from __future__ import annotations

import sqlite3
from datetime import UTC, datetime


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def to_db_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_ts(value: object) -> datetime:
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cycles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            env TEXT NOT NULL,
            sell_client_order_id TEXT NOT NULL UNIQUE,
            started_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_cycles_env_started ON cycles(env, started_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_order_id TEXT NOT NULL,
            exchange_order_id TEXT,
            env TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            order_type TEXT NOT NULL,
            status TEXT NOT NULL,
            price TEXT,
            orig_qty TEXT NOT NULL,
            executed_qty TEXT NOT NULL DEFAULT '0',
            executed_quote TEXT NOT NULL DEFAULT '0',
            fee_amount TEXT,
            fee_asset TEXT,
            fee_quote TEXT,
            fee_rate TEXT,
            discount_pct TEXT,
            cycle_id INTEGER REFERENCES cycles(id),
            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_client_order_id_unique
        ON orders(client_order_id)
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_one_buy_per_cycle
        ON orders(cycle_id)
        WHERE side = 'BUY' AND cycle_id IS NOT NULL
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_env_status ON orders(env, status)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_orders_env_side_updated ON orders(env, side, updated_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS candles (
            symbol TEXT NOT NULL,
            interval TEXT NOT NULL,
            open_time INTEGER NOT NULL,
            open TEXT NOT NULL,
            high TEXT NOT NULL,
            low TEXT NOT NULL,
            close TEXT NOT NULL,
            volume TEXT NOT NULL,
            close_time INTEGER NOT NULL,
            PRIMARY KEY (symbol, interval, open_time)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS global_settings (
            id INTEGER PRIMARY KEY CHECK(id = 1),
            trading_enabled INTEGER NOT NULL,
            dry_run INTEGER NOT NULL,
            max_open_buys INTEGER NOT NULL,
            min_discount_net_fees TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS daily_snapshots (
            day TEXT NOT NULL,
            env TEXT NOT NULL,
            fee_p50 TEXT NOT NULL,
            fee_p90 TEXT NOT NULL,
            fee_sample_size INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (day, env)
        )
        """
    )
