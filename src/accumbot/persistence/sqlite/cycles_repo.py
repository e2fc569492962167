from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from accumbot.domain.models import Cycle, CycleStatus, OrderSide, OrderStatus
from accumbot.persistence.sqlite.sqlite_connection import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)

_SELECT_WITH_STATUS = """
    SELECT c.id, c.env, c.started_at,
        EXISTS(
            SELECT 1 FROM orders o
            WHERE o.cycle_id = c.id AND o.side = ? AND o.status = ?
        ) AS closed
    FROM cycles c
"""


class SqliteCyclesRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "cycles"}})
            raise PermissionError("UnitOfWork is read-only; cycles writes are blocked")

    @staticmethod
    def _row_to_cycle(row: sqlite3.Row) -> Cycle:
        return Cycle(
            cycle_id=int(row["id"]),
            env=str(row["env"]),
            started_at=from_db_ts(row["started_at"]),
            status=CycleStatus.CLOSED if row["closed"] else CycleStatus.OPEN,
        )

    def open_for_sell(self, env: str, sell_client_order_id: str, started_at: datetime) -> int:
        """Create the OPEN cycle for a realized sell; returns the existing id when already opened."""
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO cycles(env, sell_client_order_id, started_at) VALUES (?, ?, ?)
            ON CONFLICT(sell_client_order_id) DO NOTHING
            """,
            (env, sell_client_order_id, to_db_ts(started_at)),
        )
        row = self._conn.execute(
            "SELECT id FROM cycles WHERE sell_client_order_id = ?", (sell_client_order_id,)
        ).fetchone()
        return int(row["id"])

    def get(self, cycle_id: int) -> Cycle | None:
        row = self._conn.execute(
            _SELECT_WITH_STATUS + " WHERE c.id = ?",
            (OrderSide.BUY.value, OrderStatus.FILLED.value, cycle_id),
        ).fetchone()
        return self._row_to_cycle(row) if row is not None else None

    def list_recent(self, env: str, limit: int) -> list[Cycle]:
        rows = self._conn.execute(
            _SELECT_WITH_STATUS + " WHERE c.env = ? ORDER BY c.id DESC LIMIT ?",
            (OrderSide.BUY.value, OrderStatus.FILLED.value, env, limit),
        ).fetchall()
        return [self._row_to_cycle(row) for row in rows]
