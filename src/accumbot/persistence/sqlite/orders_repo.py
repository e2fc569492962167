from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from decimal import Decimal

from accumbot.domain.models import Order, OrderSide, OrderStatus, OrderType
from accumbot.domain.order_state import advance_status
from accumbot.persistence.interfaces.orders_repo import OrderExecutionUpdate
from accumbot.persistence.sqlite.sqlite_connection import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)

_NON_TERMINAL = (OrderStatus.NEW.value, OrderStatus.PARTIALLY_FILLED.value)


def _dec(value: object) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _str_or_none(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


class SqliteOrdersRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "orders"}})
            raise PermissionError("UnitOfWork is read-only; orders writes are blocked")

    def _row_to_order(self, row: sqlite3.Row) -> Order:
        return Order(
            client_order_id=str(row["client_order_id"]),
            exchange_order_id=str(row["exchange_order_id"]) if row["exchange_order_id"] else None,
            env=str(row["env"]),
            symbol=str(row["symbol"]),
            side=OrderSide(str(row["side"])),
            order_type=OrderType(str(row["order_type"])),
            status=OrderStatus(str(row["status"])),
            price=_dec(row["price"]),
            orig_qty=Decimal(str(row["orig_qty"])),
            executed_qty=Decimal(str(row["executed_qty"])),
            executed_quote=Decimal(str(row["executed_quote"])),
            fee_amount=_dec(row["fee_amount"]),
            fee_asset=str(row["fee_asset"]) if row["fee_asset"] else None,
            fee_quote=_dec(row["fee_quote"]),
            fee_rate=_dec(row["fee_rate"]),
            discount_pct=_dec(row["discount_pct"]),
            cycle_id=int(row["cycle_id"]) if row["cycle_id"] is not None else None,
            last_error=str(row["last_error"]) if row["last_error"] else None,
            created_at=from_db_ts(row["created_at"]),
            updated_at=from_db_ts(row["updated_at"]),
        )

    def insert_order(self, order: Order) -> None:
        self._ensure_writable()
        now = datetime.now(UTC)
        self._conn.execute(
            """
            INSERT INTO orders(
                client_order_id, exchange_order_id, env, symbol, side, order_type, status,
                price, orig_qty, executed_qty, executed_quote, fee_amount, fee_asset,
                fee_quote, fee_rate, discount_pct, cycle_id, last_error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.client_order_id,
                order.exchange_order_id,
                order.env,
                order.symbol,
                order.side.value,
                order.order_type.value,
                order.status.value,
                _str_or_none(order.price),
                str(order.orig_qty),
                str(order.executed_qty),
                str(order.executed_quote),
                _str_or_none(order.fee_amount),
                order.fee_asset,
                _str_or_none(order.fee_quote),
                _str_or_none(order.fee_rate),
                _str_or_none(order.discount_pct),
                order.cycle_id,
                order.last_error,
                to_db_ts(order.created_at or now),
                to_db_ts(order.updated_at or now),
            ),
        )

    def get_by_client_id(self, client_order_id: str) -> Order | None:
        row = self._conn.execute(
            "SELECT * FROM orders WHERE client_order_id = ?", (client_order_id,)
        ).fetchone()
        return self._row_to_order(row) if row is not None else None

    def list_non_terminal(self, env: str, symbol: str | None = None) -> list[Order]:
        query = "SELECT * FROM orders WHERE env = ? AND status IN (?, ?)"
        params: list[object] = [env, *_NON_TERMINAL]
        if symbol is not None:
            query += " AND symbol = ?"
            params.append(symbol)
        rows = self._conn.execute(query + " ORDER BY id", params).fetchall()
        return [self._row_to_order(row) for row in rows]

    def latest_filled(self, env: str, side: OrderSide) -> Order | None:
        row = self._conn.execute(
            """
            SELECT * FROM orders
            WHERE env = ? AND side = ? AND status = ? AND CAST(executed_qty AS REAL) > 0
            ORDER BY updated_at DESC, id DESC
            LIMIT 1
            """,
            (env, side.value, OrderStatus.FILLED.value),
        ).fetchone()
        return self._row_to_order(row) if row is not None else None

    def has_pending(self, env: str, side: OrderSide) -> bool:
        return self.count_open(env, side) > 0

    def count_open(self, env: str, side: OrderSide) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM orders WHERE env = ? AND side = ? AND status IN (?, ?)",
            (env, side.value, *_NON_TERMINAL),
        ).fetchone()
        return int(row["n"])

    def buys_for_cycle(self, cycle_id: int) -> list[Order]:
        rows = self._conn.execute(
            "SELECT * FROM orders WHERE cycle_id = ? AND side = ? ORDER BY id",
            (cycle_id, OrderSide.BUY.value),
        ).fetchall()
        return [self._row_to_order(row) for row in rows]

    def list_for_cycle(self, cycle_id: int) -> list[Order]:
        rows = self._conn.execute(
            "SELECT * FROM orders WHERE cycle_id = ? ORDER BY id", (cycle_id,)
        ).fetchall()
        return [self._row_to_order(row) for row in rows]

    def list_filled_for_fees(self, env: str, limit: int) -> list[Order]:
        rows = self._conn.execute(
            """
            SELECT * FROM orders
            WHERE env = ? AND status = ? AND CAST(executed_qty AS REAL) > 0
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (env, OrderStatus.FILLED.value, limit),
        ).fetchall()
        return [self._row_to_order(row) for row in rows]

    def apply_update(self, client_order_id: str, update: OrderExecutionUpdate) -> Order | None:
        """Merge an exchange observation; status moves forward only and terminal rows are frozen."""
        self._ensure_writable()
        current = self.get_by_client_id(client_order_id)
        if current is None:
            return None
        if current.is_terminal:
            if update.status != current.status:
                logger.info(
                    "order_update_ignored_terminal",
                    extra={
                        "extra": {
                            "client_order_id": client_order_id,
                            "current_status": current.status.value,
                            "observed_status": update.status.value,
                        }
                    },
                )
            return current
        next_status = advance_status(current.status, update.status)
        self._conn.execute(
            """
            UPDATE orders SET
                status = ?,
                exchange_order_id = COALESCE(?, exchange_order_id),
                price = COALESCE(?, price),
                executed_qty = ?,
                executed_quote = ?,
                fee_amount = COALESCE(?, fee_amount),
                fee_asset = COALESCE(?, fee_asset),
                fee_quote = COALESCE(?, fee_quote),
                fee_rate = COALESCE(?, fee_rate),
                updated_at = ?
            WHERE client_order_id = ?
            """,
            (
                next_status.value,
                update.exchange_order_id,
                _str_or_none(update.price),
                str(max(update.executed_qty, current.executed_qty)),
                str(max(update.executed_quote, current.executed_quote)),
                _str_or_none(update.fee_amount),
                update.fee_asset,
                _str_or_none(update.fee_quote),
                _str_or_none(update.fee_rate),
                to_db_ts(datetime.now(UTC)),
                client_order_id,
            ),
        )
        return self.get_by_client_id(client_order_id)

    def mark_terminal(
        self,
        client_order_id: str,
        status: OrderStatus,
        error: str,
        *,
        detach_cycle: bool = False,
    ) -> None:
        """Close a still-open row as CANCELED or FAILED; rows already terminal are left as they are."""
        self._ensure_writable()
        if status not in (OrderStatus.CANCELED, OrderStatus.FAILED):
            raise ValueError(f"mark_terminal only accepts CANCELED or FAILED; got {status}")
        self._conn.execute(
            f"""
            UPDATE orders SET
                status = ?,
                last_error = ?,
                cycle_id = {"NULL" if detach_cycle else "cycle_id"},
                updated_at = ?
            WHERE client_order_id = ? AND status IN (?, ?)
            """,
            (
                status.value,
                error[:500],
                to_db_ts(datetime.now(UTC)),
                client_order_id,
                *_NON_TERMINAL,
            ),
        )

    def link_cycle(self, client_order_id: str, cycle_id: int) -> None:
        self._ensure_writable()
        self._conn.execute(
            "UPDATE orders SET cycle_id = ? WHERE client_order_id = ? AND cycle_id IS NULL",
            (cycle_id, client_order_id),
        )
