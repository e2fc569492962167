from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx
from pydantic import ValidationError as PydanticValidationError

from accumbot.adapters.exchange import ExchangeClient
from accumbot.domain.fees import UNKNOWN_FEE_ASSET
from accumbot.domain.models import (
    ExchangeError,
    ExchangeOrder,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
)
from accumbot.persistence.uow import UnitOfWorkFactory
from accumbot.services.client_order_id_service import is_engine_client_id
from accumbot.services.order_lifecycle_service import record_observation

logger = logging.getLogger(__name__)

_FETCH_ERRORS = (ExchangeError, httpx.HTTPError, PydanticValidationError, ValueError)


@dataclass(frozen=True)
class ReconcileResult:
    still_open: list[tuple[Order, ExchangeOrder]]
    missing_from_exchange: list[Order]
    import_orphans: list[ExchangeOrder]


def resolve(
    *, exchange_open_orders: list[ExchangeOrder], db_open_orders: list[Order], env: str
) -> ReconcileResult:
    exchange_by_client = {
        order.client_order_id: order for order in exchange_open_orders if order.client_order_id
    }
    db_by_client = {order.client_order_id: order for order in db_open_orders}

    still_open: list[tuple[Order, ExchangeOrder]] = []
    missing_from_exchange: list[Order] = []
    for client_order_id, order in db_by_client.items():
        exchange_match = exchange_by_client.get(client_order_id)
        if exchange_match is None:
            missing_from_exchange.append(order)
        else:
            still_open.append((order, exchange_match))

    import_orphans = [
        order
        for client_order_id, order in exchange_by_client.items()
        if client_order_id not in db_by_client and is_engine_client_id(client_order_id, env)
    ]
    return ReconcileResult(
        still_open=still_open,
        missing_from_exchange=missing_from_exchange,
        import_orphans=import_orphans,
    )


def _orphan_row(observed: ExchangeOrder, *, env: str) -> Order:
    side = OrderSide(observed.side.upper())
    order_type = (
        OrderType.MARKET if observed.type.upper() == OrderType.MARKET.value else OrderType.LIMIT
    )
    return Order(
        client_order_id=observed.client_order_id,
        exchange_order_id=observed.order_id,
        env=env,
        symbol=observed.symbol,
        side=side,
        order_type=order_type,
        status=observed.local_status,
        orig_qty=observed.orig_qty,
        price=observed.price if observed.price > 0 else None,
        executed_qty=observed.executed_qty,
        executed_quote=observed.cummulative_quote_qty,
        fee_asset=UNKNOWN_FEE_ASSET,
    )


class ReconcileService:
    """Converge local non-terminal orders with the exchange before any trading decision."""

    def __init__(
        self,
        *,
        exchange: ExchangeClient,
        uow_factory: UnitOfWorkFactory,
        env: str,
        symbol: str,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.exchange = exchange
        self.uow_factory = uow_factory
        self.env = env
        self.symbol = symbol
        self.now_fn = now_fn

    def reconcile(self) -> bool:
        """Return False when the exchange's open-order view could not be obtained."""
        try:
            exchange_open_orders = self.exchange.get_open_orders(self.symbol)
        except _FETCH_ERRORS as exc:
            logger.error(
                "reconcile_open_orders_failed",
                extra={"extra": {"symbol": self.symbol, "error_type": type(exc).__name__}},
            )
            return False

        with self.uow_factory() as uow:
            db_open_orders = uow.orders.list_non_terminal(self.env, self.symbol)

        result = resolve(
            exchange_open_orders=exchange_open_orders,
            db_open_orders=db_open_orders,
            env=self.env,
        )

        with self.uow_factory() as uow:
            for order, observed in result.still_open:
                record_observation(
                    uow, order.client_order_id, observed, env=self.env, now=self.now_fn()
                )

        closed = 0
        for order in result.missing_from_exchange:
            closed += self._settle_missing(order)

        imported = 0
        for observed in result.import_orphans:
            imported += self._import_orphan(observed)

        logger.info(
            "reconcile_finished",
            extra={
                "extra": {
                    "symbol": self.symbol,
                    "exchange_open": len(exchange_open_orders),
                    "local_open": len(db_open_orders),
                    "still_open": len(result.still_open),
                    "settled": closed,
                    "orphans_imported": imported,
                }
            },
        )
        return True

    def _settle_missing(self, order: Order) -> int:
        try:
            observed = self.exchange.get_order(
                order.symbol, client_order_id=order.client_order_id
            )
        except _FETCH_ERRORS as exc:
            logger.warning(
                "reconcile_order_lookup_failed",
                extra={
                    "extra": {
                        "client_order_id": order.client_order_id,
                        "error_type": type(exc).__name__,
                    }
                },
            )
            # an unfilled buy releases its cycle so the buy stage can pair it again
            release_cycle = order.side == OrderSide.BUY and order.executed_qty <= 0
            with self.uow_factory() as uow:
                uow.orders.mark_terminal(
                    order.client_order_id,
                    OrderStatus.CANCELED,
                    f"not found on exchange: {type(exc).__name__}: {exc}",
                    detach_cycle=release_cycle,
                )
            return 1

        with self.uow_factory() as uow:
            updated = record_observation(
                uow, order.client_order_id, observed, env=self.env, now=self.now_fn()
            )
        if updated is None:
            return 0
        logger.info(
            "reconcile_order_settled",
            extra={
                "extra": {
                    "client_order_id": order.client_order_id,
                    "previous_status": order.status.value,
                    "status": updated.status.value,
                    "executed_qty": str(updated.executed_qty),
                }
            },
        )
        return 1 if updated.is_terminal else 0

    def _import_orphan(self, observed: ExchangeOrder) -> int:
        try:
            row = _orphan_row(observed, env=self.env)
        except ValueError:
            logger.warning(
                "reconcile_orphan_unrecognized",
                extra={
                    "extra": {
                        "client_order_id": observed.client_order_id,
                        "side": observed.side,
                    }
                },
            )
            return 0
        try:
            with self.uow_factory() as uow:
                uow.orders.insert_order(row)
        except sqlite3.IntegrityError:
            return 0
        logger.warning(
            "reconcile_orphan_imported",
            extra={
                "extra": {
                    "client_order_id": row.client_order_id,
                    "side": row.side.value,
                    "status": row.status.value,
                    "orig_qty": str(row.orig_qty),
                }
            },
        )
        return 1
