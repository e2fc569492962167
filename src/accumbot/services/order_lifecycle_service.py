from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from accumbot.domain.models import (
    ExchangeOrder,
    FeeBreakdown,
    Order,
    OrderSide,
    OrderStatus,
)
from accumbot.persistence.interfaces.orders_repo import OrderExecutionUpdate
from accumbot.persistence.uow import UnitOfWork

logger = logging.getLogger(__name__)


def execution_update_from(
    observed: ExchangeOrder, fee: FeeBreakdown | None = None
) -> OrderExecutionUpdate:
    executed_quote = observed.cummulative_quote_qty
    price: Decimal | None = observed.price if observed.price > 0 else None
    if price is None and observed.executed_qty > 0 and executed_quote > 0:
        # market orders report price 0; keep the average fill price instead
        price = executed_quote / observed.executed_qty
    return OrderExecutionUpdate(
        status=observed.local_status,
        executed_qty=observed.executed_qty,
        executed_quote=executed_quote,
        exchange_order_id=observed.order_id or None,
        price=price,
        fee_amount=fee.amount if fee is not None else None,
        fee_asset=fee.asset if fee is not None else None,
        fee_quote=fee.quote if fee is not None else None,
        fee_rate=fee.rate(executed_quote) if fee is not None else None,
    )


def is_realized_sell(order: Order) -> bool:
    return (
        order.side == OrderSide.SELL
        and order.status == OrderStatus.FILLED
        and order.executed_qty > Decimal("0")
    )


def record_observation(
    uow: UnitOfWork,
    client_order_id: str,
    observed: ExchangeOrder,
    *,
    env: str,
    now: datetime,
    fee: FeeBreakdown | None = None,
) -> Order | None:
    """Merge an exchange view of one order into its row.

    A sell that is now FILLED with a positive quantity gets its cycle opened in the same
    transaction, so a cycle never exists for a sell that did not realize proceeds.
    """
    updated = uow.orders.apply_update(client_order_id, execution_update_from(observed, fee))
    if updated is None:
        logger.warning(
            "order_observation_without_row",
            extra={"extra": {"client_order_id": client_order_id, "status": observed.status}},
        )
        return None
    if is_realized_sell(updated) and updated.cycle_id is None:
        cycle_id = uow.cycles.open_for_sell(env, client_order_id, now)
        uow.orders.link_cycle(client_order_id, cycle_id)
        logger.info(
            "cycle_opened",
            extra={
                "extra": {
                    "cycle_id": cycle_id,
                    "client_order_id": client_order_id,
                    "executed_qty": str(updated.executed_qty),
                    "executed_quote": str(updated.executed_quote),
                }
            },
        )
        updated = uow.orders.get_by_client_id(client_order_id)
    return updated
