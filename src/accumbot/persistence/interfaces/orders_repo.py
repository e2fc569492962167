from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from accumbot.domain.models import Order, OrderSide, OrderStatus


@dataclass(frozen=True)
class OrderExecutionUpdate:
    status: OrderStatus
    executed_qty: Decimal
    executed_quote: Decimal
    exchange_order_id: str | None = None
    price: Decimal | None = None
    fee_amount: Decimal | None = None
    fee_asset: str | None = None
    fee_quote: Decimal | None = None
    fee_rate: Decimal | None = None


class OrdersRepoProtocol(Protocol):
    def insert_order(self, order: Order) -> None: ...

    def get_by_client_id(self, client_order_id: str) -> Order | None: ...

    def list_non_terminal(self, env: str, symbol: str | None = None) -> list[Order]: ...

    def latest_filled(self, env: str, side: OrderSide) -> Order | None: ...

    def has_pending(self, env: str, side: OrderSide) -> bool: ...

    def count_open(self, env: str, side: OrderSide) -> int: ...

    def buys_for_cycle(self, cycle_id: int) -> list[Order]: ...

    def list_for_cycle(self, cycle_id: int) -> list[Order]: ...

    def list_filled_for_fees(self, env: str, limit: int) -> list[Order]: ...

    def apply_update(self, client_order_id: str, update: OrderExecutionUpdate) -> Order | None: ...

    def mark_terminal(
        self,
        client_order_id: str,
        status: OrderStatus,
        error: str,
        *,
        detach_cycle: bool = False,
    ) -> None: ...

    def link_cycle(self, client_order_id: str, cycle_id: int) -> None: ...
