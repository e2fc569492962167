from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal

from accumbot.domain.models import (
    AccountInfo,
    Candle,
    ExchangeOrder,
    OrderSide,
    OrderType,
    SymbolFilters,
)


class ExchangeClient(ABC):
    @abstractmethod
    def get_price(self, symbol: str) -> Decimal:
        """Latest trade price, or Decimal("0") when it cannot be fetched."""
        raise NotImplementedError

    @abstractmethod
    def get_filters(self, symbol: str) -> SymbolFilters | None:
        raise NotImplementedError

    @abstractmethod
    def get_account(self) -> AccountInfo:
        raise NotImplementedError

    @abstractmethod
    def get_open_orders(self, symbol: str) -> list[ExchangeOrder]:
        raise NotImplementedError

    @abstractmethod
    def get_order(
        self,
        symbol: str,
        *,
        order_id: str | None = None,
        client_order_id: str | None = None,
    ) -> ExchangeOrder:
        raise NotImplementedError

    @abstractmethod
    def cancel_order(
        self,
        symbol: str,
        *,
        order_id: str | None = None,
        client_order_id: str | None = None,
    ) -> ExchangeOrder:
        raise NotImplementedError

    @abstractmethod
    def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: Decimal,
        *,
        client_order_id: str,
        price: Decimal | None = None,
    ) -> ExchangeOrder:
        raise NotImplementedError

    def place_market_sell(self, symbol: str, quantity: Decimal, *, client_order_id: str) -> ExchangeOrder:
        return self.place_order(
            symbol, OrderSide.SELL, OrderType.MARKET, quantity, client_order_id=client_order_id
        )

    def place_limit_buy(
        self, symbol: str, quantity: Decimal, price: Decimal, *, client_order_id: str
    ) -> ExchangeOrder:
        return self.place_order(
            symbol,
            OrderSide.BUY,
            OrderType.LIMIT,
            quantity,
            client_order_id=client_order_id,
            price=price,
        )

    def get_klines(
        self, symbol: str, interval: str, *, start_ms: int, limit: int = 1000
    ) -> list[Candle]:
        del symbol, interval, start_ms, limit
        return []

    def close(self) -> None:
        """Release resources associated with the exchange client."""
        return None
