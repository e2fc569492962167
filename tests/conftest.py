from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path

import pytest

from accumbot.adapters.exchange import ExchangeClient
from accumbot.config import Settings
from accumbot.domain.models import (
    AccountInfo,
    AssetBalance,
    Candle,
    ExchangeOrder,
    OrderSide,
    OrderType,
    SymbolFilters,
)
from accumbot.persistence.uow import UnitOfWorkFactory


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "accumbot_state.sqlite"))


@pytest.fixture
def uow_factory(tmp_path: Path) -> UnitOfWorkFactory:
    return UnitOfWorkFactory(str(tmp_path / "ledger.sqlite"))


DEFAULT_FILTERS = SymbolFilters(
    symbol="BTCUSDT",
    step_size=Decimal("0.00001"),
    tick_size=Decimal("0.01"),
    min_qty=Decimal("0.00001"),
    min_notional=Decimal("10"),
)


class FakeExchange(ExchangeClient):
    """In-memory exchange: market sells fill at once, limit buys rest on the book."""

    def __init__(
        self,
        *,
        price: Decimal = Decimal("100000"),
        base_free: Decimal = Decimal("0.012"),
        quote_free: Decimal = Decimal("1000"),
        filters: SymbolFilters | None = DEFAULT_FILTERS,
        commission_rate: Decimal = Decimal("0.001"),
    ) -> None:
        self.price = price
        self.filters = filters
        self.balances = {"BTC": base_free, "USDT": quote_free}
        self.commission_rate = commission_rate
        self.open_orders: list[ExchangeOrder] = []
        self.known_orders: dict[str, ExchangeOrder] = {}
        self.placed: list[dict[str, object]] = []
        self.candles: list[Candle] = []
        self.account_error: Exception | None = None
        self.open_orders_error: Exception | None = None
        self.place_error: Exception | None = None
        self.get_order_error: Exception | None = None
        self.sell_reports_zero_quote = False
        self.account_calls = 0
        self.get_order_calls = 0
        self._next_order_id = 1000

    def get_price(self, symbol: str) -> Decimal:
        return self.price if symbol == "BTCUSDT" else Decimal("0")

    def get_filters(self, symbol: str) -> SymbolFilters | None:
        return self.filters

    def get_account(self) -> AccountInfo:
        self.account_calls += 1
        if self.account_error is not None:
            raise self.account_error
        return AccountInfo(
            balances=[
                AssetBalance(asset=asset, free=free, locked=Decimal("0"))
                for asset, free in self.balances.items()
            ]
        )

    def get_open_orders(self, symbol: str) -> list[ExchangeOrder]:
        if self.open_orders_error is not None:
            raise self.open_orders_error
        return list(self.open_orders)

    def get_order(self, symbol, *, order_id=None, client_order_id=None) -> ExchangeOrder:
        self.get_order_calls += 1
        if self.get_order_error is not None:
            raise self.get_order_error
        return self.known_orders[client_order_id]

    def cancel_order(self, symbol, *, order_id=None, client_order_id=None) -> ExchangeOrder:
        order = self.known_orders[client_order_id].model_copy(update={"status": "CANCELED"})
        self.known_orders[client_order_id] = order
        self.open_orders = [o for o in self.open_orders if o.client_order_id != client_order_id]
        return order

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
        if self.place_error is not None:
            raise self.place_error
        self.placed.append(
            {
                "symbol": symbol,
                "side": side,
                "type": order_type,
                "quantity": quantity,
                "price": price,
                "client_order_id": client_order_id,
            }
        )
        self._next_order_id += 1
        if order_type == OrderType.MARKET:
            quote = quantity * self.price
            commission = quote * self.commission_rate
            filled = ExchangeOrder(
                symbol=symbol,
                orderId=self._next_order_id,
                clientOrderId=client_order_id,
                price=Decimal("0"),
                origQty=quantity,
                executedQty=quantity,
                cummulativeQuoteQty=quote,
                status="FILLED",
                type=order_type.value,
                side=side.value,
                fills=[
                    {
                        "price": str(self.price),
                        "qty": str(quantity),
                        "commission": str(commission),
                        "commissionAsset": "USDT",
                    }
                ],
            )
            self.known_orders[client_order_id] = filled
            if self.sell_reports_zero_quote:
                return filled.model_copy(
                    update={"cummulative_quote_qty": Decimal("0"), "fills": []}
                )
            return filled
        resting = ExchangeOrder(
            symbol=symbol,
            orderId=self._next_order_id,
            clientOrderId=client_order_id,
            price=price or Decimal("0"),
            origQty=quantity,
            status="NEW",
            type=order_type.value,
            side=side.value,
        )
        self.known_orders[client_order_id] = resting
        self.open_orders.append(resting)
        return resting

    def get_klines(self, symbol, interval, *, start_ms, limit=1000) -> list[Candle]:
        return [c for c in self.candles if c.open_time >= start_ms][:limit]


@pytest.fixture
def fake_exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def make_exchange():
    return FakeExchange
