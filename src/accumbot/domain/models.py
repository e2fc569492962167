from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ValidationError(ValueError):
    """Raised when an order candidate violates symbol filters."""


class ExchangeError(RuntimeError):
    """Raised when an exchange request fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: int | str | None = None,
        error_message: str | None = None,
        request_path: str | None = None,
        request_method: str | None = None,
        request_params: dict[str, object] | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.error_message = error_message
        self.request_path = request_path
        self.request_method = request_method
        self.request_params = request_params
        self.response_body = response_body

    @property
    def is_rejection(self) -> bool:
        """True when the exchange answered and refused; false for transport-level failures."""
        return self.status_code is not None and 400 <= self.status_code < 500


def parse_decimal(value: object) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        normalized = value.strip().replace(",", ".")
        try:
            return Decimal(normalized)
        except InvalidOperation as exc:
            raise ValueError(f"Cannot parse decimal from {value!r}") from exc
    raise TypeError(f"Cannot parse decimal from {type(value)!r}")


class BotMode(StrEnum):
    LIVE = "live"
    TESTNET = "testnet"
    PAPER = "paper"


class OrderSide(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(StrEnum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"


class OrderStatus(StrEnum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"


class CycleStatus(StrEnum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


TERMINAL_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.FAILED})

_EXCHANGE_STATUS_MAP = {
    "NEW": OrderStatus.NEW,
    "PENDING_NEW": OrderStatus.NEW,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELED,
    "PENDING_CANCEL": OrderStatus.CANCELED,
    "EXPIRED": OrderStatus.CANCELED,
    "EXPIRED_IN_MATCH": OrderStatus.CANCELED,
    "REJECTED": OrderStatus.FAILED,
}


def map_exchange_status(raw: str | None) -> OrderStatus:
    if raw is None:
        return OrderStatus.NEW
    return _EXCHANGE_STATUS_MAP.get(raw.strip().upper(), OrderStatus.NEW)


class SymbolFilters(BaseModel):
    symbol: str
    step_size: Decimal
    tick_size: Decimal
    min_qty: Decimal = Decimal("0")
    min_notional: Decimal = Decimal("0")

    def is_tradeable(self) -> bool:
        return self.step_size > 0 and self.tick_size > 0 and self.min_notional >= 0


class _BinanceModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ExchangeFill(_BinanceModel):
    price: Decimal
    qty: Decimal
    commission: Decimal = Decimal("0")
    commission_asset: str = Field(default="", alias="commissionAsset")


class ExchangeOrder(_BinanceModel):
    symbol: str
    order_id: str = Field(alias="orderId")
    client_order_id: str = Field(alias="clientOrderId")
    price: Decimal = Decimal("0")
    orig_qty: Decimal = Field(default=Decimal("0"), alias="origQty")
    executed_qty: Decimal = Field(default=Decimal("0"), alias="executedQty")
    cummulative_quote_qty: Decimal = Field(default=Decimal("0"), alias="cummulativeQuoteQty")
    status: str
    type: str = OrderType.LIMIT.value
    side: str
    time: int | None = None
    update_time: int | None = Field(default=None, alias="updateTime")
    transact_time: int | None = Field(default=None, alias="transactTime")
    fills: list[ExchangeFill] = Field(default_factory=list)

    @field_validator("order_id", mode="before")
    def coerce_order_id(cls, value: object) -> str:
        return str(value)

    @property
    def local_status(self) -> OrderStatus:
        return map_exchange_status(self.status)


class AssetBalance(_BinanceModel):
    asset: str
    free: Decimal
    locked: Decimal = Decimal("0")


class AccountInfo(_BinanceModel):
    balances: list[AssetBalance] = Field(default_factory=list)
    can_trade: bool = Field(default=True, alias="canTrade")

    def balance(self, asset: str) -> AssetBalance | None:
        wanted = asset.upper()
        for item in self.balances:
            if item.asset.upper() == wanted:
                return item
        return None


class TickerPrice(_BinanceModel):
    symbol: str
    price: Decimal


@dataclass(frozen=True)
class Candle:
    symbol: str
    interval: str
    open_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    close_time: int


@dataclass(frozen=True)
class Order:
    client_order_id: str
    env: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    status: OrderStatus
    orig_qty: Decimal
    price: Decimal | None = None
    exchange_order_id: str | None = None
    executed_qty: Decimal = Decimal("0")
    executed_quote: Decimal = Decimal("0")
    fee_amount: Decimal | None = None
    fee_asset: str | None = None
    fee_quote: Decimal | None = None
    fee_rate: Decimal | None = None
    discount_pct: Decimal | None = None
    cycle_id: int | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class Cycle:
    cycle_id: int
    env: str
    started_at: datetime
    status: CycleStatus = CycleStatus.OPEN


@dataclass(frozen=True)
class TradingSettings:
    trading_enabled: bool = True
    dry_run: bool = True
    max_open_buys: int = 2
    min_discount_net_fees: Decimal = Decimal("0.6")
    updated_at: datetime | None = None


@dataclass(frozen=True)
class FeeStats:
    p50: Decimal
    p90: Decimal
    sample_size: int
    filled_count: int = 0


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    asset: str | None
    quote: Decimal

    def rate(self, executed_quote: Decimal) -> Decimal | None:
        if executed_quote <= 0:
            return None
        return self.quote / executed_quote
