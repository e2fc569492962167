from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from decimal import Decimal

from accumbot.adapters.exchange import ExchangeClient
from accumbot.domain.fees import UNKNOWN_FEE_ASSET, convert_fee_to_quote
from accumbot.domain.models import FeeStats, Order
from accumbot.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)

FEE_SAMPLE_LIMIT = 1000


def percentile(sorted_values: Sequence[Decimal], pct: int) -> Decimal:
    """Percentile with index ``pct/100 * n``; a fractional index averages its two neighbours."""
    if not sorted_values:
        return Decimal("0")
    last = len(sorted_values) - 1
    index = pct / 100 * len(sorted_values)
    lower = min(math.floor(index), last)
    upper = min(math.ceil(index), last)
    if lower == upper:
        return sorted_values[lower]
    return (sorted_values[lower] + sorted_values[upper]) / 2


def estimate_fee_rate(
    stats: FeeStats,
    *,
    min_sample: int = 20,
    fallback_rate: Decimal = Decimal("0.0015"),
) -> tuple[Decimal, bool]:
    """Return (fee_rate, used_fallback); p90 is used only with enough fills and a positive value."""
    if stats.filled_count < min_sample or stats.p90 <= 0:
        return fallback_rate, True
    return stats.p90, False


class FeeStatsService:
    def __init__(
        self,
        *,
        exchange: ExchangeClient,
        uow_factory: UnitOfWorkFactory,
        env: str,
        symbol: str,
        base_asset: str,
        quote_asset: str,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.exchange = exchange
        self.uow_factory = uow_factory
        self.env = env
        self.symbol = symbol
        self.base_asset = base_asset
        self.quote_asset = quote_asset
        self.now_fn = now_fn

    def _order_rate(
        self, order: Order, price_lookup: Callable[[str], Decimal]
    ) -> Decimal | None:
        if order.fee_rate is not None and order.fee_rate > 0:
            return order.fee_rate
        if order.executed_quote <= 0 or not order.fee_amount:
            return None
        if order.fee_quote is not None and order.fee_quote > 0:
            return order.fee_quote / order.executed_quote
        if not order.fee_asset or order.fee_asset == UNKNOWN_FEE_ASSET:
            return None
        fee_quote = convert_fee_to_quote(
            order.fee_amount,
            order.fee_asset,
            quote_asset=self.quote_asset,
            base_asset=self.base_asset,
            base_price=price_lookup(self.symbol),
            price_lookup=price_lookup,
        )
        if fee_quote is None or fee_quote <= 0:
            return None
        return fee_quote / order.executed_quote

    def refresh(self) -> FeeStats:
        with self.uow_factory() as uow:
            orders = uow.orders.list_filled_for_fees(self.env, FEE_SAMPLE_LIMIT)

        price_cache: dict[str, Decimal] = {}

        def _price(symbol: str) -> Decimal:
            if symbol not in price_cache:
                price_cache[symbol] = self.exchange.get_price(symbol)
            return price_cache[symbol]

        rates = sorted(
            rate for rate in (self._order_rate(order, _price) for order in orders) if rate is not None
        )
        if rates:
            stats = FeeStats(
                p50=percentile(rates, 50),
                p90=percentile(rates, 90),
                sample_size=len(rates),
                filled_count=len(orders),
            )
        else:
            stats = FeeStats(
                p50=Decimal("0"), p90=Decimal("0"), sample_size=0, filled_count=len(orders)
            )

        with self.uow_factory() as uow:
            uow.snapshots.upsert_fee_stats(self.now_fn().date(), self.env, stats)

        logger.info(
            "fee_stats_refreshed",
            extra={
                "extra": {
                    "filled_orders": len(orders),
                    "rates": len(rates),
                    "p50": str(stats.p50),
                    "p90": str(stats.p90),
                }
            },
        )
        return stats
