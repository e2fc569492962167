from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from accumbot.domain.models import Candle

DEFAULT_ATR_PCT = Decimal("0.01")
MIN_CANDLES_FOR_ATR = 6


def true_range(candle: Candle, prev_close: Decimal) -> Decimal:
    return max(
        candle.high - candle.low,
        abs(candle.high - prev_close),
        abs(candle.low - prev_close),
    )


def atr_percent(candles_newest_first: Sequence[Candle], price: Decimal) -> Decimal:
    """Average true range of the given bars as a fraction of ``price``.

    Each bar is paired with the close of the bar before it, so n bars yield n-1 ranges.
    Falls back to 1% with too few bars or an unusable price.
    """
    if len(candles_newest_first) < MIN_CANDLES_FOR_ATR or price <= 0:
        return DEFAULT_ATR_PCT
    ranges = [
        true_range(candle, candles_newest_first[idx + 1].close)
        for idx, candle in enumerate(candles_newest_first[:-1])
    ]
    atr = sum(ranges, Decimal("0")) / Decimal(len(ranges))
    return atr / price
