from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal

from accumbot.domain.models import ExchangeOrder, FeeBreakdown

MIXED_FEE_ASSET = "MIXED"
UNKNOWN_FEE_ASSET = "UNKNOWN"


def convert_fee_to_quote(
    amount: Decimal,
    asset: str,
    *,
    quote_asset: str,
    base_asset: str,
    base_price: Decimal,
    price_lookup: Callable[[str], Decimal],
) -> Decimal | None:
    """Express a commission in quote currency; None when no usable reference price exists.

    ``price_lookup`` takes a symbol such as ``BNBUSDT`` and returns 0 when unknown.
    """
    if amount == 0:
        return Decimal("0")
    asset = asset.upper()
    if asset == quote_asset:
        return amount
    if asset == base_asset:
        return amount * base_price if base_price > 0 else None
    reference = price_lookup(f"{asset}{quote_asset}")
    if reference <= 0:
        return None
    return amount * reference


def fee_from_fills(
    order: ExchangeOrder,
    *,
    quote_asset: str,
    base_asset: str,
    base_price: Decimal,
    price_lookup: Callable[[str], Decimal],
) -> FeeBreakdown | None:
    """Sum the per-fill commissions of a FULL order response.

    Returns None when the response carries no fills or a commission cannot be priced.
    """
    if not order.fills:
        return None
    amount = Decimal("0")
    quote_total = Decimal("0")
    assets: set[str] = set()
    for fill in order.fills:
        asset = fill.commission_asset.upper() or quote_asset
        assets.add(asset)
        amount += fill.commission
        quote = convert_fee_to_quote(
            fill.commission,
            asset,
            quote_asset=quote_asset,
            base_asset=base_asset,
            base_price=base_price if base_price > 0 else fill.price,
            price_lookup=price_lookup,
        )
        if quote is None:
            return None
        quote_total += quote
    fee_asset = assets.pop() if len(assets) == 1 else MIXED_FEE_ASSET
    return FeeBreakdown(amount=amount, asset=fee_asset, quote=quote_total)
