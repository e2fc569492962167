from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from accumbot.config import Settings
from accumbot.domain.decision_codes import CapReason, Decision, ReasonCode
from accumbot.domain.models import (
    Candle,
    CycleStatus,
    ExchangeError,
    ExchangeOrder,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    SymbolFilters,
    TradingSettings,
    ValidationError,
)
from accumbot.services.client_order_id_service import ClientOrderIdGenerator
from accumbot.services.cycle_pipeline import (
    CyclePipeline,
    MarketSnapshot,
    compute_discount,
    find_duplicate_buy,
    is_definitive_failure,
)
from accumbot.services.reconcile_service import ReconcileService

ENV = "testnet"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
FILTERS = SymbolFilters(
    symbol="BTCUSDT",
    step_size=Decimal("0.00001"),
    tick_size=Decimal("0.01"),
    min_qty=Decimal("0.00001"),
    min_notional=Decimal("10"),
)


def _settings(**overrides) -> Settings:
    return Settings(BOT_MODE=ENV, **overrides)


def _pipeline(exchange, uow_factory, *, now=None, sleeps=None, settings=None) -> CyclePipeline:
    kwargs = {}
    if now is not None:
        kwargs["now_fn"] = lambda: now
    return CyclePipeline(
        settings=settings or _settings(),
        exchange=exchange,
        uow_factory=uow_factory,
        id_generator=ClientOrderIdGenerator(env=ENV, now_ms_fn=lambda: 1_772_366_400_000),
        sleep_fn=(sleeps.append if sleeps is not None else (lambda _seconds: None)),
        **kwargs,
    )


def _snapshot(*, base_free="0.012", quote_free="1000", price="100000") -> MarketSnapshot:
    return MarketSnapshot(
        price=Decimal(price),
        filters=FILTERS,
        base_free=Decimal(base_free),
        quote_free=Decimal(quote_free),
    )


def _seed_settings(uow_factory, **updates) -> None:
    with uow_factory() as uow:
        uow.settings.ensure_default()
        if updates:
            uow.settings.update(**updates)


def _insert_filled_sell(
    uow_factory,
    *,
    client_order_id: str = "ASELL_testnet_1",
    at: datetime = T0,
    executed_quote: str = "500",
    fee_quote: str | None = "0.75",
    with_cycle: bool = True,
) -> int | None:
    with uow_factory() as uow:
        cycle_id = uow.cycles.open_for_sell(ENV, client_order_id, at) if with_cycle else None
        uow.orders.insert_order(
            Order(
                client_order_id=client_order_id,
                env=ENV,
                symbol="BTCUSDT",
                side=OrderSide.SELL,
                order_type=OrderType.MARKET,
                status=OrderStatus.FILLED,
                orig_qty=Decimal("0.005"),
                executed_qty=Decimal("0.005"),
                executed_quote=Decimal(executed_quote),
                fee_quote=Decimal(fee_quote) if fee_quote is not None else None,
                fee_asset="USDT" if fee_quote is not None else None,
                cycle_id=cycle_id,
                created_at=at,
                updated_at=at,
            )
        )
    return cycle_id


def _order_count(uow_factory) -> int:
    with sqlite3.connect(uow_factory.db_path) as conn:
        return int(conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0])


# sell stage


def test_sell_gate_skips_at_23h59m_after_last_sell(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory, at=T0)
    pipeline = _pipeline(make_exchange(), uow_factory, now=T0 + timedelta(hours=23, minutes=59))

    outcome = pipeline.run_sell_stage(_snapshot(), dry_run=True)

    assert outcome.decision == Decision.SKIP
    assert outcome.reason == ReasonCode.SELL_GATE_WAIT
    assert outcome.details["remaining_seconds"] == 60


def test_sell_gate_opens_just_after_interval(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory, at=T0)
    pipeline = _pipeline(make_exchange(), uow_factory, now=T0 + timedelta(hours=24, seconds=1))

    outcome = pipeline.run_sell_stage(_snapshot(), dry_run=True)

    assert outcome.decision == Decision.PLACE
    assert outcome.reason == ReasonCode.SELL_DRY_RUN


def test_sell_sizing_scenario_places_tenth_of_free_balance(make_exchange, uow_factory) -> None:
    exchange = make_exchange()
    pipeline = _pipeline(exchange, uow_factory)

    outcome = pipeline.run_sell_stage(_snapshot(base_free="0.012"), dry_run=False)

    assert outcome.decision == Decision.PLACE
    assert outcome.reason == ReasonCode.SELL_SUBMITTED
    assert Decimal(outcome.details["raw_qty"]) == Decimal("0.0012")
    assert Decimal(outcome.details["notional"]) == Decimal("120")
    assert len(exchange.placed) == 1
    assert exchange.placed[0]["side"] == OrderSide.SELL
    assert exchange.placed[0]["type"] == OrderType.MARKET
    assert exchange.placed[0]["quantity"] == Decimal("0.0012")

    with uow_factory() as uow:
        row = uow.orders.get_by_client_id(outcome.client_order_id)
        assert row is not None
        assert row.status == OrderStatus.FILLED
        assert row.executed_quote == Decimal("120")
        assert row.fee_quote == Decimal("0.12")
        assert row.price == Decimal("100000")
        assert row.cycle_id is not None
        cycle = uow.cycles.get(row.cycle_id)
    assert cycle is not None
    assert cycle.status == CycleStatus.OPEN


def test_sell_dry_run_places_nothing(make_exchange, uow_factory) -> None:
    exchange = make_exchange()
    outcome = _pipeline(exchange, uow_factory).run_sell_stage(_snapshot(), dry_run=True)

    assert outcome.decision == Decision.PLACE
    assert outcome.details["dry_run"] is True
    assert exchange.placed == []
    assert _order_count(uow_factory) == 0


@pytest.mark.parametrize(
    ("base_free", "reason"),
    [
        ("0.0004", ReasonCode.SELL_BELOW_DUST),
        ("0.0009", ReasonCode.SELL_MIN_NOTIONAL),
    ],
)
def test_sell_skips_small_balances(make_exchange, uow_factory, base_free, reason) -> None:
    exchange = make_exchange()
    outcome = _pipeline(exchange, uow_factory).run_sell_stage(
        _snapshot(base_free=base_free), dry_run=False
    )

    assert outcome.decision == Decision.SKIP
    assert outcome.reason == reason
    assert exchange.placed == []


def test_sell_skips_zero_quantity_after_quantize(make_exchange, uow_factory) -> None:
    coarse = MarketSnapshot(
        price=Decimal("100000"),
        filters=FILTERS.model_copy(update={"step_size": Decimal("0.01")}),
        base_free=Decimal("0.05"),
        quote_free=Decimal("0"),
    )
    outcome = _pipeline(make_exchange(), uow_factory).run_sell_stage(coarse, dry_run=False)

    assert outcome.reason == ReasonCode.SELL_ZERO_AFTER_QUANTIZE


@pytest.mark.parametrize("base_free", ["NaN", "Infinity"])
def test_sell_skips_non_finite_balance(make_exchange, uow_factory, base_free) -> None:
    exchange = make_exchange()

    outcome = _pipeline(exchange, uow_factory).run_sell_stage(
        _snapshot(base_free=base_free), dry_run=True
    )

    assert outcome.decision == Decision.SKIP
    assert outcome.reason == ReasonCode.SELL_NON_FINITE
    assert outcome.details["base_free"] == base_free
    assert "qty" not in outcome.details
    assert exchange.placed == []


def test_sell_skips_while_previous_sell_is_pending(make_exchange, uow_factory) -> None:
    with uow_factory() as uow:
        uow.orders.insert_order(
            Order(
                client_order_id="ASELL_testnet_5",
                env=ENV,
                symbol="BTCUSDT",
                side=OrderSide.SELL,
                order_type=OrderType.MARKET,
                status=OrderStatus.NEW,
                orig_qty=Decimal("0.001"),
            )
        )
    outcome = _pipeline(make_exchange(), uow_factory).run_sell_stage(_snapshot(), dry_run=False)

    assert outcome.reason == ReasonCode.SELL_PENDING_ORDER


def test_sell_rejection_marks_row_failed_without_cycle(make_exchange, uow_factory) -> None:
    exchange = make_exchange()
    exchange.place_error = ExchangeError("rejected", status_code=400, error_code=-2010)

    outcome = _pipeline(exchange, uow_factory).run_sell_stage(_snapshot(), dry_run=False)

    assert outcome.decision == Decision.FAIL
    assert outcome.details["definitive_failure"] is True
    with uow_factory() as uow:
        row = uow.orders.get_by_client_id(outcome.client_order_id)
        assert row is not None
        assert row.status == OrderStatus.FAILED
        assert row.cycle_id is None
        assert uow.cycles.list_recent(ENV, 10) == []


def test_sell_transport_error_leaves_row_for_reconciliation(make_exchange, uow_factory) -> None:
    exchange = make_exchange()
    exchange.place_error = httpx.ReadTimeout("timed out")

    outcome = _pipeline(exchange, uow_factory).run_sell_stage(_snapshot(), dry_run=False)

    assert outcome.decision == Decision.FAIL
    with uow_factory() as uow:
        row = uow.orders.get_by_client_id(outcome.client_order_id)
    assert row is not None
    assert row.status == OrderStatus.NEW


def test_sell_refetches_order_when_fill_reports_zero_quote(make_exchange, uow_factory) -> None:
    exchange = make_exchange()
    exchange.sell_reports_zero_quote = True
    sleeps: list[float] = []

    outcome = _pipeline(exchange, uow_factory, sleeps=sleeps).run_sell_stage(
        _snapshot(), dry_run=False
    )

    assert outcome.decision == Decision.PLACE
    assert sleeps == [1.0]
    assert exchange.get_order_calls == 1
    with uow_factory() as uow:
        row = uow.orders.get_by_client_id(outcome.client_order_id)
    assert row is not None
    assert row.executed_quote == Decimal("120")
    assert row.cycle_id is not None


# buy stage


def test_buy_sizing_scenario_caps_spend_by_fresh_free_balance(make_exchange, uow_factory) -> None:
    cycle_id = _insert_filled_sell(uow_factory, executed_quote="500.00", fee_quote="0.75")
    exchange = make_exchange(quote_free=Decimal("300"))
    trading = TradingSettings(dry_run=False, min_discount_net_fees=Decimal("0"))

    outcome = _pipeline(exchange, uow_factory).run_buy_stage(
        _snapshot(quote_free="1000"), trading, fee_rate=Decimal("0.0015"), dry_run=False
    )

    assert outcome.decision == Decision.PLACE
    assert outcome.reason == ReasonCode.BUY_SUBMITTED
    assert Decimal(outcome.details["net_proceeds"]) == Decimal("499.25")
    assert outcome.details["net_is_estimate"] is False
    assert Decimal(outcome.details["spend"]) == Decimal("300")
    assert outcome.details["cap_reason"] == CapReason.CAP_BY_FREE.value
    assert outcome.details["balance_source"] == "fresh"
    assert Decimal(outcome.details["discount"]) == Decimal("0.008")
    assert Decimal(outcome.details["target_price"]) == Decimal("100000") * Decimal("0.992")

    placed = exchange.placed[0]
    assert placed["side"] == OrderSide.BUY
    assert placed["price"] == Decimal("99200")
    assert placed["quantity"] == Decimal("0.00302")
    with uow_factory() as uow:
        row = uow.orders.get_by_client_id(outcome.client_order_id)
    assert row is not None
    assert row.cycle_id == cycle_id
    assert row.discount_pct == Decimal("0.8")
    assert row.status == OrderStatus.NEW


def test_buy_uses_snapshot_when_balance_refresh_fails(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory)
    exchange = make_exchange()
    exchange.account_error = httpx.ConnectError("down")

    outcome = _pipeline(exchange, uow_factory).run_buy_stage(
        _snapshot(quote_free="300"), TradingSettings(), fee_rate=Decimal("0.0015"), dry_run=True
    )

    assert outcome.reason == ReasonCode.BUY_DRY_RUN
    assert outcome.details["balance_source"] == "snapshot"
    assert Decimal(outcome.details["spend"]) == Decimal("300")


def test_buy_estimates_net_proceeds_when_no_fee_recorded(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory, executed_quote="500", fee_quote=None)

    outcome = _pipeline(make_exchange(), uow_factory).run_buy_stage(
        _snapshot(), TradingSettings(), fee_rate=Decimal("0.0015"), dry_run=True
    )

    assert outcome.details["net_is_estimate"] is True
    assert Decimal(outcome.details["net_proceeds"]) == Decimal("499")
    assert outcome.details["cap_reason"] == CapReason.NONE.value


def test_buy_skips_non_finite_recorded_fee(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory, fee_quote="NaN")
    exchange = make_exchange()

    outcome = _pipeline(exchange, uow_factory).run_buy_stage(
        _snapshot(), TradingSettings(), fee_rate=Decimal("0.0015"), dry_run=False
    )

    assert outcome.decision == Decision.SKIP
    assert outcome.reason == ReasonCode.BUY_NON_FINITE
    assert exchange.placed == []


def test_buy_skips_non_finite_quote_balance(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory)
    exchange = make_exchange()
    exchange.account_error = httpx.ConnectError("down")

    outcome = _pipeline(exchange, uow_factory).run_buy_stage(
        _snapshot(quote_free="NaN"), TradingSettings(), fee_rate=Decimal("0.0015"), dry_run=False
    )

    assert outcome.decision == Decision.SKIP
    assert outcome.reason == ReasonCode.BUY_NON_FINITE
    assert outcome.details["balance_source"] == "snapshot"
    assert exchange.placed == []
    with uow_factory() as uow:
        assert uow.orders.count_open(ENV, OrderSide.BUY) == 0


def test_buy_discount_widens_with_volatility(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory)
    with uow_factory() as uow:
        uow.candles.upsert_many(
            [
                Candle(
                    symbol="BTCUSDT",
                    interval="15m",
                    open_time=idx * 900_000,
                    open=Decimal("100000"),
                    high=Decimal("102000"),
                    low=Decimal("98000"),
                    close=Decimal("100000"),
                    volume=Decimal("1"),
                    close_time=idx * 900_000 + 899_999,
                )
                for idx in range(10)
            ]
        )

    outcome = _pipeline(make_exchange(), uow_factory).run_buy_stage(
        _snapshot(), TradingSettings(), fee_rate=Decimal("0.0015"), dry_run=True
    )

    assert Decimal(outcome.details["atr_pct"]) == Decimal("0.04")
    assert Decimal(outcome.details["discount"]) == Decimal("0.02")
    assert Decimal(outcome.details["target_price"]) == Decimal("98000")


def test_buy_skips_near_duplicate_open_order(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory)
    exchange = make_exchange()
    exchange.open_orders.append(
        ExchangeOrder(
            symbol="BTCUSDT",
            orderId=1,
            clientOrderId="manual-ladder-1",
            price=Decimal("99203"),
            origQty=Decimal("0.001"),
            status="NEW",
            side="BUY",
        )
    )
    trading = TradingSettings(dry_run=False, min_discount_net_fees=Decimal("0"))

    outcome = _pipeline(exchange, uow_factory).run_buy_stage(
        _snapshot(), trading, fee_rate=Decimal("0.0015"), dry_run=False
    )

    assert outcome.decision == Decision.SKIP
    assert outcome.reason == ReasonCode.BUY_DUPLICATE
    assert outcome.details["duplicate_client_order_id"] == "manual-ladder-1"
    assert exchange.placed == []


def test_find_duplicate_buy_uses_strict_absolute_tolerance() -> None:
    resting = ExchangeOrder(
        symbol="BTCUSDT",
        orderId=7,
        clientOrderId="ABUY_testnet_7",
        price=Decimal("99200"),
        status="NEW",
        side="BUY",
    )
    sell_side = resting.model_copy(update={"side": "SELL", "client_order_id": "x"})
    partial = resting.model_copy(update={"status": "PARTIALLY_FILLED", "client_order_id": "y"})

    assert find_duplicate_buy([resting], Decimal("99203"), Decimal("5")) is resting
    assert find_duplicate_buy([resting], Decimal("99205"), Decimal("5")) is None
    assert find_duplicate_buy([sell_side, partial], Decimal("99200"), Decimal("5")) is None


def test_compute_discount_floor_and_atr_branch() -> None:
    floor = compute_discount(
        fee_rate=Decimal("0.0015"),
        min_discount_pct=Decimal("0.6"),
        margin=Decimal("0.005"),
        atr_pct=Decimal("0.01"),
    )
    wide = compute_discount(
        fee_rate=Decimal("0.0015"),
        min_discount_pct=Decimal("0.6"),
        margin=Decimal("0.005"),
        atr_pct=Decimal("0.05"),
    )

    assert floor == Decimal("0.014")
    assert wide == Decimal("0.025")


def test_buy_pairing_allows_one_buy_per_cycle(make_exchange, uow_factory) -> None:
    cycle_id = _insert_filled_sell(uow_factory)
    exchange = make_exchange()
    pipeline = _pipeline(exchange, uow_factory)
    trading = TradingSettings(dry_run=False)

    first = pipeline.run_buy_stage(_snapshot(), trading, fee_rate=Decimal("0.0015"), dry_run=False)
    second = pipeline.run_buy_stage(_snapshot(), trading, fee_rate=Decimal("0.0015"), dry_run=False)

    assert first.decision == Decision.PLACE
    assert second.decision == Decision.SKIP
    assert second.reason == ReasonCode.BUY_ALREADY_PAIRED
    with uow_factory() as uow:
        assert len(uow.orders.buys_for_cycle(cycle_id)) == 1
    assert len(exchange.placed) == 1


def test_definitive_buy_rejection_frees_cycle_for_retry(make_exchange, uow_factory) -> None:
    cycle_id = _insert_filled_sell(uow_factory)
    exchange = make_exchange()
    exchange.place_error = ExchangeError("insufficient balance", status_code=400, error_code=-2010)
    pipeline = _pipeline(exchange, uow_factory)
    trading = TradingSettings(dry_run=False)

    failed = pipeline.run_buy_stage(_snapshot(), trading, fee_rate=Decimal("0.0015"), dry_run=False)

    assert failed.decision == Decision.FAIL
    with uow_factory() as uow:
        row = uow.orders.get_by_client_id(failed.client_order_id)
        assert row is not None
        assert row.status == OrderStatus.FAILED
        assert row.cycle_id is None
        assert uow.orders.buys_for_cycle(cycle_id) == []

    exchange.place_error = None
    retried = pipeline.run_buy_stage(
        _snapshot(), trading, fee_rate=Decimal("0.0015"), dry_run=False
    )

    assert retried.decision == Decision.PLACE
    with uow_factory() as uow:
        assert len(uow.orders.buys_for_cycle(cycle_id)) == 1


def test_buy_transport_failure_keeps_cycle_paired(make_exchange, uow_factory) -> None:
    cycle_id = _insert_filled_sell(uow_factory)
    exchange = make_exchange()
    exchange.place_error = httpx.ReadTimeout("timed out")
    pipeline = _pipeline(exchange, uow_factory)
    trading = TradingSettings(dry_run=False)

    failed = pipeline.run_buy_stage(_snapshot(), trading, fee_rate=Decimal("0.0015"), dry_run=False)
    again = pipeline.run_buy_stage(_snapshot(), trading, fee_rate=Decimal("0.0015"), dry_run=False)

    assert failed.decision == Decision.FAIL
    assert failed.details["definitive_failure"] is False
    assert again.reason == ReasonCode.BUY_ALREADY_PAIRED
    with uow_factory() as uow:
        buys = uow.orders.buys_for_cycle(cycle_id)
    assert [buy.status for buy in buys] == [OrderStatus.NEW]


def test_buy_lost_in_transit_is_released_by_reconcile_and_retried(
    make_exchange, uow_factory
) -> None:
    cycle_id = _insert_filled_sell(uow_factory)
    exchange = make_exchange()
    exchange.place_error = httpx.ConnectError("connection reset")
    pipeline = _pipeline(exchange, uow_factory)
    trading = TradingSettings(dry_run=False)
    failed = pipeline.run_buy_stage(_snapshot(), trading, fee_rate=Decimal("0.0015"), dry_run=False)
    assert failed.decision == Decision.FAIL

    exchange.place_error = None
    exchange.get_order_error = ExchangeError(
        "Order does not exist.", status_code=400, error_code=-2013
    )
    reconciler = ReconcileService(
        exchange=exchange, uow_factory=uow_factory, env=ENV, symbol="BTCUSDT", now_fn=lambda: T0
    )
    assert reconciler.reconcile() is True

    retried = pipeline.run_buy_stage(
        _snapshot(), trading, fee_rate=Decimal("0.0015"), dry_run=False
    )

    assert retried.decision == Decision.PLACE
    assert retried.client_order_id != failed.client_order_id
    assert len(exchange.placed) == 1
    with uow_factory() as uow:
        lost = uow.orders.get_by_client_id(failed.client_order_id)
        (paired,) = uow.orders.buys_for_cycle(cycle_id)
    assert lost is not None
    assert lost.status == OrderStatus.CANCELED
    assert lost.cycle_id is None
    assert paired.client_order_id == retried.client_order_id


def test_buy_skips_without_filled_sell(make_exchange, uow_factory) -> None:
    outcome = _pipeline(make_exchange(), uow_factory).run_buy_stage(
        _snapshot(), TradingSettings(), fee_rate=Decimal("0.0015"), dry_run=True
    )

    assert outcome.reason == ReasonCode.BUY_NO_FILLED_SELL


def test_buy_skips_sell_without_cycle(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory, with_cycle=False)

    outcome = _pipeline(make_exchange(), uow_factory).run_buy_stage(
        _snapshot(), TradingSettings(), fee_rate=Decimal("0.0015"), dry_run=True
    )

    assert outcome.reason == ReasonCode.BUY_LEGACY_SELL


def test_buy_skips_below_absolute_minimum(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory)
    exchange = make_exchange(quote_free=Decimal("5"))

    outcome = _pipeline(exchange, uow_factory).run_buy_stage(
        _snapshot(), TradingSettings(), fee_rate=Decimal("0.0015"), dry_run=False
    )

    assert outcome.reason == ReasonCode.BUY_BELOW_MIN_NOTIONAL
    assert exchange.placed == []


def test_buy_skips_when_max_open_buys_reached(make_exchange, uow_factory) -> None:
    _insert_filled_sell(uow_factory)
    with uow_factory() as uow:
        uow.orders.insert_order(
            Order(
                client_order_id="ABUY_testnet_9",
                env=ENV,
                symbol="BTCUSDT",
                side=OrderSide.BUY,
                order_type=OrderType.LIMIT,
                status=OrderStatus.NEW,
                orig_qty=Decimal("0.001"),
                price=Decimal("90000"),
            )
        )

    outcome = _pipeline(make_exchange(), uow_factory).run_buy_stage(
        _snapshot(),
        TradingSettings(max_open_buys=1),
        fee_rate=Decimal("0.0015"),
        dry_run=False,
    )

    assert outcome.reason == ReasonCode.BUY_MAX_OPEN_BUYS


def test_is_definitive_failure_classification() -> None:
    assert is_definitive_failure(ValidationError("below min_qty"))
    assert is_definitive_failure(ExchangeError("bad", status_code=400))
    assert not is_definitive_failure(ExchangeError("unavailable", status_code=503))
    assert not is_definitive_failure(ExchangeError("no response"))
    assert not is_definitive_failure(httpx.ConnectError("down"))


# iteration driver


def test_iteration_sells_then_pairs_buy_with_new_cycle(make_exchange, uow_factory) -> None:
    _seed_settings(uow_factory, dry_run=False)
    exchange = make_exchange()

    result = _pipeline(exchange, uow_factory, settings=_settings()).run_iteration()

    assert result.completed
    assert result.sell is not None and result.sell.reason == ReasonCode.SELL_SUBMITTED
    assert result.buy is not None and result.buy.reason == ReasonCode.BUY_SUBMITTED
    with uow_factory() as uow:
        sell = uow.orders.get_by_client_id(result.sell.client_order_id)
        buy = uow.orders.get_by_client_id(result.buy.client_order_id)
    assert sell is not None and buy is not None
    assert sell.cycle_id is not None
    assert buy.cycle_id == sell.cycle_id
    assert buy.discount_pct == Decimal("1.4")
    assert buy.price == Decimal("98600")


def test_second_iteration_adds_no_rows(make_exchange, uow_factory) -> None:
    _seed_settings(uow_factory, dry_run=False)
    exchange = make_exchange()
    pipeline = CyclePipeline(settings=_settings(), exchange=exchange, uow_factory=uow_factory)

    first = pipeline.run_iteration()
    rows_after_first = _order_count(uow_factory)
    second = pipeline.run_iteration()

    assert first.completed and second.completed
    assert rows_after_first == 2
    assert _order_count(uow_factory) == rows_after_first
    assert second.sell is not None and second.sell.reason == ReasonCode.SELL_GATE_WAIT
    assert second.buy is not None and second.buy.reason == ReasonCode.BUY_ALREADY_PAIRED
    assert len(exchange.placed) == 2


def test_iteration_aborts_on_sell_failure_before_buy(make_exchange, uow_factory) -> None:
    _seed_settings(uow_factory, dry_run=False)
    _insert_filled_sell(uow_factory, at=T0 - timedelta(days=3))
    exchange = make_exchange()
    exchange.place_error = ExchangeError("rejected", status_code=400)

    result = _pipeline(exchange, uow_factory, now=T0).run_iteration()

    assert result.reason == ReasonCode.ITERATION_SELL_FAILED
    assert result.sell is not None and result.sell.decision == Decision.FAIL
    assert result.buy is None


def test_iteration_aborts_when_reconcile_fails(make_exchange, uow_factory) -> None:
    _seed_settings(uow_factory, dry_run=False)
    exchange = make_exchange()
    exchange.open_orders_error = httpx.ConnectError("down")

    result = _pipeline(exchange, uow_factory).run_iteration()

    assert result.reason == ReasonCode.ITERATION_RECONCILE_FAILED
    assert exchange.account_calls == 0


def test_iteration_aborts_without_settings(make_exchange, uow_factory) -> None:
    result = _pipeline(make_exchange(), uow_factory).run_iteration()

    assert result.reason == ReasonCode.ITERATION_SETTINGS_MISSING


def test_iteration_aborts_when_trading_disabled(make_exchange, uow_factory) -> None:
    _seed_settings(uow_factory, trading_enabled=False, dry_run=False)

    result = _pipeline(make_exchange(), uow_factory).run_iteration()

    assert result.reason == ReasonCode.ITERATION_TRADING_DISABLED


def test_trading_disabled_still_evaluates_in_dry_run(make_exchange, uow_factory) -> None:
    _seed_settings(uow_factory, trading_enabled=False, dry_run=True)
    exchange = make_exchange()

    result = _pipeline(exchange, uow_factory).run_iteration()

    assert result.completed
    assert result.sell is not None and result.sell.reason == ReasonCode.SELL_DRY_RUN
    assert exchange.placed == []


def test_env_dry_run_overrides_stored_live_setting(make_exchange, uow_factory) -> None:
    _seed_settings(uow_factory, dry_run=False)
    exchange = make_exchange()

    result = _pipeline(exchange, uow_factory, settings=_settings(DRY_RUN=True)).run_iteration()

    assert result.sell is not None and result.sell.reason == ReasonCode.SELL_DRY_RUN
    assert exchange.placed == []


@pytest.mark.parametrize(
    ("mutate", "reason"),
    [
        (lambda ex: setattr(ex, "price", Decimal("0")), ReasonCode.ITERATION_PRICE_UNAVAILABLE),
        (lambda ex: setattr(ex, "price", Decimal("NaN")), ReasonCode.ITERATION_PRICE_UNAVAILABLE),
        (lambda ex: setattr(ex, "filters", None), ReasonCode.ITERATION_FILTERS_UNAVAILABLE),
        (
            lambda ex: setattr(
                ex, "filters", FILTERS.model_copy(update={"min_notional": Decimal("0")})
            ),
            ReasonCode.ITERATION_FILTERS_UNAVAILABLE,
        ),
        (
            lambda ex: setattr(ex, "account_error", ExchangeError("boom", status_code=401)),
            ReasonCode.ITERATION_ACCOUNT_UNAVAILABLE,
        ),
        (lambda ex: ex.balances.pop("USDT"), ReasonCode.ITERATION_BALANCES_MISSING),
    ],
)
def test_iteration_aborts_on_unusable_market_state(
    make_exchange, uow_factory, mutate, reason
) -> None:
    _seed_settings(uow_factory, dry_run=False)
    exchange = make_exchange()
    mutate(exchange)

    result = _pipeline(exchange, uow_factory).run_iteration()

    assert result.reason == reason
    assert exchange.placed == []
