from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import uuid4

import httpx
from pydantic import ValidationError as PydanticValidationError

from accumbot.adapters.binance_http import ConfigurationError
from accumbot.adapters.exchange import ExchangeClient
from accumbot.config import Settings
from accumbot.domain.decision_codes import CapReason, Decision, ReasonCode
from accumbot.domain.fees import fee_from_fills
from accumbot.domain.models import (
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
from accumbot.domain.quantize import floor_to_step, is_finite_positive, round_to_tick
from accumbot.domain.volatility import atr_percent
from accumbot.logging_context import with_iteration_context, with_logging_context
from accumbot.observability import get_instrumentation
from accumbot.observability_decisions import emit_decision
from accumbot.persistence.uow import UnitOfWorkFactory
from accumbot.services.client_order_id_service import ClientOrderIdGenerator
from accumbot.services.fee_stats_service import FeeStatsService, estimate_fee_rate
from accumbot.services.market_data_service import MarketDataService
from accumbot.services.order_lifecycle_service import record_observation
from accumbot.services.reconcile_service import ReconcileService

logger = logging.getLogger(__name__)

_EXCHANGE_CALL_ERRORS = (ExchangeError, httpx.HTTPError, PydanticValidationError, ValueError)
SELL_REFETCH_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class MarketSnapshot:
    price: Decimal
    filters: SymbolFilters
    base_free: Decimal
    quote_free: Decimal


@dataclass(frozen=True)
class StageOutcome:
    decision: Decision
    reason: ReasonCode
    client_order_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IterationResult:
    iteration_id: str
    reason: ReasonCode
    sell: StageOutcome | None = None
    buy: StageOutcome | None = None

    @property
    def completed(self) -> bool:
        return self.reason == ReasonCode.ITERATION_COMPLETED


def is_definitive_failure(exc: Exception) -> bool:
    """True when the order can no longer be live on the exchange after ``exc``."""
    if isinstance(exc, (ValidationError, ConfigurationError)):
        return True
    return isinstance(exc, ExchangeError) and exc.is_rejection


def find_duplicate_buy(
    open_orders: Iterable[ExchangeOrder], target_price: Decimal, tolerance: Decimal
) -> ExchangeOrder | None:
    for order in open_orders:
        if order.side.upper() != OrderSide.BUY.value or order.status.upper() != "NEW":
            continue
        if abs(order.price - target_price) < tolerance:
            return order
    return None


def compute_discount(
    *,
    fee_rate: Decimal,
    min_discount_pct: Decimal,
    margin: Decimal,
    atr_pct: Decimal,
) -> Decimal:
    """Fee-covering floor, widened to half the ATR when volatility is higher."""
    floor = fee_rate * 2 + min_discount_pct / Decimal("100") + margin
    return max(floor, atr_pct * Decimal("0.5"))


def _fmt(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


class CyclePipeline:
    """One sell-then-buy accumulation iteration, gated by reconciliation."""

    def __init__(
        self,
        *,
        settings: Settings,
        exchange: ExchangeClient,
        uow_factory: UnitOfWorkFactory,
        reconcile_service: ReconcileService | None = None,
        market_data_service: MarketDataService | None = None,
        fee_stats_service: FeeStatsService | None = None,
        id_generator: ClientOrderIdGenerator | None = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.exchange = exchange
        self.uow_factory = uow_factory
        self.env = settings.bot_mode.value
        self.symbol = settings.symbol
        self.now_fn = now_fn
        self.sleep_fn = sleep_fn
        self.reconcile_service = reconcile_service or ReconcileService(
            exchange=exchange,
            uow_factory=uow_factory,
            env=self.env,
            symbol=self.symbol,
            now_fn=now_fn,
        )
        self.market_data_service = market_data_service or MarketDataService(
            exchange=exchange,
            uow_factory=uow_factory,
            backfill_days=settings.candle_backfill_days,
        )
        self.fee_stats_service = fee_stats_service or FeeStatsService(
            exchange=exchange,
            uow_factory=uow_factory,
            env=self.env,
            symbol=self.symbol,
            base_asset=settings.base_asset,
            quote_asset=settings.quote_asset,
            now_fn=now_fn,
        )
        self.id_generator = id_generator or ClientOrderIdGenerator(env=self.env)

    def run_iteration(self) -> IterationResult:
        iteration_id = uuid4().hex[:12]
        started = time.monotonic()
        with with_iteration_context(iteration_id, env=self.env, symbol=self.symbol):
            try:
                result = self._run(iteration_id)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "iteration_failed",
                    extra={"extra": {"error_type": type(exc).__name__}},
                )
                result = IterationResult(
                    iteration_id=iteration_id, reason=ReasonCode.ITERATION_UNHANDLED_ERROR
                )
            instrumentation = get_instrumentation()
            instrumentation.counter("iterations_total", attrs={"reason": result.reason.value})
            instrumentation.histogram(
                "iteration_duration_ms",
                (time.monotonic() - started) * 1000,
                attrs={"reason": result.reason.value},
            )
            log = logger.info if result.completed else logger.warning
            log(
                "iteration_finished",
                extra={
                    "extra": {
                        "reason": result.reason.value,
                        "sell_decision": result.sell.decision.value if result.sell else None,
                        "buy_decision": result.buy.decision.value if result.buy else None,
                    }
                },
            )
            return result

    def _abort(
        self, iteration_id: str, reason: ReasonCode, **details: object
    ) -> IterationResult:
        logger.warning("iteration_aborted", extra={"extra": {"reason": reason.value, **details}})
        return IterationResult(iteration_id=iteration_id, reason=reason)

    def _run(self, iteration_id: str) -> IterationResult:
        if not self.reconcile_service.reconcile():
            return self._abort(iteration_id, ReasonCode.ITERATION_RECONCILE_FAILED)

        self.market_data_service.sync_candles(self.symbol, self.settings.candle_interval)

        with self.uow_factory() as uow:
            trading = uow.settings.get()
        if trading is None:
            return self._abort(iteration_id, ReasonCode.ITERATION_SETTINGS_MISSING)
        dry_run = trading.dry_run or self.settings.dry_run
        if not trading.trading_enabled and not dry_run:
            return self._abort(iteration_id, ReasonCode.ITERATION_TRADING_DISABLED)

        fee_stats = self.fee_stats_service.refresh()
        fee_rate, fee_rate_is_fallback = estimate_fee_rate(
            fee_stats,
            min_sample=self.settings.fee_min_sample,
            fallback_rate=self.settings.fee_fallback_rate,
        )

        try:
            account = self.exchange.get_account()
        except _EXCHANGE_CALL_ERRORS as exc:
            return self._abort(
                iteration_id,
                ReasonCode.ITERATION_ACCOUNT_UNAVAILABLE,
                error_type=type(exc).__name__,
            )
        base_balance = account.balance(self.settings.base_asset)
        quote_balance = account.balance(self.settings.quote_asset)
        if base_balance is None or quote_balance is None:
            return self._abort(
                iteration_id,
                ReasonCode.ITERATION_BALANCES_MISSING,
                base_found=base_balance is not None,
                quote_found=quote_balance is not None,
            )

        price = self.exchange.get_price(self.symbol)
        if not is_finite_positive(price):
            return self._abort(iteration_id, ReasonCode.ITERATION_PRICE_UNAVAILABLE)

        filters = self.exchange.get_filters(self.symbol)
        if filters is None or not all(
            is_finite_positive(value)
            for value in (filters.step_size, filters.tick_size, filters.min_notional)
        ):
            return self._abort(
                iteration_id,
                ReasonCode.ITERATION_FILTERS_UNAVAILABLE,
                filters=filters.model_dump(mode="json") if filters is not None else None,
            )

        snapshot = MarketSnapshot(
            price=price,
            filters=filters,
            base_free=base_balance.free,
            quote_free=quote_balance.free,
        )
        logger.info(
            "iteration_snapshot",
            extra={
                "extra": {
                    "price": str(price),
                    "base_free": str(snapshot.base_free),
                    "quote_free": str(snapshot.quote_free),
                    "dry_run": dry_run,
                    "fee_rate": str(fee_rate),
                    "fee_rate_is_fallback": fee_rate_is_fallback,
                }
            },
        )

        sell = self.run_sell_stage(snapshot, dry_run=dry_run)
        if sell.decision == Decision.FAIL:
            logger.error(
                "iteration_aborted",
                extra={"extra": {"reason": ReasonCode.ITERATION_SELL_FAILED.value}},
            )
            return IterationResult(
                iteration_id=iteration_id, reason=ReasonCode.ITERATION_SELL_FAILED, sell=sell
            )

        buy = self.run_buy_stage(
            snapshot,
            trading,
            fee_rate=fee_rate,
            fee_rate_is_fallback=fee_rate_is_fallback,
            dry_run=dry_run,
        )
        return IterationResult(
            iteration_id=iteration_id, reason=ReasonCode.ITERATION_COMPLETED, sell=sell, buy=buy
        )

    # sell stage

    def _sell_outcome(
        self,
        decision: Decision,
        reason: ReasonCode,
        details: dict[str, Any],
        client_order_id: str | None = None,
    ) -> StageOutcome:
        emit_decision(
            logger,
            "sell_decision",
            {
                "decision": decision.value,
                "reason": reason.value,
                "client_order_id": client_order_id,
                **details,
            },
        )
        return StageOutcome(
            decision=decision, reason=reason, client_order_id=client_order_id, details=details
        )

    def run_sell_stage(self, snapshot: MarketSnapshot, *, dry_run: bool) -> StageOutcome:
        now = self.now_fn()
        gate = timedelta(hours=self.settings.sell_interval_hours)
        with self.uow_factory() as uow:
            last_sell = uow.orders.latest_filled(self.env, OrderSide.SELL)
            pending_sell = uow.orders.has_pending(self.env, OrderSide.SELL)

        details: dict[str, Any] = {
            "dry_run": dry_run,
            "last_sell_client_order_id": last_sell.client_order_id if last_sell else None,
            "last_sell_at": (
                last_sell.updated_at.isoformat() if last_sell and last_sell.updated_at else None
            ),
        }
        if last_sell is not None and last_sell.updated_at is not None:
            elapsed = now - last_sell.updated_at
            details["hours_since_last_sell"] = round(elapsed.total_seconds() / 3600, 4)
            if elapsed <= gate:
                details["next_sell_allowed_at"] = (last_sell.updated_at + gate).isoformat()
                details["remaining_seconds"] = int((gate - elapsed).total_seconds())
                return self._sell_outcome(Decision.SKIP, ReasonCode.SELL_GATE_WAIT, details)

        if pending_sell:
            return self._sell_outcome(Decision.SKIP, ReasonCode.SELL_PENDING_ORDER, details)

        free = snapshot.base_free
        raw_qty = free / self.settings.sell_fraction_divisor
        details.update(
            {
                "base_free": str(free),
                "raw_qty": str(raw_qty),
                "price": str(snapshot.price),
                "min_notional": str(snapshot.filters.min_notional),
                "step_size": str(snapshot.filters.step_size),
            }
        )
        if not all(value.is_finite() for value in (free, raw_qty, snapshot.price)):
            return self._sell_outcome(Decision.SKIP, ReasonCode.SELL_NON_FINITE, details)

        qty = floor_to_step(raw_qty, snapshot.filters.step_size)
        notional = qty * snapshot.price
        details.update({"qty": str(qty), "notional": str(notional)})
        if free < self.settings.sell_dust_floor:
            return self._sell_outcome(Decision.SKIP, ReasonCode.SELL_BELOW_DUST, details)
        if qty <= 0:
            return self._sell_outcome(Decision.SKIP, ReasonCode.SELL_ZERO_AFTER_QUANTIZE, details)
        if notional < snapshot.filters.min_notional:
            return self._sell_outcome(Decision.SKIP, ReasonCode.SELL_MIN_NOTIONAL, details)

        if dry_run:
            return self._sell_outcome(Decision.PLACE, ReasonCode.SELL_DRY_RUN, details)

        client_order_id = self.id_generator.next_id(OrderSide.SELL)
        with with_logging_context(client_order_id=client_order_id):
            return self._execute_sell(client_order_id, qty, snapshot, details)

    def _execute_sell(
        self,
        client_order_id: str,
        qty: Decimal,
        snapshot: MarketSnapshot,
        details: dict[str, Any],
    ) -> StageOutcome:
        with self.uow_factory() as uow:
            uow.orders.insert_order(
                Order(
                    client_order_id=client_order_id,
                    env=self.env,
                    symbol=self.symbol,
                    side=OrderSide.SELL,
                    order_type=OrderType.MARKET,
                    status=OrderStatus.NEW,
                    orig_qty=qty,
                )
            )

        try:
            response = self.exchange.place_market_sell(
                self.symbol, qty, client_order_id=client_order_id
            )
        except _EXCHANGE_CALL_ERRORS as exc:
            definitive = is_definitive_failure(exc)
            if definitive:
                with self.uow_factory() as uow:
                    uow.orders.mark_terminal(
                        client_order_id, OrderStatus.FAILED, f"{type(exc).__name__}: {exc}"
                    )
            details.update(
                {
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "definitive_failure": definitive,
                }
            )
            return self._sell_outcome(
                Decision.FAIL, ReasonCode.SELL_SUBMIT_FAILED, details, client_order_id
            )

        response = self._refetch_if_unpriced(client_order_id, response)
        fee = fee_from_fills(
            response,
            quote_asset=self.settings.quote_asset,
            base_asset=self.settings.base_asset,
            base_price=snapshot.price,
            price_lookup=self.exchange.get_price,
        )
        with self.uow_factory() as uow:
            recorded = record_observation(
                uow, client_order_id, response, env=self.env, now=self.now_fn(), fee=fee
            )

        details.update(
            {
                "exchange_order_id": response.order_id,
                "exchange_status": response.status,
                "executed_qty": str(response.executed_qty),
                "executed_quote": str(response.cummulative_quote_qty),
                "fee_quote": _fmt(fee.quote) if fee is not None else None,
                "fee_asset": fee.asset if fee is not None else None,
                "cycle_id": recorded.cycle_id if recorded is not None else None,
            }
        )
        return self._sell_outcome(
            Decision.PLACE, ReasonCode.SELL_SUBMITTED, details, client_order_id
        )

    def _refetch_if_unpriced(
        self, client_order_id: str, response: ExchangeOrder
    ) -> ExchangeOrder:
        if response.cummulative_quote_qty > 0 or response.local_status not in (
            OrderStatus.FILLED,
            OrderStatus.PARTIALLY_FILLED,
        ):
            return response
        logger.info(
            "sell_quote_refetch",
            extra={"extra": {"status": response.status, "delay_s": SELL_REFETCH_DELAY_SECONDS}},
        )
        self.sleep_fn(SELL_REFETCH_DELAY_SECONDS)
        try:
            fetched = self.exchange.get_order(self.symbol, client_order_id=client_order_id)
        except _EXCHANGE_CALL_ERRORS as exc:
            logger.warning(
                "sell_quote_refetch_failed",
                extra={"extra": {"error_type": type(exc).__name__, "error": str(exc)}},
            )
            return response
        if fetched.cummulative_quote_qty <= 0:
            logger.warning("sell_quote_refetch_still_zero", extra={"extra": {}})
            return response
        return fetched.model_copy(update={"fills": response.fills or fetched.fills})

    # buy stage

    def _buy_outcome(
        self,
        decision: Decision,
        reason: ReasonCode,
        details: dict[str, Any],
        client_order_id: str | None = None,
    ) -> StageOutcome:
        emit_decision(
            logger,
            "buy_decision",
            {
                "decision": decision.value,
                "reason": reason.value,
                "client_order_id": client_order_id,
                **details,
            },
        )
        return StageOutcome(
            decision=decision, reason=reason, client_order_id=client_order_id, details=details
        )

    def _fresh_quote_free(self, snapshot: MarketSnapshot) -> tuple[Decimal, str]:
        try:
            account = self.exchange.get_account()
        except _EXCHANGE_CALL_ERRORS as exc:
            logger.warning(
                "buy_balance_refresh_failed",
                extra={"extra": {"error_type": type(exc).__name__, "fallback": "snapshot"}},
            )
            return snapshot.quote_free, "snapshot"
        balance = account.balance(self.settings.quote_asset)
        if balance is None:
            logger.warning(
                "buy_balance_refresh_missing_asset",
                extra={"extra": {"asset": self.settings.quote_asset, "fallback": "snapshot"}},
            )
            return snapshot.quote_free, "snapshot"
        return balance.free, "fresh"

    def run_buy_stage(
        self,
        snapshot: MarketSnapshot,
        trading: TradingSettings,
        *,
        fee_rate: Decimal,
        fee_rate_is_fallback: bool = False,
        dry_run: bool,
    ) -> StageOutcome:
        details: dict[str, Any] = {"dry_run": dry_run}
        with self.uow_factory() as uow:
            sell = uow.orders.latest_filled(self.env, OrderSide.SELL)
            if sell is None:
                return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_NO_FILLED_SELL, details)
            details["sell_client_order_id"] = sell.client_order_id
            details["cycle_id"] = sell.cycle_id
            if sell.cycle_id is None:
                return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_LEGACY_SELL, details)
            paired = uow.orders.buys_for_cycle(sell.cycle_id)
            if paired:
                details["paired_buy_client_order_id"] = paired[0].client_order_id
                return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_ALREADY_PAIRED, details)
            open_buys = uow.orders.count_open(self.env, OrderSide.BUY)
            candles = uow.candles.recent(
                self.symbol, self.settings.candle_interval, self.settings.atr_window
            )

        cycle_id = sell.cycle_id
        with with_logging_context(cycle_id=cycle_id):
            proceeds = sell.executed_quote
            details["sell_proceeds"] = str(proceeds)
            details["fee_quote"] = _fmt(sell.fee_quote)
            details["fee_rate"] = str(fee_rate)
            if not all(
                value.is_finite()
                for value in (proceeds, fee_rate, sell.fee_quote or Decimal("0"))
            ):
                return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_NON_FINITE, details)
            if proceeds <= 0:
                return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_NO_PROCEEDS, details)

            if sell.fee_quote is not None and sell.fee_quote > 0:
                net_proceeds = proceeds - sell.fee_quote
                net_is_estimate = False
            else:
                net_proceeds = proceeds * (Decimal("1") - self.settings.fee_buffer_rate)
                net_is_estimate = True
                logger.info(
                    "buy_net_proceeds_estimated",
                    extra={
                        "extra": {
                            "sell_proceeds": str(proceeds),
                            "fee_buffer_rate": str(self.settings.fee_buffer_rate),
                        }
                    },
                )

            quote_free, balance_source = self._fresh_quote_free(snapshot)
            if not quote_free.is_finite():
                details.update({"quote_free": str(quote_free), "balance_source": balance_source})
                return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_NON_FINITE, details)
            spend = net_proceeds
            cap_reason = CapReason.NONE
            if quote_free < spend:
                spend = quote_free
                cap_reason = CapReason.CAP_BY_FREE

            atr_pct = atr_percent(candles, snapshot.price)
            discount = compute_discount(
                fee_rate=fee_rate,
                min_discount_pct=trading.min_discount_net_fees,
                margin=self.settings.discount_margin,
                atr_pct=atr_pct,
            )
            target_price = round_to_tick(
                snapshot.price * (Decimal("1") - discount), snapshot.filters.tick_size
            )
            qty = (
                floor_to_step(spend / target_price, snapshot.filters.step_size)
                if target_price > 0
                else Decimal("0")
            )
            details.update(
                {
                    "fee_quote": _fmt(sell.fee_quote),
                    "net_proceeds": str(net_proceeds),
                    "net_is_estimate": net_is_estimate,
                    "quote_free": str(quote_free),
                    "balance_source": balance_source,
                    "spend": str(spend),
                    "cap_reason": cap_reason.value,
                    "fee_rate": str(fee_rate),
                    "fee_rate_is_fallback": fee_rate_is_fallback,
                    "atr_pct": str(atr_pct),
                    "candles": len(candles),
                    "discount": str(discount),
                    "price": str(snapshot.price),
                    "target_price": str(target_price),
                    "qty": str(qty),
                    "open_buys": open_buys,
                    "max_open_buys": trading.max_open_buys,
                }
            )
            logger.info("buy_sizing", extra={"extra": {"event": "buy_sizing", **details}})

            if not all(value.is_finite() for value in (spend, target_price, qty)):
                return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_NON_FINITE, details)

            try:
                exchange_open = self.exchange.get_open_orders(self.symbol)
            except _EXCHANGE_CALL_ERRORS as exc:
                details["error_type"] = type(exc).__name__
                return self._buy_outcome(
                    Decision.SKIP, ReasonCode.BUY_OPEN_ORDERS_UNAVAILABLE, details
                )
            duplicate = find_duplicate_buy(
                exchange_open, target_price, self.settings.duplicate_price_tolerance
            )
            if duplicate is not None:
                details["duplicate_client_order_id"] = duplicate.client_order_id
                details["duplicate_price"] = str(duplicate.price)
                return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_DUPLICATE, details)

            if spend < self.settings.buy_absolute_min_notional:
                details["absolute_min_notional"] = str(self.settings.buy_absolute_min_notional)
                return self._buy_outcome(
                    Decision.SKIP, ReasonCode.BUY_BELOW_MIN_NOTIONAL, details
                )
            if not is_finite_positive(qty):
                return self._buy_outcome(
                    Decision.SKIP, ReasonCode.BUY_ZERO_AFTER_QUANTIZE, details
                )
            if open_buys >= trading.max_open_buys:
                return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_MAX_OPEN_BUYS, details)

            if dry_run:
                return self._buy_outcome(Decision.PLACE, ReasonCode.BUY_DRY_RUN, details)

            client_order_id = self.id_generator.next_id(OrderSide.BUY)
            with with_logging_context(client_order_id=client_order_id):
                return self._execute_buy(
                    client_order_id,
                    cycle_id=cycle_id,
                    qty=qty,
                    target_price=target_price,
                    discount=discount,
                    snapshot=snapshot,
                    details=details,
                )

    def _execute_buy(
        self,
        client_order_id: str,
        *,
        cycle_id: int,
        qty: Decimal,
        target_price: Decimal,
        discount: Decimal,
        snapshot: MarketSnapshot,
        details: dict[str, Any],
    ) -> StageOutcome:
        try:
            with self.uow_factory() as uow:
                uow.orders.insert_order(
                    Order(
                        client_order_id=client_order_id,
                        env=self.env,
                        symbol=self.symbol,
                        side=OrderSide.BUY,
                        order_type=OrderType.LIMIT,
                        status=OrderStatus.NEW,
                        orig_qty=qty,
                        price=target_price,
                        discount_pct=discount * Decimal("100"),
                        cycle_id=cycle_id,
                    )
                )
        except sqlite3.IntegrityError:
            # another writer paired this cycle first
            return self._buy_outcome(Decision.SKIP, ReasonCode.BUY_ALREADY_PAIRED, details)

        try:
            response = self.exchange.place_limit_buy(
                self.symbol, qty, target_price, client_order_id=client_order_id
            )
        except _EXCHANGE_CALL_ERRORS as exc:
            definitive = is_definitive_failure(exc)
            if definitive:
                with self.uow_factory() as uow:
                    uow.orders.mark_terminal(
                        client_order_id,
                        OrderStatus.FAILED,
                        f"{type(exc).__name__}: {exc}",
                        detach_cycle=True,
                    )
            details.update(
                {
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "definitive_failure": definitive,
                }
            )
            return self._buy_outcome(
                Decision.FAIL, ReasonCode.BUY_SUBMIT_FAILED, details, client_order_id
            )

        fee = fee_from_fills(
            response,
            quote_asset=self.settings.quote_asset,
            base_asset=self.settings.base_asset,
            base_price=snapshot.price,
            price_lookup=self.exchange.get_price,
        )
        with self.uow_factory() as uow:
            record_observation(
                uow, client_order_id, response, env=self.env, now=self.now_fn(), fee=fee
            )
        details.update(
            {
                "exchange_order_id": response.order_id,
                "exchange_status": response.status,
                "executed_qty": str(response.executed_qty),
            }
        )
        return self._buy_outcome(
            Decision.PLACE, ReasonCode.BUY_SUBMITTED, details, client_order_id
        )
