from __future__ import annotations

import argparse
import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import asdict
from decimal import Decimal, InvalidOperation

import httpx
from pydantic import ValidationError as PydanticValidationError

from accumbot.adapters.binance_http import ConfigurationError
from accumbot.adapters.exchange import ExchangeClient
from accumbot.config import Settings
from accumbot.domain.models import ExchangeError, TradingSettings
from accumbot.logging_utils import setup_logging
from accumbot.observability import configure_instrumentation
from accumbot.persistence.uow import UnitOfWorkFactory
from accumbot.services.cycle_pipeline import CyclePipeline
from accumbot.services.exchange_factory import build_exchange
from accumbot.services.fee_stats_service import FeeStatsService, estimate_fee_rate
from accumbot.services.market_data_service import MarketDataService
from accumbot.services.reconcile_service import ReconcileService

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise argparse.ArgumentTypeError(f"expected true/false, got {raw!r}")


def _parse_decimal(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"expected a decimal, got {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"expected a finite decimal, got {raw!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="accumbot",
        description="Binance spot BTC accumulation bot (sell a slice, buy back lower).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the decision pipeline")
    run_parser.add_argument("--dry-run", action="store_true", help="Do not place orders")
    run_parser.add_argument("--loop", action="store_true", help="Run continuously")
    run_parser.add_argument("--once", action="store_true", help="Run a single iteration")
    run_parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Stop after N iterations in loop mode",
    )

    subparsers.add_parser("reconcile", help="Converge local orders with the exchange")
    subparsers.add_parser("sync-candles", help="Ingest closed klines into the state DB")
    subparsers.add_parser("fee-stats", help="Refresh and print the fee percentile snapshot")

    settings_parser = subparsers.add_parser("settings", help="Show or change trading settings")
    settings_subparsers = settings_parser.add_subparsers(dest="settings_command", required=True)
    settings_subparsers.add_parser("show", help="Print the stored trading settings")
    set_parser = settings_subparsers.add_parser("set", help="Update trading settings")
    set_parser.add_argument("--trading-enabled", type=_parse_bool, default=None)
    set_parser.add_argument("--dry-run", dest="settings_dry_run", type=_parse_bool, default=None)
    set_parser.add_argument("--max-open-buys", type=int, default=None)
    set_parser.add_argument("--min-discount", type=_parse_decimal, default=None)

    cycles_parser = subparsers.add_parser("cycles", help="Print recent cycles as JSON lines")
    cycles_parser.add_argument("--last", type=int, default=10)

    subparsers.add_parser("health", help="Check configuration, state DB and exchange reachability")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except PydanticValidationError as exc:
        print(f"Configuration error: {exc}")
        return 2

    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.observability_otlp_endpoint,
        prometheus_port=settings.observability_prometheus_port,
    )
    logger.info(
        "runtime_prepared",
        extra={
            "extra": {
                "command": args.command,
                "mode": settings.bot_mode.value,
                "symbol": settings.symbol,
                "db_path": settings.state_db_path,
                "dry_run": settings.dry_run,
                "pid": os.getpid(),
            }
        },
    )

    uow_factory = UnitOfWorkFactory(settings.state_db_path)

    if args.command == "settings":
        if args.settings_command == "show":
            return run_settings_show(uow_factory)
        return run_settings_set(
            uow_factory,
            trading_enabled=args.trading_enabled,
            dry_run=args.settings_dry_run,
            max_open_buys=args.max_open_buys,
            min_discount=args.min_discount,
        )

    if args.command == "cycles":
        return run_cycles(settings, last=args.last)

    if args.command == "run":
        if args.max_iterations is not None and args.max_iterations < 1:
            print("max-iterations must be >= 1")
            return 2
        if args.dry_run:
            settings = settings.model_copy(update={"dry_run": True})

    exchange = build_exchange(settings)
    try:
        if args.command == "run":
            return run_pipeline(
                settings,
                exchange=exchange,
                uow_factory=uow_factory,
                loop_enabled=args.loop and not args.once,
                max_iterations=args.max_iterations,
            )
        if args.command == "reconcile":
            return run_reconcile(settings, exchange=exchange, uow_factory=uow_factory)
        if args.command == "sync-candles":
            return run_sync_candles(settings, exchange=exchange, uow_factory=uow_factory)
        if args.command == "fee-stats":
            return run_fee_stats(settings, exchange=exchange, uow_factory=uow_factory)
        if args.command == "health":
            return run_health(settings, exchange=exchange, uow_factory=uow_factory)
    finally:
        _close_best_effort(exchange, "exchange client")

    parser.print_help()
    return 2


def run_with_optional_loop(
    *,
    command: str,
    cycle_fn: Callable[[], int],
    loop_enabled: bool,
    period_seconds: float,
    max_iterations: int | None,
    sleep_fn: Callable[[float], None] = time.sleep,
    monotonic_fn: Callable[[], float] = time.monotonic,
) -> int:
    """Run ``cycle_fn`` once or on a fixed period; elapsed work time is subtracted from the sleep."""
    if not loop_enabled:
        return cycle_fn()

    iteration = 0
    last_rc = 0
    logger.info(
        "loop_runner_started",
        extra={
            "extra": {
                "command": command,
                "period_seconds": period_seconds,
                "max_iterations": max_iterations,
            }
        },
    )
    try:
        while True:
            iteration += 1
            started = monotonic_fn()
            try:
                last_rc = cycle_fn()
            except KeyboardInterrupt:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "loop_iteration_failed",
                    extra={
                        "extra": {
                            "command": command,
                            "iteration": iteration,
                            "error_type": type(exc).__name__,
                        }
                    },
                )
                last_rc = 1

            if max_iterations is not None and iteration >= max_iterations:
                logger.info(
                    "loop_runner_completed",
                    extra={
                        "extra": {"command": command, "iterations": iteration, "last_rc": last_rc}
                    },
                )
                return last_rc

            elapsed = monotonic_fn() - started
            sleep_for = max(1.0, period_seconds - elapsed)
            logger.info(
                "loop_runner_sleeping",
                extra={"extra": {"command": command, "sleep_seconds": round(sleep_for, 3)}},
            )
            sleep_fn(sleep_for)
    except KeyboardInterrupt:
        logger.info(
            "loop_runner_stopped",
            extra={
                "extra": {
                    "command": command,
                    "iterations": iteration,
                    "last_rc": last_rc,
                    "reason": "keyboard_interrupt",
                }
            },
        )
        print(f"{command}: interrupted, shutting down cleanly")
        return last_rc


def run_pipeline(
    settings: Settings,
    *,
    exchange: ExchangeClient,
    uow_factory: UnitOfWorkFactory,
    loop_enabled: bool,
    max_iterations: int | None,
) -> int:
    with uow_factory() as uow:
        uow.settings.ensure_default()

    pipeline = CyclePipeline(settings=settings, exchange=exchange, uow_factory=uow_factory)

    def _cycle() -> int:
        result = pipeline.run_iteration()
        print(
            json.dumps(
                {
                    "iteration_id": result.iteration_id,
                    "reason": result.reason.value,
                    "sell": result.sell.reason.value if result.sell else None,
                    "buy": result.buy.reason.value if result.buy else None,
                }
            )
        )
        return 0 if result.completed else 1

    return run_with_optional_loop(
        command="run",
        cycle_fn=_cycle,
        loop_enabled=loop_enabled,
        period_seconds=settings.loop_minutes * 60,
        max_iterations=max_iterations,
    )


def run_reconcile(
    settings: Settings, *, exchange: ExchangeClient, uow_factory: UnitOfWorkFactory
) -> int:
    service = ReconcileService(
        exchange=exchange,
        uow_factory=uow_factory,
        env=settings.bot_mode.value,
        symbol=settings.symbol,
    )
    ok = service.reconcile()
    print("reconcile: OK" if ok else "reconcile: FAILED")
    return 0 if ok else 1


def run_sync_candles(
    settings: Settings, *, exchange: ExchangeClient, uow_factory: UnitOfWorkFactory
) -> int:
    service = MarketDataService(
        exchange=exchange,
        uow_factory=uow_factory,
        backfill_days=settings.candle_backfill_days,
    )
    result = service.sync_candles(settings.symbol, settings.candle_interval)
    print(json.dumps(asdict(result)))
    return 0 if result.complete else 1


def run_fee_stats(
    settings: Settings, *, exchange: ExchangeClient, uow_factory: UnitOfWorkFactory
) -> int:
    service = FeeStatsService(
        exchange=exchange,
        uow_factory=uow_factory,
        env=settings.bot_mode.value,
        symbol=settings.symbol,
        base_asset=settings.base_asset,
        quote_asset=settings.quote_asset,
    )
    stats = service.refresh()
    fee_rate, used_fallback = estimate_fee_rate(
        stats, min_sample=settings.fee_min_sample, fallback_rate=settings.fee_fallback_rate
    )
    print(
        json.dumps(
            {
                "p50": str(stats.p50),
                "p90": str(stats.p90),
                "sample_size": stats.sample_size,
                "filled_count": stats.filled_count,
                "fee_rate": str(fee_rate),
                "fallback": used_fallback,
            }
        )
    )
    return 0


def _settings_payload(trading: TradingSettings) -> dict[str, object]:
    return {
        "trading_enabled": trading.trading_enabled,
        "dry_run": trading.dry_run,
        "max_open_buys": trading.max_open_buys,
        "min_discount_net_fees": str(trading.min_discount_net_fees),
        "updated_at": trading.updated_at.isoformat() if trading.updated_at else None,
    }


def run_settings_show(uow_factory: UnitOfWorkFactory) -> int:
    with uow_factory() as uow:
        trading = uow.settings.ensure_default()
    print(json.dumps(_settings_payload(trading)))
    return 0


def run_settings_set(
    uow_factory: UnitOfWorkFactory,
    *,
    trading_enabled: bool | None,
    dry_run: bool | None,
    max_open_buys: int | None,
    min_discount: Decimal | None,
) -> int:
    try:
        with uow_factory() as uow:
            trading = uow.settings.update(
                trading_enabled=trading_enabled,
                dry_run=dry_run,
                max_open_buys=max_open_buys,
                min_discount_net_fees=min_discount,
            )
    except ValueError as exc:
        print(f"settings: {exc}")
        return 2
    logger.info("settings_updated", extra={"extra": _settings_payload(trading)})
    print(json.dumps(_settings_payload(trading)))
    return 0


def run_cycles(settings: Settings, *, last: int) -> int:
    if last < 1:
        print("last must be >= 1")
        return 2
    with UnitOfWorkFactory(settings.state_db_path, read_only=True)() as uow:
        cycles = uow.cycles.list_recent(settings.bot_mode.value, last)
        rows = [(cycle, uow.orders.list_for_cycle(cycle.cycle_id)) for cycle in cycles]
    for cycle, orders in rows:
        print(
            json.dumps(
                {
                    "cycle_id": cycle.cycle_id,
                    "env": cycle.env,
                    "started_at": cycle.started_at.isoformat(),
                    "status": cycle.status.value,
                    "orders": [
                        {
                            "client_order_id": order.client_order_id,
                            "side": order.side.value,
                            "status": order.status.value,
                            "price": str(order.price) if order.price is not None else None,
                            "executed_qty": str(order.executed_qty),
                            "executed_quote": str(order.executed_quote),
                            "discount_pct": (
                                str(order.discount_pct) if order.discount_pct is not None else None
                            ),
                        }
                        for order in orders
                    ],
                }
            )
        )
    return 0


def run_health(
    settings: Settings, *, exchange: ExchangeClient, uow_factory: UnitOfWorkFactory
) -> int:
    healthy = True
    api_key, api_secret = settings.api_credentials()
    print(f"Mode: {settings.bot_mode.value} ({settings.rest_base_url()})")
    print(f"Credentials: {'OK' if api_key and api_secret else 'MISSING'}")

    with uow_factory() as uow:
        trading = uow.settings.get()
    print(f"State DB: OK ({settings.state_db_path})")
    print(f"Trading settings: {'seeded' if trading is not None else 'not seeded'}")

    price = exchange.get_price(settings.symbol)
    if price > 0:
        print(f"Public API: OK ({settings.symbol}={price})")
    else:
        print("Public API: FAIL")
        healthy = False

    if api_key and api_secret:
        try:
            account = exchange.get_account()
            print(f"Signed API: OK (can_trade={account.can_trade})")
        except (ConfigurationError, ExchangeError, httpx.HTTPError, PydanticValidationError) as exc:
            logger.warning(
                "health_signed_check_failed",
                extra={"extra": {"error_type": type(exc).__name__}},
            )
            print(f"Signed API: FAIL ({type(exc).__name__})")
            healthy = False
    else:
        print("Signed API: SKIP (no credentials)")
    return 0 if healthy else 1


def _close_best_effort(resource: object, label: str) -> None:
    close = getattr(resource, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception:  # noqa: BLE001
        logger.warning(
            "Failed to close resource", extra={"extra": {"resource": label}}, exc_info=True
        )


if __name__ == "__main__":
    raise SystemExit(main())
