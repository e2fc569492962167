from __future__ import annotations

from enum import StrEnum


class Decision(StrEnum):
    SKIP = "SKIP"
    PLACE = "PLACE"
    FAIL = "FAIL"


class ReasonCode(StrEnum):
    SELL_GATE_WAIT = "sell_skip:interval_not_elapsed"
    SELL_PENDING_ORDER = "sell_skip:pending_sell_order"
    SELL_BELOW_DUST = "sell_skip:below_dust_floor"
    SELL_ZERO_AFTER_QUANTIZE = "sell_skip:zero_after_quantize"
    SELL_MIN_NOTIONAL = "sell_skip:min_notional"
    SELL_NON_FINITE = "sell_skip:non_finite"
    SELL_DRY_RUN = "sell_place:dry_run"
    SELL_SUBMITTED = "sell_place:submitted"
    SELL_SUBMIT_FAILED = "sell_fail:submit_failed"

    BUY_NO_FILLED_SELL = "buy_skip:no_filled_sell"
    BUY_LEGACY_SELL = "buy_skip:sell_without_cycle"
    BUY_ALREADY_PAIRED = "buy_skip:cycle_already_paired"
    BUY_NO_PROCEEDS = "buy_skip:no_proceeds"
    BUY_NON_FINITE = "buy_skip:non_finite"
    BUY_OPEN_ORDERS_UNAVAILABLE = "buy_skip:open_orders_unavailable"
    BUY_DUPLICATE = "buy_skip:duplicate_found"
    BUY_BELOW_MIN_NOTIONAL = "buy_skip:below_min_notional"
    BUY_ZERO_AFTER_QUANTIZE = "buy_skip:zero_after_quantize"
    BUY_MAX_OPEN_BUYS = "buy_skip:max_open_buys"
    BUY_DRY_RUN = "buy_place:dry_run"
    BUY_SUBMITTED = "buy_place:submitted"
    BUY_SUBMIT_FAILED = "buy_fail:submit_failed"

    ITERATION_RECONCILE_FAILED = "iteration_abort:reconcile_failed"
    ITERATION_SETTINGS_MISSING = "iteration_abort:settings_missing"
    ITERATION_TRADING_DISABLED = "iteration_abort:trading_disabled"
    ITERATION_ACCOUNT_UNAVAILABLE = "iteration_abort:account_unavailable"
    ITERATION_BALANCES_MISSING = "iteration_abort:balances_missing"
    ITERATION_PRICE_UNAVAILABLE = "iteration_abort:price_unavailable"
    ITERATION_FILTERS_UNAVAILABLE = "iteration_abort:filters_unavailable"
    ITERATION_SELL_FAILED = "iteration_abort:sell_failed"
    ITERATION_UNHANDLED_ERROR = "iteration_abort:unhandled_error"
    ITERATION_COMPLETED = "iteration_completed"


class CapReason(StrEnum):
    NONE = "none"
    CAP_BY_FREE = "cap_by_free"
