from __future__ import annotations

import logging
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import uuid4

import httpx
from pydantic import ValidationError as PydanticValidationError

from accumbot.adapters.binance_auth import build_auth_headers, canonical_query, sign_query
from accumbot.adapters.clock_sync import ClockSync, utc_now_ms
from accumbot.adapters.exchange import ExchangeClient
from accumbot.domain.models import (
    AccountInfo,
    BotMode,
    Candle,
    ExchangeError,
    ExchangeOrder,
    OrderSide,
    OrderType,
    SymbolFilters,
    TickerPrice,
    ValidationError,
    parse_decimal,
)
from accumbot.domain.quantize import floor_to_step, fmt_decimal, round_to_tick
from accumbot.observability import get_instrumentation
from accumbot.security.redaction import sanitize_mapping, sanitize_text
from accumbot.services.retry import (
    RetryAttempt,
    RetryPolicy,
    parse_retry_after_seconds,
    retry_with_backoff,
)

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when required runtime configuration is missing or invalid."""


_ERROR_SNIPPET_LIMIT = 240
REST_RETRY_POLICY = RetryPolicy()
KLINES_MAX_LIMIT = 1000


class _RetryableRequestError(Exception):
    def __init__(
        self, exchange_error: ExchangeError, *, retry_after_seconds: float | None = None
    ) -> None:
        super().__init__(str(exchange_error))
        self.exchange_error = exchange_error
        self.retry_after_seconds = retry_after_seconds


def _response_snippet(response: httpx.Response) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT])


def parse_symbol_filters(symbol: str, payload: object) -> SymbolFilters | None:
    """Extract LOT_SIZE, PRICE_FILTER and NOTIONAL/MIN_NOTIONAL from an exchangeInfo payload."""
    if not isinstance(payload, dict):
        return None
    symbols = payload.get("symbols")
    if not isinstance(symbols, list):
        return None
    entry = next(
        (item for item in symbols if isinstance(item, dict) and item.get("symbol") == symbol),
        None,
    )
    if entry is None:
        return None

    step_size: Decimal | None = None
    tick_size: Decimal | None = None
    min_qty = Decimal("0")
    min_notional = Decimal("0")
    for item in entry.get("filters") or []:
        filter_type = item.get("filterType")
        if filter_type == "LOT_SIZE":
            step_size = parse_decimal(item.get("stepSize"))
            min_qty = parse_decimal(item.get("minQty"))
        elif filter_type == "PRICE_FILTER":
            tick_size = parse_decimal(item.get("tickSize"))
        elif filter_type in {"NOTIONAL", "MIN_NOTIONAL"}:
            min_notional = parse_decimal(item.get("minNotional"))

    if step_size is None or tick_size is None:
        return None
    return SymbolFilters(
        symbol=symbol,
        step_size=step_size,
        tick_size=tick_size,
        min_qty=min_qty,
        min_notional=min_notional,
    )


def parse_kline(symbol: str, interval: str, row: list[object]) -> Candle:
    return Candle(
        symbol=symbol,
        interval=interval,
        open_time=int(row[0]),
        open=parse_decimal(row[1]),
        high=parse_decimal(row[2]),
        low=parse_decimal(row[3]),
        close=parse_decimal(row[4]),
        volume=parse_decimal(row[5]),
        close_time=int(row[6]),
    )


class BinanceHttpClient(ExchangeClient):
    """Binance spot REST client.

    Public reads retry on timeouts, transport errors, 429 and 5xx. Signed writes
    retry only on 429, where the exchange has provably not accepted the request;
    anything else is surfaced so reconciliation can settle the outcome.
    In paper mode every signed non-GET call returns a synthetic fill without I/O.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        api_secret: str | None = None,
        mode: BotMode = BotMode.LIVE,
        timeout: float | httpx.Timeout = 10.0,
        recv_window_ms: int = 5000,
        transport: httpx.BaseTransport | None = None,
        clock_sync: ClockSync | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        now_ms_fn: Callable[[], int] = utc_now_ms,
        retry_policy: RetryPolicy = REST_RETRY_POLICY,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.mode = mode
        self.recv_window_ms = recv_window_ms
        self.retry_policy = retry_policy
        resolved_timeout = (
            timeout
            if isinstance(timeout, httpx.Timeout)
            else httpx.Timeout(timeout=timeout, connect=5.0)
        )
        self.client = httpx.Client(base_url=base_url, timeout=resolved_timeout, transport=transport)
        self._sleep = sleep_fn or time.sleep
        self._now_ms = now_ms_fn
        self._clock = clock_sync or ClockSync(
            fetch_server_time_ms=self.get_server_time_ms, now_ms_fn=now_ms_fn
        )
        self._filters: dict[str, SymbolFilters] = {}
        self._last_price: dict[str, Decimal] = {}

    def __enter__(self) -> BinanceHttpClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def close(self) -> None:
        self.client.close()

    def _send(
        self,
        method: str,
        path: str,
        *,
        build_url: Callable[[], str],
        headers: dict[str, str],
        log_params: dict[str, object] | None,
        retry_transport_errors: bool,
        retry_server_errors: bool,
    ) -> Any:
        request_id = uuid4().hex

        def _call() -> Any:
            url = build_url()
            with get_instrumentation().trace("rest_call", attrs={"method": method, "path": path}):
                response = self.client.request(method, url, headers=headers)
            get_instrumentation().counter(
                "rest_requests_total",
                1,
                attrs={"method": method, "path": path, "status": str(response.status_code)},
            )
            if response.status_code >= 400:
                snippet = _response_snippet(response)
                payload_code = None
                payload_message = None
                try:
                    payload = response.json()
                    if isinstance(payload, dict):
                        payload_code = payload.get("code")
                        payload_message = payload.get("msg")
                except ValueError:
                    pass
                safe_message = sanitize_text(str(payload_message)) if payload_message is not None else None
                err = ExchangeError(
                    f"Binance endpoint error status={response.status_code} method={method} "
                    f"path={path} code={payload_code} message={safe_message} request_id={request_id}",
                    status_code=response.status_code,
                    error_code=payload_code,
                    error_message=safe_message,
                    request_path=path,
                    request_method=method,
                    request_params=sanitize_mapping(log_params) if log_params is not None else None,
                    response_body=snippet,
                )
                if response.status_code == 429 or (
                    response.status_code >= 500 and retry_server_errors
                ):
                    raise _RetryableRequestError(
                        err,
                        retry_after_seconds=parse_retry_after_seconds(
                            response.headers.get("Retry-After")
                        ),
                    ) from err
                raise err
            try:
                return response.json()
            except ValueError as exc:
                raise ExchangeError(
                    f"Binance response is not JSON path={path} request_id={request_id}",
                    status_code=response.status_code,
                    request_path=path,
                    request_method=method,
                ) from exc

        def _retry_after(exc: Exception) -> float | None:
            if isinstance(exc, _RetryableRequestError):
                return exc.retry_after_seconds
            return None

        def _on_retry(attempt: RetryAttempt) -> None:
            get_instrumentation().counter("rest_retry_total", 1, attrs={"path": path})
            logger.warning(
                "rest_retry",
                extra={
                    "extra": {
                        "method": method,
                        "path": path,
                        "attempt": attempt.attempt,
                        "delay_ms": attempt.delay_ms,
                        "error_type": attempt.error_type,
                        "request_id": request_id,
                    }
                },
            )

        retryable: tuple[type[Exception], ...] = (_RetryableRequestError,)
        if retry_transport_errors:
            retryable = (_RetryableRequestError, httpx.TimeoutException, httpx.TransportError)
        try:
            return retry_with_backoff(
                _call,
                policy=self.retry_policy,
                retry_on=retryable,
                retry_after=_retry_after,
                on_retry=_on_retry,
                sleep_fn=self._sleep,
            )
        except _RetryableRequestError as exc:
            raise exc.exchange_error from exc

    def _public_get(self, path: str, params: dict[str, object] | None = None) -> Any:
        query = canonical_query(params or {})
        return self._send(
            "GET",
            path,
            build_url=lambda: f"{path}?{query}" if query else path,
            headers={},
            log_params=params,
            retry_transport_errors=True,
            retry_server_errors=True,
        )

    def _signed_request(self, method: str, path: str, params: dict[str, object]) -> Any:
        if not self.api_key or not self.api_secret:
            raise ConfigurationError(
                "Missing Binance API credentials: "
                "BINANCE_API_KEY_<MODE> and BINANCE_API_SECRET_<MODE> are required for signed endpoints"
            )
        normalized_method = method.upper()
        if self.mode == BotMode.PAPER and normalized_method != "GET":
            logger.info(
                "paper_mode_short_circuit",
                extra={"extra": {"method": normalized_method, "path": path, "params": params}},
            )
            return self._paper_response(normalized_method, params)

        api_secret = self.api_secret

        def _signed_url() -> str:
            # re-stamped on every attempt so retries stay inside recvWindow
            signed = sign_query(
                params,
                api_secret=api_secret,
                timestamp_ms=self._clock.stamped_now_ms(),
                recv_window_ms=self.recv_window_ms,
            )
            return f"{path}?{signed}"

        is_read = normalized_method == "GET"
        return self._send(
            normalized_method,
            path,
            build_url=_signed_url,
            headers=build_auth_headers(self.api_key),
            log_params=params,
            retry_transport_errors=is_read,
            retry_server_errors=is_read,
        )

    def _paper_response(self, method: str, params: dict[str, object]) -> dict[str, object]:
        now_ms = self._now_ms()
        symbol = str(params.get("symbol", ""))
        quantity = parse_decimal(params.get("quantity")) if params.get("quantity") else Decimal("0")
        if "price" in params:
            fill_price = parse_decimal(params["price"])
        else:
            fill_price = self._last_price.get(symbol, Decimal("0"))
        status = "CANCELED" if method == "DELETE" else "FILLED"
        executed_qty = quantity if status == "FILLED" else Decimal("0")
        return {
            "symbol": symbol,
            "orderId": f"mock_{now_ms}",
            "clientOrderId": str(
                params.get("newClientOrderId") or params.get("origClientOrderId") or ""
            ),
            "price": fmt_decimal(fill_price),
            "origQty": fmt_decimal(quantity),
            "executedQty": fmt_decimal(executed_qty),
            "cummulativeQuoteQty": fmt_decimal(executed_qty * fill_price),
            "status": status,
            "type": str(params.get("type", OrderType.LIMIT.value)),
            "side": str(params.get("side", "")),
            "transactTime": now_ms,
            "fills": [],
        }

    def get_server_time_ms(self) -> int:
        payload = self._public_get("/api/v3/time")
        return int(payload["serverTime"])

    def get_price(self, symbol: str) -> Decimal:
        try:
            ticker = TickerPrice.model_validate(
                self._public_get("/api/v3/ticker/price", {"symbol": symbol})
            )
        except (ExchangeError, httpx.HTTPError, PydanticValidationError, ValueError) as exc:
            logger.warning(
                "price_fetch_failed",
                extra={"extra": {"symbol": symbol, "error_type": type(exc).__name__, "error": str(exc)}},
            )
            return Decimal("0")
        if not ticker.price.is_finite() or ticker.price <= 0:
            logger.warning(
                "price_non_positive",
                extra={"extra": {"symbol": symbol, "price": str(ticker.price)}},
            )
            return Decimal("0")
        self._last_price[symbol] = ticker.price
        return ticker.price

    def refresh_filters(self, symbol: str) -> SymbolFilters | None:
        try:
            payload = self._public_get("/api/v3/exchangeInfo", {"symbol": symbol})
            filters = parse_symbol_filters(symbol, payload)
        except (ExchangeError, httpx.HTTPError, InvalidOperation, ValueError, TypeError) as exc:
            logger.error(
                "filters_fetch_failed",
                extra={"extra": {"symbol": symbol, "error_type": type(exc).__name__, "error": str(exc)}},
            )
            return None
        if filters is None:
            logger.error("filters_missing_in_exchange_info", extra={"extra": {"symbol": symbol}})
            return None
        self._filters[symbol] = filters
        logger.info(
            "filters_refreshed",
            extra={
                "extra": {
                    "symbol": symbol,
                    "step_size": str(filters.step_size),
                    "tick_size": str(filters.tick_size),
                    "min_qty": str(filters.min_qty),
                    "min_notional": str(filters.min_notional),
                }
            },
        )
        return filters

    def get_filters(self, symbol: str) -> SymbolFilters | None:
        cached = self._filters.get(symbol)
        if cached is not None:
            return cached
        return self.refresh_filters(symbol)

    def get_account(self) -> AccountInfo:
        return AccountInfo.model_validate(self._signed_request("GET", "/api/v3/account", {}))

    def get_open_orders(self, symbol: str) -> list[ExchangeOrder]:
        payload = self._signed_request("GET", "/api/v3/openOrders", {"symbol": symbol})
        if not isinstance(payload, list):
            raise ExchangeError("openOrders response must be a JSON list", request_path="/api/v3/openOrders")
        return [ExchangeOrder.model_validate(item) for item in payload]

    @staticmethod
    def _order_ref_params(
        symbol: str, order_id: str | None, client_order_id: str | None
    ) -> dict[str, object]:
        if order_id is None and client_order_id is None:
            raise ValueError("order_id or client_order_id is required")
        params: dict[str, object] = {"symbol": symbol}
        if order_id is not None:
            params["orderId"] = order_id
        if client_order_id is not None:
            params["origClientOrderId"] = client_order_id
        return params

    def get_order(
        self,
        symbol: str,
        *,
        order_id: str | None = None,
        client_order_id: str | None = None,
    ) -> ExchangeOrder:
        params = self._order_ref_params(symbol, order_id, client_order_id)
        return ExchangeOrder.model_validate(self._signed_request("GET", "/api/v3/order", params))

    def cancel_order(
        self,
        symbol: str,
        *,
        order_id: str | None = None,
        client_order_id: str | None = None,
    ) -> ExchangeOrder:
        params = self._order_ref_params(symbol, order_id, client_order_id)
        return ExchangeOrder.model_validate(self._signed_request("DELETE", "/api/v3/order", params))

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
        filters = self.get_filters(symbol)
        if filters is None or not filters.is_tradeable():
            raise ValidationError(f"trading filters unavailable for {symbol}")

        quantized_qty = floor_to_step(quantity, filters.step_size)
        if quantized_qty <= 0:
            raise ValidationError(f"quantity non-positive after quantize; observed={quantized_qty}")
        if quantized_qty < filters.min_qty:
            raise ValidationError(
                f"quantity below min_qty for {symbol}; required={filters.min_qty} observed={quantized_qty}"
            )

        quantized_price: Decimal | None = None
        if order_type == OrderType.LIMIT:
            if price is None:
                raise ValidationError("LIMIT order requires a price")
            quantized_price = round_to_tick(price, filters.tick_size)
            if quantized_price <= 0:
                raise ValidationError(f"price non-positive after quantize; observed={quantized_price}")
        elif price is not None:
            quantized_price = round_to_tick(price, filters.tick_size)

        if side == OrderSide.BUY and quantized_price is not None:
            notional = quantized_qty * quantized_price
            if notional < filters.min_notional:
                raise ValidationError(
                    f"notional below min_notional for {symbol}; "
                    f"required={filters.min_notional} observed={notional}"
                )

        params: dict[str, object] = {
            "symbol": symbol,
            "side": side.value,
            "type": order_type.value,
            "quantity": fmt_decimal(quantized_qty),
        }
        if order_type == OrderType.LIMIT and quantized_price is not None:
            params["price"] = fmt_decimal(quantized_price)
            params["timeInForce"] = "GTC"
        params["newClientOrderId"] = client_order_id
        params["newOrderRespType"] = "FULL"

        logger.info("order_submit", extra={"extra": {"client_order_id": client_order_id, **params}})
        try:
            payload = self._signed_request("POST", "/api/v3/order", params)
        except ExchangeError as exc:
            logger.error(
                "order_submit_failed",
                extra={
                    "extra": {
                        "status_code": exc.status_code,
                        "error_code": exc.error_code,
                        "error_message": exc.error_message,
                        "response_body": exc.response_body,
                        **params,
                    }
                },
            )
            raise
        return ExchangeOrder.model_validate(payload)

    def get_klines(
        self, symbol: str, interval: str, *, start_ms: int, limit: int = KLINES_MAX_LIMIT
    ) -> list[Candle]:
        payload = self._public_get(
            "/api/v3/klines",
            {
                "symbol": symbol,
                "interval": interval,
                "startTime": start_ms,
                "limit": min(limit, KLINES_MAX_LIMIT),
            },
        )
        if not isinstance(payload, list):
            raise ExchangeError("klines response must be a JSON list", request_path="/api/v3/klines")
        return [parse_kline(symbol, interval, row) for row in payload]
