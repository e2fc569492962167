from __future__ import annotations

from decimal import Decimal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from accumbot.domain.models import BotMode

LIVE_BASE_URL = "https://api.binance.com"
TESTNET_BASE_URL = "https://testnet.binance.vision"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    bot_mode: BotMode = Field(default=BotMode.LIVE, alias="BOT_MODE")
    dry_run: bool = Field(default=False, alias="DRY_RUN")

    binance_api_key_live: SecretStr | None = Field(default=None, alias="BINANCE_API_KEY_LIVE")
    binance_api_secret_live: SecretStr | None = Field(
        default=None, alias="BINANCE_API_SECRET_LIVE"
    )
    binance_api_key_testnet: SecretStr | None = Field(
        default=None, alias="BINANCE_API_KEY_TESTNET"
    )
    binance_api_secret_testnet: SecretStr | None = Field(
        default=None, alias="BINANCE_API_SECRET_TESTNET"
    )
    binance_rest_base_url: str | None = Field(default=None, alias="BINANCE_REST_BASE_URL")
    recv_window_ms: int = Field(default=5000, alias="RECV_WINDOW_MS")
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")

    symbol: str = Field(default="BTCUSDT", alias="SYMBOL")
    base_asset: str = Field(default="BTC", alias="BASE_ASSET")
    quote_asset: str = Field(default="USDT", alias="QUOTE_ASSET")

    candle_interval: str = Field(default="15m", alias="CANDLE_INTERVAL")
    candle_backfill_days: int = Field(default=30, alias="CANDLE_BACKFILL_DAYS")
    loop_minutes: int = Field(default=60, alias="LOOP_MINUTES")
    state_db_path: str = Field(default="accumbot_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    sell_interval_hours: int = Field(default=24, alias="SELL_INTERVAL_HOURS")
    sell_fraction_divisor: Decimal = Field(default=Decimal("10"), alias="SELL_FRACTION_DIVISOR")
    sell_dust_floor: Decimal = Field(default=Decimal("0.0005"), alias="SELL_DUST_FLOOR")
    buy_absolute_min_notional: Decimal = Field(
        default=Decimal("10"), alias="BUY_ABSOLUTE_MIN_NOTIONAL"
    )
    duplicate_price_tolerance: Decimal = Field(
        default=Decimal("5"), alias="DUPLICATE_PRICE_TOLERANCE"
    )
    fee_fallback_rate: Decimal = Field(default=Decimal("0.0015"), alias="FEE_FALLBACK_RATE")
    fee_min_sample: int = Field(default=20, alias="FEE_MIN_SAMPLE")
    fee_buffer_rate: Decimal = Field(default=Decimal("0.002"), alias="FEE_BUFFER_RATE")
    discount_margin: Decimal = Field(default=Decimal("0.005"), alias="DISCOUNT_MARGIN")
    atr_window: int = Field(default=24, alias="ATR_WINDOW")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    observability_otlp_endpoint: str | None = Field(
        default=None, alias="OBSERVABILITY_OTLP_ENDPOINT"
    )
    observability_prometheus_port: int = Field(
        default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT"
    )

    @field_validator("bot_mode", mode="before")
    def normalize_bot_mode(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("symbol", "base_asset", "quote_asset")
    def normalize_asset(cls, value: str) -> str:
        normalized = value.strip().upper()
        if not normalized:
            raise ValueError("symbol and asset names must be non-empty")
        return normalized

    @field_validator("candle_interval")
    def validate_candle_interval(cls, value: str) -> str:
        interval_to_ms(value)
        return value.strip()

    @field_validator("loop_minutes")
    def validate_loop_minutes(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("LOOP_MINUTES must be > 0")
        return value

    @field_validator("candle_backfill_days", "sell_interval_hours", "fee_min_sample")
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be > 0")
        return value

    @field_validator("atr_window")
    def validate_atr_window(cls, value: int) -> int:
        if value < 2:
            raise ValueError("ATR_WINDOW must be >= 2")
        return value

    @field_validator("sell_fraction_divisor")
    def validate_sell_fraction_divisor(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("SELL_FRACTION_DIVISOR must be > 0")
        return value

    @field_validator(
        "sell_dust_floor",
        "buy_absolute_min_notional",
        "duplicate_price_tolerance",
        "fee_fallback_rate",
        "fee_buffer_rate",
        "discount_margin",
    )
    def validate_non_negative_decimal(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @field_validator("recv_window_ms")
    def validate_recv_window(cls, value: int) -> int:
        if value <= 0 or value > 60_000:
            raise ValueError("RECV_WINDOW_MS must be in (0, 60000]")
        return value

    @field_validator("http_timeout_seconds")
    def validate_http_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("HTTP_TIMEOUT_SECONDS must be > 0")
        return value

    def rest_base_url(self) -> str:
        if self.binance_rest_base_url:
            return self.binance_rest_base_url.rstrip("/")
        if self.bot_mode == BotMode.TESTNET:
            return TESTNET_BASE_URL
        return LIVE_BASE_URL

    def api_credentials(self) -> tuple[str | None, str | None]:
        """Return (api_key, api_secret) for the active mode.

        Paper mode signs read-only calls with the live keys.
        """
        if self.bot_mode == BotMode.TESTNET:
            key, secret = self.binance_api_key_testnet, self.binance_api_secret_testnet
        else:
            key, secret = self.binance_api_key_live, self.binance_api_secret_live
        return (
            key.get_secret_value() if key else None,
            secret.get_secret_value() if secret else None,
        )

    def candle_interval_ms(self) -> int:
        return interval_to_ms(self.candle_interval)


_INTERVAL_UNITS_MS = {
    "s": 1_000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
    "w": 604_800_000,
}


def interval_to_ms(interval: str) -> int:
    raw = interval.strip()
    if len(raw) < 2 or raw[-1] not in _INTERVAL_UNITS_MS or not raw[:-1].isdigit():
        raise ValueError(f"unsupported kline interval: {interval!r}")
    return int(raw[:-1]) * _INTERVAL_UNITS_MS[raw[-1]]
