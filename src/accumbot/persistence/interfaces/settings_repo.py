from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Protocol

from accumbot.domain.models import FeeStats, TradingSettings


class SettingsRepoProtocol(Protocol):
    def get(self) -> TradingSettings | None: ...

    def ensure_default(self) -> TradingSettings: ...

    def update(
        self,
        *,
        trading_enabled: bool | None = None,
        dry_run: bool | None = None,
        max_open_buys: int | None = None,
        min_discount_net_fees: Decimal | None = None,
    ) -> TradingSettings: ...


class SnapshotsRepoProtocol(Protocol):
    def upsert_fee_stats(self, day: date, env: str, stats: FeeStats) -> None: ...

    def get_fee_stats(self, day: date, env: str) -> FeeStats | None: ...
