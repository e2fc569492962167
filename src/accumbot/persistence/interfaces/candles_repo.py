from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from accumbot.domain.models import Candle


class CandlesRepoProtocol(Protocol):
    def latest_close_time(self, symbol: str, interval: str) -> int | None: ...

    def upsert_many(self, candles: Sequence[Candle]) -> int: ...

    def recent(self, symbol: str, interval: str, limit: int) -> list[Candle]: ...

    def count(self, symbol: str, interval: str) -> int: ...
