from __future__ import annotations

from datetime import datetime
from typing import Protocol

from accumbot.domain.models import Cycle


class CyclesRepoProtocol(Protocol):
    def open_for_sell(self, env: str, sell_client_order_id: str, started_at: datetime) -> int: ...

    def get(self, cycle_id: int) -> Cycle | None: ...

    def list_recent(self, env: str, limit: int) -> list[Cycle]: ...
