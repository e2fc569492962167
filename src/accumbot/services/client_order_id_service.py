from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from accumbot.domain.models import OrderSide

SIDE_PREFIXES = {OrderSide.SELL: "ASELL", OrderSide.BUY: "ABUY"}
_BINANCE_CLIENT_ID_MAX_LEN = 36


@dataclass
class ClientOrderIdGenerator:
    """Issues ``<ASELL|ABUY>_<env>_<epoch-ms>`` keys, strictly increasing per process."""

    env: str
    now_ms_fn: Callable[[], int] = field(default_factory=lambda: (lambda: int(time.time() * 1000)))
    _last_ms: int | None = None

    def next_id(self, side: OrderSide) -> str:
        now_ms = int(self.now_ms_fn())
        if self._last_ms is not None:
            now_ms = max(now_ms, self._last_ms + 1)
        self._last_ms = now_ms
        client_id = f"{SIDE_PREFIXES[side]}_{self.env}_{now_ms}"
        if len(client_id) > _BINANCE_CLIENT_ID_MAX_LEN:
            raise ValueError(f"client order id too long for exchange: {client_id}")
        return client_id


def engine_client_id_pattern(env: str) -> re.Pattern[str]:
    return re.compile(rf"^(?:ASELL|ABUY)_{re.escape(env)}_\d+$")


def is_engine_client_id(client_order_id: str | None, env: str) -> bool:
    if not client_order_id:
        return False
    return engine_client_id_pattern(env).match(client_order_id) is not None
