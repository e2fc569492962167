from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


def utc_now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


@dataclass
class ClockSync:
    """Tracks the exchange clock offset used to stamp signed requests."""

    fetch_server_time_ms: Callable[[], int]
    refresh_interval_seconds: int = 300
    max_abs_offset_ms: int = 15_000
    now_ms_fn: Callable[[], int] = utc_now_ms

    def __post_init__(self) -> None:
        self._offset_ms = 0
        self._last_sync_ms: int | None = None

    @property
    def offset_ms(self) -> int:
        return self._offset_ms

    def sync(self) -> int:
        local_ms = self.now_ms_fn()
        server_ms = int(self.fetch_server_time_ms())
        offset = server_ms - local_ms
        if abs(offset) > self.max_abs_offset_ms:
            logger.warning(
                "clock_offset_clamped",
                extra={"extra": {"observed_offset_ms": offset, "max_abs_offset_ms": self.max_abs_offset_ms}},
            )
            offset = max(-self.max_abs_offset_ms, min(offset, self.max_abs_offset_ms))
        self._offset_ms = offset
        self._last_sync_ms = local_ms
        return self._offset_ms

    def maybe_sync(self) -> int:
        due = (
            self._last_sync_ms is None
            or self.now_ms_fn() - self._last_sync_ms >= self.refresh_interval_seconds * 1000
        )
        if not due:
            return self._offset_ms
        try:
            return self.sync()
        except Exception as exc:  # noqa: BLE001
            # keep the previous offset; the signed call surfaces any real skew (-1021)
            self._last_sync_ms = self.now_ms_fn()
            logger.warning(
                "clock_sync_failed",
                extra={"extra": {"error_type": type(exc).__name__, "offset_ms": self._offset_ms}},
            )
            return self._offset_ms

    def stamped_now_ms(self) -> int:
        offset = self.maybe_sync()
        return self.now_ms_fn() + offset
