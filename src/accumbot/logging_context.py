from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType

CORRELATION_FIELDS = frozenset({"iteration_id", "env", "cycle_id", "client_order_id", "symbol"})

_EMPTY: Mapping[str, str] = MappingProxyType({})
_correlation: ContextVar[Mapping[str, str]] = ContextVar("accumbot_correlation", default=_EMPTY)


def get_logging_context() -> dict[str, str]:
    """Correlation fields currently bound, as merged into every JSON log line."""
    return dict(_correlation.get())


@contextmanager
def with_logging_context(**fields: str | int | None) -> Iterator[None]:
    """Bind correlation fields for the enclosed block; ``None`` values are skipped."""
    unknown = set(fields) - CORRELATION_FIELDS
    if unknown:
        raise ValueError(f"unknown logging context fields: {sorted(unknown)}")
    merged = dict(_correlation.get())
    merged.update({key: str(value) for key, value in fields.items() if value is not None})
    token = _correlation.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _correlation.reset(token)


@contextmanager
def with_iteration_context(iteration_id: str, *, env: str, symbol: str) -> Iterator[None]:
    with with_logging_context(iteration_id=iteration_id, env=env, symbol=symbol):
        yield
