from __future__ import annotations

from accumbot.domain.models import TERMINAL_STATUSES, OrderStatus

_STATUS_RANK = {
    OrderStatus.NEW: 0,
    OrderStatus.PARTIALLY_FILLED: 1,
    OrderStatus.FILLED: 2,
    OrderStatus.CANCELED: 2,
    OrderStatus.FAILED: 2,
}


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def advance_status(current: OrderStatus, observed: OrderStatus) -> OrderStatus:
    """Return the status a record may move to; never regresses and never leaves a terminal state."""
    if is_terminal(current):
        return current
    if _STATUS_RANK[observed] < _STATUS_RANK[current]:
        return current
    return observed
