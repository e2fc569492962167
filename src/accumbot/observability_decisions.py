from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from accumbot.observability import get_instrumentation


def emit_decision(logger: logging.Logger, event: str, payload: Mapping[str, Any]) -> None:
    """Log one audit line for a stage decision and count it.

    ``payload`` must carry ``decision`` and ``reason``; every computed intermediate rides along.
    """
    body = dict(payload)
    level = logging.WARNING if body.get("decision") == "FAIL" else logging.INFO
    logger.log(level, event, extra={"extra": {"event": event, **body}})
    try:
        get_instrumentation().counter(
            "decision_events_total",
            attrs={
                "event": event,
                "decision": str(body.get("decision", "unknown")),
                "reason": str(body.get("reason", "unknown")),
            },
        )
    except Exception:  # noqa: BLE001
        return None
