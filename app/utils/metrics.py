from __future__ import annotations

import json
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from time import perf_counter
from typing import Any, Iterator

from app.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass
class TurnMetrics:
    """Counters collected while one agent turn runs."""

    iterations: int = 0
    malformed_replies: int = 0
    tool_errors: int = 0
    tools: Counter[str] = field(default_factory=Counter)

    def record_iteration(self, *, malformed: bool = False) -> None:
        self.iterations += 1
        if malformed:
            self.malformed_replies += 1

    def record_tool(self, name: str, *, ok: bool) -> None:
        self.tools[name] += 1
        if not ok:
            self.tool_errors += 1

    def as_fields(self) -> dict[str, Any]:
        return {
            "iterations": self.iterations,
            "malformed_replies": self.malformed_replies,
            "tool_calls": sum(self.tools.values()),
            "tool_errors": self.tool_errors,
            "tools": dict(sorted(self.tools.items())),
        }


def emit_agent_metric(event: str, **fields: Any) -> dict[str, Any]:
    """Log an agent metric payload and return it."""
    payload = {"event": _normalize_event(event), "timestamp": datetime.now(UTC).isoformat(), **fields}
    LOGGER.info(json.dumps(payload, default=str))
    return payload


@contextmanager
def measure_agent(event: str, **fields: Any) -> Iterator[TurnMetrics]:
    """Yield a TurnMetrics and emit `<event>.timing` with its counters when the block exits.

    The metric is emitted whether or not the block raises; `outcome` tells the two apart.
    """
    turn = TurnMetrics()
    outcome = "error"
    start = perf_counter()
    try:
        yield turn
        outcome = "ok"
    finally:
        elapsed_ms = round((perf_counter() - start) * 1000, 3)
        emit_agent_metric(f"{event}.timing", elapsed_ms=elapsed_ms, outcome=outcome, **fields, **turn.as_fields())


def _normalize_event(event: str) -> str:
    return event if event.startswith("agent.") else f"agent.{event}"
