from __future__ import annotations

import pytest

from app.utils import metrics
from app.utils.metrics import TurnMetrics, emit_agent_metric, measure_agent


def test_emit_agent_metric_prefixes_event() -> None:
    payload = emit_agent_metric("turn.completed", spreadsheet_id="book-1", iterations=2)

    assert payload["event"] == "agent.turn.completed"
    assert payload["spreadsheet_id"] == "book-1"
    assert payload["iterations"] == 2
    assert "timestamp" in payload
    assert emit_agent_metric("agent.turn.completed")["event"] == "agent.turn.completed"


def test_turn_metrics_counts_tools_and_errors() -> None:
    turn = TurnMetrics()
    turn.record_iteration()
    turn.record_iteration(malformed=True)
    turn.record_tool("highlights_add", ok=True)
    turn.record_tool("executeSheetSql", ok=False)
    turn.record_tool("highlights_add", ok=True)

    assert turn.as_fields() == {
        "iterations": 2,
        "malformed_replies": 1,
        "tool_calls": 3,
        "tool_errors": 1,
        "tools": {"executeSheetSql": 1, "highlights_add": 2},
    }


def test_measure_agent_emits_counters_and_outcome(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []

    def _capture(event: str, **fields) -> dict:
        payload = {"event": event, **fields}
        calls.append(payload)
        return payload

    monkeypatch.setattr(metrics, "emit_agent_metric", _capture)

    with measure_agent("turn", spreadsheet_id="book-1") as turn:
        turn.record_iteration()
        turn.record_tool("filter_add", ok=True)
    with pytest.raises(RuntimeError):
        with measure_agent("turn", spreadsheet_id="book-2"):
            raise RuntimeError("provider down")

    assert [call["event"] for call in calls] == ["turn.timing", "turn.timing"]
    assert [call["outcome"] for call in calls] == ["ok", "error"]
    assert calls[0]["tool_calls"] == 1
    assert calls[1]["iterations"] == 0
    assert all(call["elapsed_ms"] >= 0 for call in calls)
