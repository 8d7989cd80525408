from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping

from app.utils.config import get_data_root
from app.utils.logging import get_logger


class AuditLogService:
    """Structured audit logging for agent tool calls."""

    def __init__(self, data_root: Path | None = None) -> None:
        base = Path(data_root) if data_root is not None else get_data_root()
        self.log_path = (base / "logs" / "tool_audit.jsonl").expanduser()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)

    def record_tool_call(self, *, spreadsheet_id: str, record: Mapping[str, Any]) -> dict[str, Any]:
        return self._record("tool.call", {"spreadsheet_id": spreadsheet_id, **record})

    def record_turn(self, *, spreadsheet_id: str, iterations: int, tool_calls: int, outcome: str) -> dict[str, Any]:
        return self._record(
            "agent.turn",
            {
                "spreadsheet_id": spreadsheet_id,
                "iterations": iterations,
                "tool_calls": tool_calls,
                "outcome": outcome,
            },
        )

    def tail(self, limit: int = 50) -> list[dict[str, Any]]:
        """Read the most recent audit entries for verification or debugging."""
        if limit <= 0 or not self.log_path.exists():
            return []
        entries: list[dict[str, Any]] = []
        for raw in self.log_path.read_text(encoding="utf-8").splitlines()[-limit:]:
            try:
                entries.append(json.loads(raw))
            except json.JSONDecodeError:
                continue
        return entries

    def _record(self, action: str, details: dict[str, Any]) -> dict[str, Any]:
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "action": action,
            **details,
        }
        line = json.dumps(entry, default=str)
        try:
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self.logger.warning("Failed to persist audit log for %s", action)
        self.logger.debug("audit.%s %s", action, details)
        return entry
