from __future__ import annotations

from threading import Lock


class FilterStore:
    """In-memory, per-sheet list of SQL filter conditions combined with AND."""

    def __init__(self) -> None:
        self._filters: dict[str, list[str]] = {}
        self._lock = Lock()

    def get(self, sheet_id: str) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._filters.get(sheet_id, ()))

    def add(self, sheet_id: str, condition: str) -> tuple[str, ...]:
        cleaned = condition.strip()
        if not cleaned:
            raise ValueError("Filter condition is required.")
        with self._lock:
            conditions = self._filters.setdefault(sheet_id, [])
            conditions.append(cleaned)
            return tuple(conditions)

    def clear(self, sheet_id: str) -> int:
        """Drop every condition for ``sheet_id`` and return how many were removed."""
        with self._lock:
            removed = self._filters.pop(sheet_id, [])
        return len(removed)

    def where_clause(self, sheet_id: str) -> str | None:
        conditions = self.get(sheet_id)
        if not conditions:
            return None
        return " AND ".join(f"({condition})" for condition in conditions)
