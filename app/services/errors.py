from __future__ import annotations


class SheetAgentError(RuntimeError):
    """Base class for errors surfaced to callers of the sheet engine."""


class ValidationError(SheetAgentError):
    """Raised when SQL text or tool arguments fail validation."""


class NotFoundError(SheetAgentError):
    """Raised when a spreadsheet, sheet or column does not exist."""


class ConflictError(SheetAgentError):
    """Raised when a write would break a uniqueness rule, such as a duplicate sheet name."""


class ProviderError(SheetAgentError):
    """Raised when the AI backend cannot be reached or rejects the request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
