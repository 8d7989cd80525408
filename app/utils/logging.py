from __future__ import annotations

import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

from app.utils.config import get_log_dir

DEFAULT_LOG_LEVEL = os.getenv("SHEET_AGENT_LOG_LEVEL", "INFO")
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

_turn_fields: ContextVar[dict[str, Any]] = ContextVar("sheet_agent_turn_fields", default={})


class TurnContextFilter(logging.Filter):
    """Attach the fields bound by `turn_context` to every record as `turn`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.turn = dict(_turn_fields.get())
        return True


@contextmanager
def turn_context(**fields: Any) -> Iterator[None]:
    """Bind fields (spreadsheet id, provider) to all records logged inside the block."""
    token = _turn_fields.set({**_turn_fields.get(), **fields})
    try:
        yield
    finally:
        _turn_fields.reset(token)


def configure_logging(log_level: str | None = None, log_path: Path | None = None) -> None:
    """Console output for humans plus a rotating JSON-lines file under the log dir."""
    level = getattr(logging, (log_level or DEFAULT_LOG_LEVEL).upper(), logging.INFO)
    destination = log_path or get_log_dir() / "app.log"
    destination.parent.mkdir(parents=True, exist_ok=True)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ConsoleFormatter())
    logfile = RotatingFileHandler(destination, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
    logfile.setFormatter(JsonFormatter())
    for handler in (console, logfile):
        handler.addFilter(TurnContextFilter())

    logging.basicConfig(level=level, handlers=[console, logfile])


def get_logger(name: str) -> logging.Logger:
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def _encode(event: str, fields: dict[str, Any]) -> str:
    return json.dumps({"event": event, **fields}, default=str)


def _split_event(record: logging.LogRecord) -> tuple[str | None, dict[str, Any], str]:
    """Return (event, fields, raw message); event is None for plain text records."""
    message = record.getMessage()
    try:
        payload = json.loads(message)
    except json.JSONDecodeError:
        return None, {}, message
    if not isinstance(payload, dict):
        return None, {}, message
    event = payload.pop("event", None)
    return event, payload, message


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        event, fields, message = _split_event(record)
        data: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
            "severity": record.levelname,
            **getattr(record, "turn", {}),
        }
        if event is None and not fields:
            data["message"] = message
        else:
            if event is not None:
                data["event"] = event
            data.update(fields)
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line `time | level | logger | event key=value ...` output."""

    def format(self, record: logging.LogRecord) -> str:
        event, fields, message = _split_event(record)
        fields = {**getattr(record, "turn", {}), **fields}
        details = "".join(f" {key}={fields[key]}" for key in sorted(fields))
        stamp = time.strftime("%H:%M:%S", time.localtime(record.created))
        output = f"{stamp} | {record.levelname:<8} | {record.name} | {event or message}{details}"
        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)
        return output


def log_event(logger: logging.Logger, event: str, **extra: Any) -> None:
    logger.info(_encode(event, extra))


def log_warning_event(logger: logging.Logger, event: str, **extra: Any) -> None:
    logger.warning(_encode(event, extra))


@contextmanager
def log_timing(logger: logging.Logger, event: str, **extra: Any) -> Iterator[None]:
    """Emit `<event>.start`, then `<event>.complete` or `<event>.error` with elapsed_ms."""
    start = time.perf_counter()
    logger.info(_encode(f"{event}.start", extra))
    try:
        yield
    except Exception:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        logger.exception(_encode(f"{event}.error", {**extra, "elapsed_ms": elapsed_ms}))
        raise
    elapsed_ms = (time.perf_counter() - start) * 1000.0
    logger.info(_encode(f"{event}.complete", {**extra, "elapsed_ms": elapsed_ms}))
