from __future__ import annotations

import importlib

from sqlalchemy.engine import Engine


def run_migrations(engine: Engine) -> None:
    """Apply idempotent metadata migrations in sequence."""
    chat_message_columns = importlib.import_module(".002_chat_message_columns", package=__name__)
    chat_message_columns.run(engine)
