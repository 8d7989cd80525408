from __future__ import annotations

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from app.db.schema import ChatMessage

ADDED_COLUMNS: tuple[tuple[str, str], ...] = (
    ("context_range", "VARCHAR(64)"),
    ("tool_calls", "JSON"),
)


def run(engine: Engine) -> None:
    """
    002_chat_message_columns: Add context_range and tool_calls to chat_messages.

    Databases created before chat turns carried tool audit records lack these
    columns. The migration is idempotent and only adds what is missing.
    """

    inspector = inspect(engine)
    table_name = ChatMessage.__tablename__
    if not inspector.has_table(table_name):
        return

    existing = {column["name"] for column in inspector.get_columns(table_name)}
    with engine.begin() as connection:
        for name, column_type in ADDED_COLUMNS:
            if name in existing:
                continue
            connection.execute(text(f'ALTER TABLE "{table_name}" ADD COLUMN "{name}" {column_type}'))
