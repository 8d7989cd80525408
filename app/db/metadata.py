from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import Select, create_engine, delete, event, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.services.errors import ConflictError, NotFoundError
from app.utils.config import get_sqlite_url

from .migrations import run_migrations
from .schema import Base, ChatMessage, ChatRole, Sheet, SheetColumn, Spreadsheet

SQLITE_PREFIX = "sqlite:///"
BUSY_TIMEOUT_SECONDS = 30


def _resolve_sqlite_url(url: str | None = None) -> str:
    resolved = url or get_sqlite_url()
    if resolved.startswith(SQLITE_PREFIX) and ":memory:" not in resolved:
        db_path = Path(resolved.replace(SQLITE_PREFIX, "", 1))
        db_path.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def _configure_connection(dbapi_connection: Any, _record: Any) -> None:
    # Hand transaction control to SQLAlchemy so ALTER/CREATE roll back with the rest.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys = ON")
    finally:
        cursor.close()


def _begin_transaction(connection: Any) -> None:
    connection.exec_driver_sql("BEGIN")


def build_engine(url: str | None = None) -> Engine:
    """Create the sole read-write engine.

    The pool holds exactly one connection, so every write path is serialised
    through it. DDL issued by the table store participates in the surrounding
    transaction.
    """
    resolved = _resolve_sqlite_url(url)
    engine = create_engine(
        resolved,
        future=True,
        pool_size=1,
        max_overflow=0,
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_SECONDS},
    )
    event.listen(engine, "connect", _configure_connection)
    event.listen(engine, "begin", _begin_transaction)
    return engine


def build_read_only_engine(url: str | None = None) -> Engine:
    """Create an engine over the same database file opened in SQLite read-only mode."""
    resolved = _resolve_sqlite_url(url)
    if not resolved.startswith(SQLITE_PREFIX) or ":memory:" in resolved:
        raise ValueError("A read-only engine requires a file-backed sqlite:/// URL.")
    db_path = Path(resolved.replace(SQLITE_PREFIX, "", 1)).resolve()
    read_only_url = f"{SQLITE_PREFIX}file:{db_path.as_posix()}?mode=ro&uri=true"
    return create_engine(
        read_only_url,
        future=True,
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_SECONDS},
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False, future=True)


def init_database(engine: Engine) -> None:
    Base.metadata.create_all(engine)
    run_migrations(engine)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class MetadataRepository:
    """Data access helpers for spreadsheet, sheet, column and chat metadata."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Spreadsheet helpers -------------------------------------------------
    def list_spreadsheets(self) -> Sequence[Spreadsheet]:
        stmt: Select[tuple[Spreadsheet]] = select(Spreadsheet).order_by(Spreadsheet.updated_at.desc())
        return self.session.execute(stmt).scalars().all()

    def get_spreadsheet(self, spreadsheet_id: str) -> Spreadsheet | None:
        return self.session.get(Spreadsheet, spreadsheet_id)

    def require_spreadsheet(self, spreadsheet_id: str) -> Spreadsheet:
        spreadsheet = self.get_spreadsheet(spreadsheet_id)
        if spreadsheet is None:
            raise NotFoundError("Spreadsheet not found.")
        return spreadsheet

    def create_spreadsheet(self, *, name: str) -> Spreadsheet:
        spreadsheet = Spreadsheet(name=name.strip())
        self.session.add(spreadsheet)
        self.session.flush()
        return spreadsheet

    def delete_spreadsheet(self, spreadsheet: Spreadsheet) -> None:
        self.session.delete(spreadsheet)
        self.session.flush()

    def touch_spreadsheet(self, spreadsheet_id: str) -> None:
        self.session.execute(
            update(Spreadsheet)
            .where(Spreadsheet.id == spreadsheet_id)
            .values(updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )

    # Sheet helpers -------------------------------------------------------
    def list_sheets(self, spreadsheet_id: str) -> Sequence[Sheet]:
        stmt: Select[tuple[Sheet]] = (
            select(Sheet).where(Sheet.spreadsheet_id == spreadsheet_id).order_by(Sheet.created_at.asc())
        )
        return self.session.execute(stmt).scalars().all()

    def get_sheet(self, sheet_id: str) -> Sheet | None:
        return self.session.get(Sheet, sheet_id)

    def require_sheet(self, sheet_id: str, *, spreadsheet_id: str | None = None) -> Sheet:
        sheet = self.get_sheet(sheet_id)
        if sheet is None or (spreadsheet_id is not None and sheet.spreadsheet_id != spreadsheet_id):
            raise NotFoundError("Sheet not found.")
        return sheet

    def find_sheet_by_name(
        self, spreadsheet_id: str, name: str, *, exclude_sheet_id: str | None = None
    ) -> Sheet | None:
        stmt: Select[tuple[Sheet]] = select(Sheet).where(
            Sheet.spreadsheet_id == spreadsheet_id,
            func.lower(Sheet.name) == name.strip().lower(),
        )
        if exclude_sheet_id is not None:
            stmt = stmt.where(Sheet.id != exclude_sheet_id)
        return self.session.execute(stmt).scalars().first()

    def create_sheet(self, *, spreadsheet_id: str, name: str) -> Sheet:
        cleaned = name.strip()
        if not cleaned:
            raise ValueError("Sheet name is required.")
        if self.find_sheet_by_name(spreadsheet_id, cleaned) is not None:
            raise ConflictError("A sheet with that name already exists in this spreadsheet.")
        sheet = Sheet(spreadsheet_id=spreadsheet_id, name=cleaned)
        self.session.add(sheet)
        self.session.flush()
        self.touch_spreadsheet(spreadsheet_id)
        return sheet

    def rename_sheet(self, sheet: Sheet, *, name: str) -> Sheet:
        cleaned = name.strip()
        if not cleaned:
            raise ValueError("Sheet name is required.")
        if self.find_sheet_by_name(sheet.spreadsheet_id, cleaned, exclude_sheet_id=sheet.id) is not None:
            raise ConflictError("A sheet with that name already exists in this spreadsheet.")
        sheet.name = cleaned
        self.session.flush()
        self.touch_sheet(sheet)
        return sheet

    def delete_sheet(self, sheet: Sheet) -> None:
        spreadsheet_id = sheet.spreadsheet_id
        self.session.delete(sheet)
        self.session.flush()
        self.touch_spreadsheet(spreadsheet_id)

    def touch_sheet(self, sheet: Sheet) -> None:
        sheet.updated_at = datetime.now(UTC)
        self.touch_spreadsheet(sheet.spreadsheet_id)

    # Column helpers ------------------------------------------------------
    def list_columns(self, sheet_id: str) -> list[SheetColumn]:
        stmt: Select[tuple[SheetColumn]] = (
            select(SheetColumn)
            .where(SheetColumn.sheet_id == sheet_id)
            .order_by(SheetColumn.column_index.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def get_column(self, sheet_id: str, column_index: int) -> SheetColumn | None:
        return self.session.get(SheetColumn, (sheet_id, column_index))

    def find_column_by_sql_name(self, sheet_id: str, sql_name: str) -> SheetColumn | None:
        stmt: Select[tuple[SheetColumn]] = select(SheetColumn).where(
            SheetColumn.sheet_id == sheet_id, SheetColumn.sql_name == sql_name
        )
        return self.session.execute(stmt).scalars().first()

    def add_column(self, *, sheet_id: str, column_index: int, header: str, sql_name: str) -> SheetColumn:
        column = SheetColumn(sheet_id=sheet_id, column_index=column_index, header=header, sql_name=sql_name)
        self.session.add(column)
        self.session.flush()
        return column

    def update_column(self, column: SheetColumn, *, header: str, sql_name: str) -> SheetColumn:
        column.header = header
        column.sql_name = sql_name
        self.session.flush()
        return column

    def delete_column(self, sheet_id: str, column_index: int) -> None:
        """Delete one column's metadata and compact the indices after it."""
        self.session.execute(
            delete(SheetColumn)
            .where(SheetColumn.sheet_id == sheet_id, SheetColumn.column_index == column_index)
            .execution_options(synchronize_session=False)
        )
        # Two passes through negative indices so the composite key never collides mid-update.
        self.session.execute(
            update(SheetColumn)
            .where(SheetColumn.sheet_id == sheet_id, SheetColumn.column_index > column_index)
            .values(column_index=-SheetColumn.column_index)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            update(SheetColumn)
            .where(SheetColumn.sheet_id == sheet_id, SheetColumn.column_index < 0)
            .values(column_index=-SheetColumn.column_index - 1)
            .execution_options(synchronize_session=False)
        )
        self.session.expire_all()

    # Chat helpers --------------------------------------------------------
    def list_chat_messages(self, spreadsheet_id: str) -> Sequence[ChatMessage]:
        stmt: Select[tuple[ChatMessage]] = (
            select(ChatMessage)
            .where(ChatMessage.spreadsheet_id == spreadsheet_id)
            .order_by(ChatMessage.created_at.asc())
        )
        return self.session.execute(stmt).scalars().all()

    def add_chat_message(
        self,
        *,
        spreadsheet_id: str,
        role: ChatRole,
        content: str,
        context_range: str | None = None,
        tool_calls: Sequence[dict[str, Any]] | None = None,
    ) -> ChatMessage:
        message = ChatMessage(
            spreadsheet_id=spreadsheet_id,
            role=role,
            content=content,
            context_range=context_range,
            tool_calls=list(tool_calls) if tool_calls else None,
        )
        self.session.add(message)
        self.session.flush()
        self.touch_spreadsheet(spreadsheet_id)
        return message

    def clear_conversation(self, spreadsheet_id: str) -> int:
        result = self.session.execute(
            delete(ChatMessage)
            .where(ChatMessage.spreadsheet_id == spreadsheet_id)
            .execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount or 0
