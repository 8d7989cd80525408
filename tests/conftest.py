from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.db.metadata import (
    MetadataRepository,
    build_engine,
    build_read_only_engine,
    create_session_factory,
    init_database,
    session_scope,
)
from app.services.sheet_catalog import SheetEntry, sheet_entry
from app.services.sql_sandbox import SqlSandbox
from app.services.table_store import TableStore
from app.services.view_state import FilterStore
from app.utils.config import QueryLimits

SALES_HEADERS = ("product", "revenue")
SALES_ROWS = (("Widget", "150"), ("Gadget", "100"))

SheetFactory = Callable[..., SheetEntry]


@pytest.fixture
def temp_data_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_root = tmp_path / "data"
    data_root.mkdir()
    monkeypatch.setenv("DATA_ROOT", str(data_root))
    return data_root


@pytest.fixture
def sqlite_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    db_path = tmp_path / "sheets.db"
    url = f"sqlite:///{db_path}"
    monkeypatch.setenv("SQLITE_URL", url)
    return url


@pytest.fixture
def session_factory(sqlite_url: str) -> Iterator[sessionmaker[Session]]:
    engine = build_engine(sqlite_url)
    init_database(engine)
    factory = create_session_factory(engine)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def read_engine(sqlite_url: str, session_factory: sessionmaker[Session]) -> Iterator[Engine]:
    engine = build_read_only_engine(sqlite_url)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    with session_scope(session_factory) as session:
        yield session


@pytest.fixture
def metadata_repository(db_session: Session) -> MetadataRepository:
    return MetadataRepository(db_session)


@pytest.fixture
def filter_store() -> FilterStore:
    return FilterStore()


@pytest.fixture
def table_store(metadata_repository: MetadataRepository, filter_store: FilterStore) -> TableStore:
    return TableStore(metadata_repository, filter_store=filter_store)


@pytest.fixture
def query_limits() -> QueryLimits:
    return QueryLimits(preview_rows=100, max_rows=2000)


@pytest.fixture
def sandbox(read_engine: Engine, table_store: TableStore, query_limits: QueryLimits) -> SqlSandbox:
    return SqlSandbox(read_engine=read_engine, table_store=table_store, limits=query_limits)


@pytest.fixture
def make_sheet(
    metadata_repository: MetadataRepository,
    table_store: TableStore,
    db_session: Session,
) -> SheetFactory:
    """Create a committed sheet with named columns and rows numbered from 1."""

    def _make(
        name: str = "Sales",
        headers: Sequence[str] = SALES_HEADERS,
        rows: Sequence[Sequence[str]] = SALES_ROWS,
        spreadsheet_id: str | None = None,
    ) -> SheetEntry:
        if spreadsheet_id is None:
            spreadsheet_id = metadata_repository.create_spreadsheet(name="Quarterly Report").id
        sheet = metadata_repository.create_sheet(spreadsheet_id=spreadsheet_id, name=name)
        table_store.ensure_table(sheet.id)
        table_store.add_named_columns(sheet.id, list(headers))
        for row_number, values in enumerate(rows, start=1):
            for column_index, value in enumerate(values):
                table_store.set_cell(sheet.id, row_number, column_index, value)
        db_session.commit()
        return sheet_entry(metadata_repository, sheet)

    return _make


@pytest.fixture
def sales_sheet(make_sheet: SheetFactory) -> SheetEntry:
    return make_sheet()
