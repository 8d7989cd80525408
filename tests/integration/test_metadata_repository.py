from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from app.db.metadata import MetadataRepository, build_engine, init_database
from app.db.schema import ChatRole
from app.services.errors import ConflictError, NotFoundError


def test_sheet_names_are_unique_per_spreadsheet(metadata_repository: MetadataRepository) -> None:
    first = metadata_repository.create_spreadsheet(name="Budget")
    second = metadata_repository.create_spreadsheet(name="Forecast")
    sheet = metadata_repository.create_sheet(spreadsheet_id=first.id, name=" Sales ")

    assert sheet.name == "Sales"
    with pytest.raises(ConflictError):
        metadata_repository.create_sheet(spreadsheet_id=first.id, name="SALES")
    assert metadata_repository.create_sheet(spreadsheet_id=second.id, name="Sales").name == "Sales"
    with pytest.raises(ValueError, match="Sheet name is required."):
        metadata_repository.create_sheet(spreadsheet_id=first.id, name="   ")


def test_rename_sheet_checks_other_sheets_only(metadata_repository: MetadataRepository) -> None:
    spreadsheet = metadata_repository.create_spreadsheet(name="Budget")
    sales = metadata_repository.create_sheet(spreadsheet_id=spreadsheet.id, name="Sales")
    metadata_repository.create_sheet(spreadsheet_id=spreadsheet.id, name="Costs")

    assert metadata_repository.rename_sheet(sales, name="sales").name == "sales"
    with pytest.raises(ConflictError):
        metadata_repository.rename_sheet(sales, name="costs")


def test_require_sheet_scopes_to_spreadsheet(metadata_repository: MetadataRepository) -> None:
    budget = metadata_repository.create_spreadsheet(name="Budget")
    other = metadata_repository.create_spreadsheet(name="Other")
    sheet = metadata_repository.create_sheet(spreadsheet_id=budget.id, name="Sales")

    assert metadata_repository.require_sheet(sheet.id, spreadsheet_id=budget.id) is sheet
    with pytest.raises(NotFoundError, match="Sheet not found."):
        metadata_repository.require_sheet(sheet.id, spreadsheet_id=other.id)
    with pytest.raises(NotFoundError, match="Spreadsheet not found."):
        metadata_repository.require_spreadsheet("missing")


def test_delete_column_compacts_indices(metadata_repository: MetadataRepository) -> None:
    spreadsheet = metadata_repository.create_spreadsheet(name="Budget")
    sheet = metadata_repository.create_sheet(spreadsheet_id=spreadsheet.id, name="Wide")
    for index, name in enumerate(["a", "b", "c", "d"]):
        metadata_repository.add_column(sheet_id=sheet.id, column_index=index, header=name.upper(), sql_name=name)

    metadata_repository.delete_column(sheet.id, 1)

    columns = metadata_repository.list_columns(sheet.id)
    assert [(column.column_index, column.sql_name) for column in columns] == [(0, "a"), (1, "c"), (2, "d")]
    assert metadata_repository.find_column_by_sql_name(sheet.id, "b") is None


def test_chat_messages_round_trip_and_clear(metadata_repository: MetadataRepository) -> None:
    spreadsheet = metadata_repository.create_spreadsheet(name="Budget")
    metadata_repository.add_chat_message(
        spreadsheet_id=spreadsheet.id, role=ChatRole.USER, content="Total?", context_range="A1:B2"
    )
    metadata_repository.add_chat_message(
        spreadsheet_id=spreadsheet.id,
        role=ChatRole.ASSISTANT,
        content="250",
        tool_calls=[{"name": "executeSheetSql", "status": "ok"}],
    )

    messages = metadata_repository.list_chat_messages(spreadsheet.id)
    assert [message.role for message in messages] == [ChatRole.USER, ChatRole.ASSISTANT]
    assert messages[0].context_range == "A1:B2"
    assert messages[1].tool_calls == [{"name": "executeSheetSql", "status": "ok"}]

    assert metadata_repository.clear_conversation(spreadsheet.id) == 2
    assert metadata_repository.list_chat_messages(spreadsheet.id) == []


def test_deleting_spreadsheet_cascades(metadata_repository: MetadataRepository, db_session: Session) -> None:
    spreadsheet = metadata_repository.create_spreadsheet(name="Budget")
    sheet = metadata_repository.create_sheet(spreadsheet_id=spreadsheet.id, name="Sales")
    sheet_id = sheet.id
    metadata_repository.add_chat_message(spreadsheet_id=spreadsheet.id, role=ChatRole.USER, content="hi")
    db_session.commit()

    metadata_repository.delete_spreadsheet(spreadsheet)
    db_session.commit()

    assert metadata_repository.get_sheet(sheet_id) is None
    assert metadata_repository.list_spreadsheets() == []


def test_migration_adds_chat_columns_to_legacy_database(tmp_path: Path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'legacy.db'}")
    try:
        with engine.begin() as connection:
            connection.exec_driver_sql(
                "CREATE TABLE spreadsheets (id VARCHAR(36) PRIMARY KEY, name VARCHAR(255), "
                "created_at DATETIME, updated_at DATETIME)"
            )
            connection.exec_driver_sql(
                "CREATE TABLE chat_messages (id VARCHAR(36) PRIMARY KEY, spreadsheet_id VARCHAR(36), "
                "role VARCHAR(9), content TEXT, created_at DATETIME)"
            )

        init_database(engine)
        init_database(engine)

        columns = {column["name"] for column in inspect(engine).get_columns("chat_messages")}
        assert {"context_range", "tool_calls"} <= columns
        assert inspect(engine).has_table("sheet_columns")
    finally:
        engine.dispose()
