from __future__ import annotations

import re
from collections.abc import Callable

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.services.errors import ValidationError
from app.services.sheet_catalog import ColumnEntry, SheetEntry
from app.services.sql_sandbox import SqlSandbox
from app.services.table_store import TableStore
from app.utils.config import QueryLimits

SheetFactory = Callable[..., SheetEntry]
SALES_REF = 'context.spreadsheet.sheets["Sales"]'


@pytest.fixture
def two_sheets(make_sheet: SheetFactory) -> tuple[SheetEntry, SheetEntry]:
    sales = make_sheet()
    costs = make_sheet(
        name="Costs",
        headers=["item", "amount"],
        rows=[("Rent", "900")],
        spreadsheet_id=sales.spreadsheet_id,
    )
    return sales, costs


def test_read_returns_rows_for_bound_sheet(sandbox: SqlSandbox, sales_sheet: SheetEntry) -> None:
    result = sandbox.execute_read(
        f"SELECT \"revenue\" FROM {SALES_REF} WHERE \"product\"='Widget'", sales_sheet, [sales_sheet]
    )

    assert result.rows == [{"revenue": "150"}]
    assert result.row_count == 1
    assert result.truncated is False
    assert result.columns == ["revenue"]
    assert result.sql.startswith(f'SELECT "revenue" FROM "{sales_sheet.table_name}"')


def test_read_accepts_trailing_semicolon_and_cte(sandbox: SqlSandbox, sales_sheet: SheetEntry) -> None:
    cte = (
        f"WITH widgets AS (SELECT * FROM {SALES_REF} WHERE \"product\" = 'Widget') "
        "SELECT row_number, \"revenue\" FROM widgets;"
    )

    result = sandbox.execute_read(cte, sales_sheet, [sales_sheet])

    assert result.rows == [{"row_number": 1, "revenue": "150"}]


def test_keywords_inside_literals_and_function_names_are_allowed(
    sandbox: SqlSandbox, sales_sheet: SheetEntry
) -> None:
    literal = sandbox.execute_read(
        f"SELECT \"product\" FROM {SALES_REF} WHERE \"product\" = 'drop table; delete'", sales_sheet
    )
    function = sandbox.execute_read(
        f"SELECT replace(\"product\", 'W', 'V') AS renamed FROM {SALES_REF} ORDER BY row_number", sales_sheet
    )

    assert literal.rows == []
    assert function.rows == [{"renamed": "Vidget"}, {"renamed": "Gadget"}]


@pytest.mark.parametrize(
    ("sql", "message"),
    [
        ("", "SQL query is required."),
        (f"DELETE FROM {SALES_REF}", "Only SELECT queries"),
        (f"SELECT * FROM {SALES_REF}; SELECT 1", "single SQL statement"),
        (f"SELECT * FROM {SALES_REF}; DROP TABLE x", "not allowed"),
        ("SELECT 1", "Reference the sheet table name"),
        ("SELECT name FROM sqlite_master", "is not available to this query"),
        ("SELECT * FROM other.sheet_x", "is not available to this query"),
        ("SELECT * FROM (", "Could not parse SQL"),
    ],
)
def test_read_rejections(sandbox: SqlSandbox, sales_sheet: SheetEntry, sql: str, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        sandbox.prepare_read(sql, sales_sheet, [sales_sheet])


def test_read_rejects_second_sheet(sandbox: SqlSandbox, two_sheets: tuple[SheetEntry, SheetEntry]) -> None:
    sales, costs = two_sheets
    sql = f"SELECT * FROM {SALES_REF} JOIN {costs.reference} ON 1 = 1"

    with pytest.raises(ValidationError, match="Queries may target only one sheet at a time."):
        sandbox.prepare_read(sql, sales, [sales, costs])


def test_unknown_reference_binds_to_requested_sheet(sandbox: SqlSandbox, sales_sheet: SheetEntry) -> None:
    result = sandbox.execute_read(
        'SELECT COUNT(*) AS total FROM context.spreadsheet.sheets["whatever"]', sales_sheet, [sales_sheet]
    )
    assert result.rows == [{"total": 2}]


def test_read_truncates_to_limits(read_engine: Engine, table_store: TableStore, make_sheet: SheetFactory) -> None:
    sheet = make_sheet(rows=[(f"Item {number}", str(number)) for number in range(1, 8)])
    sandbox = SqlSandbox(
        read_engine=read_engine,
        table_store=table_store,
        limits=QueryLimits(preview_rows=2, max_rows=5),
    )

    result = sandbox.execute_read(f"SELECT * FROM {SALES_REF}", sheet, [sheet])

    assert len(result.rows) == 2
    assert result.row_count == 5
    assert result.truncated is True


@pytest.mark.parametrize(("row_total", "truncated"), [(2, False), (3, True)])
def test_read_at_exact_row_cap_is_not_truncated(
    read_engine: Engine, table_store: TableStore, make_sheet: SheetFactory, row_total: int, truncated: bool
) -> None:
    sheet = make_sheet(rows=[(f"Item {number}", str(number)) for number in range(1, row_total + 1)])
    sandbox = SqlSandbox(
        read_engine=read_engine,
        table_store=table_store,
        limits=QueryLimits(preview_rows=2, max_rows=2),
    )

    result = sandbox.execute_read(f"SELECT * FROM {SALES_REF}", sheet, [sheet])

    assert result.row_count == 2
    assert len(result.rows) == 2
    assert result.truncated is truncated


def test_mutation_update_and_insert(sandbox: SqlSandbox, sales_sheet: SheetEntry, db_session: Session) -> None:
    update = sandbox.execute_mutation(
        f"UPDATE {SALES_REF} SET \"revenue\" = '175' WHERE \"product\" = 'Widget'", sales_sheet
    )
    insert = sandbox.execute_mutation(
        f"INSERT INTO {SALES_REF} (\"product\", \"revenue\") VALUES ('Gizmo', '30')", sales_sheet
    )
    db_session.commit()

    assert (update.operation, update.changes, update.last_insert_rowid) == ("update", 1, None)
    assert (insert.operation, insert.changes, insert.last_insert_rowid) == ("insert", 1, 3)
    rows = sandbox.execute_read(f'SELECT "product", "revenue" FROM {SALES_REF} ORDER BY row_number', sales_sheet)
    assert rows.rows == [
        {"product": "Widget", "revenue": "175"},
        {"product": "Gadget", "revenue": "100"},
        {"product": "Gizmo", "revenue": "30"},
    ]


def test_mutation_alter_add_column_syncs_metadata(
    sandbox: SqlSandbox, sales_sheet: SheetEntry, table_store: TableStore
) -> None:
    result = sandbox.execute_mutation(f'ALTER TABLE {SALES_REF} ADD COLUMN "region" TEXT', sales_sheet)

    assert result.operation == "alter"
    assert result.added_columns == [ColumnEntry(index=2, header="region", sql_name="region")]
    assert [column.sql_name for column in table_store.get_columns(sales_sheet.id)] == [
        "product",
        "revenue",
        "region",
    ]


@pytest.mark.parametrize(
    ("sql", "message"),
    [
        (f"DELETE FROM {SALES_REF}", "Destructive statements are not allowed."),
        (f"DROP TABLE {SALES_REF}", "Destructive statements are not allowed."),
        (f'ALTER TABLE {SALES_REF} DROP COLUMN "revenue"', "Destructive statements are not allowed."),
        (f'ALTER TABLE {SALES_REF} RENAME COLUMN "revenue" TO "income"', "Only ALTER TABLE ... ADD COLUMN"),
        ("CREATE TABLE scratch (a TEXT)", "Only UPDATE, INSERT, or ALTER TABLE ADD COLUMN"),
        (f"SELECT * FROM {SALES_REF}", "Only UPDATE, INSERT, or ALTER TABLE ADD COLUMN"),
        (
            f"UPDATE {SALES_REF} SET \"revenue\" = '1'; UPDATE {SALES_REF} SET \"revenue\" = '2'",
            "Provide exactly one SQL statement.",
        ),
        ("UPDATE sqlite_master SET name = 'x'", "is not available to this statement"),
    ],
)
def test_mutation_rejections(sandbox: SqlSandbox, sales_sheet: SheetEntry, sql: str, message: str) -> None:
    with pytest.raises(ValidationError, match=re.escape(message)):
        sandbox.prepare_mutation(sql, sales_sheet, [sales_sheet])


def test_mutation_rejects_other_sheet(sandbox: SqlSandbox, two_sheets: tuple[SheetEntry, SheetEntry]) -> None:
    sales, costs = two_sheets
    sql = f"UPDATE {costs.reference} SET \"amount\" = '1'"

    with pytest.raises(ValidationError, match="Statements may target only the specified sheet."):
        sandbox.prepare_mutation(sql, sales, [sales, costs])


def test_condition_helpers(sandbox: SqlSandbox, sales_sheet: SheetEntry, db_session: Session) -> None:
    assert sandbox.select_row_numbers('"revenue" > 100', sales_sheet) == [1]
    assert sandbox.check_condition(' "product" = \'Gadget\' ', sales_sheet) == "\"product\" = 'Gadget'"

    with pytest.raises(OperationalError):
        sandbox.check_condition("missing_column = 1", sales_sheet)
    with pytest.raises(ValidationError):
        sandbox.select_row_numbers("1 = 1; DROP TABLE x", sales_sheet)

    assert sandbox.delete_where("\"product\" = 'Gadget'", sales_sheet) == 1
    db_session.commit()
    assert sandbox.select_row_numbers("1 = 1", sales_sheet) == [1]


def test_condition_is_rerendered_without_comments(sandbox: SqlSandbox, sales_sheet: SheetEntry) -> None:
    cleaned = sandbox.check_condition("\"product\" = 'Widget' -- widgets only", sales_sheet)

    assert cleaned == "\"product\" = 'Widget'"
    assert sandbox.prepare_condition("\"revenue\" > 100 /* big */", sales_sheet) == '"revenue" > 100'


@pytest.mark.parametrize("condition", ["1 = 1 ORDER BY 1", "1 = 1 LIMIT 1", "1 = 1 GROUP BY \"product\""])
def test_condition_rejects_trailing_clauses(sandbox: SqlSandbox, sales_sheet: SheetEntry, condition: str) -> None:
    with pytest.raises(ValidationError, match="single boolean condition"):
        sandbox.prepare_condition(condition, sales_sheet)


def test_delete_row_numbers_ignores_duplicates_and_missing(
    sandbox: SqlSandbox, sales_sheet: SheetEntry, db_session: Session
) -> None:
    assert sandbox.delete_row_numbers([2, 2, 99], sales_sheet) == 1
    assert sandbox.delete_row_numbers([], sales_sheet) == 0


def test_create_table_as_detection(sandbox: SqlSandbox, two_sheets: tuple[SheetEntry, SheetEntry]) -> None:
    sales, costs = two_sheets
    plan = sandbox.match_create_table_as(
        f'CREATE TABLE context.spreadsheet.sheets["Summary"] AS SELECT * FROM {SALES_REF} JOIN {costs.reference};'
    )

    assert plan is not None
    assert plan.sheet_name == "Summary"
    bound = sandbox.prepare_create_select(plan.select_sql, [sales, costs])
    assert f'"{sales.table_name}"' in bound and f'"{costs.table_name}"' in bound
    assert sandbox.match_create_table_as(f"UPDATE {SALES_REF} SET a = 1") is None

    with pytest.raises(ValidationError, match="Unknown sheet reference"):
        sandbox.prepare_create_select('SELECT * FROM context.spreadsheet.sheets["Nope"]', [sales, costs])


def test_temp_sql_lifecycle(sandbox: SqlSandbox, sales_sheet: SheetEntry) -> None:
    created = sandbox.execute_temp(
        f"CREATE TABLE temp_totals AS SELECT \"product\", CAST(\"revenue\" AS INTEGER) AS amount FROM {SALES_REF}",
        [sales_sheet],
    )
    selected = sandbox.execute_temp("SELECT SUM(amount) AS total FROM temp_totals", [sales_sheet])
    dropped = sandbox.execute_temp("DROP TABLE temp_totals", [sales_sheet])

    assert (created.statement_type, created.target_table) == ("create", "temp_totals")
    assert selected.rows == [{"total": 250}]
    assert dropped.statement_type == "drop"


@pytest.mark.parametrize(
    "sql",
    [
        "CREATE TABLE totals (a TEXT)",
        "DROP TABLE sheet_anything",
        f"INSERT INTO {SALES_REF} (\"product\") VALUES ('x')",
    ],
)
def test_temp_sql_requires_prefix(sandbox: SqlSandbox, sales_sheet: SheetEntry, sql: str) -> None:
    with pytest.raises(ValidationError, match='must use the "temp_" prefix'):
        sandbox.prepare_temp(sql, [sales_sheet])


def test_temp_sql_rejects_control_statements(sandbox: SqlSandbox, sales_sheet: SheetEntry) -> None:
    with pytest.raises(ValidationError, match="Connection or transaction control"):
        sandbox.prepare_temp("PRAGMA table_info(temp_x)", [sales_sheet])
