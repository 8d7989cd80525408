from __future__ import annotations

import base64
import re
from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import sqlglot
from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine, Result
from sqlglot import exp
from sqlglot.errors import SqlglotError
from sqlglot.tokens import Token, TokenType

from app.services.errors import ValidationError
from app.services.sheet_catalog import (
    ColumnEntry,
    SheetEntry,
    quote_identifier,
    resolve_sheet_reference,
)
from app.services.table_store import TableStore
from app.utils.config import QueryLimits, load_query_limits
from app.utils.constants import (
    MUTATION_BLACKLIST,
    READ_BLACKLIST,
    ROW_NUMBER_COLUMN,
    SHEET_REFERENCE_PATTERN,
    SHEET_TABLE_PREFIX,
    TEMP_SQL_BLACKLIST,
    TEMP_TABLE_PREFIX,
)
from app.utils.logging import get_logger, log_warning_event

DIALECT = "sqlite"

_REFERENCE_RE = re.compile(SHEET_REFERENCE_PATTERN, re.IGNORECASE)
_CREATE_TABLE_AS_RE = re.compile(
    r"^\s*create\s+table\s+(?:if\s+not\s+exists\s+)?"
    + SHEET_REFERENCE_PATTERN
    + r"\s+as\s+(?P<select>.+?)\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_LITERAL_TOKENS = frozenset(
    {
        TokenType.STRING,
        TokenType.IDENTIFIER,
        TokenType.NATIONAL_STRING,
        TokenType.RAW_STRING,
        TokenType.HEX_STRING,
        TokenType.BIT_STRING,
        TokenType.BYTE_STRING,
    }
)
_READ_ROOTS = (exp.Select, exp.Union, exp.Intersect, exp.Except)
_CONDITION_ARGS = frozenset({"expressions", "from", "from_", "where"})


@dataclass(slots=True)
class ReadResult:
    sql: str
    table_name: str | None
    columns: list[str]
    rows: list[dict[str, Any]]
    row_count: int
    truncated: bool


@dataclass(slots=True)
class MutationResult:
    sql: str
    table_name: str
    operation: str
    changes: int
    last_insert_rowid: int | None
    added_columns: list[ColumnEntry] = field(default_factory=list)


@dataclass(slots=True)
class CreateTableAsPlan:
    sheet_name: str
    select_sql: str


@dataclass(slots=True)
class TempSqlResult:
    sql: str
    statement_type: str
    target_table: str | None
    changes: int = 0
    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    truncated: bool = False


def _normalize_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


def _first_line(error: Exception) -> str:
    message = str(error).strip().splitlines()
    return message[0] if message else error.__class__.__name__


class SqlSandbox:
    """Validate agent-authored SQL against one bound sheet table and execute it.

    Reads run on a dedicated read-only engine. Writes run on the table store's
    session, which holds the sole read-write connection.
    """

    def __init__(
        self,
        *,
        read_engine: Engine,
        table_store: TableStore,
        limits: QueryLimits | None = None,
    ) -> None:
        self.read_engine = read_engine
        self.table_store = table_store
        self.session = table_store.session
        self.limits = limits or load_query_limits()
        self.logger = get_logger(__name__)

    # Reference helpers ---------------------------------------------------
    def bind_references(self, sql: str, sheet: SheetEntry | None, sheets: Sequence[SheetEntry] = ()) -> str:
        """Replace context.spreadsheet.sheets[...] with quoted physical table names.

        A reference naming another known sheet binds to that sheet's table so the
        single-target check can reject it; anything else binds to ``sheet``.
        """

        def _replace(match: re.Match[str]) -> str:
            resolved = resolve_sheet_reference(sheets, match.group(0))
            if resolved is None:
                if sheet is None:
                    raise self._reject(f'Unknown sheet reference "{match.group(2)}".', None)
                resolved = sheet
            return quote_identifier(resolved.table_name)

        return _REFERENCE_RE.sub(_replace, sql)

    # Validation ----------------------------------------------------------
    def prepare_read(self, raw_sql: str | None, sheet: SheetEntry, sheets: Sequence[SheetEntry] = ()) -> str:
        """Return bound SQL for a single read query against ``sheet``'s table."""
        if not raw_sql or not raw_sql.strip():
            raise self._reject("SQL query is required.", sheet)
        sql = self.bind_references(raw_sql.strip(), sheet, sheets)
        tokens = self._tokenize(sql, sheet)

        if not tokens or tokens[0].text.lower() not in ("select", "with"):
            raise self._reject("Only SELECT queries (optionally starting with WITH) are supported.", sheet)
        if self._blacklisted(tokens, READ_BLACKLIST):
            raise self._reject("Write or schema-altering statements are not allowed.", sheet)
        if self._statement_count(tokens) > 1:
            raise self._reject("Please provide a single SQL statement at a time.", sheet)

        tree = self._parse(self._strip_terminator(sql), sheet)
        if not isinstance(tree, _READ_ROOTS):
            raise self._reject("Only SELECT queries (optionally starting with WITH) are supported.", sheet)
        self._check_tables(tree, sheet, allowed={sheet.table_name}, required=sheet.table_name, noun="query")
        return self._strip_terminator(sql)

    def prepare_mutation(
        self, raw_sql: str | None, sheet: SheetEntry, sheets: Sequence[SheetEntry] = ()
    ) -> tuple[str, str]:
        """Return ``(bound_sql, operation)`` for an UPDATE, INSERT or ALTER TABLE ... ADD COLUMN."""
        if not raw_sql or not raw_sql.strip():
            raise self._reject("SQL statement is required.", sheet)
        sql = self.bind_references(raw_sql.strip(), sheet, sheets)
        tokens = self._tokenize(sql, sheet)

        if self._statement_count(tokens) != 1:
            raise self._reject("Provide exactly one SQL statement.", sheet)
        if self._blacklisted(tokens, MUTATION_BLACKLIST):
            raise self._reject("Destructive statements are not allowed.", sheet)

        verb = tokens[0].text.lower()
        if verb not in ("update", "insert", "alter"):
            raise self._reject("Only UPDATE, INSERT, or ALTER TABLE ADD COLUMN statements are allowed.", sheet)

        bound = self._strip_terminator(sql)
        tree = self._parse(bound, sheet)
        if verb == "alter":
            actions = tree.args.get("actions") or []
            if not tree.key.startswith("alter") or not actions or not all(
                isinstance(action, exp.ColumnDef) for action in actions
            ):
                raise self._reject("Only ALTER TABLE ... ADD COLUMN statements are allowed.", sheet)
        elif not isinstance(tree, (exp.Update, exp.Insert)):
            raise self._reject("Only UPDATE, INSERT, or ALTER TABLE ADD COLUMN statements are allowed.", sheet)

        self._check_tables(
            tree,
            sheet,
            allowed={sheet.table_name},
            required=sheet.table_name,
            noun="statement",
            foreign_message="Statements may target only the specified sheet.",
        )
        return bound, verb

    def prepare_condition(self, condition: str | None, sheet: SheetEntry, sheets: Sequence[SheetEntry] = ()) -> str:
        """Validate a boolean condition as ``SELECT row_number ... WHERE`` and return it re-rendered.

        The returned text is generated from the parsed WHERE expression, so comments
        and trailing clauses never reach the queries the condition is embedded in.
        """
        if not condition or not condition.strip():
            raise self._reject("A SQL boolean condition is required.", sheet)
        cleaned = self.bind_references(condition.strip(), sheet, sheets)
        trial_sql = f"SELECT {ROW_NUMBER_COLUMN} FROM {quote_identifier(sheet.table_name)} WHERE {cleaned}"
        tree = self._parse(self.prepare_read(trial_sql, sheet, sheets), sheet)
        where = tree.args.get("where")
        extra = sorted(key for key, value in tree.args.items() if value and key not in _CONDITION_ARGS)
        if not isinstance(tree, exp.Select) or where is None or extra:
            raise self._reject("Provide a single boolean condition without ORDER BY, LIMIT or other clauses.", sheet)
        return where.this.sql(dialect=DIALECT, comments=False)

    def match_create_table_as(self, raw_sql: str | None) -> CreateTableAsPlan | None:
        if not raw_sql:
            return None
        match = _CREATE_TABLE_AS_RE.match(raw_sql)
        if match is None:
            return None
        return CreateTableAsPlan(sheet_name=match.group(2).strip(), select_sql=match.group("select").strip())

    def prepare_create_select(self, select_sql: str, sheets: Sequence[SheetEntry]) -> str:
        """Bind a CREATE TABLE ... AS SELECT body that may read any sheet of the spreadsheet."""
        if not select_sql.strip():
            raise self._reject("CREATE TABLE ... AS requires a SELECT query.", None)
        sql = self.bind_references(select_sql.strip(), None, sheets)
        tokens = self._tokenize(sql, None)
        if not tokens or tokens[0].text.lower() not in ("select", "with"):
            raise self._reject("CREATE TABLE ... AS requires a SELECT query.", None)
        if self._blacklisted(tokens, READ_BLACKLIST):
            raise self._reject("Write or schema-altering statements are not allowed.", None)
        if self._statement_count(tokens) > 1:
            raise self._reject("Please provide a single SQL statement at a time.", None)
        bound = self._strip_terminator(sql)
        tree = self._parse(bound, None)
        if not isinstance(tree, _READ_ROOTS):
            raise self._reject("CREATE TABLE ... AS requires a SELECT query.", None)
        self._check_tables(tree, None, allowed={entry.table_name for entry in sheets}, required=None, noun="query")
        return bound

    def prepare_temp(self, raw_sql: str | None, sheets: Sequence[SheetEntry]) -> tuple[str, str, str | None]:
        """Return ``(bound_sql, statement_type, target_table)`` for the staging SQL tool."""
        if not raw_sql or not raw_sql.strip():
            raise self._reject("SQL statement is required.", None)
        sql = self.bind_references(raw_sql.strip(), None, sheets)
        tokens = self._tokenize(sql, None)
        if self._statement_count(tokens) != 1:
            raise self._reject("Provide exactly one SQL statement.", None)
        if self._blacklisted(tokens, TEMP_SQL_BLACKLIST):
            raise self._reject("Connection or transaction control statements are not allowed.", None)

        bound = self._strip_terminator(sql)
        tree = self._parse(bound, None)
        sheet_tables = {entry.table_name for entry in sheets}

        if isinstance(tree, _READ_ROOTS):
            self._check_tables(tree, None, allowed=sheet_tables, required=None, noun="query", allow_temp=True)
            return bound, "select", None

        if isinstance(tree, (exp.Create, exp.Drop)):
            kind = str(tree.args.get("kind") or "").upper()
            if kind != "TABLE":
                raise self._reject("Only tables can be created or dropped with temporary SQL.", None)
        elif not isinstance(tree, (exp.Insert, exp.Update, exp.Delete)):
            raise self._reject("Temporary SQL supports SELECT, CREATE TABLE, INSERT, UPDATE, DELETE and DROP TABLE.", None)

        target = self._target_table(tree)
        if target is None or not target.lower().startswith(TEMP_TABLE_PREFIX):
            raise self._reject(f'Temporary tables must use the "{TEMP_TABLE_PREFIX}" prefix.', None)

        self._check_tables(
            tree, None, allowed=sheet_tables | {target}, required=None, noun="statement", allow_temp=True
        )
        return bound, tree.key, target

    # Execution -----------------------------------------------------------
    def execute_read(self, raw_sql: str | None, sheet: SheetEntry, sheets: Sequence[SheetEntry] = ()) -> ReadResult:
        sql = self.prepare_read(raw_sql, sheet, sheets)
        with self.read_engine.connect() as connection:
            columns, rows, row_count, truncated = self._collect(connection.exec_driver_sql(sql))
        return ReadResult(
            sql=sql,
            table_name=sheet.table_name,
            columns=columns,
            rows=rows,
            row_count=row_count,
            truncated=truncated,
        )

    def execute_mutation(
        self, raw_sql: str | None, sheet: SheetEntry, sheets: Sequence[SheetEntry] = ()
    ) -> MutationResult:
        sql, operation = self.prepare_mutation(raw_sql, sheet, sheets)
        result = self.session.connection().exec_driver_sql(sql)
        changes = max(result.rowcount or 0, 0)
        last_rowid = result.lastrowid if operation == "insert" else None
        added: list[ColumnEntry] = []
        if operation == "alter":
            added = self.table_store.sync_new_columns(sheet.id)
        self.table_store.touch_sheet(sheet.id)
        return MutationResult(
            sql=sql,
            table_name=sheet.table_name,
            operation=operation,
            changes=changes,
            last_insert_rowid=last_rowid,
            added_columns=added,
        )

    def select_row_numbers(self, condition: str | None, sheet: SheetEntry, sheets: Sequence[SheetEntry] = ()) -> list[int]:
        cleaned = self.prepare_condition(condition, sheet, sheets)
        sql = (
            f"SELECT {ROW_NUMBER_COLUMN} FROM {quote_identifier(sheet.table_name)} "
            f"WHERE {cleaned} ORDER BY {ROW_NUMBER_COLUMN}"
        )
        with self.read_engine.connect() as connection:
            return [int(row[0]) for row in connection.exec_driver_sql(sql)]

    def check_condition(self, condition: str | None, sheet: SheetEntry, sheets: Sequence[SheetEntry] = ()) -> str:
        """Run a bounded trial query so a broken condition fails before it is stored."""
        cleaned = self.prepare_condition(condition, sheet, sheets)
        sql = f"SELECT 1 FROM {quote_identifier(sheet.table_name)} WHERE {cleaned} LIMIT 1"
        with self.read_engine.connect() as connection:
            connection.exec_driver_sql(sql).first()
        return cleaned

    def delete_where(self, condition: str | None, sheet: SheetEntry, sheets: Sequence[SheetEntry] = ()) -> int:
        cleaned = self.prepare_condition(condition, sheet, sheets)
        sql = f"DELETE FROM {quote_identifier(sheet.table_name)} WHERE {cleaned}"
        result = self.session.connection().exec_driver_sql(sql)
        self.table_store.touch_sheet(sheet.id)
        return max(result.rowcount or 0, 0)

    def delete_row_numbers(self, row_numbers: Iterable[int], sheet: SheetEntry) -> int:
        numbers = sorted({int(number) for number in row_numbers})
        if not numbers:
            return 0
        statement = text(
            f"DELETE FROM {quote_identifier(sheet.table_name)} WHERE {ROW_NUMBER_COLUMN} IN :row_numbers"
        ).bindparams(bindparam("row_numbers", expanding=True))
        result = self.session.execute(statement, {"row_numbers": numbers})
        self.table_store.touch_sheet(sheet.id)
        return max(result.rowcount or 0, 0)

    def execute_temp(self, raw_sql: str | None, sheets: Sequence[SheetEntry]) -> TempSqlResult:
        sql, statement_type, target = self.prepare_temp(raw_sql, sheets)
        result = self.session.connection().exec_driver_sql(sql)
        if statement_type == "select":
            columns, rows, row_count, truncated = self._collect(result)
            return TempSqlResult(
                sql=sql,
                statement_type=statement_type,
                target_table=None,
                columns=columns,
                rows=rows,
                row_count=row_count,
                truncated=truncated,
            )
        return TempSqlResult(
            sql=sql,
            statement_type=statement_type,
            target_table=target,
            changes=max(result.rowcount or 0, 0),
        )

    # Internal helpers ----------------------------------------------------
    def _collect(self, result: Result[Any]) -> tuple[list[str], list[dict[str, Any]], int, bool]:
        columns = list(result.keys())
        rows: list[dict[str, Any]] = []
        row_count = 0
        truncated = False
        for record in result:
            if row_count >= self.limits.max_rows:
                truncated = True
                break
            row_count += 1
            if row_count <= self.limits.preview_rows:
                rows.append({key: _normalize_value(value) for key, value in record._mapping.items()})
        result.close()
        if row_count > self.limits.preview_rows:
            truncated = True
        return columns, rows, row_count, truncated

    def _reject(self, message: str, sheet: SheetEntry | None) -> ValidationError:
        log_warning_event(
            self.logger,
            "sandbox.rejected",
            reason=message,
            sheet_id=sheet.id if sheet is not None else None,
        )
        return ValidationError(message)

    def _tokenize(self, sql: str, sheet: SheetEntry | None) -> list[Token]:
        try:
            return list(sqlglot.tokenize(sql, read=DIALECT))
        except SqlglotError as error:
            raise self._reject(f"Could not parse SQL: {_first_line(error)}", sheet) from error

    def _parse(self, sql: str, sheet: SheetEntry | None) -> exp.Expression:
        try:
            tree = sqlglot.parse_one(sql, read=DIALECT)
        except SqlglotError as error:
            raise self._reject(f"Could not parse SQL: {_first_line(error)}", sheet) from error
        if tree is None:
            raise self._reject("SQL statement is required.", sheet)
        return tree

    @staticmethod
    def _strip_terminator(sql: str) -> str:
        return sql.strip().rstrip(";").strip()

    @staticmethod
    def _statement_count(tokens: Sequence[Token]) -> int:
        count = 0
        pending = False
        for token in tokens:
            if token.token_type == TokenType.SEMICOLON:
                if pending:
                    count += 1
                pending = False
            else:
                pending = True
        return count + (1 if pending else 0)

    @staticmethod
    def _blacklisted(tokens: Sequence[Token], blacklist: Collection[str]) -> bool:
        """Check bare words only; literals, quoted identifiers and function names are ignored."""
        for position, token in enumerate(tokens):
            if token.token_type in _LITERAL_TOKENS:
                continue
            if token.text.lower() not in blacklist:
                continue
            following = tokens[position + 1] if position + 1 < len(tokens) else None
            if following is not None and following.token_type == TokenType.L_PAREN:
                continue
            return True
        return False

    @staticmethod
    def _target_table(tree: exp.Expression) -> str | None:
        node = tree.this
        if isinstance(node, exp.Schema):
            node = node.this
        if isinstance(node, exp.Table) and isinstance(node.this, exp.Identifier):
            return node.name
        return None

    def _check_tables(
        self,
        tree: exp.Expression,
        sheet: SheetEntry | None,
        *,
        allowed: Collection[str],
        required: str | None,
        noun: str,
        foreign_message: str = "Queries may target only one sheet at a time.",
        allow_temp: bool = False,
    ) -> None:
        cte_names = {cte.alias_or_name.lower() for cte in tree.find_all(exp.CTE)}
        allowed_lower = {name.lower() for name in allowed}
        seen: set[str] = set()

        for table in tree.find_all(exp.Table):
            if not isinstance(table.this, exp.Identifier):
                continue
            name = table.name.lower()
            if table.catalog or (table.db and table.db.lower() not in ("main", "temp")):
                raise self._reject(f'Table "{table.sql(dialect=DIALECT)}" is not available to this {noun}.', sheet)
            if not table.db and name in cte_names:
                continue
            if name in allowed_lower or (allow_temp and name.startswith(TEMP_TABLE_PREFIX)):
                seen.add(name)
                continue
            if name.startswith(SHEET_TABLE_PREFIX):
                raise self._reject(foreign_message, sheet)
            raise self._reject(f'Table "{table.name}" is not available to this {noun}.', sheet)

        if required is not None and required.lower() not in seen:
            raise self._reject(f'Reference the sheet table name "{required}" in your {noun}.', sheet)
