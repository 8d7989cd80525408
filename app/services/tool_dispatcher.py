from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from app.db.metadata import MetadataRepository
from app.services.audit_log import AuditLogService
from app.services.errors import SheetAgentError, ValidationError
from app.services.sheet_catalog import (
    SheetEntry,
    load_catalog,
    normalize_a1_range,
    quote_identifier,
    resolve_sheet_reference,
    sheet_entry,
)
from app.services.sql_sandbox import CreateTableAsPlan, SqlSandbox
from app.services.table_store import TableStore
from app.utils.constants import DEFAULT_HIGHLIGHT_COLOR, HIGHLIGHT_COLORS, ROW_NUMBER_COLUMN
from app.utils.logging import get_logger, log_event, log_warning_event

SHEET_ARGUMENT_KEYS = ("sheet", "sheetRef", "sheetReference", "sheetId", "sheet_id", "target", "sheetName")
SQL_ARGUMENT_KEYS = ("sql", "query")
MUTATING_KINDS = frozenset({"write", "create_sheet", "temp_sql"})


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Audit entry for one executed tool call; serialised into the assistant message."""

    name: str
    kind: str
    status: str
    sheet_id: str | None = None
    sheet_name: str | None = None
    reference: str | None = None
    sql: str | None = None
    condition: str | None = None
    range: str | None = None
    operation: str | None = None
    error: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "status": self.status,
            "sheetId": self.sheet_id,
            "sheetName": self.sheet_name,
            "reference": self.reference,
            "sql": self.sql,
            "condition": self.condition,
            "range": self.range,
            "operation": self.operation,
            "error": self.error,
            **self.details,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class ToolOutcome:
    result: dict[str, Any]
    record: ToolCallRecord


@dataclass(slots=True)
class _Handled:
    result: dict[str, Any]
    record: dict[str, Any] = field(default_factory=dict)


_KINDS = {
    "executeSheetSql": "read",
    "mutateSheetSql": "write",
    "deleteRows": "write",
    "highlights_add": "highlight",
    "highlights_clear": "highlight_clear",
    "filter_add": "filter",
    "filter_clear": "filter_clear",
    "filters_get": "filters_get",
    "createSheet": "create_sheet",
    "executeTempSql": "temp_sql",
}


def _first_argument(arguments: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = arguments.get(key)
        if value is not None and value != "":
            return value
    return None


def _error_message(error: Exception) -> str:
    if isinstance(error, SQLAlchemyError):
        original = getattr(error, "orig", None)
        return str(original) if original is not None else str(error).splitlines()[0]
    return str(error) or error.__class__.__name__


class ToolDispatcher:
    """Execute one named tool call against a spreadsheet and return a JSON-safe envelope.

    Failures never escape :meth:`dispatch`; they come back as ``{"ok": False, "error": ...}``
    with the read-write session rolled back.
    """

    def __init__(
        self,
        *,
        spreadsheet_id: str,
        repository: MetadataRepository,
        table_store: TableStore,
        sandbox: SqlSandbox,
        audit_log: AuditLogService | None = None,
    ) -> None:
        self.spreadsheet_id = spreadsheet_id
        self.repository = repository
        self.session = repository.session
        self.table_store = table_store
        self.filter_store = table_store.filter_store
        self.sandbox = sandbox
        self.audit_log = audit_log
        self.logger = get_logger(__name__)
        self.sheets: list[SheetEntry] = load_catalog(repository, spreadsheet_id)
        self._handlers: dict[str, Callable[[Mapping[str, Any], dict[str, Any]], _Handled]] = {
            "executeSheetSql": self._execute_sheet_sql,
            "mutateSheetSql": self._mutate_sheet_sql,
            "deleteRows": self._delete_rows,
            "highlights_add": self._highlights_add,
            "highlights_clear": self._highlights_clear,
            "filter_add": self._filter_add,
            "filter_clear": self._filter_clear,
            "filters_get": self._filters_get,
            "createSheet": self._create_sheet,
            "executeTempSql": self._execute_temp_sql,
        }

    def refresh_catalog(self) -> list[SheetEntry]:
        self.sheets = load_catalog(self.repository, self.spreadsheet_id)
        return self.sheets

    def dispatch(self, name: str, arguments: Mapping[str, Any] | str | None) -> ToolOutcome:
        args = self._coerce_arguments(arguments)
        kind = _KINDS.get(name, "unknown")
        context: dict[str, Any] = {}

        try:
            handler = self._handlers.get(name)
            if handler is None:
                raise ValidationError(f"Unsupported tool: {name}")
            handled = handler(args, context)
            if kind in MUTATING_KINDS:
                self.session.commit()
        except Exception as error:  # tool failures are returned to the model as data
            self.session.rollback()
            self.refresh_catalog()
            message = _error_message(error)
            sheet: SheetEntry | None = context.get("sheet")
            result = {"ok": False, "error": message}
            if sheet is not None:
                result.update({"sheetId": sheet.id, "sheetName": sheet.name})
            record = ToolCallRecord(
                name=name,
                kind=kind,
                status="error",
                sheet_id=sheet.id if sheet is not None else None,
                sheet_name=sheet.name if sheet is not None else None,
                reference=context.get("reference"),
                sql=context.get("sql"),
                condition=context.get("condition"),
                range=context.get("range"),
                error=message,
            )
            log_warning_event(
                self.logger,
                "dispatcher.tool.error",
                tool=name,
                spreadsheet_id=self.spreadsheet_id,
                error=message,
                expected=isinstance(error, (SheetAgentError, SQLAlchemyError, ValueError)),
            )
        else:
            result = {"ok": True, **handled.result}
            record = ToolCallRecord(name=name, kind=kind, status="ok", **handled.record)
            log_event(self.logger, "dispatcher.tool.ok", tool=name, spreadsheet_id=self.spreadsheet_id)

        if self.audit_log is not None:
            self.audit_log.record_tool_call(spreadsheet_id=self.spreadsheet_id, record=record.to_payload())
        return ToolOutcome(result=result, record=record)

    # Argument helpers ----------------------------------------------------
    @staticmethod
    def _coerce_arguments(arguments: Mapping[str, Any] | str | None) -> dict[str, Any]:
        if arguments is None:
            return {}
        if isinstance(arguments, str):
            try:
                decoded = json.loads(arguments)
            except json.JSONDecodeError:
                return {}
            return dict(decoded) if isinstance(decoded, dict) else {}
        return dict(arguments)

    def _resolve_sheet(self, name: str, args: Mapping[str, Any], context: dict[str, Any]) -> SheetEntry:
        raw = _first_argument(args, SHEET_ARGUMENT_KEYS)
        sheet = resolve_sheet_reference(self.sheets, raw)
        context["reference"] = raw if isinstance(raw, str) else None
        if sheet is None:
            raise ValidationError(f"Valid sheet reference is required for {name}.")
        context["sheet"] = sheet
        return sheet

    @staticmethod
    def _text_argument(args: Mapping[str, Any], keys: Sequence[str]) -> str | None:
        value = _first_argument(args, keys)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValidationError(f'Argument "{keys[0]}" must be a string.')
        return value

    @staticmethod
    def _describe(sheet: SheetEntry, context: dict[str, Any]) -> dict[str, Any]:
        return {"sheet_id": sheet.id, "sheet_name": sheet.name, "reference": context.get("reference")}

    # SQL tools -----------------------------------------------------------
    def _execute_sheet_sql(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        sql = self._text_argument(args, SQL_ARGUMENT_KEYS)
        context["sql"] = sql
        sheet = self._resolve_sheet("executeSheetSql", args, context)
        if not sql or not sql.strip():
            raise ValidationError("Both sheet reference and sql are required for this tool call.")

        execution = self.sandbox.execute_read(sql, sheet, self.sheets)
        return _Handled(
            result={
                **sheet.describe(),
                "rowCount": execution.row_count,
                "truncated": execution.truncated,
                "columns": execution.columns,
                "rows": execution.rows,
            },
            record={
                **self._describe(sheet, context),
                "sql": sql,
                "operation": "select",
                "details": {
                    "rowCount": execution.row_count,
                    "truncated": execution.truncated,
                    "columns": execution.columns,
                },
            },
        )

    def _mutate_sheet_sql(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        sql = self._text_argument(args, SQL_ARGUMENT_KEYS)
        context["sql"] = sql
        if not sql or not sql.strip():
            raise ValidationError("Both sheet reference and sql are required for this tool call.")

        plan = self.sandbox.match_create_table_as(sql)
        if plan is not None:
            return self._create_table_as(plan, sql, context)

        sheet = self._resolve_sheet("mutateSheetSql", args, context)
        execution = self.sandbox.execute_mutation(sql, sheet, self.sheets)
        if execution.added_columns:
            self.refresh_catalog()
        added = [column.to_payload() for column in execution.added_columns]
        return _Handled(
            result={
                **sheet.describe(),
                "operation": execution.operation,
                "changes": execution.changes,
                "lastInsertRowid": execution.last_insert_rowid,
                "addedColumns": added,
            },
            record={
                **self._describe(sheet, context),
                "sql": sql,
                "operation": execution.operation,
                "details": {
                    "changes": execution.changes,
                    "lastInsertRowid": execution.last_insert_rowid,
                    "addedColumns": added,
                },
            },
        )

    def _create_table_as(self, plan: CreateTableAsPlan, sql: str, context: dict[str, Any]) -> _Handled:
        select_sql = self.sandbox.prepare_create_select(plan.select_sql, self.sheets)
        created = self.repository.create_sheet(spreadsheet_id=self.spreadsheet_id, name=plan.sheet_name)
        table_name = self.table_store.ensure_table(created.id)
        connection = self.session.connection()

        preview = connection.exec_driver_sql(f"SELECT * FROM ({select_sql}) LIMIT 0")
        result_columns = list(preview.keys())
        preview.close()

        data_columns = [name for name in result_columns if name != ROW_NUMBER_COLUMN]
        added = iter(self.table_store.add_named_columns(created.id, data_columns))
        targets = [
            ROW_NUMBER_COLUMN if name == ROW_NUMBER_COLUMN else next(added).sql_name for name in result_columns
        ]
        target_list = ", ".join(quote_identifier(target) for target in targets)
        inserted = connection.exec_driver_sql(
            f"INSERT INTO {quote_identifier(table_name)} ({target_list}) SELECT * FROM ({select_sql})"
        )
        changes = max(inserted.rowcount or 0, 0)

        self.refresh_catalog()
        sheet = sheet_entry(self.repository, created)
        context["sheet"] = sheet
        columns = [column.to_payload() for column in sheet.columns]
        return _Handled(
            result={
                **sheet.describe(),
                "operation": "create_table_as",
                "changes": changes,
                "lastInsertRowid": None,
                "addedColumns": columns,
            },
            record={
                **self._describe(sheet, context),
                "sql": sql,
                "operation": "create_table_as",
                "details": {"changes": changes, "addedColumns": columns},
            },
        )

    def _delete_rows(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        sheet = self._resolve_sheet("deleteRows", args, context)
        row_numbers = args.get("rowNumbers", args.get("row_numbers"))
        condition = args.get("condition")
        has_rows = row_numbers not in (None, [], "")
        has_condition = isinstance(condition, str) and bool(condition.strip())
        if has_rows and has_condition:
            raise ValidationError('Provide either "rowNumbers" or "condition", not both.')
        if not has_rows and not has_condition:
            raise ValidationError('Either "rowNumbers" or "condition" is required for deleteRows.')

        if has_rows:
            if not isinstance(row_numbers, (list, tuple)):
                raise ValidationError('"rowNumbers" must be a list of positive integers.')
            try:
                numbers = [int(number) for number in row_numbers]
            except (TypeError, ValueError) as error:
                raise ValidationError('"rowNumbers" must be a list of positive integers.') from error
            if any(number <= 0 for number in numbers):
                raise ValidationError('"rowNumbers" must be a list of positive integers.')
            changes = self.sandbox.delete_row_numbers(numbers, sheet)
            details: dict[str, Any] = {"changes": changes, "rowNumbers": sorted(set(numbers))}
        else:
            context["condition"] = condition.strip()
            changes = self.sandbox.delete_where(condition, sheet, self.sheets)
            details = {"changes": changes}

        return _Handled(
            result={**sheet.describe(), "operation": "delete", **details},
            record={
                **self._describe(sheet, context),
                "condition": context.get("condition"),
                "operation": "delete",
                "details": details,
            },
        )

    def _execute_temp_sql(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        sql = self._text_argument(args, SQL_ARGUMENT_KEYS)
        context["sql"] = sql
        execution = self.sandbox.execute_temp(sql, self.sheets)
        if execution.statement_type == "select":
            details: dict[str, Any] = {
                "rowCount": execution.row_count,
                "truncated": execution.truncated,
                "columns": execution.columns,
            }
            result = {**details, "rows": execution.rows}
        else:
            details = {"changes": execution.changes, "targetTable": execution.target_table}
            result = dict(details)
        return _Handled(
            result={"statementType": execution.statement_type, **result},
            record={"sql": sql, "operation": execution.statement_type, "details": details},
        )

    # View tools ----------------------------------------------------------
    def _highlights_add(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        sheet = self._resolve_sheet("highlights_add", args, context)
        range_value = args.get("range")
        condition = args.get("condition")
        if range_value and condition:
            raise ValidationError('Cannot specify both "range" and "condition".')
        if not range_value and not condition:
            raise ValidationError('Either "range" or "condition" is required for highlights_add.')

        row_numbers: list[int] | None = None
        normalized_range: str | None = None
        cleaned_condition: str | None = None
        if range_value:
            context["range"] = str(range_value)
            normalized_range = normalize_a1_range(str(range_value))
        else:
            cleaned_condition = str(condition).strip()
            context["condition"] = cleaned_condition
            try:
                row_numbers = self.sandbox.select_row_numbers(cleaned_condition, sheet, self.sheets)
            except SQLAlchemyError as error:
                raise ValidationError(f"Invalid highlight condition: {_error_message(error)}") from error

        requested = str(args.get("color") or DEFAULT_HIGHLIGHT_COLOR).strip().lower()
        color = requested if requested in HIGHLIGHT_COLORS else DEFAULT_HIGHLIGHT_COLOR
        message = args.get("message") or None
        details = {"rowNumbers": row_numbers, "color": color, "message": message}
        return _Handled(
            result={
                **sheet.describe(),
                "range": normalized_range,
                "condition": cleaned_condition,
                **details,
            },
            record={
                **self._describe(sheet, context),
                "range": normalized_range,
                "condition": cleaned_condition,
                "details": details,
            },
        )

    def _highlights_clear(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        return _Handled(result={"cleared": True})

    def _filter_add(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        sheet = self._resolve_sheet("filter_add", args, context)
        condition = args.get("condition")
        if not isinstance(condition, str) or not condition.strip():
            raise ValidationError("A SQL boolean condition is required for filter_add.")
        context["condition"] = condition.strip()
        try:
            cleaned = self.sandbox.check_condition(condition, sheet, self.sheets)
        except SQLAlchemyError as error:
            raise ValidationError(f"Invalid filter condition: {_error_message(error)}") from error

        filters = self.filter_store.add(sheet.id, cleaned)
        return _Handled(
            result={**sheet.describe(), "condition": cleaned, "totalFilters": len(filters)},
            record={
                **self._describe(sheet, context),
                "condition": cleaned,
                "details": {"totalFilters": len(filters)},
            },
        )

    def _filter_clear(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        sheet = self._resolve_sheet("filter_clear", args, context)
        cleared = self.filter_store.clear(sheet.id)
        return _Handled(
            result={**sheet.describe(), "clearedCount": cleared},
            record={**self._describe(sheet, context), "details": {"clearedCount": cleared}},
        )

    def _filters_get(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        sheet = self._resolve_sheet("filters_get", args, context)
        filters = list(self.filter_store.get(sheet.id))
        return _Handled(
            result={**sheet.describe(), "filters": filters, "filterCount": len(filters)},
            record={**self._describe(sheet, context), "details": {"filterCount": len(filters)}},
        )

    # Sheet tools ---------------------------------------------------------
    def _create_sheet(self, args: Mapping[str, Any], context: dict[str, Any]) -> _Handled:
        name = args.get("name") or args.get("sheetName")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("A sheet name is required for createSheet.")
        headers = args.get("columns") or []
        if not isinstance(headers, (list, tuple)) or not all(isinstance(item, str) for item in headers):
            raise ValidationError('"columns" must be a list of strings.')

        created = self.repository.create_sheet(spreadsheet_id=self.spreadsheet_id, name=name)
        self.table_store.ensure_table(created.id)
        self.table_store.add_named_columns(created.id, list(headers))
        self.refresh_catalog()
        sheet = sheet_entry(self.repository, created)
        context["sheet"] = sheet
        columns = [column.to_payload() for column in sheet.columns]
        return _Handled(
            result={**sheet.describe(), "columns": columns},
            record={
                "sheet_id": sheet.id,
                "sheet_name": sheet.name,
                "reference": sheet.reference,
                "operation": "create_sheet",
                "details": {"columns": columns},
            },
        )
