from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from app.services.sheet_catalog import SheetEntry, build_reference_list
from app.utils.constants import HIGHLIGHT_COLORS, TEMP_TABLE_PREFIX

SYSTEM_INSTRUCTION = "\n\n".join(
    [
        "You are an assistant helping users work with spreadsheet data.",
        "You have access to these tools: executeSheetSql (read data), mutateSheetSql (change data), "
        "deleteRows (remove rows), highlights_add and highlights_clear (visual emphasis), filter_add, "
        "filter_clear and filters_get (hide or show rows), createSheet (add a sheet) and executeTempSql "
        "(stage intermediate results).",
        "Use `executeSheetSql` to query spreadsheet data. Use the sheet ref (like "
        'context.spreadsheet.sheets["term1"]) directly in your SQL as the table name; the system '
        'substitutes the correct table. Example: SELECT "grade" FROM context.spreadsheet.sheets["term1"] '
        "WHERE \"name\" = 'Julia'. Never construct table names manually.",
        "Use `mutateSheetSql` only when the user explicitly asks to change spreadsheet data. Mutations are "
        "limited to UPDATE, INSERT, or ALTER TABLE ... ADD COLUMN statements. To build a new sheet from a "
        'query, use CREATE TABLE context.spreadsheet.sheets["New Sheet"] AS SELECT ... with mutateSheetSql.',
        "Use `deleteRows` to remove rows, either by row_number list or by a SQL boolean condition.",
        'Use `highlights_add` with either "range" in A1 notation (e.g. "B2", "A1:C5") or "condition" with '
        "a SQL boolean expression. Highlights can be layered by calling it repeatedly with different colors. "
        "Use `highlights_clear` to remove all highlights.",
        "Use `filter_add` to show only rows matching a SQL boolean condition; multiple filters combine with "
        "AND. Use `filter_clear` to show all rows again and `filters_get` to inspect active filters.",
        f"Use `executeTempSql` for scratch work. Tables you create there must start with \"{TEMP_TABLE_PREFIX}\" "
        "and are never shown as sheets.",
        "If a tool call fails, analyze the error and retry with a different approach (for example CAST for "
        "numeric comparisons or LOWER() for case-insensitive matching). Make 2-3 attempts before giving up.",
        "When calling a tool, provide the `sheet` argument using the reference syntax (for example "
        'sheet: context.spreadsheet.sheets["Term 1"]) or the sheet id.',
        "Each sheet table contains a `row_number` column that corresponds to the spreadsheet row number. "
        "Always SELECT row_number when you need to highlight cells based on query results. Summarize tool "
        "results for the user instead of pasting large tables verbatim.",
    ]
)


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """Provider-neutral tool declaration; ``parameters`` is a JSON schema object."""

    name: str
    description: str
    parameters: dict[str, Any]


def _sheet_property(sheets: Sequence[SheetEntry]) -> dict[str, Any]:
    description = 'Reference to the sheet (use context.spreadsheet.sheets["<Sheet Name>"] or the sheet id).'
    if sheets:
        description = f"{description} Sheets: {build_reference_list(sheets)}."
    return {"type": "string", "description": description}


def _object(properties: dict[str, Any], required: Sequence[str] = ()) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": list(required)}


def build_tool_definitions(sheets: Sequence[SheetEntry]) -> list[ToolDefinition]:
    sheet = _sheet_property(sheets)
    condition_hint = (
        "SQL boolean expression. Use double quotes for column names, e.g. '\"revenue\" > 1000' or "
        "'\"status\" = ''active'''."
    )
    return [
        ToolDefinition(
            name="executeSheetSql",
            description="Run a read-only SQL query against the specified sheet table and return the result rows.",
            parameters=_object(
                {
                    "sheet": sheet,
                    "sql": {
                        "type": "string",
                        "description": "A single SELECT statement. Use the sheet reference directly in the FROM clause.",
                    },
                },
                required=("sheet", "sql"),
            ),
        ),
        ToolDefinition(
            name="mutateSheetSql",
            description=(
                "Modify spreadsheet data with an UPDATE, INSERT, or ALTER TABLE ... ADD COLUMN statement, or "
                'create a new sheet with CREATE TABLE context.spreadsheet.sheets["Name"] AS SELECT ...'
            ),
            parameters=_object(
                {
                    "sheet": sheet,
                    "sql": {
                        "type": "string",
                        "description": "A single UPDATE, INSERT, ALTER TABLE ... ADD COLUMN or CREATE TABLE ... AS SELECT statement.",
                    },
                },
                required=("sql",),
            ),
        ),
        ToolDefinition(
            name="deleteRows",
            description="Delete rows from a sheet by row_number list or by SQL condition (exactly one of the two).",
            parameters=_object(
                {
                    "sheet": sheet,
                    "rowNumbers": {
                        "type": "array",
                        "items": {"type": "integer"},
                        "description": "Row numbers to delete.",
                    },
                    "condition": {"type": "string", "description": f"Rows matching this condition are deleted. {condition_hint}"},
                },
                required=("sheet",),
            ),
        ),
        ToolDefinition(
            name="highlights_add",
            description=(
                "Draw visual attention to cells or ranges with a colored overlay. Provide either a range or a "
                "condition. Multiple highlights can be layered."
            ),
            parameters=_object(
                {
                    "sheet": sheet,
                    "range": {
                        "type": "string",
                        "description": 'Cell range in A1 notation (e.g. "A1", "B2:D5"). Mutually exclusive with condition.',
                    },
                    "condition": {"type": "string", "description": f"{condition_hint} Mutually exclusive with range."},
                    "color": {
                        "type": "string",
                        "enum": list(HIGHLIGHT_COLORS),
                        "description": "Highlight color (defaults to yellow).",
                    },
                    "message": {
                        "type": "string",
                        "description": "Optional message explaining why these cells are highlighted.",
                    },
                },
                required=("sheet",),
            ),
        ),
        ToolDefinition(
            name="highlights_clear",
            description="Clear all active highlights from the spreadsheet.",
            parameters=_object({}),
        ),
        ToolDefinition(
            name="filter_add",
            description=(
                "Show only rows matching a SQL boolean condition (other rows are hidden). Filters persist until "
                "cleared and multiple filters combine with AND."
            ),
            parameters=_object(
                {"sheet": sheet, "condition": {"type": "string", "description": f"Rows to SHOW. {condition_hint}"}},
                required=("sheet", "condition"),
            ),
        ),
        ToolDefinition(
            name="filter_clear",
            description="Remove all active filters from the specified sheet to show all rows again.",
            parameters=_object({"sheet": sheet}, required=("sheet",)),
        ),
        ToolDefinition(
            name="filters_get",
            description="List the filter conditions currently active on a sheet.",
            parameters=_object({"sheet": sheet}, required=("sheet",)),
        ),
        ToolDefinition(
            name="createSheet",
            description="Create a new empty sheet, optionally with column headers.",
            parameters=_object(
                {
                    "name": {"type": "string", "description": "Name of the new sheet."},
                    "columns": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Optional column headers in order.",
                    },
                },
                required=("name",),
            ),
        ),
        ToolDefinition(
            name="executeTempSql",
            description=(
                f'Run one scratch SQL statement. CREATE, INSERT, UPDATE, DELETE and DROP may only target tables named "{TEMP_TABLE_PREFIX}..."; '
                "SELECT may read sheet references and temp tables."
            ),
            parameters=_object(
                {"sql": {"type": "string", "description": "A single SQL statement."}},
                required=("sql",),
            ),
        ),
    ]
