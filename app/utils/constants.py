"""Centralised constants shared by the table store, SQL sandbox and agent tools."""

from __future__ import annotations

ROW_NUMBER_COLUMN = "row_number"
"""Primary key column present in every physical sheet table."""

SHEET_TABLE_PREFIX = "sheet_"
"""Prefix of every physical sheet table name."""

TEMP_TABLE_PREFIX = "temp_"
"""Prefix required for staging tables created through the temporary SQL tool."""

SHEET_REFERENCE_PATTERN = r"""context\.spreadsheet\.sheets\[\s*(['"])(.+?)\1\s*\]"""
"""Symbolic sheet reference authored by the agent, e.g. context.spreadsheet.sheets["Sales"]."""

DEFAULT_PREVIEW_ROWS = 100
"""Rows returned to the model for a read query."""

DEFAULT_MAX_ROWS = 2000
"""Rows scanned before a read query is cut off and reported as truncated."""

MAX_SUMMARY_COLUMNS = 20
"""Columns listed per sheet in the summary sent to the model."""

HIGHLIGHT_COLORS: tuple[str, ...] = ("yellow", "red", "green", "blue", "orange", "purple")
DEFAULT_HIGHLIGHT_COLOR = "yellow"

READ_BLACKLIST: frozenset[str] = frozenset(
    {
        "insert",
        "update",
        "delete",
        "drop",
        "alter",
        "create",
        "replace",
        "attach",
        "detach",
        "vacuum",
        "pragma",
        "reindex",
        "analyze",
        "begin",
        "commit",
        "rollback",
        "savepoint",
        "release",
        "truncate",
        "merge",
    }
)
"""Keywords that may not appear outside string literals in a read query."""

MUTATION_BLACKLIST: frozenset[str] = frozenset(
    {
        "delete",
        "drop",
        "truncate",
        "replace",
        "attach",
        "detach",
        "vacuum",
        "pragma",
        "reindex",
        "analyze",
        "begin",
        "commit",
        "rollback",
        "savepoint",
        "release",
        "merge",
    }
)
"""Keywords that may not appear outside string literals in a mutation."""

TEMP_SQL_BLACKLIST: frozenset[str] = frozenset(
    {
        "attach",
        "detach",
        "vacuum",
        "pragma",
        "reindex",
        "begin",
        "commit",
        "rollback",
        "savepoint",
        "release",
    }
)
"""Keywords rejected by the temporary staging SQL tool."""

MALFORMED_CALL_CORRECTION = (
    "Your function call was malformed. Do not apologize. Silently reformulate and "
    "immediately try again with properly escaped parameters."
)
