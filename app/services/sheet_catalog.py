from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from app.db.metadata import MetadataRepository
from app.db.schema import Sheet
from app.services.errors import ValidationError
from app.utils.constants import (
    MAX_SUMMARY_COLUMNS,
    ROW_NUMBER_COLUMN,
    SHEET_REFERENCE_PATTERN,
    SHEET_TABLE_PREFIX,
)

_REFERENCE_RE = re.compile(SHEET_REFERENCE_PATTERN, re.IGNORECASE)
_A1_RANGE_RE = re.compile(r"^[A-Z]+[0-9]+(:[A-Z]+[0-9]+)?$")
_PLAIN_IDENTIFIER_RE = re.compile(r"^[a-z0-9_]+$")


@dataclass(slots=True, frozen=True)
class ColumnEntry:
    index: int
    header: str
    sql_name: str

    def to_payload(self) -> dict[str, object]:
        return {"columnIndex": self.index, "header": self.header, "sqlName": self.sql_name}


@dataclass(slots=True, frozen=True)
class SheetEntry:
    """Immutable snapshot of one sheet and its column metadata."""

    id: str
    spreadsheet_id: str
    name: str
    columns: tuple[ColumnEntry, ...] = ()

    @property
    def slug(self) -> str:
        return slugify_sheet_name(self.name)

    @property
    def table_name(self) -> str:
        return table_name_for_sheet(self.id)

    @property
    def reference(self) -> str:
        return f'context.spreadsheet.sheets["{self.name}"]'

    def describe(self) -> dict[str, str]:
        return {"sheetId": self.id, "sheetName": self.name, "sheetReference": self.reference}


# Naming helpers ------------------------------------------------------------
def _strip_accents(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value)
    return "".join(char for char in normalized if not unicodedata.combining(char))


def default_header(index: int) -> str:
    return f"COLUMN_{index + 1}"


def default_sql_name(index: int) -> str:
    return f"column_{index + 1}"


def sanitize_sql_identifier(value: str | None, fallback: str) -> str:
    """Turn a display header into a lower-case SQL identifier."""
    cleaned = _strip_accents(value or "")
    cleaned = re.sub(r"[^A-Za-z0-9_]", "_", cleaned)
    cleaned = re.sub(r"_+", "_", cleaned).strip("_").lower()
    candidate = cleaned or fallback
    if candidate[0].isdigit():
        candidate = f"col_{candidate}"
    return candidate


def ensure_unique_sql_name(candidate: str, taken: Iterable[str]) -> str:
    """Suffix ``candidate`` with _2, _3, ... until it is free and not the reserved key column.

    SQLite column names are case-insensitive, so names are compared lower-cased.
    """
    existing = {name.lower() for name in taken}
    existing.add(ROW_NUMBER_COLUMN)
    if candidate.lower() not in existing:
        return candidate
    suffix = 2
    while f"{candidate}_{suffix}".lower() in existing:
        suffix += 1
    return f"{candidate}_{suffix}"


def slugify_sheet_name(name: str) -> str:
    slug = _strip_accents(name.lower())
    slug = re.sub(r"[^a-z0-9]+", "_", slug)
    slug = re.sub(r"_+", "_", slug).strip("_")
    return slug or "sheet"


def table_name_for_sheet(sheet_id: str) -> str:
    return SHEET_TABLE_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", sheet_id)


def header_from_sql_name(sql_name: str | None, index: int) -> str:
    """Derive a display header for a physical column that has no metadata yet."""
    raw = (sql_name or "").strip()
    if not raw:
        return default_header(index)
    if _PLAIN_IDENTIFIER_RE.match(raw):
        return raw
    normalized = re.sub(r"[_\s]+", " ", re.sub(r"^col_", "", raw)).strip()
    if not normalized:
        return default_header(index)
    return " ".join(word[:1].upper() + word[1:] for word in normalized.split(" ") if word)


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


# Catalog helpers -----------------------------------------------------------
def sheet_entry(repository: MetadataRepository, sheet: Sheet) -> SheetEntry:
    columns = tuple(
        ColumnEntry(index=column.column_index, header=column.header, sql_name=column.sql_name)
        for column in repository.list_columns(sheet.id)
    )
    return SheetEntry(id=sheet.id, spreadsheet_id=sheet.spreadsheet_id, name=sheet.name, columns=columns)


def load_catalog(repository: MetadataRepository, spreadsheet_id: str) -> list[SheetEntry]:
    return [sheet_entry(repository, sheet) for sheet in repository.list_sheets(spreadsheet_id)]


def resolve_sheet_reference(sheets: Sequence[SheetEntry], raw: object) -> SheetEntry | None:
    """Match an id, a bare or quoted name, or a context reference against ``sheets``.

    Ids win over names, and names (case-insensitive) win over slugs.
    """
    if not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None

    for sheet in sheets:
        if sheet.id == trimmed:
            return sheet

    match = _REFERENCE_RE.search(trimmed)
    extracted = match.group(2) if match else re.sub(r"^['\"]|['\"]$", "", trimmed)
    candidate = extracted.strip()
    if not candidate:
        return None

    lowered = candidate.lower()
    for sheet in sheets:
        if sheet.name.lower() == lowered:
            return sheet

    candidate_slug = slugify_sheet_name(candidate)
    for sheet in sheets:
        if sheet.slug in (lowered, candidate_slug):
            return sheet
    return None


def build_sheet_summary(sheets: Sequence[SheetEntry]) -> str:
    lines: list[str] = []
    for sheet in sheets:
        if sheet.columns:
            column_text = ", ".join(
                f'{column.header} → "{column.sql_name}"' for column in sheet.columns[:MAX_SUMMARY_COLUMNS]
            )
        else:
            column_text = 'No headers yet. Default SQL names: "column_1", "column_2", ...'
        lines.append(
            f"{sheet.name} (sheetId: {sheet.id}, ref: {sheet.reference}, "
            f'alias: context.spreadsheet.sheets["{sheet.slug}"] → table "{sheet.table_name}") '
            f"columns: {column_text}"
        )
    return "\n".join(lines)


def build_reference_list(sheets: Sequence[SheetEntry]) -> str:
    if not sheets:
        return "No sheets exist yet."
    return ", ".join(sheet.reference for sheet in sheets)


# Range helpers -------------------------------------------------------------
def compute_range_label(selected_cells: Mapping[str, object] | Iterable[str] | None) -> str | None:
    if not selected_cells:
        return None
    keys = sorted(str(key).upper() for key in selected_cells)
    if not keys:
        return None
    first, last = keys[0], keys[-1]
    return first if first == last else f"{first}:{last}"


def normalize_a1_range(value: str) -> str:
    candidate = value.strip().upper()
    if not _A1_RANGE_RE.match(candidate):
        raise ValidationError(f'Invalid range "{value}". Use A1 notation such as "B2" or "A1:C5".')
    return candidate
