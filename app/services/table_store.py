from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from app.db.metadata import MetadataRepository
from app.services.errors import NotFoundError, ValidationError
from app.services.sheet_catalog import (
    ColumnEntry,
    default_header,
    default_sql_name,
    ensure_unique_sql_name,
    header_from_sql_name,
    quote_identifier,
    sanitize_sql_identifier,
    table_name_for_sheet,
)
from app.services.view_state import FilterStore
from app.utils.constants import ROW_NUMBER_COLUMN
from app.utils.logging import get_logger, log_event


@dataclass(slots=True)
class VisibleRows:
    columns: list[ColumnEntry]
    rows: list[dict[str, Any]] = field(default_factory=list)
    filters: list[str] = field(default_factory=list)

    def to_grid(self) -> list[dict[str, Any]]:
        """Render the header row (row_number 0) followed by data rows keyed column_1..column_n."""
        if not self.columns:
            return []
        header_row: dict[str, Any] = {ROW_NUMBER_COLUMN: 0}
        for position, column in enumerate(self.columns):
            header_row[f"column_{position + 1}"] = column.header
        grid = [header_row]
        for row in self.rows:
            record: dict[str, Any] = {ROW_NUMBER_COLUMN: row[ROW_NUMBER_COLUMN]}
            for position, value in enumerate(row["values"]):
                record[f"column_{position + 1}"] = value
            grid.append(record)
        return grid


class TableStore:
    """Physical schema lifecycle and cell I/O for per-sheet tables.

    All statements run on the repository's session, which is bound to the sole
    read-write connection. Column metadata in ``sheet_columns`` is authoritative
    for ordering and naming; the physical table is kept in step with it.
    """

    def __init__(self, repository: MetadataRepository, *, filter_store: FilterStore | None = None) -> None:
        self.repository = repository
        self.session = repository.session
        self.filter_store = filter_store or FilterStore()
        self.logger = get_logger(__name__)

    # Table helpers -------------------------------------------------------
    def ensure_table(self, sheet_id: str) -> str:
        table_name = table_name_for_sheet(sheet_id)
        self.session.execute(
            text(
                f"CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} "
                f"({ROW_NUMBER_COLUMN} INTEGER PRIMARY KEY AUTOINCREMENT)"
            )
        )
        return table_name

    def drop_table(self, sheet_id: str) -> None:
        table_name = table_name_for_sheet(sheet_id)
        self.session.execute(text(f"DROP TABLE IF EXISTS {quote_identifier(table_name)}"))
        self.filter_store.clear(sheet_id)
        log_event(self.logger, "table.dropped", sheet_id=sheet_id, table=table_name)

    def physical_columns(self, sheet_id: str) -> list[str]:
        table_name = table_name_for_sheet(sheet_id)
        rows = self.session.execute(text(f"PRAGMA table_info({quote_identifier(table_name)})")).all()
        return [str(row[1]) for row in rows]

    # Column helpers ------------------------------------------------------
    def get_columns(self, sheet_id: str) -> list[ColumnEntry]:
        return [
            ColumnEntry(index=column.column_index, header=column.header, sql_name=column.sql_name)
            for column in self.repository.list_columns(sheet_id)
        ]

    def _require_column(self, sheet_id: str, column_index: int) -> ColumnEntry:
        columns = self.get_columns(sheet_id)
        if column_index < 0 or column_index >= len(columns):
            raise NotFoundError("Column does not exist.")
        return columns[column_index]

    def _add_physical_column(self, sheet_id: str, *, column_index: int, header: str, sql_name: str) -> ColumnEntry:
        table_name = table_name_for_sheet(sheet_id)
        self.session.execute(
            text(f"ALTER TABLE {quote_identifier(table_name)} ADD COLUMN {quote_identifier(sql_name)} TEXT")
        )
        self.repository.add_column(sheet_id=sheet_id, column_index=column_index, header=header, sql_name=sql_name)
        log_event(self.logger, "table.column.added", sheet_id=sheet_id, column_index=column_index, sql_name=sql_name)
        return ColumnEntry(index=column_index, header=header, sql_name=sql_name)

    def ensure_column_count(self, sheet_id: str, count: int) -> list[ColumnEntry]:
        """Grow the sheet to at least ``count`` columns using default headers."""
        self.ensure_table(sheet_id)
        columns = self.get_columns(sheet_id)
        if len(columns) >= count:
            return columns

        taken = {column.sql_name for column in columns}
        for column_index in range(len(columns), count):
            sql_name = ensure_unique_sql_name(default_sql_name(column_index), taken)
            columns.append(
                self._add_physical_column(
                    sheet_id,
                    column_index=column_index,
                    header=default_header(column_index),
                    sql_name=sql_name,
                )
            )
            taken.add(sql_name)
        self.touch_sheet(sheet_id)
        return columns

    def add_named_columns(self, sheet_id: str, headers: Sequence[str]) -> list[ColumnEntry]:
        """Append one column per header, sanitising each into a unique SQL name."""
        self.ensure_table(sheet_id)
        columns = self.get_columns(sheet_id)
        taken = {column.sql_name for column in columns}
        added: list[ColumnEntry] = []
        for offset, raw_header in enumerate(headers):
            column_index = len(columns) + offset
            header = (raw_header or "").strip() or default_header(column_index)
            sql_name = ensure_unique_sql_name(
                sanitize_sql_identifier(header, default_sql_name(column_index)), taken
            )
            added.append(
                self._add_physical_column(sheet_id, column_index=column_index, header=header, sql_name=sql_name)
            )
            taken.add(sql_name)
        if added:
            self.touch_sheet(sheet_id)
        return added

    def rename_column(self, sheet_id: str, column_index: int, new_header: str | None) -> ColumnEntry:
        column = self._require_column(sheet_id, column_index)
        table_name = self.ensure_table(sheet_id)

        header = (new_header or "").strip() or default_header(column_index)
        taken = {entry.sql_name for entry in self.get_columns(sheet_id) if entry.index != column_index}
        sql_name = ensure_unique_sql_name(
            sanitize_sql_identifier(new_header, default_sql_name(column_index)), taken
        )

        if sql_name != column.sql_name:
            self.session.execute(
                text(
                    f"ALTER TABLE {quote_identifier(table_name)} RENAME COLUMN "
                    f"{quote_identifier(column.sql_name)} TO {quote_identifier(sql_name)}"
                )
            )
            log_event(
                self.logger,
                "table.column.renamed",
                sheet_id=sheet_id,
                column_index=column_index,
                previous=column.sql_name,
                sql_name=sql_name,
            )

        if header != column.header or sql_name != column.sql_name:
            record = self.repository.get_column(sheet_id, column_index)
            if record is None:
                raise NotFoundError("Column does not exist.")
            self.repository.update_column(record, header=header, sql_name=sql_name)
            self.touch_sheet(sheet_id)
        return ColumnEntry(index=column_index, header=header, sql_name=sql_name)

    def remove_column(self, sheet_id: str, column_index: int) -> ColumnEntry:
        """Drop the physical column and shift later column indices down by one."""
        column = self._require_column(sheet_id, column_index)
        table_name = self.ensure_table(sheet_id)
        self.session.execute(
            text(f"ALTER TABLE {quote_identifier(table_name)} DROP COLUMN {quote_identifier(column.sql_name)}")
        )
        self.repository.delete_column(sheet_id, column_index)
        self.touch_sheet(sheet_id)
        log_event(self.logger, "table.column.removed", sheet_id=sheet_id, column_index=column_index, sql_name=column.sql_name)
        return column

    def sync_new_columns(self, sheet_id: str) -> list[ColumnEntry]:
        """Track physical columns added by raw SQL that have no metadata row yet.

        Untracked columns whose names are not lower-case identifiers are renamed in
        place to their sanitised form before metadata is written.
        """
        columns = self.get_columns(sheet_id)
        known = {column.sql_name.lower() for column in columns}
        physical = self.physical_columns(sheet_id)
        table = quote_identifier(table_name_for_sheet(sheet_id))
        next_index = len(columns)
        added: list[ColumnEntry] = []
        for name in physical:
            if name.lower() == ROW_NUMBER_COLUMN or name.lower() in known:
                continue
            header = header_from_sql_name(name, next_index)
            others = [other for other in physical if other != name]
            sql_name = ensure_unique_sql_name(
                sanitize_sql_identifier(name, default_sql_name(next_index)), [*known, *others]
            )
            if sql_name != name:
                self.session.execute(
                    text(f"ALTER TABLE {table} RENAME COLUMN {quote_identifier(name)} TO {quote_identifier(sql_name)}")
                )
            self.repository.add_column(sheet_id=sheet_id, column_index=next_index, header=header, sql_name=sql_name)
            added.append(ColumnEntry(index=next_index, header=header, sql_name=sql_name))
            known.add(sql_name)
            next_index += 1
        if added:
            self.touch_sheet(sheet_id)
            log_event(self.logger, "table.columns.synced", sheet_id=sheet_id, added=[entry.sql_name for entry in added])
        return added

    # Cell helpers --------------------------------------------------------
    def set_cell(self, sheet_id: str, row_number: int, column_index: int, value: str | None) -> None:
        """Upsert one cell; clearing the last non-blank cell of a row deletes the row."""
        if row_number <= 0:
            raise ValidationError("Row numbers must be positive for cell values.")
        if column_index < 0:
            raise NotFoundError("Column does not exist.")

        columns = self.ensure_column_count(sheet_id, column_index + 1)
        column = columns[column_index]
        table = quote_identifier(table_name_for_sheet(sheet_id))
        target = quote_identifier(column.sql_name)

        if isinstance(value, str) and value:
            self.session.execute(
                text(
                    f"INSERT INTO {table} ({ROW_NUMBER_COLUMN}, {target}) VALUES (:row_number, :value) "
                    f"ON CONFLICT({ROW_NUMBER_COLUMN}) DO UPDATE SET {target} = excluded.{target}"
                ),
                {"row_number": row_number, "value": value},
            )
        else:
            self.session.execute(
                text(f"UPDATE {table} SET {target} = NULL WHERE {ROW_NUMBER_COLUMN} = :row_number"),
                {"row_number": row_number},
            )
            select_list = ", ".join(quote_identifier(entry.sql_name) for entry in columns)
            row = self.session.execute(
                text(f"SELECT {select_list} FROM {table} WHERE {ROW_NUMBER_COLUMN} = :row_number"),
                {"row_number": row_number},
            ).first()
            has_values = row is not None and any(
                cell is not None and str(cell).strip() for cell in row
            )
            if row is not None and not has_values:
                self.session.execute(
                    text(f"DELETE FROM {table} WHERE {ROW_NUMBER_COLUMN} = :row_number"),
                    {"row_number": row_number},
                )
                log_event(self.logger, "table.row.deleted", sheet_id=sheet_id, row_number=row_number)
        self.touch_sheet(sheet_id)

    def load_visible_rows(self, sheet_id: str) -> VisibleRows:
        self.ensure_table(sheet_id)
        columns = self.get_columns(sheet_id)
        filters = list(self.filter_store.get(sheet_id))
        if not columns:
            return VisibleRows(columns=[], rows=[], filters=filters)

        select_list = ", ".join(quote_identifier(column.sql_name) for column in columns)
        statement = (
            f"SELECT {ROW_NUMBER_COLUMN}, {select_list} "
            f"FROM {quote_identifier(table_name_for_sheet(sheet_id))}"
        )
        where_clause = self.filter_store.where_clause(sheet_id)
        if where_clause:
            statement += f" WHERE {where_clause}"
        statement += f" ORDER BY {ROW_NUMBER_COLUMN}"

        try:
            # Filter text is authored SQL, so it bypasses bind-parameter parsing.
            result = self.session.connection().exec_driver_sql(statement).all()
        except OperationalError as error:
            if not where_clause:
                raise
            raise ValidationError(f"Active filters could not be applied: {error.orig}") from error

        rows = [{ROW_NUMBER_COLUMN: record[0], "values": list(record[1:])} for record in result]
        return VisibleRows(columns=columns, rows=rows, filters=filters)

    def touch_sheet(self, sheet_id: str) -> None:
        sheet = self.repository.get_sheet(sheet_id)
        if sheet is not None:
            self.repository.touch_sheet(sheet)
