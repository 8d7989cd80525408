from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.api.router import create_app
from app.services.view_state import FilterStore


@pytest.fixture
def filter_store() -> FilterStore:
    return FilterStore()


@pytest.fixture
def client(
    sqlite_url: str, temp_data_root: Path, filter_store: FilterStore, monkeypatch: pytest.MonkeyPatch
) -> TestClient:
    monkeypatch.setenv("AI_PROVIDER", "anthropic")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    return TestClient(create_app(filter_store=filter_store, data_root=temp_data_root))


@pytest.fixture
def sheet_id(client: TestClient) -> str:
    spreadsheet = client.post("/spreadsheets", json={"name": "Budget"}).json()
    return client.post(f"/spreadsheets/{spreadsheet['id']}/sheets", json={"name": "Sales"}).json()["id"]


def _set(client: TestClient, sheet_id: str, row: int, col: int, value: str | None) -> None:
    response = client.post(f"/sheets/{sheet_id}/cells", json={"row": row, "col": col, "value": value})
    assert response.status_code == 204, response.text


def _table(client: TestClient, sheet_id: str) -> dict:
    response = client.get(f"/sheets/{sheet_id}/table")
    assert response.status_code == 200, response.text
    return response.json()


def test_new_sheet_has_empty_grid(client: TestClient, sheet_id: str) -> None:
    assert _table(client, sheet_id) == {"data": [], "columns": [], "filters": []}


def test_ensure_columns_adds_defaults(client: TestClient, sheet_id: str) -> None:
    response = client.post(f"/sheets/{sheet_id}/table", json={"columnCount": 2})

    assert response.status_code == 204
    table = _table(client, sheet_id)
    assert table["columns"] == [
        {"columnIndex": 0, "header": "COLUMN_1", "sqlName": "column_1"},
        {"columnIndex": 1, "header": "COLUMN_2", "sqlName": "column_2"},
    ]
    assert table["data"] == [{"row_number": 0, "column_1": "COLUMN_1", "column_2": "COLUMN_2"}]
    assert client.post(f"/sheets/{sheet_id}/table", json={"columnCount": 0}).status_code == 400


def test_header_row_renames_and_cells_upsert(client: TestClient, sheet_id: str) -> None:
    _set(client, sheet_id, 0, 0, "Product")
    _set(client, sheet_id, 0, 1, "Unit Price ($)")
    _set(client, sheet_id, 1, 0, "Widget")
    _set(client, sheet_id, 1, 1, "150")
    _set(client, sheet_id, 3, 0, "Gadget")

    table = _table(client, sheet_id)

    assert [column["sqlName"] for column in table["columns"]] == ["product", "unit_price"]
    assert table["data"] == [
        {"row_number": 0, "column_1": "Product", "column_2": "Unit Price ($)"},
        {"row_number": 1, "column_1": "Widget", "column_2": "150"},
        {"row_number": 3, "column_1": "Gadget", "column_2": None},
    ]

    _set(client, sheet_id, 3, 0, "")
    assert [row["row_number"] for row in _table(client, sheet_id)["data"]] == [0, 1]


def test_cell_validation(client: TestClient, sheet_id: str) -> None:
    negative = client.post(f"/sheets/{sheet_id}/cells", json={"row": -1, "col": 0, "value": "x"})
    missing = client.post("/sheets/missing/cells", json={"row": 1, "col": 0, "value": "x"})

    assert negative.status_code == 400
    assert negative.json() == {"error": "row and col must be non-negative integers."}
    assert missing.status_code == 404


def test_remove_column(client: TestClient, sheet_id: str) -> None:
    _set(client, sheet_id, 0, 0, "Product")
    _set(client, sheet_id, 0, 1, "Revenue")
    _set(client, sheet_id, 1, 0, "Widget")
    _set(client, sheet_id, 1, 1, "150")

    negative = client.delete(f"/sheets/{sheet_id}/columns/-1")
    unknown = client.delete(f"/sheets/{sheet_id}/columns/5")
    removed = client.delete(f"/sheets/{sheet_id}/columns/0")
    last = client.delete(f"/sheets/{sheet_id}/columns/0")

    assert negative.status_code == 400
    assert negative.json() == {"error": "columnIndex must be a non-negative integer."}
    assert unknown.status_code == 404
    assert unknown.json() == {"error": "Column not found."}
    assert removed.status_code == 204
    assert last.status_code == 400
    assert last.json() == {"error": "A sheet must contain at least one column."}
    assert _table(client, sheet_id)["data"] == [
        {"row_number": 0, "column_1": "Revenue"},
        {"row_number": 1, "column_1": "150"},
    ]


def test_filters_apply_and_clear(client: TestClient, sheet_id: str, filter_store: FilterStore) -> None:
    _set(client, sheet_id, 0, 0, "Product")
    _set(client, sheet_id, 1, 0, "Widget")
    _set(client, sheet_id, 2, 0, "Gadget")
    filter_store.add(sheet_id, "\"product\" = 'Gadget'")

    filtered = _table(client, sheet_id)
    cleared = client.delete(f"/sheets/{sheet_id}/filters")

    assert filtered["filters"] == ["\"product\" = 'Gadget'"]
    assert [row["row_number"] for row in filtered["data"]] == [0, 2]
    assert cleared.status_code == 204
    assert [row["row_number"] for row in _table(client, sheet_id)["data"]] == [0, 1, 2]
    assert client.delete("/sheets/missing/filters").status_code == 404
