from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.api.router import create_app


@pytest.fixture
def client(sqlite_url: str, temp_data_root: Path, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("AI_PROVIDER", "anthropic")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    return TestClient(create_app(data_root=temp_data_root))


def _create_spreadsheet(client: TestClient, name: str = "Budget") -> dict:
    response = client.post("/spreadsheets", json={"name": name})
    assert response.status_code == 201
    return response.json()


def test_health_reports_provider(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "provider": "anthropic", "configured": True}


def test_create_list_and_fetch_spreadsheet(client: TestClient) -> None:
    created = _create_spreadsheet(client, "  Budget  ")

    assert created["name"] == "Budget"
    assert {"id", "createdAt", "updatedAt"} <= created.keys()
    assert [item["id"] for item in client.get("/spreadsheets").json()] == [created["id"]]
    assert client.get(f"/spreadsheets/{created['id']}").json()["name"] == "Budget"


def test_create_spreadsheet_requires_name(client: TestClient) -> None:
    for payload in ({}, {"name": "   "}):
        response = client.post("/spreadsheets", json=payload)
        assert response.status_code == 400
        assert response.json() == {"error": "Name is required."}


def test_unknown_spreadsheet_returns_404(client: TestClient) -> None:
    response = client.get("/spreadsheets/missing")

    assert response.status_code == 404
    assert response.json() == {"error": "Spreadsheet not found."}
    assert client.get("/spreadsheets/missing/sheets").status_code == 404
    assert client.post("/spreadsheets/missing/sheets", json={"name": "Sales"}).status_code == 404


def test_sheet_lifecycle(client: TestClient) -> None:
    spreadsheet = _create_spreadsheet(client)
    sheets_url = f"/spreadsheets/{spreadsheet['id']}/sheets"

    created = client.post(sheets_url, json={"name": "Sales"})
    duplicate = client.post(sheets_url, json={"name": "sales"})

    assert created.status_code == 201
    sheet = created.json()
    assert sheet["spreadsheetId"] == spreadsheet["id"]
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "A sheet with that name already exists in this spreadsheet."

    renamed = client.patch(f"/sheets/{sheet['id']}", json={"name": "Revenue"})
    assert renamed.status_code == 204
    assert [item["name"] for item in client.get(sheets_url).json()] == ["Revenue"]
    assert client.patch(f"/sheets/{sheet['id']}", json={"name": ""}).status_code == 400

    deleted = client.delete(f"/sheets/{sheet['id']}")
    assert deleted.status_code == 204
    assert client.get(sheets_url).json() == []
    assert client.delete(f"/sheets/{sheet['id']}").status_code == 404


def test_delete_spreadsheet_removes_sheets(client: TestClient) -> None:
    spreadsheet = _create_spreadsheet(client)
    sheet = client.post(f"/spreadsheets/{spreadsheet['id']}/sheets", json={"name": "Sales"}).json()

    response = client.delete(f"/spreadsheets/{spreadsheet['id']}")

    assert response.status_code == 204
    assert client.get(f"/spreadsheets/{spreadsheet['id']}").status_code == 404
    assert client.get(f"/sheets/{sheet['id']}/table").status_code == 404
    assert client.get("/spreadsheets").json() == []
