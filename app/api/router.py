from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.engine import Engine

from app.db.metadata import (
    MetadataRepository,
    build_engine,
    build_read_only_engine,
    create_session_factory,
    init_database,
    session_scope,
)
from app.db.schema import ChatMessage, Sheet, Spreadsheet
from app.services.audit_log import AuditLogService
from app.services.backends import ModelBackend, build_backend
from app.services.errors import ConflictError, NotFoundError, ProviderError, SheetAgentError, ValidationError
from app.services.orchestrator import AgentOrchestrator
from app.services.table_store import TableStore
from app.services.view_state import FilterStore
from app.utils.config import ProviderConfig, get_data_root, load_agent_config
from app.utils.logging import get_logger, log_warning_event

LOGGER = get_logger(__name__)

BackendFactory = Callable[[ProviderConfig], ModelBackend]


class NamePayload(BaseModel):
    name: Annotated[str | None, Field(default=None)]

    model_config = ConfigDict(populate_by_name=True)


class EnsureColumnsRequest(BaseModel):
    column_count: Annotated[int | None, Field(alias="columnCount", default=None)]

    model_config = ConfigDict(populate_by_name=True)


class SetCellRequest(BaseModel):
    row: Annotated[int | None, Field(default=None)]
    col: Annotated[int | None, Field(default=None)]
    value: Annotated[str | None, Field(default=None)]

    model_config = ConfigDict(populate_by_name=True)


class ChatRequest(BaseModel):
    query: Annotated[str | None, Field(default=None)]
    selected_cells: Annotated[dict[str, Any] | None, Field(alias="selectedCells", default=None)]

    model_config = ConfigDict(populate_by_name=True)


def _required_name(payload: NamePayload) -> str:
    if not payload.name or not payload.name.strip():
        raise ValidationError("Name is required.")
    return payload.name.strip()


def _serialize_spreadsheet(spreadsheet: Spreadsheet) -> dict[str, object]:
    return {
        "id": spreadsheet.id,
        "name": spreadsheet.name,
        "createdAt": spreadsheet.created_at.isoformat(),
        "updatedAt": spreadsheet.updated_at.isoformat(),
    }


def _serialize_sheet(sheet: Sheet) -> dict[str, object]:
    return {
        "id": sheet.id,
        "spreadsheetId": sheet.spreadsheet_id,
        "name": sheet.name,
        "createdAt": sheet.created_at.isoformat(),
        "updatedAt": sheet.updated_at.isoformat(),
    }


def _serialize_message(message: ChatMessage) -> dict[str, object]:
    return {
        "id": message.id,
        "spreadsheetId": message.spreadsheet_id,
        "role": message.role.value,
        "content": message.content,
        "createdAt": message.created_at.isoformat(),
        "contextRange": message.context_range,
        "toolCalls": message.tool_calls,
    }


def _error_status(error: Exception) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, ProviderError):
        return error.status_code if error.status_code == status.HTTP_400_BAD_REQUEST else status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST


def create_app(
    *,
    backend_factory: BackendFactory | None = None,
    filter_store: FilterStore | None = None,
    data_root: Path | None = None,
) -> FastAPI:
    """Create a FastAPI instance exposing spreadsheet, sheet, table and chat endpoints."""
    app = FastAPI(
        title="Sheet SQL Agent API",
        version="0.1.0",
    )

    root = data_root or get_data_root()
    engine = build_engine()
    init_database(engine)
    read_engine: Engine = build_read_only_engine(str(engine.url))
    SessionFactory = create_session_factory(engine)
    agent_config = load_agent_config()
    filters = filter_store or FilterStore()
    audit_log = AuditLogService(root)
    make_backend = backend_factory or build_backend

    app.state.engine = engine
    app.state.read_engine = read_engine
    app.state.filter_store = filters

    @app.exception_handler(SheetAgentError)
    async def handle_agent_error(_request: Request, error: SheetAgentError) -> JSONResponse:
        code = _error_status(error)
        if code >= 500:
            log_warning_event(LOGGER, "api.provider_error", error=str(error))
        return JSONResponse(status_code=code, content={"error": str(error)})

    @app.exception_handler(ValueError)
    async def handle_value_error(_request: Request, error: ValueError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(error)})

    def get_repository() -> Iterator[MetadataRepository]:
        with session_scope(SessionFactory) as session:
            yield MetadataRepository(session)

    def get_table_store(
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository)
    ) -> TableStore:
        return TableStore(repo, filter_store=filters)

    def get_orchestrator(
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository)
    ) -> AgentOrchestrator:
        return AgentOrchestrator(
            repository=repo,
            backend=make_backend(agent_config.provider),
            read_engine=read_engine,
            filter_store=filters,
            limits=agent_config.limits,
            audit_log=audit_log,
        )

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "status": "ok",
            "provider": agent_config.provider.name,
            "configured": agent_config.provider.configured,
        }

    # Spreadsheets --------------------------------------------------------
    @app.get("/spreadsheets")
    def list_spreadsheets(
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository),
    ) -> list[dict[str, object]]:
        return [_serialize_spreadsheet(item) for item in repo.list_spreadsheets()]

    @app.post("/spreadsheets", status_code=status.HTTP_201_CREATED)
    def create_spreadsheet(
        payload: NamePayload,
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository),
    ) -> dict[str, object]:
        spreadsheet = repo.create_spreadsheet(name=_required_name(payload))
        return _serialize_spreadsheet(spreadsheet)

    @app.get("/spreadsheets/{spreadsheet_id}")
    def get_spreadsheet(
        spreadsheet_id: str,
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository),
    ) -> dict[str, object]:
        return _serialize_spreadsheet(repo.require_spreadsheet(spreadsheet_id))

    @app.delete("/spreadsheets/{spreadsheet_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_spreadsheet(
        spreadsheet_id: str,
        store: Annotated[TableStore, Depends(get_table_store)] = Depends(get_table_store),
    ) -> Response:
        repo = store.repository
        spreadsheet = repo.require_spreadsheet(spreadsheet_id)
        for sheet in repo.list_sheets(spreadsheet_id):
            store.drop_table(sheet.id)
        repo.delete_spreadsheet(spreadsheet)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Sheets --------------------------------------------------------------
    @app.get("/spreadsheets/{spreadsheet_id}/sheets")
    def list_sheets(
        spreadsheet_id: str,
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository),
    ) -> list[dict[str, object]]:
        repo.require_spreadsheet(spreadsheet_id)
        return [_serialize_sheet(sheet) for sheet in repo.list_sheets(spreadsheet_id)]

    @app.post("/spreadsheets/{spreadsheet_id}/sheets", status_code=status.HTTP_201_CREATED)
    def create_sheet(
        spreadsheet_id: str,
        payload: NamePayload,
        store: Annotated[TableStore, Depends(get_table_store)] = Depends(get_table_store),
    ) -> dict[str, object]:
        name = _required_name(payload)
        store.repository.require_spreadsheet(spreadsheet_id)
        sheet = store.repository.create_sheet(spreadsheet_id=spreadsheet_id, name=name)
        store.ensure_table(sheet.id)
        return _serialize_sheet(sheet)

    @app.patch("/sheets/{sheet_id}", status_code=status.HTTP_204_NO_CONTENT)
    def rename_sheet(
        sheet_id: str,
        payload: NamePayload,
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository),
    ) -> Response:
        name = _required_name(payload)
        repo.rename_sheet(repo.require_sheet(sheet_id), name=name)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/sheets/{sheet_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_sheet(
        sheet_id: str,
        store: Annotated[TableStore, Depends(get_table_store)] = Depends(get_table_store),
    ) -> Response:
        sheet = store.repository.require_sheet(sheet_id)
        store.drop_table(sheet.id)
        store.repository.delete_sheet(sheet)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Table ---------------------------------------------------------------
    @app.get("/sheets/{sheet_id}/table")
    def load_table(
        sheet_id: str,
        store: Annotated[TableStore, Depends(get_table_store)] = Depends(get_table_store),
    ) -> dict[str, object]:
        store.repository.require_sheet(sheet_id)
        visible = store.load_visible_rows(sheet_id)
        return {
            "data": visible.to_grid(),
            "columns": [column.to_payload() for column in visible.columns],
            "filters": visible.filters,
        }

    @app.post("/sheets/{sheet_id}/table", status_code=status.HTTP_204_NO_CONTENT)
    def ensure_columns(
        sheet_id: str,
        payload: EnsureColumnsRequest,
        store: Annotated[TableStore, Depends(get_table_store)] = Depends(get_table_store),
    ) -> Response:
        if payload.column_count is None or payload.column_count <= 0:
            raise ValidationError("columnCount must be a positive integer.")
        store.repository.require_sheet(sheet_id)
        store.ensure_column_count(sheet_id, payload.column_count)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/sheets/{sheet_id}/cells", status_code=status.HTTP_204_NO_CONTENT)
    def set_cell(
        sheet_id: str,
        payload: SetCellRequest,
        store: Annotated[TableStore, Depends(get_table_store)] = Depends(get_table_store),
    ) -> Response:
        if payload.row is None or payload.row < 0 or payload.col is None or payload.col < 0:
            raise ValidationError("row and col must be non-negative integers.")
        store.repository.require_sheet(sheet_id)
        store.ensure_column_count(sheet_id, payload.col + 1)
        if payload.row == 0:
            store.rename_column(sheet_id, payload.col, payload.value or "")
        else:
            store.set_cell(sheet_id, payload.row, payload.col, payload.value or "")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/sheets/{sheet_id}/columns/{column_index}", status_code=status.HTTP_204_NO_CONTENT)
    def remove_column(
        sheet_id: str,
        column_index: int,
        store: Annotated[TableStore, Depends(get_table_store)] = Depends(get_table_store),
    ) -> Response:
        if column_index < 0:
            raise ValidationError("columnIndex must be a non-negative integer.")
        store.repository.require_sheet(sheet_id)
        columns = store.get_columns(sheet_id)
        if len(columns) <= 1:
            raise ValidationError("A sheet must contain at least one column.")
        if column_index >= len(columns):
            raise NotFoundError("Column not found.")
        store.remove_column(sheet_id, column_index)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/sheets/{sheet_id}/filters", status_code=status.HTTP_204_NO_CONTENT)
    def clear_filters(
        sheet_id: str,
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository),
    ) -> Response:
        repo.require_sheet(sheet_id)
        filters.clear(sheet_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Chat ----------------------------------------------------------------
    @app.get("/spreadsheets/{spreadsheet_id}/chat")
    def list_chat(
        spreadsheet_id: str,
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository),
    ) -> dict[str, object]:
        repo.require_spreadsheet(spreadsheet_id)
        return {"messages": [_serialize_message(message) for message in repo.list_chat_messages(spreadsheet_id)]}

    @app.post("/spreadsheets/{spreadsheet_id}/chat")
    def post_chat(
        spreadsheet_id: str,
        payload: ChatRequest,
        orchestrator: Annotated[AgentOrchestrator, Depends(get_orchestrator)] = Depends(get_orchestrator),
    ) -> dict[str, object]:
        result = orchestrator.run_turn(
            spreadsheet_id,
            payload.query or "",
            selected_cells=payload.selected_cells,
        )
        return {
            "response": result.assistant_message.content,
            "assistantMessage": _serialize_message(result.assistant_message),
            "messages": [_serialize_message(message) for message in result.messages],
            "iterations": result.iterations,
        }

    @app.delete("/spreadsheets/{spreadsheet_id}/chat", status_code=status.HTTP_204_NO_CONTENT)
    def clear_chat(
        spreadsheet_id: str,
        repo: Annotated[MetadataRepository, Depends(get_repository)] = Depends(get_repository),
    ) -> Response:
        repo.require_spreadsheet(spreadsheet_id)
        repo.clear_conversation(spreadsheet_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app
