from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.engine import Engine

from app.db.metadata import MetadataRepository
from app.db.schema import ChatMessage, ChatRole
from app.services.audit_log import AuditLogService
from app.services.backends import HistoryMessage, ModelBackend, ToolInvocation
from app.services.errors import ValidationError
from app.services.sheet_catalog import build_sheet_summary, compute_range_label
from app.services.sql_sandbox import SqlSandbox
from app.services.table_store import TableStore
from app.services.tool_dispatcher import ToolCallRecord, ToolDispatcher
from app.services.tool_schemas import SYSTEM_INSTRUCTION, build_tool_definitions
from app.services.view_state import FilterStore
from app.utils.config import QueryLimits
from app.utils.logging import get_logger, log_event, log_timing, log_warning_event, turn_context
from app.utils.metrics import TurnMetrics, emit_agent_metric, measure_agent

NO_RESPONSE_TEXT = "I couldn't produce a response for that request."


@dataclass(slots=True)
class TurnResult:
    assistant_message: ChatMessage
    messages: list[ChatMessage]
    iterations: int
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


def format_user_prompt(query: str, selected_cells: Mapping[str, Any] | None, sheet_summary: str) -> str:
    """Append the selected-cell context and the sheet/column summary to the user's text."""
    text = query
    if selected_cells:
        cell_text = "\n".join(f"{key}: {value}" for key, value in selected_cells.items())
        text = f"{text}\n\nSelected cell context:\n{cell_text}"
    if sheet_summary:
        text = f"{text}\n\nAvailable sheets and SQL columns:\n{sheet_summary}"
    return text


def fallback_text(records: Sequence[ToolCallRecord], finish_reason: str | None = None) -> str:
    if not records:
        if finish_reason:
            return f"{NO_RESPONSE_TEXT} (finish reason: {finish_reason})"
        return NO_RESPONSE_TEXT

    last = records[-1]
    details = last.details
    if not last.ok:
        return f"I ran into an error while executing SQL: {last.error}"
    if last.kind == "write":
        return f"Done. Applied the {last.operation or 'update'} affecting {details.get('changes', 0)} row(s)."
    if last.kind == "read":
        return f"Query complete. Returned {details.get('rowCount', 0)} row(s)."
    if last.kind == "highlight":
        if last.range:
            return f"Highlighted {last.range}."
        return f"Highlighted {len(details.get('rowNumbers') or [])} row(s)."
    if last.kind == "highlight_clear":
        return "Cleared all highlights."
    if last.kind == "filter":
        return f"Filter applied. {details.get('totalFilters', 0)} filter(s) active."
    if last.kind == "filter_clear":
        return f"Cleared {details.get('clearedCount', 0)} filter(s)."
    if last.kind == "filters_get":
        return f"{details.get('filterCount', 0)} filter(s) active."
    if last.kind == "create_sheet":
        return f'Created sheet "{last.sheet_name}".'
    if last.kind == "temp_sql":
        return "Temporary SQL executed."
    return "I processed your request."


class AgentOrchestrator:
    """Drive one bounded, multi-iteration tool-calling turn against a model backend."""

    def __init__(
        self,
        *,
        repository: MetadataRepository,
        backend: ModelBackend,
        read_engine: Engine,
        filter_store: FilterStore,
        limits: QueryLimits | None = None,
        audit_log: AuditLogService | None = None,
    ) -> None:
        self.repository = repository
        self.session = repository.session
        self.backend = backend
        self.read_engine = read_engine
        self.filter_store = filter_store
        self.limits = limits
        self.audit_log = audit_log
        self.logger = get_logger(__name__)

    def build_dispatcher(self, spreadsheet_id: str) -> ToolDispatcher:
        table_store = TableStore(self.repository, filter_store=self.filter_store)
        sandbox = SqlSandbox(read_engine=self.read_engine, table_store=table_store, limits=self.limits)
        return ToolDispatcher(
            spreadsheet_id=spreadsheet_id,
            repository=self.repository,
            table_store=table_store,
            sandbox=sandbox,
            audit_log=self.audit_log,
        )

    def run_turn(
        self,
        spreadsheet_id: str,
        query: str,
        *,
        selected_cells: Mapping[str, Any] | None = None,
    ) -> TurnResult:
        """Run one conversational turn.

        The user message is stored first. Exactly one assistant message is stored
        when the turn completes; a ProviderError aborts the turn without one.
        """
        self.repository.require_spreadsheet(spreadsheet_id)
        cleaned = (query or "").strip()
        if not cleaned:
            raise ValidationError("query is required.")

        user_message = self.repository.add_chat_message(
            spreadsheet_id=spreadsheet_id,
            role=ChatRole.USER,
            content=cleaned,
            context_range=compute_range_label(selected_cells),
        )
        self.session.commit()

        with turn_context(spreadsheet_id=spreadsheet_id, provider=self.backend.name):
            with log_timing(self.logger, "agent.turn"), measure_agent("turn", spreadsheet_id=spreadsheet_id) as turn_metrics:
                text, records, iterations = self._run_loop(spreadsheet_id, user_message, selected_cells, turn_metrics)

        assistant = self.repository.add_chat_message(
            spreadsheet_id=spreadsheet_id,
            role=ChatRole.ASSISTANT,
            content=text,
            tool_calls=[record.to_payload() for record in records] or None,
        )
        self.session.commit()

        if self.audit_log is not None:
            self.audit_log.record_turn(
                spreadsheet_id=spreadsheet_id,
                iterations=iterations,
                tool_calls=len(records),
                outcome="completed",
            )
        emit_agent_metric("turn.completed", spreadsheet_id=spreadsheet_id, iterations=iterations, tool_calls=len(records))
        return TurnResult(
            assistant_message=assistant,
            messages=list(self.repository.list_chat_messages(spreadsheet_id)),
            iterations=iterations,
            tool_calls=records,
        )

    def _history(
        self, spreadsheet_id: str, user_message: ChatMessage, selected_cells: Mapping[str, Any] | None, summary: str
    ) -> list[HistoryMessage]:
        history: list[HistoryMessage] = []
        for message in self.repository.list_chat_messages(spreadsheet_id):
            content = message.content
            if message.id == user_message.id:
                content = format_user_prompt(content, selected_cells, summary)
            history.append(HistoryMessage(role=message.role.value, content=content))
        return history

    def _run_loop(
        self,
        spreadsheet_id: str,
        user_message: ChatMessage,
        selected_cells: Mapping[str, Any] | None,
        turn_metrics: TurnMetrics,
    ) -> tuple[str, list[ToolCallRecord], int]:
        dispatcher = self.build_dispatcher(spreadsheet_id)
        summary = build_sheet_summary(dispatcher.sheets)
        conversation = self.backend.initial_conversation(
            self._history(spreadsheet_id, user_message, selected_cells, summary)
        )

        records: list[ToolCallRecord] = []
        assistant_text = ""
        finish_reason: str | None = None
        iterations = 0
        ceiling = max(1, self.backend.max_iterations)

        while iterations < ceiling:
            iterations += 1
            # Release the read-write connection while waiting on the model.
            self.session.commit()
            request = self.backend.build_request(
                conversation,
                system=SYSTEM_INSTRUCTION,
                tools=build_tool_definitions(dispatcher.sheets),
            )
            reply = self.backend.parse_response(self.backend.send(request))
            finish_reason = reply.finish_reason
            turn_metrics.record_iteration(malformed=reply.malformed)
            if reply.text:
                assistant_text = reply.text
            log_event(
                self.logger,
                "agent.iteration",
                spreadsheet_id=spreadsheet_id,
                iteration=iterations,
                tool_calls=len(reply.tool_calls),
                finish_reason=finish_reason,
            )

            if not reply.tool_calls:
                if reply.malformed and iterations < ceiling:
                    log_warning_event(self.logger, "agent.malformed_call", spreadsheet_id=spreadsheet_id, iteration=iterations)
                    self.backend.extend_with_correction(conversation, reply)
                    continue
                break

            results: list[tuple[ToolInvocation, dict[str, Any]]] = []
            for invocation in reply.tool_calls:
                outcome = dispatcher.dispatch(invocation.name, invocation.arguments)
                records.append(outcome.record)
                turn_metrics.record_tool(invocation.name, ok=outcome.record.ok)
                results.append((invocation, outcome.result))
            self.backend.extend_with_tool_results(conversation, reply, results)

            if iterations >= ceiling:
                log_warning_event(self.logger, "agent.iteration_ceiling", spreadsheet_id=spreadsheet_id, iterations=iterations)

        return assistant_text or fallback_text(records, finish_reason), records, iterations
