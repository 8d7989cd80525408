from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import anthropic
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from app.services.errors import ProviderError
from app.services.tool_schemas import ToolDefinition
from app.utils.config import ANTHROPIC_KEY_ENV, GEMINI_KEY_ENV, ProviderConfig
from app.utils.constants import MALFORMED_CALL_CORRECTION


@dataclass(slots=True)
class HistoryMessage:
    role: str
    content: str


@dataclass(slots=True)
class ToolInvocation:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ModelReply:
    text: str
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    malformed: bool = False
    finish_reason: str | None = None
    raw: Any = None


class ModelBackend(Protocol):
    """Adapter that hides one provider's tool-calling protocol from the orchestrator.

    ``conversation`` is an opaque, provider-specific list that the adapter both
    creates and extends.
    """

    name: str
    max_iterations: int

    def initial_conversation(self, history: Sequence[HistoryMessage]) -> list[Any]:
        ...

    def build_request(
        self, conversation: Sequence[Any], *, system: str, tools: Sequence[ToolDefinition]
    ) -> dict[str, Any]:
        ...

    def send(self, request: dict[str, Any]) -> Any:
        """Perform one request; transport failures raise ProviderError."""
        ...

    def parse_response(self, raw: Any) -> ModelReply:
        ...

    def extend_with_tool_results(
        self,
        conversation: list[Any],
        reply: ModelReply,
        results: Sequence[tuple[ToolInvocation, dict[str, Any]]],
    ) -> None:
        ...

    def extend_with_correction(self, conversation: list[Any], reply: ModelReply) -> None:
        ...


class AnthropicBackend:
    """Messages API adapter using tool_use / tool_result content blocks."""

    name = "anthropic"

    def __init__(self, config: ProviderConfig, *, client: anthropic.Anthropic | None = None) -> None:
        self.config = config
        self.max_iterations = config.max_iterations
        self.client = client or anthropic.Anthropic(api_key=config.api_key)

    def initial_conversation(self, history: Sequence[HistoryMessage]) -> list[Any]:
        return [
            {"role": "assistant" if message.role == "assistant" else "user", "content": message.content}
            for message in history
        ]

    def build_request(
        self, conversation: Sequence[Any], *, system: str, tools: Sequence[ToolDefinition]
    ) -> dict[str, Any]:
        return {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "system": system,
            "messages": list(conversation),
            "tools": [
                {"name": tool.name, "description": tool.description, "input_schema": tool.parameters}
                for tool in tools
            ],
        }

    def send(self, request: dict[str, Any]) -> Any:
        try:
            return self.client.messages.create(**request)
        except anthropic.APIStatusError as error:
            raise ProviderError(_anthropic_message(error), status_code=error.status_code) from error
        except anthropic.APIError as error:
            raise ProviderError(error.message or "Anthropic API request failed.") from error

    def parse_response(self, raw: Any) -> ModelReply:
        texts: list[str] = []
        calls: list[ToolInvocation] = []
        for block in raw.content or []:
            if block.type == "text" and block.text:
                texts.append(block.text)
            elif block.type == "tool_use":
                arguments = block.input if isinstance(block.input, dict) else {}
                calls.append(ToolInvocation(id=block.id, name=block.name, arguments=dict(arguments)))
        return ModelReply(
            text="\n".join(texts).strip(),
            tool_calls=calls,
            finish_reason=raw.stop_reason,
            raw=raw,
        )

    def extend_with_tool_results(
        self,
        conversation: list[Any],
        reply: ModelReply,
        results: Sequence[tuple[ToolInvocation, dict[str, Any]]],
    ) -> None:
        conversation.append({"role": "assistant", "content": reply.raw.content})
        conversation.append(
            {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": invocation.id,
                        "content": json.dumps(result, default=str),
                        "is_error": not result.get("ok", False),
                    }
                    for invocation, result in results
                ],
            }
        )

    def extend_with_correction(self, conversation: list[Any], reply: ModelReply) -> None:
        if reply.text:
            conversation.append({"role": "assistant", "content": reply.text})
        conversation.append({"role": "user", "content": MALFORMED_CALL_CORRECTION})


def _anthropic_message(error: anthropic.APIStatusError) -> str:
    body = error.body if isinstance(error.body, dict) else {}
    detail = body.get("error") if isinstance(body.get("error"), dict) else {}
    return str(detail.get("message") or error.message or "Anthropic API request failed.")


class GeminiBackend:
    """generate_content adapter using function_call / function_response parts."""

    name = "gemini"

    def __init__(self, config: ProviderConfig, *, client: genai.Client | None = None) -> None:
        self.config = config
        self.max_iterations = config.max_iterations
        self.client = client or genai.Client(api_key=config.api_key)

    def initial_conversation(self, history: Sequence[HistoryMessage]) -> list[Any]:
        return [
            types.Content(
                role="model" if message.role == "assistant" else "user",
                parts=[types.Part(text=message.content)],
            )
            for message in history
        ]

    def build_request(
        self, conversation: Sequence[Any], *, system: str, tools: Sequence[ToolDefinition]
    ) -> dict[str, Any]:
        declarations = [
            types.FunctionDeclaration(
                name=tool.name,
                description=tool.description,
                # Gemini rejects OBJECT schemas without properties.
                parameters=tool.parameters if tool.parameters.get("properties") else None,
            )
            for tool in tools
        ]
        config = types.GenerateContentConfig(
            system_instruction=system,
            tools=[types.Tool(function_declarations=declarations)],
            tool_config=types.ToolConfig(
                function_calling_config=types.FunctionCallingConfig(mode=types.FunctionCallingConfigMode.AUTO)
            ),
            temperature=0.3,
            top_k=32,
            top_p=0.95,
            max_output_tokens=self.config.max_tokens,
        )
        return {"model": self.config.model, "contents": list(conversation), "config": config}

    def send(self, request: dict[str, Any]) -> Any:
        try:
            return self.client.models.generate_content(**request)
        except genai_errors.APIError as error:
            raise ProviderError(error.message or "Gemini API request failed.", status_code=error.code) from error

    def parse_response(self, raw: Any) -> ModelReply:
        candidate = raw.candidates[0] if raw.candidates else None
        parts = []
        if candidate is not None and candidate.content is not None and candidate.content.parts:
            parts = candidate.content.parts

        texts: list[str] = []
        calls: list[ToolInvocation] = []
        for position, part in enumerate(parts):
            if part.text and part.text.strip() and not part.thought:
                texts.append(part.text.strip())
            call = part.function_call
            if call is not None and call.name:
                calls.append(
                    ToolInvocation(
                        id=call.id or f"call_{position}",
                        name=call.name,
                        arguments=dict(call.args or {}),
                    )
                )

        finish_reason = candidate.finish_reason if candidate is not None else None
        return ModelReply(
            text="\n".join(texts).strip(),
            tool_calls=calls,
            malformed=finish_reason == types.FinishReason.MALFORMED_FUNCTION_CALL,
            finish_reason=getattr(finish_reason, "name", None) if finish_reason is not None else None,
            raw=raw,
        )

    def extend_with_tool_results(
        self,
        conversation: list[Any],
        reply: ModelReply,
        results: Sequence[tuple[ToolInvocation, dict[str, Any]]],
    ) -> None:
        self._append_candidate(conversation, reply)
        conversation.append(
            types.Content(
                role="user",
                parts=[
                    types.Part.from_function_response(name=invocation.name, response=result)
                    for invocation, result in results
                ],
            )
        )

    def extend_with_correction(self, conversation: list[Any], reply: ModelReply) -> None:
        self._append_candidate(conversation, reply)
        conversation.append(types.Content(role="user", parts=[types.Part(text=MALFORMED_CALL_CORRECTION)]))

    @staticmethod
    def _append_candidate(conversation: list[Any], reply: ModelReply) -> None:
        raw = reply.raw
        candidate = raw.candidates[0] if raw is not None and raw.candidates else None
        if candidate is not None and candidate.content is not None and candidate.content.role:
            conversation.append(candidate.content)


def build_backend(config: ProviderConfig) -> ModelBackend:
    if not config.configured:
        env_name = GEMINI_KEY_ENV if config.name == "gemini" else ANTHROPIC_KEY_ENV
        raise ProviderError(f"{env_name} is not configured on the server.", status_code=400)
    if config.name == "gemini":
        return GeminiBackend(config)
    return AnthropicBackend(config)
