from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from app.utils.constants import DEFAULT_MAX_ROWS, DEFAULT_PREVIEW_ROWS

DEFAULT_DATA_ROOT = Path("./data")
DEFAULT_DATABASE_FILE = "app.db"
SQLITE_URL_ENV = "SQLITE_URL"
LOG_DIR_ENV = "SHEET_AGENT_LOG_DIR"
AI_PROVIDER_ENV = "AI_PROVIDER"
ANTHROPIC_KEY_ENV = "ANTHROPIC_API_KEY"
ANTHROPIC_MODEL_ENV = "ANTHROPIC_MODEL"
ANTHROPIC_MAX_TOKENS_ENV = "ANTHROPIC_MAX_TOKENS"
ANTHROPIC_ITERATIONS_ENV = "ANTHROPIC_MAX_ITERATIONS"
GEMINI_KEY_ENV = "GEMINI_API_KEY"
LEGACY_GEMINI_KEY_ENV = "VITE_GEMINI_API_KEY"
GEMINI_MODEL_ENV = "GEMINI_MODEL"
GEMINI_MAX_TOKENS_ENV = "GEMINI_MAX_OUTPUT_TOKENS"
GEMINI_ITERATIONS_ENV = "GEMINI_MAX_ITERATIONS"
PREVIEW_ROWS_ENV = "SQL_PREVIEW_ROWS"
MAX_ROWS_ENV = "SQL_MAX_ROWS"

SUPPORTED_PROVIDERS = ("anthropic", "gemini")


@dataclass(frozen=True)
class QueryLimits:
    preview_rows: int
    max_rows: int


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    api_key: str | None
    model: str
    max_tokens: int
    max_iterations: int

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class AgentConfig:
    provider: ProviderConfig
    limits: QueryLimits


def get_data_root() -> Path:
    return Path(os.getenv("DATA_ROOT", DEFAULT_DATA_ROOT)).expanduser()


def get_log_dir(data_root: Path | None = None) -> Path:
    explicit = os.getenv(LOG_DIR_ENV)
    if explicit:
        return Path(explicit).expanduser()
    root = data_root if data_root is not None else get_data_root()
    return (root / "logs").expanduser()


def get_sqlite_url(data_root: Path | None = None) -> str:
    explicit = os.getenv(SQLITE_URL_ENV)
    if explicit:
        return explicit
    root = data_root if data_root is not None else get_data_root()
    return f"sqlite:///{root / DEFAULT_DATABASE_FILE}"


def get_ai_provider() -> str:
    provider = (os.getenv(AI_PROVIDER_ENV) or "anthropic").strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ValueError(
            f"Unsupported AI_PROVIDER '{provider}'. Expected one of: {', '.join(SUPPORTED_PROVIDERS)}."
        )
    return provider


def load_query_limits() -> QueryLimits:
    preview_rows = int(os.getenv(PREVIEW_ROWS_ENV, DEFAULT_PREVIEW_ROWS))
    max_rows = int(os.getenv(MAX_ROWS_ENV, DEFAULT_MAX_ROWS))
    return QueryLimits(preview_rows=max(1, preview_rows), max_rows=max(preview_rows, max_rows))


def load_provider_config(provider: str | None = None) -> ProviderConfig:
    name = provider or get_ai_provider()
    if name == "gemini":
        return ProviderConfig(
            name="gemini",
            api_key=os.getenv(GEMINI_KEY_ENV) or os.getenv(LEGACY_GEMINI_KEY_ENV),
            model=os.getenv(GEMINI_MODEL_ENV) or "gemini-flash-latest",
            max_tokens=int(os.getenv(GEMINI_MAX_TOKENS_ENV, 1024)),
            max_iterations=int(os.getenv(GEMINI_ITERATIONS_ENV, 4)),
        )
    return ProviderConfig(
        name="anthropic",
        api_key=os.getenv(ANTHROPIC_KEY_ENV),
        model=os.getenv(ANTHROPIC_MODEL_ENV) or "claude-sonnet-4-5",
        max_tokens=int(os.getenv(ANTHROPIC_MAX_TOKENS_ENV, 4096)),
        max_iterations=int(os.getenv(ANTHROPIC_ITERATIONS_ENV, 10)),
    )


def load_agent_config(provider: str | None = None) -> AgentConfig:
    return AgentConfig(provider=load_provider_config(provider), limits=load_query_limits())
