"""
Configuration for the agent runtime.

AgentConfig is built once per session controller and never mutated; use
``replace()`` to derive a variant. AgentSettings reads deployment settings
(provider keys, store selection, defaults) from the environment and an
optional ``.env`` file. User preferences (model, voice, temperature) come
from an injected IPreferenceStore and are layered on top by resolve_config().
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from .domain.entities import ToolChoice
from .domain.ports import IPreferenceStore
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class UnhandledToolPolicy(str, Enum):
    """What to do with a tool call that has no registered executor."""

    AUTO_REJECT = "auto_reject"  # Answer immediately with an error output
    RAISE_EVENT = "raise_event"  # Surface to the caller and wait for submit_tool_output


class PersistencePolicy(str, Enum):
    """When the conversation manager writes to the store."""

    IMMEDIATE = "immediate"  # Save after every finalized turn
    DEBOUNCED = "debounced"  # Save after auto_save_interval_seconds of quiet
    MANUAL = "manual"  # Only on flush()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# ============================================
# Agent Configuration
# ============================================


@dataclass(frozen=True)
class AgentConfig:
    """Configuration for one session controller.

    Attributes:
        model: Model identifier passed to the chat service
        chat_service: Name of the registered chat provider to use
        instructions: System instructions, always sent first
        temperature: Sampling temperature
        max_output_tokens: Maximum tokens per response
        context_window_tokens: Total context window of the model
        response_reserve_tokens: Tokens kept free for the response
        max_context_messages: Maximum history items sent per request
        enable_summarization: Fold older items into a memory summary
        summary_max_chars: Upper bound on the stored summary length
        tool_choice: auto, none or required
        parallel_tool_calls: Execute a round of tool calls concurrently
        tool_timeout_seconds: Default per-tool execution timeout
        max_tool_call_depth: Maximum tool round-trips per turn
        unhandled_tool_policy: Handling of calls with no executor
        unhandled_tool_timeout_seconds: Wait for submit_tool_output
        approval_timeout_seconds: Wait for an MCP approval decision
        provider_timeout_seconds: Wait for each provider stream chunk
        provider_max_attempts: Attempts per provider call (including the first)
        retry_initial_delay: First backoff delay in seconds
        retry_backoff_factor: Backoff multiplier
        retry_max_delay: Maximum backoff delay in seconds
        persistence_policy: immediate, debounced or manual
        auto_save_interval_seconds: Quiet period for debounced saves
        generate_titles: Generate a title after the first turn
        speak_responses: Synthesize speech for final messages
        voice_id: Voice for speech synthesis
        speech_speed: Speech rate multiplier
        transcription_language: Default language hint for transcription
        enable_response_cache: Cache answers to tool-free requests
        response_cache_size: Maximum cached responses
        response_cache_ttl_seconds: Lifetime of a cached response
    """

    model: str = "gpt-4o"
    chat_service: str = "openai"
    instructions: str = "You are a helpful assistant."
    temperature: float = 0.7
    max_output_tokens: Optional[int] = 4096

    # Context window
    context_window_tokens: int = 128000
    response_reserve_tokens: int = 4096
    max_context_messages: int = 50
    enable_summarization: bool = False
    summary_max_chars: int = 4000

    # Tools
    tool_choice: ToolChoice = ToolChoice.AUTO
    parallel_tool_calls: bool = True
    tool_timeout_seconds: float = 30.0
    max_tool_call_depth: int = 5
    unhandled_tool_policy: UnhandledToolPolicy = UnhandledToolPolicy.AUTO_REJECT
    unhandled_tool_timeout_seconds: float = 60.0
    approval_timeout_seconds: float = 300.0

    # Provider calls
    provider_timeout_seconds: float = 60.0
    provider_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_backoff_factor: float = 2.0
    retry_max_delay: float = 30.0

    # Persistence
    persistence_policy: PersistencePolicy = PersistencePolicy.IMMEDIATE
    auto_save_interval_seconds: float = 5.0
    generate_titles: bool = True

    # Audio
    speak_responses: bool = False
    voice_id: Optional[str] = None
    speech_speed: float = 1.0
    transcription_language: Optional[str] = None

    # Response cache
    enable_response_cache: bool = False
    response_cache_size: int = 128
    response_cache_ttl_seconds: float = 300.0

    def __post_init__(self):
        errors = []
        if not self.model:
            errors.append("model must not be empty")
        if not self.chat_service:
            errors.append("chat_service must not be empty")
        if not 0.0 <= self.temperature <= 2.0:
            errors.append("temperature must be between 0 and 2")
        if self.max_output_tokens is not None and self.max_output_tokens <= 0:
            errors.append("max_output_tokens must be positive")
        if self.response_reserve_tokens < 0:
            errors.append("response_reserve_tokens must not be negative")
        if self.context_window_tokens <= self.response_reserve_tokens:
            errors.append("context_window_tokens must exceed response_reserve_tokens")
        if self.max_context_messages < 1:
            errors.append("max_context_messages must be at least 1")
        if self.max_tool_call_depth < 1:
            errors.append("max_tool_call_depth must be at least 1")
        if self.provider_max_attempts < 1:
            errors.append("provider_max_attempts must be at least 1")
        if not 0.25 <= self.speech_speed <= 4.0:
            errors.append("speech_speed must be between 0.25 and 4.0")
        for name in (
            "tool_timeout_seconds",
            "unhandled_tool_timeout_seconds",
            "approval_timeout_seconds",
            "provider_timeout_seconds",
            "auto_save_interval_seconds",
            "response_cache_ttl_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        if self.response_cache_size < 1:
            errors.append("response_cache_size must be at least 1")
        if errors:
            raise ConfigurationError(
                "Invalid agent configuration: " + "; ".join(errors),
                details={"errors": errors},
            )

    @property
    def budget_tokens(self) -> int:
        """Tokens available for the request context."""
        return self.context_window_tokens - self.response_reserve_tokens

    def replace(self, **changes: Any) -> AgentConfig:
        """Return a copy with the given fields changed (validated again)."""
        return dataclasses.replace(self, **changes)


# ============================================
# Deployment Settings
# ============================================


@dataclass
class AgentSettings:
    """Deployment settings read from the environment.

    Attributes:
        openai_api_key: Key for OpenAI chat, transcription and speech
        anthropic_api_key: Key for Anthropic chat
        store_type: Conversation store backend name
        store_path: Directory for the local-file store
        database_url: DSN for the PostgreSQL store
        thread_api_url: Base URL for the server-thread store
        mcp_server_url: Optional MCP server to register at startup
        mcp_require_approval: Require approval for MCP tool calls
        agent: Default AgentConfig
    """

    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    store_type: str = "memory"
    store_path: str = ".genagent/conversations"
    database_url: Optional[str] = None
    thread_api_url: Optional[str] = None
    mcp_server_url: Optional[str] = None
    mcp_server_label: str = "mcp"
    mcp_require_approval: bool = True
    oauth_token_url: Optional[str] = None
    oauth_client_id: Optional[str] = None
    oauth_client_secret: Optional[str] = None
    agent: AgentConfig = field(default_factory=AgentConfig)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> AgentSettings:
        """Build settings from environment variables and an optional .env file.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv(env_file)

        anthropic_key = os.getenv("ANTHROPIC_API_KEY")
        openai_key = os.getenv("OPENAI_API_KEY")
        default_service = "anthropic" if anthropic_key and not openai_key else "openai"
        chat_service = os.getenv("GENAGENT_CHAT_SERVICE", default_service)
        default_model = (
            os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5-20250929")
            if chat_service == "anthropic"
            else os.getenv("OPENAI_MODEL", "gpt-4o")
        )

        try:
            agent = AgentConfig(
                model=os.getenv("GENAGENT_MODEL", default_model),
                chat_service=chat_service,
                instructions=os.getenv(
                    "GENAGENT_INSTRUCTIONS", AgentConfig.instructions
                ),
                temperature=float(os.getenv("GENAGENT_TEMPERATURE", "0.7")),
                max_output_tokens=int(os.getenv("GENAGENT_MAX_OUTPUT_TOKENS", "4096")),
                context_window_tokens=int(
                    os.getenv("GENAGENT_CONTEXT_WINDOW_TOKENS", "128000")
                ),
                response_reserve_tokens=int(
                    os.getenv("GENAGENT_RESPONSE_RESERVE_TOKENS", "4096")
                ),
                max_context_messages=int(os.getenv("GENAGENT_MAX_CONTEXT_MESSAGES", "50")),
                enable_summarization=_env_bool("GENAGENT_ENABLE_SUMMARIZATION", "false"),
                tool_choice=ToolChoice(os.getenv("GENAGENT_TOOL_CHOICE", "auto")),
                parallel_tool_calls=_env_bool("GENAGENT_PARALLEL_TOOL_CALLS", "true"),
                tool_timeout_seconds=float(os.getenv("GENAGENT_TOOL_TIMEOUT_SECONDS", "30")),
                max_tool_call_depth=int(os.getenv("GENAGENT_MAX_TOOL_CALL_DEPTH", "5")),
                unhandled_tool_policy=UnhandledToolPolicy(
                    os.getenv("GENAGENT_UNHANDLED_TOOL_POLICY", "auto_reject")
                ),
                approval_timeout_seconds=float(
                    os.getenv("GENAGENT_APPROVAL_TIMEOUT_SECONDS", "300")
                ),
                provider_timeout_seconds=float(
                    os.getenv("GENAGENT_PROVIDER_TIMEOUT_SECONDS", "60")
                ),
                provider_max_attempts=int(os.getenv("GENAGENT_PROVIDER_MAX_ATTEMPTS", "3")),
                persistence_policy=PersistencePolicy(
                    os.getenv("GENAGENT_PERSISTENCE_POLICY", "immediate")
                ),
                auto_save_interval_seconds=float(
                    os.getenv("GENAGENT_AUTO_SAVE_INTERVAL_SECONDS", "5")
                ),
                speak_responses=_env_bool("GENAGENT_SPEAK_RESPONSES", "false"),
                voice_id=os.getenv("GENAGENT_VOICE_ID"),
                transcription_language=os.getenv("GENAGENT_TRANSCRIPTION_LANGUAGE"),
                enable_response_cache=_env_bool("GENAGENT_ENABLE_RESPONSE_CACHE", "false"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment setting: {e}", cause=e) from e

        return cls(
            openai_api_key=openai_key,
            anthropic_api_key=anthropic_key,
            openai_base_url=os.getenv("OPENAI_BASE_URL"),
            store_type=os.getenv("GENAGENT_STORE", "memory"),
            store_path=os.getenv("GENAGENT_STORE_PATH", ".genagent/conversations"),
            database_url=os.getenv("DATABASE_URL"),
            thread_api_url=os.getenv("GENAGENT_THREAD_API_URL"),
            mcp_server_url=os.getenv("MCP_SERVER_URL"),
            mcp_server_label=os.getenv("MCP_SERVER_LABEL", "mcp"),
            mcp_require_approval=_env_bool("MCP_REQUIRE_APPROVAL", "true"),
            oauth_token_url=os.getenv("OAUTH_TOKEN_URL"),
            oauth_client_id=os.getenv("OAUTH_CLIENT_ID"),
            oauth_client_secret=os.getenv("OAUTH_CLIENT_SECRET"),
            agent=agent,
        )

    def require(self, *names: str) -> None:
        """Raise ConfigurationError if any of the named settings is unset."""
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise ConfigurationError(
                f"Missing required settings: {', '.join(missing)}",
                missing_keys=missing,
            )


# ============================================
# Preferences
# ============================================

# Preference keys that may override AgentConfig fields
PREFERENCE_KEYS = {
    "model": "model",
    "chat_service": "chat_service",
    "voice_id": "voice_id",
    "temperature": "temperature",
    "speech_speed": "speech_speed",
}


async def resolve_config(
    base: AgentConfig,
    preferences: Optional[IPreferenceStore] = None,
) -> AgentConfig:
    """Layer user preferences on top of a base configuration.

    Args:
        base: Deployment defaults
        preferences: Preference store (None = no overrides)

    Returns:
        The resolved AgentConfig

    Raises:
        ConfigurationError: If a stored preference is invalid
    """
    if preferences is None:
        return base

    overrides: dict[str, Any] = {}
    for key, field_name in PREFERENCE_KEYS.items():
        value = await preferences.get(key)
        if value is not None:
            overrides[field_name] = value

    if not overrides:
        return base

    logger.debug(f"Applying preference overrides: {sorted(overrides)}")
    return base.replace(**overrides)


class InMemoryPreferenceStore(IPreferenceStore):
    """Process-local preference store."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._values: dict[str, Any] = dict(initial or {})

    async def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


class JsonFilePreferenceStore(IPreferenceStore):
    """Preferences kept in a single JSON file.

    The file is re-read on every access, so edits by other processes are
    picked up. Writes replace the file atomically.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Preference file {self.path} is not valid JSON", cause=e
            ) from e

    def _write(self, values: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(values, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)

    async def get(self, key: str, default: Any = None) -> Any:
        values = await asyncio.to_thread(self._read)
        return values.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            values = await asyncio.to_thread(self._read)
            values[key] = value
            await asyncio.to_thread(self._write, values)

    async def delete(self, key: str) -> None:
        async with self._lock:
            values = await asyncio.to_thread(self._read)
            if values.pop(key, None) is not None:
                await asyncio.to_thread(self._write, values)
