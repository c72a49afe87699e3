"""
genagent - conversation and session runtime for generative-AI agents.

Drives multi-round turns against interchangeable chat providers, executes
tool calls (local functions, hosted tools and MCP servers), gates calls on
approval, and persists conversations through pluggable stores.

Usage:
    from genagent import AgentConfig, SessionController
    from genagent.providers import OpenAIChatProvider, ProviderConfig

    provider = OpenAIChatProvider(ProviderConfig(api_key="sk-...", model="gpt-4o"))
    async with SessionController(provider, config=AgentConfig()) as session:
        async for event in session.stream("Hello"):
            print(event.type, event.content)
"""

from .config import (
    AgentConfig,
    AgentSettings,
    PersistencePolicy,
    UnhandledToolPolicy,
    resolve_config,
)
from .domain import (
    ChatEvent,
    ChatEventType,
    Conversation,
    MessageItem,
    ToolChoice,
    ToolDefinition,
    TurnResult,
    TurnStatus,
)
from .exceptions import GenAgentError
from .orchestrator import SessionController, TurnState
from .tools import ToolRegistry

__version__ = "0.1.0"

__all__ = [
    "AgentConfig",
    "AgentSettings",
    "PersistencePolicy",
    "UnhandledToolPolicy",
    "resolve_config",
    "ChatEvent",
    "ChatEventType",
    "Conversation",
    "MessageItem",
    "ToolChoice",
    "ToolDefinition",
    "TurnResult",
    "TurnStatus",
    "GenAgentError",
    "SessionController",
    "TurnState",
    "ToolRegistry",
]
