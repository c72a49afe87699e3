"""
Base Chat Provider Implementation.

Provides common functionality for all provider service adapters:
event construction, argument parsing and the registry used by the session
controller to select an adapter by service name.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from ..domain.entities import (
    ChatEvent,
    ChatEventType,
    RequestPayload,
    ToolDefinition,
)
from ..domain.ports import IChatProvider
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Configuration for provider service adapters.

    Attributes:
        api_key: API key for the provider
        model: Default model name
        base_url: Optional custom base URL
        timeout: Request timeout in seconds
        max_retries: SDK-level retries (the controller retries on its own)
        extra: Provider-specific options
    """

    api_key: str
    model: str = ""
    base_url: Optional[str] = None
    timeout: float = 60.0
    max_retries: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


def parse_tool_arguments(raw: str) -> tuple[dict[str, Any], Optional[str]]:
    """Parse accumulated tool argument text.

    Returns:
        (arguments, raw) where raw is set only when the text was not a JSON object
    """
    if not raw:
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON, keeping raw text")
        return {}, raw
    if not isinstance(parsed, dict):
        return {}, raw
    return parsed, None


class BaseChatProvider(IChatProvider, ABC):
    """Base class for chat provider implementations.

    Subclasses implement stream() for their vendor API.
    """

    service_name = "base"

    def __init__(self, config: ProviderConfig):
        """Initialize the provider.

        Args:
            config: Provider configuration
        """
        self.config = config
        self._sequence_counter = 0

    @property
    def name(self) -> str:
        return self.service_name

    @property
    def default_model(self) -> str:
        return self.config.model

    def _next_sequence(self) -> int:
        """Get the next sequence number for events."""
        self._sequence_counter += 1
        return self._sequence_counter

    def _reset_sequence(self) -> None:
        """Reset the sequence counter (call at start of new request)."""
        self._sequence_counter = 0

    def _create_text_delta(self, text: str) -> ChatEvent:
        """Create a text delta event."""
        return ChatEvent.text_delta(text, sequence=self._next_sequence())

    def _create_tool_call_start(self, tool_call_id: str, name: str) -> ChatEvent:
        """Create a tool call start event."""
        return ChatEvent.tool_call_start(tool_call_id, name, sequence=self._next_sequence())

    def _create_tool_call_end(self, tool_call_id: str, name: str, raw_arguments: str) -> ChatEvent:
        """Create a tool call end event from accumulated argument text."""
        arguments, raw = parse_tool_arguments(raw_arguments)
        return ChatEvent.tool_call_end(
            tool_call_id,
            arguments,
            sequence=self._next_sequence(),
            name=name,
            raw_arguments=raw,
        )

    def _create_done(
        self,
        finish_reason: Optional[str] = None,
        usage: Optional[dict[str, int]] = None,
    ) -> ChatEvent:
        """Create a done event."""
        return ChatEvent(
            type=ChatEventType.DONE,
            sequence=self._next_sequence(),
            metadata={"finish_reason": finish_reason, "usage": usage or {}},
        )

    def _format_tools_for_api(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tool definitions to API format.

        Subclasses should override for provider-specific formatting.
        """
        raise NotImplementedError("Subclass must implement _format_tools_for_api")

    @abstractmethod
    def stream(self, payload: RequestPayload) -> AsyncIterator[ChatEvent]:
        """Generate a streamed response. Must be implemented by subclasses."""
        pass

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()


class ProviderRegistry:
    """Chat provider adapters keyed by service name."""

    def __init__(self, providers: Optional[list[IChatProvider]] = None):
        self._providers: dict[str, IChatProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: IChatProvider) -> None:
        self._providers[provider.name] = provider
        logger.info(f"Registered chat provider: {provider.name}")

    def get(self, service: str) -> IChatProvider:
        """Return the adapter for a service.

        Raises:
            ConfigurationError: If no adapter is registered under that name
        """
        provider = self._providers.get(service)
        if provider is None:
            raise ConfigurationError(
                f"No chat provider registered for service '{service}'",
                details={"available": sorted(self._providers)},
            )
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, service: str) -> bool:
        return service in self._providers

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
