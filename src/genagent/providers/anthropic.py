"""
Anthropic Claude Provider Adapter.

Implements the IChatProvider interface for Anthropic's Claude models.
Supports streaming and tool use.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

import anthropic
from anthropic import AsyncAnthropic

from ..domain.entities import (
    AudioEventItem,
    ChatEvent,
    ContentType,
    Item,
    MessageItem,
    MessageRole,
    RequestPayload,
    ToolCallItem,
    ToolChoice,
    ToolDefinition,
    ToolOutputItem,
)
from ..exceptions import (
    InvalidRequestError,
    ProviderAuthError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
)
from .base import BaseChatProvider, ProviderConfig

logger = logging.getLogger(__name__)

PROVIDER = "anthropic"


def map_anthropic_error(error: Exception) -> ProviderError:
    """Translate an anthropic SDK exception into the runtime error taxonomy."""
    if isinstance(error, anthropic.APITimeoutError):
        return ProviderTimeoutError(f"Request timed out: {error}", provider=PROVIDER, cause=error)
    if isinstance(error, anthropic.APIConnectionError):
        return ProviderUnavailableError(f"Connection failed: {error}", provider=PROVIDER, cause=error)
    if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return ProviderAuthError(
            f"Authentication failed: {error}",
            provider=PROVIDER,
            status_code=error.status_code,
            cause=error,
        )
    if isinstance(error, anthropic.RateLimitError):
        retry_after = None
        header = error.response.headers.get("retry-after") if error.response is not None else None
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return RateLimitedError(
            f"Rate limited: {error}",
            retry_after=retry_after,
            provider=PROVIDER,
            status_code=error.status_code,
            cause=error,
        )
    if isinstance(error, anthropic.APIStatusError):
        if error.status_code >= 500:
            return ProviderUnavailableError(
                f"API error: {error}", provider=PROVIDER, status_code=error.status_code, cause=error
            )
        return InvalidRequestError(
            f"Request rejected: {error}", provider=PROVIDER, status_code=error.status_code, cause=error
        )
    return ProviderError(f"API error: {error}", provider=PROVIDER, cause=error)


def format_items_for_anthropic(
    items: list[Item], system_prompt: Optional[str] = None
) -> tuple[Optional[str], list[dict[str, Any]]]:
    """Convert conversation items to Anthropic format.

    Anthropic uses a separate system parameter, not in messages. Tool calls
    become tool_use blocks on the assistant message and tool outputs become
    tool_result blocks, grouped into a single user message.

    Returns:
        Tuple of (system_prompt, messages_list)
    """
    api_messages: list[dict[str, Any]] = []
    system = system_prompt

    for item in items:
        if isinstance(item, MessageItem):
            if item.role == MessageRole.SYSTEM:
                system = f"{system}\n\n{item.text}" if system else item.text
                continue
            role = "assistant" if item.role == MessageRole.ASSISTANT else "user"
            api_messages.append({"role": role, "content": _format_content(item)})

        elif isinstance(item, ToolCallItem):
            block = {
                "type": "tool_use",
                "id": item.call_id,
                "name": item.name,
                "input": item.arguments,
            }
            last = api_messages[-1] if api_messages else None
            if last is not None and last["role"] == "assistant":
                last["content"].append(block)
            else:
                api_messages.append({"role": "assistant", "content": [block]})

        elif isinstance(item, ToolOutputItem):
            block = {
                "type": "tool_result",
                "tool_use_id": item.call_id,
                "content": item.content,
            }
            if item.is_error:
                block["is_error"] = True
            last = api_messages[-1] if api_messages else None
            if (
                last is not None
                and last["role"] == "user"
                and last["content"]
                and all(b.get("type") == "tool_result" for b in last["content"])
            ):
                last["content"].append(block)
            else:
                api_messages.append({"role": "user", "content": [block]})

        elif isinstance(item, AudioEventItem):
            continue

    return system, api_messages


def _format_content(item: MessageItem) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for part in item.content:
        if part.type == ContentType.TEXT and part.text:
            blocks.append({"type": "text", "text": part.text})
        elif part.type == ContentType.IMAGE and part.url:
            blocks.append({"type": "image", "source": {"type": "url", "url": part.url}})
    return blocks


class AnthropicChatProvider(BaseChatProvider):
    """Anthropic Claude provider implementation.

    Supports:
    - Claude 3.5+ / Claude 4 models
    - Streaming responses
    - Tool use

    Usage:
        config = ProviderConfig(api_key="sk-ant-...", model="claude-sonnet-4-5-20250929")
        provider = AnthropicChatProvider(config)

        async for event in provider.stream(payload):
            print(event)
    """

    service_name = "anthropic"
    requires_ordered_tool_outputs = True

    DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
    DEFAULT_MAX_TOKENS = 4096

    def __init__(self, config: ProviderConfig, client: Optional[AsyncAnthropic] = None):
        """Initialize the Anthropic provider.

        Args:
            config: Provider configuration
            client: Pre-built client (tests, custom transports)
        """
        super().__init__(config)
        self.client = client or AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
        )

    def _format_tools_for_api(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Anthropic format."""
        return [tool.to_anthropic_format() for tool in tools]

    def _build_request(self, payload: RequestPayload) -> dict[str, Any]:
        system, api_messages = format_items_for_anthropic(payload.items, payload.system_prompt)

        kwargs: dict[str, Any] = {
            "model": payload.model or self.config.model or self.DEFAULT_MODEL,
            "messages": api_messages,
            "temperature": min(payload.temperature, 1.0),
            "max_tokens": payload.max_output_tokens or self.DEFAULT_MAX_TOKENS,
        }

        if system:
            kwargs["system"] = system

        if payload.tools and payload.tool_choice != ToolChoice.NONE:
            kwargs["tools"] = self._format_tools_for_api(payload.tools)
            choice: dict[str, Any] = {
                "type": "any" if payload.tool_choice == ToolChoice.REQUIRED else "auto"
            }
            if not payload.parallel_tool_calls:
                choice["disable_parallel_tool_use"] = True
            kwargs["tool_choice"] = choice

        return kwargs

    async def stream(self, payload: RequestPayload) -> AsyncIterator[ChatEvent]:
        """Generate a streaming response using Claude.

        Args:
            payload: Assembled context window

        Yields:
            ChatEvent objects

        Raises:
            ProviderError: Mapped from the SDK exception
        """
        self._reset_sequence()
        kwargs = self._build_request(payload)

        stop_reason: Optional[str] = None
        usage: dict[str, int] = {}

        try:
            async with self.client.messages.stream(**kwargs) as stream_response:
                current_tool_call_id: Optional[str] = None
                current_tool_name: Optional[str] = None
                accumulated_tool_input = ""

                async for event in stream_response:
                    if event.type == "message_start":
                        usage["input_tokens"] = event.message.usage.input_tokens

                    elif event.type == "content_block_start":
                        block = event.content_block
                        if block.type == "tool_use":
                            current_tool_call_id = block.id
                            current_tool_name = block.name
                            accumulated_tool_input = ""
                            yield self._create_tool_call_start(block.id, block.name)

                    elif event.type == "content_block_delta":
                        delta = event.delta
                        if delta.type == "text_delta":
                            yield self._create_text_delta(delta.text)
                        elif delta.type == "input_json_delta":
                            accumulated_tool_input += delta.partial_json

                    elif event.type == "content_block_stop":
                        if current_tool_call_id:
                            yield self._create_tool_call_end(
                                current_tool_call_id,
                                current_tool_name or "",
                                accumulated_tool_input,
                            )
                            current_tool_call_id = None
                            current_tool_name = None

                    elif event.type == "message_delta":
                        stop_reason = event.delta.stop_reason
                        if event.usage is not None:
                            usage["output_tokens"] = event.usage.output_tokens

        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise map_anthropic_error(e) from e

        yield self._create_done(stop_reason, usage)

    async def close(self) -> None:
        """Close the client."""
        await self.client.close()
