"""
OpenAI Provider Adapters.

Implements chat (streaming chat completions with tool calling),
transcription and speech synthesis on top of the official openai SDK.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from ..domain.entities import (
    AudioEventItem,
    ChatEvent,
    ContentType,
    Item,
    MessageItem,
    RequestPayload,
    ToolCallItem,
    ToolChoice,
    ToolDefinition,
    ToolOutputItem,
)
from ..domain.ports import ISpeechProvider, ITranscriptionProvider
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

PROVIDER = "openai"


def map_openai_error(error: Exception) -> ProviderError:
    """Translate an openai SDK exception into the runtime error taxonomy."""
    if isinstance(error, openai.APITimeoutError):
        return ProviderTimeoutError(f"Request timed out: {error}", provider=PROVIDER, cause=error)
    if isinstance(error, openai.APIConnectionError):
        return ProviderUnavailableError(f"Connection failed: {error}", provider=PROVIDER, cause=error)
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderAuthError(
            f"Authentication failed: {error}",
            provider=PROVIDER,
            status_code=error.status_code,
            cause=error,
        )
    if isinstance(error, openai.RateLimitError):
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
    if isinstance(error, openai.APIStatusError):
        if error.status_code >= 500:
            return ProviderUnavailableError(
                f"API error: {error}", provider=PROVIDER, status_code=error.status_code, cause=error
            )
        return InvalidRequestError(
            f"Request rejected: {error}", provider=PROVIDER, status_code=error.status_code, cause=error
        )
    return ProviderError(f"API error: {error}", provider=PROVIDER, cause=error)


def format_items_for_openai(
    items: list[Item], system_prompt: Optional[str] = None
) -> list[dict[str, Any]]:
    """Convert conversation items to chat completion messages.

    Consecutive tool calls are grouped into the preceding assistant message.
    Audio events are not sent; their transcripts already exist as messages.
    """
    api_messages: list[dict[str, Any]] = []

    if system_prompt:
        api_messages.append({"role": "system", "content": system_prompt})

    for item in items:
        if isinstance(item, MessageItem):
            api_messages.append({"role": item.role.value, "content": _format_content(item)})

        elif isinstance(item, ToolCallItem):
            tool_call = {
                "id": item.call_id,
                "type": "function",
                "function": {
                    "name": item.name,
                    "arguments": item.raw_arguments
                    if item.raw_arguments is not None
                    else json.dumps(item.arguments),
                },
            }
            last = api_messages[-1] if api_messages else None
            if last is not None and last["role"] == "assistant":
                last.setdefault("tool_calls", []).append(tool_call)
                if not last.get("content"):
                    last["content"] = None
            else:
                api_messages.append(
                    {"role": "assistant", "content": None, "tool_calls": [tool_call]}
                )

        elif isinstance(item, ToolOutputItem):
            api_messages.append({
                "role": "tool",
                "tool_call_id": item.call_id,
                "content": item.content,
            })

        elif isinstance(item, AudioEventItem):
            continue

    return api_messages


def _format_content(item: MessageItem) -> Any:
    if all(p.type == ContentType.TEXT for p in item.content):
        return item.text
    parts: list[dict[str, Any]] = []
    for part in item.content:
        if part.type == ContentType.TEXT:
            parts.append({"type": "text", "text": part.text or ""})
        elif part.type == ContentType.IMAGE:
            parts.append({"type": "image_url", "image_url": {"url": part.url}})
    return parts


class OpenAIChatProvider(BaseChatProvider):
    """OpenAI chat completions adapter.

    Supports:
    - Streaming responses
    - Tool/function calling (parallel or sequential)
    - Hosted tool specs passed through verbatim

    Usage:
        config = ProviderConfig(api_key="sk-...", model="gpt-4o")
        provider = OpenAIChatProvider(config)

        async for event in provider.stream(payload):
            print(event)
    """

    service_name = "openai"
    requires_ordered_tool_outputs = False

    def __init__(self, config: ProviderConfig, client: Optional[AsyncOpenAI] = None):
        """Initialize the OpenAI provider.

        Args:
            config: Provider configuration
            client: Pre-built client (tests, custom transports)
        """
        super().__init__(config)
        self.client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
        )

    def _format_tools_for_api(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to OpenAI format."""
        return [tool.to_openai_format() for tool in tools]

    def _build_request(self, payload: RequestPayload) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": payload.model or self.config.model,
            "messages": format_items_for_openai(payload.items, payload.system_prompt),
            "temperature": payload.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        if payload.max_output_tokens:
            kwargs["max_tokens"] = payload.max_output_tokens

        if payload.tools and payload.tool_choice != ToolChoice.NONE:
            kwargs["tools"] = self._format_tools_for_api(payload.tools)
            kwargs["tool_choice"] = payload.tool_choice.value
            kwargs["parallel_tool_calls"] = payload.parallel_tool_calls

        return kwargs

    async def stream(self, payload: RequestPayload) -> AsyncIterator[ChatEvent]:
        """Generate a streaming response.

        Args:
            payload: Assembled context window

        Yields:
            ChatEvent objects

        Raises:
            ProviderError: Mapped from the SDK exception
        """
        self._reset_sequence()
        kwargs = self._build_request(payload)

        # Track tool calls being assembled, keyed by stream index
        tool_calls_in_progress: dict[int, dict[str, Any]] = {}
        finish_reason: Optional[str] = None
        usage: dict[str, int] = {}

        try:
            stream_response = await self.client.chat.completions.create(**kwargs)

            async for chunk in stream_response:
                if getattr(chunk, "usage", None):
                    usage = {
                        "input_tokens": chunk.usage.prompt_tokens,
                        "output_tokens": chunk.usage.completion_tokens,
                    }

                choice = chunk.choices[0] if chunk.choices else None
                if not choice:
                    continue

                delta = choice.delta

                if delta.content:
                    yield self._create_text_delta(delta.content)

                if delta.tool_calls:
                    for tc in delta.tool_calls:
                        idx = tc.index

                        if idx not in tool_calls_in_progress:
                            tool_calls_in_progress[idx] = {
                                "id": tc.id or f"call_{idx}",
                                "name": tc.function.name if tc.function else "",
                                "arguments": "",
                            }
                            if tc.function and tc.function.name:
                                yield self._create_tool_call_start(
                                    tool_calls_in_progress[idx]["id"],
                                    tc.function.name,
                                )

                        if tc.function and tc.function.arguments:
                            tool_calls_in_progress[idx]["arguments"] += tc.function.arguments

                if choice.finish_reason:
                    finish_reason = choice.finish_reason

        except openai.APIError as e:
            logger.error(f"OpenAI API error: {e}")
            raise map_openai_error(e) from e

        for idx in sorted(tool_calls_in_progress):
            tc_data = tool_calls_in_progress[idx]
            yield self._create_tool_call_end(tc_data["id"], tc_data["name"], tc_data["arguments"])

        yield self._create_done(finish_reason, usage)

    async def close(self) -> None:
        """Close the client."""
        await self.client.close()


class OpenAITranscriptionProvider(ITranscriptionProvider):
    """Speech-to-text using the OpenAI audio transcription endpoint."""

    DEFAULT_MODEL = "whisper-1"

    def __init__(self, config: ProviderConfig, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self.model = config.model or self.DEFAULT_MODEL
        self.client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
        )

    async def transcribe(
        self,
        audio: bytes,
        language: Optional[str] = None,
        mime_type: str = "audio/wav",
    ) -> str:
        extension = mime_type.split("/")[-1] or "wav"
        kwargs: dict[str, Any] = {
            "model": self.model,
            "file": (f"audio.{extension}", audio, mime_type),
        }
        if language:
            kwargs["language"] = language

        try:
            result = await self.client.audio.transcriptions.create(**kwargs)
        except openai.APIError as e:
            logger.error(f"OpenAI transcription error: {e}")
            raise map_openai_error(e) from e

        return (result.text or "").strip()


class OpenAISpeechProvider(ISpeechProvider):
    """Text-to-speech using the OpenAI audio speech endpoint."""

    DEFAULT_MODEL = "tts-1"
    DEFAULT_VOICE = "alloy"

    def __init__(self, config: ProviderConfig, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self.model = config.model or self.DEFAULT_MODEL
        self.client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
        )

    async def synthesize(
        self,
        text: str,
        voice_id: Optional[str] = None,
        speed: float = 1.0,
    ) -> bytes:
        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=voice_id or self.DEFAULT_VOICE,
                input=text,
                speed=speed,
                response_format="mp3",
            )
        except openai.APIError as e:
            logger.error(f"OpenAI speech error: {e}")
            raise map_openai_error(e) from e

        return response.content
