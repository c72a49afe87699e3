"""
Port interfaces (abstract base classes) for the agent runtime.

These define the contracts that adapters must implement.
Following the Ports & Adapters (Hexagonal) architecture pattern.
"""

from __future__ import annotations

import weakref
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

if TYPE_CHECKING:
    from .entities import (
        ChatEvent,
        Conversation,
        ConversationFilter,
        ConversationMetadata,
        ProviderResponse,
        RequestPayload,
    )


# ============================================
# Provider Interfaces
# ============================================


class IChatProvider(ABC):
    """Interface for chat completion services (OpenAI, Anthropic, ...).

    Implementations translate a RequestPayload into the vendor API and
    the vendor's streamed answer back into ChatEvents.
    """

    #: Whether tool outputs must be resubmitted in the order the calls were made
    requires_ordered_tool_outputs: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the service name used to select this adapter (e.g., 'openai')."""
        pass

    @abstractmethod
    def stream(self, payload: RequestPayload) -> AsyncIterator[ChatEvent]:
        """Stream a response for the given context window.

        Yields TEXT_DELTA events in provider order, then TOOL_CALL_START /
        TOOL_CALL_END pairs for every requested tool call, then DONE.
        Errors are raised as ProviderError subclasses.

        Args:
            payload: Assembled context window

        Yields:
            ChatEvent objects representing the streaming response
        """
        pass

    async def send(self, payload: RequestPayload) -> ProviderResponse:
        """Generate a complete response (non-streaming).

        Default implementation collects stream().
        """
        from .entities import ChatEventType, ProviderResponse, ToolCallItem

        response = ProviderResponse(model=payload.model)
        text_parts: list[str] = []
        names: dict[str, str] = {}

        async for event in self.stream(payload):
            if event.type == ChatEventType.TEXT_DELTA and event.content:
                text_parts.append(event.content)
            elif event.type == ChatEventType.TOOL_CALL_START:
                names[event.tool_call_id] = event.tool_name
            elif event.type == ChatEventType.TOOL_CALL_END:
                response.tool_calls.append(
                    ToolCallItem(
                        call_id=event.tool_call_id,
                        name=event.tool_name or names.get(event.tool_call_id, ""),
                        arguments=event.tool_arguments or {},
                        raw_arguments=event.content,
                    )
                )
            elif event.type == ChatEventType.DONE and event.metadata:
                response.finish_reason = event.metadata.get("finish_reason")
                response.usage = event.metadata.get("usage") or {}

        response.text = "".join(text_parts)
        return response

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 500,
        temperature: float = 0.3,
        model: Optional[str] = None,
    ) -> str:
        """Generate a simple text completion (non-streaming).

        Convenience method used by the ConversationSummarizer.
        """
        from .entities import MessageItem, RequestPayload, ToolChoice

        payload = RequestPayload(
            model=model or self.default_model,
            instructions=system_prompt or "",
            pending=[MessageItem.user(prompt)],
            tool_choice=ToolChoice.NONE,
            temperature=temperature,
            max_output_tokens=max_tokens,
        )
        response = await self.send(payload)
        return response.text

    @property
    def default_model(self) -> str:
        """Model used when a request does not name one."""
        return ""

    async def close(self) -> None:
        """Release network resources."""
        return None


class ITranscriptionProvider(ABC):
    """Interface for speech-to-text services."""

    @abstractmethod
    async def transcribe(
        self,
        audio: bytes,
        language: Optional[str] = None,
        mime_type: str = "audio/wav",
    ) -> str:
        """Transcribe audio to text.

        Args:
            audio: Encoded audio bytes
            language: ISO-639-1 language hint
            mime_type: Audio container type

        Returns:
            Transcribed text (may be empty)
        """
        pass


class ISpeechProvider(ABC):
    """Interface for text-to-speech services."""

    @abstractmethod
    async def synthesize(
        self,
        text: str,
        voice_id: Optional[str] = None,
        speed: float = 1.0,
    ) -> bytes:
        """Synthesize text to encoded audio bytes."""
        pass

    @property
    def mime_type(self) -> str:
        return "audio/mpeg"


# ============================================
# Tool Interfaces
# ============================================


class IToolExecutor(ABC):
    """Capability shared by every tool kind: run with arguments, return text."""

    @abstractmethod
    async def execute(self, arguments: dict[str, Any]) -> str:
        """Execute the tool.

        Args:
            arguments: Tool arguments (opaque JSON object)

        Returns:
            Tool output as text

        Raises:
            ToolExecutionError: If the tool fails
        """
        pass


class IOAuthTokenProvider(ABC):
    """Interface for obtaining bearer tokens for remote services."""

    @abstractmethod
    async def get_access_token(
        self,
        service: str,
        scopes: Optional[list[str]] = None,
    ) -> str:
        """Return a valid access token for the service.

        Raises:
            OAuthError: If no token can be obtained
        """
        pass


# ============================================
# Storage Interfaces
# ============================================


class IConversationStore(ABC):
    """Interface for conversation persistence.

    Implementations must be idempotent on save (overwrite, last writer wins)
    and raise NotFoundError for unknown ids.
    """

    @abstractmethod
    async def create(self, metadata: Optional[ConversationMetadata] = None) -> Conversation:
        """Create and persist a new, empty conversation."""
        pass

    @abstractmethod
    async def load(self, conversation_id: str) -> Conversation:
        """Load a conversation by id.

        Raises:
            NotFoundError: If the conversation does not exist
        """
        pass

    @abstractmethod
    async def save(self, conversation: Conversation) -> None:
        """Persist the full conversation, replacing any previous version."""
        pass

    @abstractmethod
    async def list(self, filter: Optional[ConversationFilter] = None) -> list[Conversation]:
        """List conversations, most recently updated first."""
        pass

    @abstractmethod
    async def delete(self, conversation_id: str) -> None:
        """Delete a conversation.

        Raises:
            NotFoundError: If the conversation does not exist
        """
        pass

    @property
    def leases(self) -> weakref.WeakValueDictionary:
        """Conversation id -> the session object currently holding it.

        Entries vanish when their holder is garbage collected.
        """
        table = self.__dict__.get("_leases")
        if table is None:
            table = self.__dict__["_leases"] = weakref.WeakValueDictionary()
        return table

    async def close(self) -> None:
        """Release resources held by the store."""
        return None


class IPreferenceStore(ABC):
    """Key-value store for user preferences (model, voice, temperature)."""

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass
