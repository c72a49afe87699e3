"""
Domain entities for the agent runtime.

These are pure domain objects with no infrastructure dependencies.
They define the conversation history model (a closed union of item types),
tool registrations, streaming events and per-turn results.
"""

from __future__ import annotations

import copy
import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Union

if TYPE_CHECKING:
    from ..exceptions import GenAgentError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    """Generate a unique identifier with an optional readable prefix."""
    value = uuid.uuid4().hex
    return f"{prefix}_{value}" if prefix else value


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(value)
    return utcnow()


# ============================================
# Content Parts
# ============================================


class ContentType(str, Enum):
    """Kind of a message content part."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


@dataclass(frozen=True)
class ContentPart:
    """One ordered piece of message content.

    Images and audio are references (URL or opaque store key), never bytes.
    """

    type: ContentType
    text: Optional[str] = None
    url: Optional[str] = None
    mime_type: Optional[str] = None

    @classmethod
    def of_text(cls, text: str) -> ContentPart:
        return cls(type=ContentType.TEXT, text=text)

    @classmethod
    def of_image(cls, url: str, mime_type: Optional[str] = None) -> ContentPart:
        return cls(type=ContentType.IMAGE, url=url, mime_type=mime_type)

    @classmethod
    def of_audio(cls, url: str, mime_type: Optional[str] = None) -> ContentPart:
        return cls(type=ContentType.AUDIO, url=url, mime_type=mime_type)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type.value}
        if self.text is not None:
            result["text"] = self.text
        if self.url is not None:
            result["url"] = self.url
        if self.mime_type is not None:
            result["mime_type"] = self.mime_type
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContentPart:
        return cls(
            type=ContentType(data["type"]),
            text=data.get("text"),
            url=data.get("url"),
            mime_type=data.get("mime_type"),
        )


# ============================================
# Items
# ============================================


class ItemType(str, Enum):
    """Discriminator of the conversation item union."""

    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_OUTPUT = "tool_output"
    AUDIO_EVENT = "audio_event"


class MessageRole(str, Enum):
    """Role of a message in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass
class MessageItem:
    """A chat message.

    Attributes:
        role: Message role (system, user, assistant, tool)
        content: Ordered content parts
        partial: True while the message is still being streamed
        id: Unique item identifier
        created_at: Creation timestamp
        metadata: Free-form extra data (model used, token usage, ...)
    """

    role: MessageRole
    content: list[ContentPart] = field(default_factory=list)
    partial: bool = False
    id: str = field(default_factory=lambda: new_id("msg"))
    created_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    type = ItemType.MESSAGE

    @classmethod
    def user(cls, text: str) -> MessageItem:
        return cls(role=MessageRole.USER, content=[ContentPart.of_text(text)])

    @classmethod
    def assistant(cls, text: str, partial: bool = False) -> MessageItem:
        parts = [ContentPart.of_text(text)] if text or partial else []
        return cls(role=MessageRole.ASSISTANT, content=parts, partial=partial)

    @classmethod
    def system(cls, text: str) -> MessageItem:
        return cls(role=MessageRole.SYSTEM, content=[ContentPart.of_text(text)])

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text or "" for p in self.content if p.type == ContentType.TEXT)

    def append_text(self, delta: str) -> None:
        """Append a streamed delta. Only allowed while the message is partial."""
        if not self.partial:
            raise ValueError(f"Message {self.id} is frozen")
        if self.content and self.content[-1].type == ContentType.TEXT:
            last = self.content[-1]
            self.content[-1] = ContentPart.of_text((last.text or "") + delta)
        else:
            self.content.append(ContentPart.of_text(delta))

    def freeze(self) -> None:
        self.partial = False


@dataclass
class ToolCallItem:
    """A tool invocation requested by the model.

    Attributes:
        call_id: Provider-assigned id used to correlate the output
        name: Target tool name
        arguments: Argument payload (opaque JSON object)
        raw_arguments: Unparsed argument text when the provider sent invalid JSON
    """

    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("call"))
    created_at: datetime = field(default_factory=utcnow)

    type = ItemType.TOOL_CALL


@dataclass
class ToolOutputItem:
    """Result of a tool call.

    Exactly one of ``output`` and ``error`` is set.
    """

    call_id: str
    output: Optional[str] = None
    error: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("out"))
    created_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    type = ItemType.TOOL_OUTPUT

    @classmethod
    def success(cls, call_id: str, output: str, **metadata: Any) -> ToolOutputItem:
        return cls(call_id=call_id, output=output, metadata=dict(metadata))

    @classmethod
    def failure(cls, call_id: str, error: str, **metadata: Any) -> ToolOutputItem:
        return cls(call_id=call_id, error=error, metadata=dict(metadata))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def content(self) -> str:
        """Text submitted back to the model."""
        if self.error is not None:
            return json.dumps({"error": self.error})
        return self.output or ""


class AudioDirection(str, Enum):
    """Whether audio was captured from the user or produced for them."""

    INPUT = "input"
    OUTPUT = "output"


@dataclass
class AudioEventItem:
    """Record of audio I/O within a turn. Audio bytes are never stored here."""

    direction: AudioDirection
    transcript: Optional[str] = None
    voice_id: Optional[str] = None
    mime_type: Optional[str] = None
    size_bytes: int = 0
    audio_ref: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("audio"))
    created_at: datetime = field(default_factory=utcnow)

    type = ItemType.AUDIO_EVENT


Item = Union[MessageItem, ToolCallItem, ToolOutputItem, AudioEventItem]


def item_to_dict(item: Item) -> dict[str, Any]:
    """Serialize any item to a JSON-compatible dict."""
    base: dict[str, Any] = {
        "type": item.type.value,
        "id": item.id,
        "created_at": item.created_at.isoformat(),
    }
    if isinstance(item, MessageItem):
        base.update(
            role=item.role.value,
            content=[p.to_dict() for p in item.content],
            metadata=item.metadata,
        )
    elif isinstance(item, ToolCallItem):
        base.update(call_id=item.call_id, name=item.name, arguments=item.arguments)
        if item.raw_arguments is not None:
            base["raw_arguments"] = item.raw_arguments
    elif isinstance(item, ToolOutputItem):
        base.update(
            call_id=item.call_id,
            output=item.output,
            error=item.error,
            metadata=item.metadata,
        )
    elif isinstance(item, AudioEventItem):
        base.update(
            direction=item.direction.value,
            transcript=item.transcript,
            voice_id=item.voice_id,
            mime_type=item.mime_type,
            size_bytes=item.size_bytes,
            audio_ref=item.audio_ref,
        )
    else:
        raise TypeError(f"Unsupported item type: {type(item).__name__}")
    return base


def item_from_dict(data: dict[str, Any]) -> Item:
    """Rebuild an item from item_to_dict output."""
    item_type = ItemType(data["type"])
    common = {"id": data["id"], "created_at": _parse_datetime(data.get("created_at"))}

    if item_type == ItemType.MESSAGE:
        return MessageItem(
            role=MessageRole(data["role"]),
            content=[ContentPart.from_dict(p) for p in data.get("content", [])],
            metadata=dict(data.get("metadata") or {}),
            **common,
        )
    if item_type == ItemType.TOOL_CALL:
        return ToolCallItem(
            call_id=data["call_id"],
            name=data["name"],
            arguments=dict(data.get("arguments") or {}),
            raw_arguments=data.get("raw_arguments"),
            **common,
        )
    if item_type == ItemType.TOOL_OUTPUT:
        return ToolOutputItem(
            call_id=data["call_id"],
            output=data.get("output"),
            error=data.get("error"),
            metadata=dict(data.get("metadata") or {}),
            **common,
        )
    return AudioEventItem(
        direction=AudioDirection(data["direction"]),
        transcript=data.get("transcript"),
        voice_id=data.get("voice_id"),
        mime_type=data.get("mime_type"),
        size_bytes=int(data.get("size_bytes") or 0),
        audio_ref=data.get("audio_ref"),
        **common,
    )


# ============================================
# Conversation
# ============================================


@dataclass
class ConversationMetadata:
    """User-facing conversation metadata.

    Attributes:
        title: Conversation title (auto-generated or user-set)
        tags: Free-form labels used for filtering
        custom: Arbitrary key-value data
    """

    title: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    custom: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "tags": list(self.tags), "custom": dict(self.custom)}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> ConversationMetadata:
        data = data or {}
        return cls(
            title=data.get("title"),
            tags=list(data.get("tags") or []),
            custom=dict(data.get("custom") or {}),
        )


@dataclass
class Conversation:
    """An ordered, append-only history of items.

    Attributes:
        id: Unique conversation identifier
        items: Items in chronological (and causal) order
        metadata: Title, tags and custom data
        memory_summary: Compressed summary of folded older items
        summarized_through: Number of leading items folded into memory_summary
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    items: list[Item] = field(default_factory=list)
    metadata: ConversationMetadata = field(default_factory=ConversationMetadata)
    memory_summary: Optional[str] = None
    summarized_through: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.updated_at is None:
            self.updated_at = self.created_at

    def append(self, item: Item) -> None:
        """Append a finalized item. Partial (streaming) messages are rejected."""
        if isinstance(item, MessageItem) and item.partial:
            raise ValueError("Cannot append a partial message; freeze it first")
        self.items.append(item)
        self.updated_at = utcnow()

    def extend(self, items: list[Item]) -> None:
        for item in items:
            self.append(item)

    def update_summary(self, summary: str, summarized_through: int) -> None:
        if summarized_through < self.summarized_through or summarized_through > len(self.items):
            raise ValueError("summarized_through must advance within the item range")
        self.memory_summary = summary
        self.summarized_through = summarized_through
        self.updated_at = utcnow()

    @property
    def messages(self) -> list[MessageItem]:
        return [i for i in self.items if isinstance(i, MessageItem)]

    @property
    def last_assistant_message(self) -> Optional[MessageItem]:
        for item in reversed(self.items):
            if isinstance(item, MessageItem) and item.role == MessageRole.ASSISTANT:
                return item
        return None

    def unpaired_tool_calls(self) -> list[ToolCallItem]:
        """Tool calls that do not yet have an output."""
        answered = {i.call_id for i in self.items if isinstance(i, ToolOutputItem)}
        return [
            i for i in self.items
            if isinstance(i, ToolCallItem) and i.call_id not in answered
        ]

    def validate_pairing(self) -> None:
        """Check that every output answers exactly one earlier call.

        Raises:
            ValueError: On orphaned, duplicated or missing outputs
        """
        seen_calls: set[str] = set()
        answered: set[str] = set()
        for item in self.items:
            if isinstance(item, ToolCallItem):
                if item.call_id in seen_calls:
                    raise ValueError(f"Duplicate tool call id {item.call_id}")
                seen_calls.add(item.call_id)
            elif isinstance(item, ToolOutputItem):
                if item.call_id not in seen_calls:
                    raise ValueError(f"Tool output {item.id} has no prior call {item.call_id}")
                if item.call_id in answered:
                    raise ValueError(f"Tool call {item.call_id} answered twice")
                answered.add(item.call_id)
        missing = seen_calls - answered
        if missing:
            raise ValueError(f"Tool calls without output: {sorted(missing)}")

    def copy(self) -> Conversation:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "items": [item_to_dict(i) for i in self.items],
            "metadata": self.metadata.to_dict(),
            "memory_summary": self.memory_summary,
            "summarized_through": self.summarized_through,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        created_at = _parse_datetime(data.get("created_at"))
        return cls(
            id=data["id"],
            items=[item_from_dict(i) for i in data.get("items", [])],
            metadata=ConversationMetadata.from_dict(data.get("metadata")),
            memory_summary=data.get("memory_summary"),
            summarized_through=int(data.get("summarized_through") or 0),
            created_at=created_at,
            updated_at=_parse_datetime(data.get("updated_at") or created_at),
        )


@dataclass
class ConversationFilter:
    """Criteria for listing conversations.

    Attributes:
        tags: Conversation must carry all of these tags
        title_contains: Case-insensitive title substring
        limit: Maximum number of results
        offset: Number of results to skip
    """

    tags: list[str] = field(default_factory=list)
    title_contains: Optional[str] = None
    limit: int = 50
    offset: int = 0

    def matches(self, conversation: Conversation) -> bool:
        if self.tags and not set(self.tags).issubset(conversation.metadata.tags):
            return False
        if self.title_contains:
            title = conversation.metadata.title or ""
            if self.title_contains.lower() not in title.lower():
                return False
        return True

    def apply(self, conversations: list[Conversation]) -> list[Conversation]:
        """Filter, sort by most recent update and paginate."""
        matched = [c for c in conversations if self.matches(c)]
        matched.sort(key=lambda c: c.updated_at or c.created_at, reverse=True)
        return matched[self.offset:self.offset + self.limit]


# ============================================
# Tool System
# ============================================


class ToolKind(str, Enum):
    """Backing mechanism of a registered tool."""

    LOCAL = "local"  # In-process Python function
    SHELL = "shell"  # External process
    HOSTED = "hosted"  # Executed by the provider itself
    MCP = "mcp"  # Remote MCP server


class ToolChoice(str, Enum):
    """How the model may use tools."""

    AUTO = "auto"
    NONE = "none"
    REQUIRED = "required"


@dataclass
class ToolDefinition:
    """Definition of an available tool.

    Attributes:
        name: Tool name (e.g., 'get_weather')
        description: Human-readable description
        parameters: JSON Schema for parameters
        kind: Backing mechanism
        requires_approval: True if a user must approve each call (MCP)
        timeout_seconds: Per-tool timeout overriding the session default
        server_label: MCP server the tool belongs to
        hosted_config: Provider-native tool spec for hosted tools
    """

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    kind: ToolKind = ToolKind.LOCAL
    requires_approval: bool = False
    timeout_seconds: Optional[float] = None
    server_label: Optional[str] = None
    hosted_config: dict[str, Any] = field(default_factory=dict)

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to OpenAI function calling format."""
        if self.kind == ToolKind.HOSTED and self.hosted_config:
            return dict(self.hosted_config)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic_format(self) -> dict[str, Any]:
        """Convert to Anthropic tool use format."""
        if self.kind == ToolKind.HOSTED and self.hosted_config:
            return dict(self.hosted_config)
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


# ============================================
# Provider Request / Response
# ============================================


@dataclass
class RequestPayload:
    """The context window sent to a provider for one call.

    Derived per request by the context assembler and never persisted.
    """

    model: str
    instructions: str = ""
    memory_summary: Optional[str] = None
    history: list[Item] = field(default_factory=list)
    pending: list[Item] = field(default_factory=list)
    tools: list[ToolDefinition] = field(default_factory=list)
    tool_choice: ToolChoice = ToolChoice.AUTO
    parallel_tool_calls: bool = True
    temperature: float = 0.7
    max_output_tokens: Optional[int] = None
    estimated_tokens: int = 0
    budget_tokens: int = 0
    dropped_items: int = 0

    @property
    def items(self) -> list[Item]:
        """History suffix followed by the pending input, in send order."""
        return [*self.history, *self.pending]

    @property
    def system_prompt(self) -> str:
        """Instructions followed by the memory summary section."""
        prompt = self.instructions
        if self.memory_summary:
            prompt += f"\n\nSummary of the earlier conversation:\n{self.memory_summary}"
        return prompt

    def fingerprint(self) -> str:
        """Stable SHA-256 fingerprint used as a response cache key."""
        body = {
            "model": self.model,
            "system": self.system_prompt,
            "items": [
                {k: v for k, v in item_to_dict(i).items() if k not in ("id", "created_at")}
                for i in self.items
            ],
            "tools": [t.name for t in self.tools],
            "tool_choice": self.tool_choice.value,
            "temperature": self.temperature,
            "max_output_tokens": self.max_output_tokens,
        }
        encoded = json.dumps(body, sort_keys=True, default=str).encode()
        return hashlib.sha256(encoded).hexdigest()


@dataclass
class ProviderResponse:
    """A complete (non-streamed) provider answer."""

    text: str = ""
    tool_calls: list[ToolCallItem] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: dict[str, int] = field(default_factory=dict)
    model: Optional[str] = None


# ============================================
# Streaming Events
# ============================================


class ChatEventType(str, Enum):
    """Types of streaming chat events."""

    TURN_STARTED = "turn_started"
    STATE_CHANGED = "state_changed"
    TEXT_DELTA = "text_delta"  # Partial text token
    TRANSCRIPT = "transcript"  # Input audio transcribed
    AUDIO_OUTPUT = "audio_output"  # Synthesized speech
    TOOL_CALL_START = "tool_call_start"  # Tool invocation begins
    TOOL_CALL_END = "tool_call_end"  # Tool arguments complete
    TOOL_CALL_UNHANDLED = "tool_call_unhandled"  # No executor, caller must answer
    APPROVAL_REQUIRED = "approval_required"  # MCP call needs approval
    APPROVAL_RESOLVED = "approval_resolved"  # Approved, denied or timed out
    TOOL_RESULT = "tool_result"  # Tool execution result
    SUMMARY_UPDATED = "summary_updated"  # Memory summary refreshed
    ERROR = "error"
    CANCEL = "cancel"  # Turn cancelled
    DONE = "done"  # Turn finished


@dataclass
class ChatEvent:
    """A streaming chat event.

    Attributes:
        type: Event type
        sequence: Sequence number for ordering within a turn
        content: Text content (deltas, tool results, error messages)
        tool_call_id: Links TOOL_* events
        tool_name: Tool name
        tool_arguments: Tool arguments (for TOOL_CALL_END)
        approval_id: Links APPROVAL_* events
        error: Error message (for ERROR events)
        error_kind: Taxonomy kind of the error
        state: New turn state (for STATE_CHANGED)
        metadata: Additional event metadata
        correlation_id: Turn id for tracing
        audio: Synthesized audio bytes (for AUDIO_OUTPUT)
        event_id: Unique event ID for idempotency
    """

    type: ChatEventType
    sequence: int
    content: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_arguments: Optional[dict[str, Any]] = None
    approval_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    state: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    correlation_id: Optional[str] = None
    audio: Optional[bytes] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (audio as size only)."""
        result: dict[str, Any] = {
            "type": self.type.value,
            "sequence": self.sequence,
            "event_id": self.event_id,
        }
        for key in (
            "content",
            "tool_call_id",
            "tool_name",
            "tool_arguments",
            "approval_id",
            "error",
            "error_kind",
            "state",
            "metadata",
            "correlation_id",
        ):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.audio is not None:
            result["audio_bytes"] = len(self.audio)
        return result

    @classmethod
    def text_delta(cls, text: str, sequence: int = 0) -> ChatEvent:
        """Create a text delta event."""
        return cls(type=ChatEventType.TEXT_DELTA, sequence=sequence, content=text)

    @classmethod
    def tool_call_start(cls, tool_call_id: str, name: str, sequence: int = 0) -> ChatEvent:
        """Create a tool call start event."""
        return cls(
            type=ChatEventType.TOOL_CALL_START,
            sequence=sequence,
            tool_call_id=tool_call_id,
            tool_name=name,
        )

    @classmethod
    def tool_call_end(
        cls,
        tool_call_id: str,
        arguments: dict[str, Any],
        sequence: int = 0,
        name: Optional[str] = None,
        raw_arguments: Optional[str] = None,
    ) -> ChatEvent:
        """Create a tool call end event."""
        return cls(
            type=ChatEventType.TOOL_CALL_END,
            sequence=sequence,
            tool_call_id=tool_call_id,
            tool_name=name,
            tool_arguments=arguments,
            content=raw_arguments,
        )

    @classmethod
    def done(cls, sequence: int = 0, metadata: Optional[dict[str, Any]] = None) -> ChatEvent:
        """Create a done event."""
        return cls(type=ChatEventType.DONE, sequence=sequence, metadata=metadata)


# ============================================
# Turn Results
# ============================================


class TurnStatus(str, Enum):
    """Outcome of one turn."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TurnResult:
    """What a caller receives for one turn.

    Attributes:
        status: completed, failed or cancelled
        conversation_id: Conversation the turn belongs to
        turn_id: Identifier of the turn (event correlation id)
        message: Final assistant message (completed turns only)
        items: Items appended to the conversation by this turn
        error: Typed error for failed turns
        store_error: Non-fatal persistence failure after finalizing
        audio: Synthesized speech for the final message, if enabled
        rounds: Number of provider calls made
    """

    status: TurnStatus
    conversation_id: Optional[str] = None
    turn_id: Optional[str] = None
    message: Optional[MessageItem] = None
    items: list[Item] = field(default_factory=list)
    error: Optional["GenAgentError"] = None
    store_error: Optional["GenAgentError"] = None
    audio: Optional[bytes] = None
    rounds: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == TurnStatus.COMPLETED

    @property
    def text(self) -> str:
        return self.message.text if self.message else ""

    def raise_for_error(self) -> TurnResult:
        """Raise the turn's error if it failed; return self otherwise."""
        if self.status == TurnStatus.FAILED and self.error is not None:
            raise self.error
        return self
