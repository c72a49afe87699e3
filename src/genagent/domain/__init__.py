"""Domain entities and port interfaces for the agent runtime."""

from .entities import (
    AudioDirection,
    AudioEventItem,
    ChatEvent,
    ChatEventType,
    ContentPart,
    ContentType,
    Conversation,
    ConversationFilter,
    ConversationMetadata,
    Item,
    ItemType,
    MessageItem,
    MessageRole,
    ProviderResponse,
    RequestPayload,
    ToolCallItem,
    ToolChoice,
    ToolDefinition,
    ToolKind,
    ToolOutputItem,
    TurnResult,
    TurnStatus,
    item_from_dict,
    item_to_dict,
)
from .ports import (
    IChatProvider,
    IConversationStore,
    IOAuthTokenProvider,
    IPreferenceStore,
    ISpeechProvider,
    IToolExecutor,
    ITranscriptionProvider,
)

__all__ = [
    # Entities
    "AudioDirection",
    "AudioEventItem",
    "ChatEvent",
    "ChatEventType",
    "ContentPart",
    "ContentType",
    "Conversation",
    "ConversationFilter",
    "ConversationMetadata",
    "Item",
    "ItemType",
    "MessageItem",
    "MessageRole",
    "ProviderResponse",
    "RequestPayload",
    "ToolCallItem",
    "ToolChoice",
    "ToolDefinition",
    "ToolKind",
    "ToolOutputItem",
    "TurnResult",
    "TurnStatus",
    "item_from_dict",
    "item_to_dict",
    # Ports
    "IChatProvider",
    "IConversationStore",
    "IOAuthTokenProvider",
    "IPreferenceStore",
    "ISpeechProvider",
    "IToolExecutor",
    "ITranscriptionProvider",
]
