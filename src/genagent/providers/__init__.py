"""Provider service adapters."""

from .anthropic import AnthropicChatProvider
from .base import BaseChatProvider, ProviderConfig, ProviderRegistry, parse_tool_arguments
from .openai import (
    OpenAIChatProvider,
    OpenAISpeechProvider,
    OpenAITranscriptionProvider,
)

__all__ = [
    "BaseChatProvider",
    "ProviderConfig",
    "ProviderRegistry",
    "parse_tool_arguments",
    "AnthropicChatProvider",
    "OpenAIChatProvider",
    "OpenAISpeechProvider",
    "OpenAITranscriptionProvider",
]
