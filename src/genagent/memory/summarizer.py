"""
Conversation Summarization.

Folds older conversation items into a running memory summary and
generates conversation titles.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Optional

from ..domain.entities import (
    Item,
    MessageItem,
    MessageRole,
    ToolCallItem,
    ToolOutputItem,
)

if TYPE_CHECKING:
    from ..domain.ports import IChatProvider

logger = logging.getLogger(__name__)


class ConversationSummarizer:
    """Summarizes conversations for context and memory.

    Creates concise summaries of long conversations for:
    - Context window management (memory summary)
    - Conversation titles
    """

    SUMMARY_PROMPT = """Update the running summary of a conversation.
Keep every fact, decision, name and number that later turns may need.
Write plain prose, no more than {max_chars} characters.

CURRENT SUMMARY:
{previous_summary}

NEW CONVERSATION ITEMS:
{conversation}

UPDATED SUMMARY:"""

    TITLE_PROMPT = """Generate a short title (3-6 words) for this conversation.
The title should capture the main topic or purpose.

CONVERSATION:
{conversation}

TITLE:"""

    def __init__(self, llm_provider: Optional["IChatProvider"] = None, model: Optional[str] = None):
        """Initialize the summarizer.

        Args:
            llm_provider: Chat provider for summarization
            model: Model override for summarization calls
        """
        self.llm: Optional["IChatProvider"] = llm_provider
        self.model = model

    def set_llm_provider(self, llm_provider: "IChatProvider") -> None:
        """Set the LLM provider."""
        self.llm = llm_provider

    async def summarize(
        self,
        items: list[Item],
        previous_summary: Optional[str] = None,
        max_length: int = 4000,
    ) -> str:
        """Fold items into the previous summary.

        Args:
            items: Items to fold, oldest first
            previous_summary: Existing summary (None for the first fold)
            max_length: Maximum summary length

        Returns:
            Updated summary
        """
        if not self.llm:
            return self._simple_summarize(items, previous_summary)[:max_length]

        prompt = self.SUMMARY_PROMPT.format(
            max_chars=max_length,
            previous_summary=previous_summary or "(none)",
            conversation=self._format_conversation(items),
        )

        try:
            summary = await self.llm.complete(
                prompt=prompt,
                max_tokens=max(64, max_length // 4),
                temperature=0.3,
                model=self.model,
            )
            return summary.strip()[:max_length]
        except Exception as e:
            logger.error(f"Summarization failed: {e}")
            return self._simple_summarize(items, previous_summary)[:max_length]

    async def generate_title(self, items: list[Item]) -> str:
        """Generate a title for a conversation.

        Args:
            items: Conversation items

        Returns:
            Conversation title
        """
        if not self.llm:
            return self._simple_title(items)

        # Use first few items for title
        conversation = self._format_conversation(items[:5])
        prompt = self.TITLE_PROMPT.format(conversation=conversation)

        try:
            title = await self.llm.complete(
                prompt=prompt,
                max_tokens=20,
                temperature=0.5,
                model=self.model,
            )
            return title.strip().strip('"')[:50] or self._simple_title(items)
        except Exception as e:
            logger.error(f"Title generation failed: {e}")
            return self._simple_title(items)

    def _format_conversation(self, items: list[Item]) -> str:
        """Format items for prompting."""
        lines = []
        for item in items:
            if isinstance(item, MessageItem):
                lines.append(f"{item.role.value.upper()}: {item.text[:500]}")
            elif isinstance(item, ToolCallItem):
                lines.append(f"TOOL CALL {item.name}: {json.dumps(item.arguments)[:300]}")
            elif isinstance(item, ToolOutputItem):
                lines.append(f"TOOL RESULT: {item.content[:300]}")
        return "\n\n".join(lines)

    def _simple_summarize(self, items: list[Item], previous_summary: Optional[str] = None) -> str:
        """Simple summarization without LLM."""
        user_texts = [
            i.text[:200]
            for i in items
            if isinstance(i, MessageItem) and i.role == MessageRole.USER and i.text
        ]
        parts = [previous_summary] if previous_summary else []
        if user_texts:
            parts.append("User asked about: " + "; ".join(user_texts))
        elif items:
            parts.append(f"{len(items)} earlier items")
        return "\n".join(parts) if parts else "Empty conversation"

    def _simple_title(self, items: list[Item]) -> str:
        """Simple title without LLM."""
        for item in items:
            if isinstance(item, MessageItem) and item.role == MessageRole.USER and item.text:
                return " ".join(item.text.split()[:5])
        return "New Conversation"
