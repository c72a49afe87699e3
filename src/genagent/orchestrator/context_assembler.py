"""
Context Assembler.

Builds the bounded context window (RequestPayload) for each provider call:

    system instructions
    memory summary (if any)
    newest prior items that fit the token budget
    pending input of the current turn

Instructions, the summary and the pending input are never dropped. Older
history is dropped first, and with summarization enabled it is folded into
the conversation's running memory summary instead.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from ..config import AgentConfig
from ..domain.entities import (
    AudioEventItem,
    Conversation,
    Item,
    MessageItem,
    RequestPayload,
    ToolCallItem,
    ToolChoice,
    ToolDefinition,
    ToolOutputItem,
)
from ..exceptions import ContextOverflowError
from ..memory.summarizer import ConversationSummarizer

logger = logging.getLogger(__name__)

ITEM_OVERHEAD_TOKENS = 4
CHARS_PER_TOKEN = 4


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token estimate for text (about four characters per token)."""
    if not text:
        return 0
    return len(text) // CHARS_PER_TOKEN


def estimate_item_tokens(item: Item) -> int:
    """Token estimate for one conversation item, including per-item overhead."""
    if isinstance(item, MessageItem):
        text = item.text
        # Image and audio references still cost something
        text += "".join(p.url for p in item.content if p.url)
    elif isinstance(item, ToolCallItem):
        text = item.name + (item.raw_arguments or json.dumps(item.arguments))
    elif isinstance(item, ToolOutputItem):
        text = item.content
    else:
        text = item.transcript or ""
    return estimate_tokens(text) + ITEM_OVERHEAD_TOKENS


def pair_safe_start(items: list[Item], start: int) -> int:
    """Advance start until items[start:] holds no ToolOutput without its ToolCall."""
    while True:
        call_ids = set()
        orphan_at = None
        for index in range(start, len(items)):
            item = items[index]
            if isinstance(item, ToolCallItem):
                call_ids.add(item.call_id)
            elif isinstance(item, ToolOutputItem) and item.call_id not in call_ids:
                orphan_at = index
        if orphan_at is None:
            return start
        start = orphan_at + 1


@dataclass
class SummaryUpdate:
    """A folded memory summary, applied to the conversation at finalizing."""

    summary: str
    summarized_through: int
    folded_items: int


class ContextAssembler:
    """Assembles request payloads within the configured token budget.

    Usage:
        assembler = ContextAssembler(config, summarizer)
        update = await assembler.summarize_if_needed(conversation)
        payload = await assembler.assemble(conversation, pending, tools=defs, summary=update)
    """

    def __init__(
        self,
        config: AgentConfig,
        summarizer: Optional[ConversationSummarizer] = None,
    ):
        self.config = config
        self.summarizer = summarizer

    async def summarize_if_needed(self, conversation: Conversation) -> Optional[SummaryUpdate]:
        """Fold older items into the memory summary when history grows too long.

        The conversation itself is not modified.

        Returns:
            SummaryUpdate, or None if nothing needs folding
        """
        if not self.config.enable_summarization or self.summarizer is None:
            return None

        items = conversation.items
        unsummarized = len(items) - conversation.summarized_through
        if unsummarized <= self.config.max_context_messages:
            return None

        cut = pair_safe_start(items, len(items) - self.config.max_context_messages)
        if cut <= conversation.summarized_through:
            return None

        folded = items[conversation.summarized_through:cut]
        summary = await self.summarizer.summarize(
            folded,
            previous_summary=conversation.memory_summary,
            max_length=self.config.summary_max_chars,
        )
        logger.info(
            f"Folded {len(folded)} items of conversation {conversation.id} into memory summary"
        )
        return SummaryUpdate(summary=summary, summarized_through=cut, folded_items=len(folded))

    async def assemble(
        self,
        conversation: Conversation,
        pending_items: list[Item],
        instructions: Optional[str] = None,
        tools: Optional[list[ToolDefinition]] = None,
        tool_choice: Optional[ToolChoice] = None,
        summary: Optional[SummaryUpdate] = None,
    ) -> RequestPayload:
        """Build the context window for one provider call.

        Args:
            conversation: Committed conversation history
            pending_items: Items of the current turn (never dropped)
            instructions: System instructions (defaults to the configured ones)
            tools: Tool definitions offered to the model
            tool_choice: Tool choice override
            summary: Summary update computed for this turn, not yet committed

        Raises:
            ContextOverflowError: If instructions, summary and pending items
                alone exceed the budget
        """
        config = self.config
        tools = list(tools or [])
        tool_choice = tool_choice or config.tool_choice
        if tool_choice == ToolChoice.NONE:
            tools = []

        if summary is not None:
            memory_summary, summarized_through = summary.summary, summary.summarized_through
        else:
            memory_summary = conversation.memory_summary
            summarized_through = conversation.summarized_through
        if not config.enable_summarization:
            memory_summary, summarized_through = None, 0

        payload = RequestPayload(
            model=config.model,
            instructions=config.instructions if instructions is None else instructions,
            memory_summary=memory_summary,
            pending=list(pending_items),
            tools=tools,
            tool_choice=tool_choice,
            parallel_tool_calls=config.parallel_tool_calls,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            budget_tokens=config.budget_tokens,
        )

        fixed_tokens = estimate_tokens(payload.system_prompt)
        fixed_tokens += sum(estimate_item_tokens(i) for i in pending_items)
        fixed_tokens += sum(estimate_tokens(json.dumps(t.to_openai_format())) for t in tools)

        if fixed_tokens > payload.budget_tokens:
            raise ContextOverflowError(
                "Instructions, summary and pending input exceed the context budget",
                required_tokens=fixed_tokens,
                budget_tokens=payload.budget_tokens,
            )

        # Audio records are transcripts of messages already present
        history = [
            i for i in conversation.items[summarized_through:]
            if not isinstance(i, AudioEventItem)
        ]

        used = fixed_tokens
        start = len(history)
        while start > 0 and len(history) - start < config.max_context_messages:
            cost = estimate_item_tokens(history[start - 1])
            if used + cost > payload.budget_tokens:
                break
            used += cost
            start -= 1

        safe_start = pair_safe_start(history, start)
        used -= sum(estimate_item_tokens(i) for i in history[start:safe_start])

        payload.history = history[safe_start:]
        payload.estimated_tokens = used
        payload.dropped_items = safe_start

        logger.debug(
            f"Assembled context: {len(payload.history)} history items, "
            f"{len(payload.pending)} pending, ~{used}/{payload.budget_tokens} tokens, "
            f"{safe_start} dropped"
        )
        return payload
