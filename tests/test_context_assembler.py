"""
Tests for context window assembly.

Covers token budgeting, history limits, tool call pairing at the window
boundary and memory summary folding.
"""

import pytest

from conftest import make_config
from genagent.domain.entities import (
    AudioDirection,
    AudioEventItem,
    Conversation,
    MessageItem,
    ToolCallItem,
    ToolChoice,
    ToolDefinition,
    ToolOutputItem,
)
from genagent.exceptions import ContextOverflowError
from genagent.memory.summarizer import ConversationSummarizer
from genagent.orchestrator.context_assembler import (
    ContextAssembler,
    estimate_item_tokens,
    estimate_tokens,
    pair_safe_start,
)


def exchange(count):
    """Alternating user/assistant messages, each costing 14 tokens."""
    items = []
    for i in range(count):
        body = f"{i:02d}" + "x" * 38
        items.append(MessageItem.user(body) if i % 2 == 0 else MessageItem.assistant(body))
    return items


class TestEstimates:
    def test_estimate_tokens(self):
        assert estimate_tokens(None) == 0
        assert estimate_tokens("abcd" * 10) == 10

    def test_item_overhead(self):
        assert estimate_item_tokens(MessageItem.user("")) == 4
        assert estimate_item_tokens(MessageItem.user("x" * 40)) == 14


class TestPairSafeStart:
    def test_window_without_tools_unchanged(self):
        items = exchange(4)
        assert pair_safe_start(items, 1) == 1

    def test_orphan_output_skipped(self):
        items = [
            MessageItem.user("weather?"),
            ToolCallItem(call_id="c1", name="get_weather"),
            ToolOutputItem.success("c1", "sunny"),
            MessageItem.assistant("Sunny."),
        ]
        assert pair_safe_start(items, 2) == 3
        assert pair_safe_start(items, 1) == 1


class TestAssemble:
    @pytest.mark.asyncio
    async def test_history_limited_by_message_count(self):
        conversation = Conversation(items=exchange(10))
        assembler = ContextAssembler(make_config(max_context_messages=4))

        payload = await assembler.assemble(conversation, [MessageItem.user("next")])

        assert payload.history == conversation.items[-4:]
        assert payload.dropped_items == 6
        assert payload.pending[0].text == "next"

    @pytest.mark.asyncio
    async def test_history_limited_by_token_budget(self):
        conversation = Conversation(items=exchange(10))
        config = make_config(
            instructions="",
            context_window_tokens=200,
            response_reserve_tokens=100,
            max_output_tokens=100,
        )

        payload = await ContextAssembler(config).assemble(conversation, [MessageItem.user("")])

        # 4 tokens pending + 6 items * 14 tokens fits in 100; a seventh does not
        assert len(payload.history) == 6
        assert payload.history == conversation.items[-6:]
        assert payload.estimated_tokens == 88
        assert payload.estimated_tokens <= payload.budget_tokens

    @pytest.mark.asyncio
    async def test_pending_never_dropped(self):
        config = make_config(
            instructions="",
            context_window_tokens=200,
            response_reserve_tokens=100,
            max_output_tokens=100,
        )
        pending = [MessageItem.user("x" * 340)]

        payload = await ContextAssembler(config).assemble(Conversation(items=exchange(4)), pending)

        assert payload.pending == pending
        assert payload.history == []

    @pytest.mark.asyncio
    async def test_overflow_when_fixed_part_exceeds_budget(self):
        config = make_config(
            instructions="x" * 1000,
            context_window_tokens=200,
            response_reserve_tokens=100,
            max_output_tokens=100,
        )
        with pytest.raises(ContextOverflowError) as exc_info:
            await ContextAssembler(config).assemble(Conversation(), [MessageItem.user("hi")])
        assert exc_info.value.required_tokens > exc_info.value.budget_tokens == 100

    @pytest.mark.asyncio
    async def test_window_never_starts_with_orphan_output(self):
        conversation = Conversation(items=[
            MessageItem.user("weather?"),
            ToolCallItem(call_id="c1", name="get_weather"),
            ToolOutputItem.success("c1", "sunny"),
            MessageItem.assistant("Sunny."),
        ])
        assembler = ContextAssembler(make_config(max_context_messages=2))

        payload = await assembler.assemble(conversation, [MessageItem.user("thanks")])

        assert [type(i) for i in payload.history] == [MessageItem]
        assert payload.dropped_items == 3

    @pytest.mark.asyncio
    async def test_audio_records_excluded(self):
        conversation = Conversation(items=[
            AudioEventItem(direction=AudioDirection.INPUT, transcript="hello"),
            MessageItem.user("hello"),
            MessageItem.assistant("Hi!"),
        ])
        payload = await ContextAssembler(make_config()).assemble(
            conversation, [MessageItem.user("again")]
        )
        assert all(not isinstance(i, AudioEventItem) for i in payload.history)
        assert len(payload.history) == 2

    @pytest.mark.asyncio
    async def test_tool_choice_none_offers_no_tools(self):
        tools = [ToolDefinition(name="search")]
        assembler = ContextAssembler(make_config(tool_choice=ToolChoice.NONE))
        payload = await assembler.assemble(Conversation(), [MessageItem.user("hi")], tools=tools)
        assert payload.tools == []
        assert payload.tool_choice == ToolChoice.NONE

    @pytest.mark.asyncio
    async def test_request_settings_copied_from_config(self):
        config = make_config(temperature=0.2, max_output_tokens=256, parallel_tool_calls=False)
        payload = await ContextAssembler(config).assemble(
            Conversation(), [MessageItem.user("hi")], instructions="Custom."
        )
        assert payload.model == "fake-model"
        assert payload.instructions == "Custom."
        assert payload.temperature == 0.2
        assert payload.max_output_tokens == 256
        assert payload.parallel_tool_calls is False
        assert payload.budget_tokens == config.budget_tokens


class TestMemorySummary:
    @pytest.mark.asyncio
    async def test_summary_ignored_when_disabled(self):
        conversation = Conversation(items=exchange(4), memory_summary="old", summarized_through=2)

        payload = await ContextAssembler(make_config()).assemble(
            conversation, [MessageItem.user("hi")]
        )

        assert payload.memory_summary is None
        assert len(payload.history) == 4

    @pytest.mark.asyncio
    async def test_summarized_items_replaced_by_summary(self):
        conversation = Conversation(items=exchange(4), memory_summary="old", summarized_through=2)
        assembler = ContextAssembler(
            make_config(enable_summarization=True), ConversationSummarizer()
        )

        payload = await assembler.assemble(conversation, [MessageItem.user("hi")])

        assert payload.history == conversation.items[2:]
        assert "old" in payload.system_prompt

    @pytest.mark.asyncio
    async def test_no_fold_below_threshold(self):
        assembler = ContextAssembler(
            make_config(enable_summarization=True, max_context_messages=4),
            ConversationSummarizer(),
        )
        assert await assembler.summarize_if_needed(Conversation(items=exchange(4))) is None

    @pytest.mark.asyncio
    async def test_no_fold_without_summarizer(self):
        assembler = ContextAssembler(make_config(enable_summarization=True, max_context_messages=2))
        assert await assembler.summarize_if_needed(Conversation(items=exchange(6))) is None

    @pytest.mark.asyncio
    async def test_fold_older_items(self):
        conversation = Conversation(items=exchange(6))
        assembler = ContextAssembler(
            make_config(enable_summarization=True, max_context_messages=4),
            ConversationSummarizer(),
        )

        update = await assembler.summarize_if_needed(conversation)

        assert update.summarized_through == 2
        assert update.folded_items == 2
        assert update.summary.startswith("User asked about: 00")
        # Conversation untouched until the turn commits
        assert conversation.summarized_through == 0

        payload = await assembler.assemble(conversation, [MessageItem.user("hi")], summary=update)
        assert payload.memory_summary == update.summary
        assert payload.history == conversation.items[2:]

    @pytest.mark.asyncio
    async def test_fold_keeps_tool_pair_together(self):
        conversation = Conversation(items=[
            MessageItem.user("a"),
            MessageItem.assistant("b"),
            MessageItem.user("weather?"),
            ToolCallItem(call_id="c1", name="get_weather"),
            ToolOutputItem.success("c1", "sunny"),
            MessageItem.assistant("Sunny."),
        ])
        assembler = ContextAssembler(
            make_config(enable_summarization=True, max_context_messages=2),
            ConversationSummarizer(),
        )

        update = await assembler.summarize_if_needed(conversation)

        # A cut at index 4 would orphan the output there
        assert update.summarized_through == 5
