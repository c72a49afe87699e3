"""
Session Controller.

Main orchestration logic for one agent session. Coordinates:
- Context assembly and memory summaries
- Streamed provider calls with retry and timeouts
- Tool execution rounds, approvals and unhandled calls
- Speech input and output
- Conversation persistence
- Event streaming to clients

Each turn runs as one producer task that feeds an event queue; stream()
is the single ordered channel over that queue. Items produced by a turn
are buffered and committed to the conversation only when the turn
finalizes, so a failed or cancelled turn leaves the conversation exactly
as it was.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Union

from ..config import AgentConfig
from ..domain.entities import (
    ChatEvent,
    ChatEventType,
    ContentPart,
    Conversation,
    ConversationFilter,
    ConversationMetadata,
    Item,
    MessageItem,
    MessageRole,
    ProviderResponse,
    RequestPayload,
    ToolCallItem,
    ToolChoice,
    ToolOutputItem,
    TurnResult,
    TurnStatus,
    new_id,
)
from ..domain.ports import IChatProvider, IConversationStore
from ..exceptions import (
    ConfigurationError,
    GenAgentError,
    MalformedResponseError,
    ProviderError,
    ProviderTimeoutError,
    ValidationError,
)
from ..memory.summarizer import ConversationSummarizer
from ..providers.base import ProviderRegistry
from ..resilience import aiter_with_timeout, retry_async
from ..tools.registry import ToolRegistry
from .approval_manager import ApprovalManager, ApprovalRequest
from .audio_controller import AudioController
from .context_assembler import ContextAssembler, SummaryUpdate
from .conversation_manager import ConversationManager
from .event_streamer import TurnEventStream
from .response_cache import ResponseCache
from .state import TurnState, TurnStateMachine
from .tool_runner import ToolRunner

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 100_000

TurnInput = Union[str, MessageItem, list[ContentPart]]


@dataclass
class _Turn:
    """Buffered state of the turn in flight."""

    turn_id: str = field(default_factory=lambda: new_id("turn"))
    items: list[Item] = field(default_factory=list)
    transcript: Optional[str] = None
    # (audio bytes, language, mime type) still to be transcribed
    audio_input: Optional[tuple[bytes, Optional[str], str]] = None
    conversation_id: Optional[str] = None
    summary: Optional[SummaryUpdate] = None
    final_message: Optional[MessageItem] = None
    audio: Optional[bytes] = None
    usage: dict[str, int] = field(default_factory=dict)
    rounds: int = 0
    committed: bool = False
    store_error: Optional[GenAgentError] = None
    result: Optional[TurnResult] = None

    def add_usage(self, usage: dict[str, int]) -> None:
        for key, value in usage.items():
            self.usage[key] = self.usage.get(key, 0) + value


class _DeliveredStreamError(Exception):
    """A provider error raised after part of the answer reached the caller."""

    def __init__(self, error: ProviderError):
        super().__init__(str(error))
        self.error = error


class SessionController:
    """Runs conversation turns against a chat provider.

    Manages the turn loop:
    1. Validate the input and resolve the conversation
    2. Fold old history into the memory summary if needed
    3. Assemble the context window and stream the provider answer
    4. Execute tool calls (with approvals) and resubmit their outputs
    5. Finalize: speak, commit the turn's items, persist

    Produces streaming events for real-time UI updates.

    Usage:
        controller = SessionController(
            providers=ProviderRegistry([OpenAIChatProvider(provider_config)]),
            tool_registry=registry,
            conversation_store=store,
            config=AgentConfig(model="gpt-4o"),
        )

        async for event in controller.stream("What's the weather in Paris?"):
            await websocket.send_json(event.to_dict())

        result = await controller.send("And tomorrow?")
    """

    def __init__(
        self,
        providers: Union[ProviderRegistry, IChatProvider, list[IChatProvider]],
        tool_registry: Optional[ToolRegistry] = None,
        conversation_store: Optional[IConversationStore] = None,
        config: Optional[AgentConfig] = None,
        summarizer: Optional[ConversationSummarizer] = None,
        audio: Optional[AudioController] = None,
        approvals: Optional[ApprovalManager] = None,
        response_cache: Optional[ResponseCache] = None,
    ):
        """Initialize the session controller.

        Args:
            providers: Chat provider adapters (selected by config.chat_service)
            tool_registry: Registry of tools offered to the model
            conversation_store: Store for conversation persistence
            config: Agent configuration
            summarizer: Summarizer for memory summaries and titles
            audio: Speech-to-text / text-to-speech controller
            approvals: Approval manager for gated tools
            response_cache: Cache for tool-free requests (built from config if enabled)
        """
        if isinstance(providers, ProviderRegistry):
            self.providers = providers
        elif isinstance(providers, IChatProvider):
            self.providers = ProviderRegistry([providers])
        else:
            self.providers = ProviderRegistry(list(providers))

        self.config = config or AgentConfig()
        self.tools = tool_registry or ToolRegistry()
        self.summarizer = summarizer or ConversationSummarizer()
        self.audio = audio
        self.approvals = approvals or ApprovalManager()
        if response_cache is None and self.config.enable_response_cache:
            response_cache = ResponseCache(
                self.config.response_cache_size,
                self.config.response_cache_ttl_seconds,
            )
        self.response_cache = response_cache

        self.state_machine = TurnStateMachine(on_change=self._on_state_change)
        self.conversations = ConversationManager(
            conversation_store,
            policy=self.config.persistence_policy,
            auto_save_interval_seconds=self.config.auto_save_interval_seconds,
        )
        self.assembler = ContextAssembler(self.config, self.summarizer)
        self.tool_runner = ToolRunner(self.tools, self.approvals, self.config)

        self._turn: Optional[_Turn] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._events: Optional[TurnEventStream] = None
        self._closed = False

    # ============================================
    # Properties
    # ============================================

    @property
    def conversation(self) -> Optional[Conversation]:
        """The active conversation (committed items only)."""
        return self.conversations.conversation

    @property
    def state(self) -> TurnState:
        return self.state_machine.state

    @property
    def is_busy(self) -> bool:
        """True while a turn is running."""
        return self._turn_task is not None and not self._turn_task.done()

    @property
    def pending_approvals(self) -> list[ApprovalRequest]:
        return self.approvals.pending()

    # ============================================
    # Turns
    # ============================================

    async def send(self, message: TurnInput) -> TurnResult:
        """Run one turn to completion.

        Returns:
            TurnResult with status completed, failed or cancelled

        Raises:
            ValidationError: If the input is empty or a turn is already running
        """
        async for _ in self._run_turn(self._coerce_input(message)):
            pass
        return self._last_result

    async def stream(self, message: TurnInput) -> AsyncIterator[ChatEvent]:
        """Run one turn, yielding its events in order.

        Breaking out of the iteration cancels the turn.

        Raises:
            ValidationError: If the input is empty or a turn is already running
        """
        events = self._run_turn(self._coerce_input(message))
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def send_audio(
        self,
        audio: bytes,
        language: Optional[str] = None,
        mime_type: str = "audio/wav",
    ) -> TurnResult:
        """Transcribe caller audio and run a turn with the transcript."""
        async for _ in self.stream_audio(audio, language=language, mime_type=mime_type):
            pass
        return self._last_result

    async def stream_audio(
        self,
        audio: bytes,
        language: Optional[str] = None,
        mime_type: str = "audio/wav",
    ) -> AsyncIterator[ChatEvent]:
        """Transcribe caller audio and stream a turn with the transcript."""
        self._ensure_idle()
        if self.audio is None:
            raise ConfigurationError("No audio controller configured")

        events = self._run_turn(
            [],
            audio_input=(audio, language or self.config.transcription_language, mime_type),
        )
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def cancel(self) -> bool:
        """Cancel the turn in flight and wait until it has unwound.

        Returns:
            True if a running turn was cancelled
        """
        task = self._turn_task
        if task is None or task.done():
            return False
        logger.info(f"Cancelling turn {self._turn.turn_id if self._turn else '?'}")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    def submit_tool_output(
        self,
        call_id: str,
        output: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> None:
        """Provide the output of a tool call surfaced by TOOL_CALL_UNHANDLED.

        Raises:
            ValidationError: If no call with that id is waiting
        """
        if output is None and error is None:
            raise ValidationError("Either output or error is required", field="output")
        if not self.tool_runner.submit(call_id, output=output, error=error):
            raise ValidationError(f"No tool call {call_id} is waiting for output", field="call_id")

    def resolve_approval(
        self,
        approval_id: str,
        approved: bool,
        reason: Optional[str] = None,
    ) -> None:
        """Approve or deny a gated tool call.

        Raises:
            ValidationError: If no approval with that id is pending
        """
        if not self.approvals.resolve(approval_id, approved, reason):
            raise ValidationError(f"No pending approval {approval_id}", field="approval_id")

    # ============================================
    # Conversations
    # ============================================

    async def new_conversation(
        self, metadata: Optional[ConversationMetadata] = None
    ) -> Conversation:
        """Start a fresh conversation and make it active."""
        self._ensure_idle()
        return await self.conversations.new(metadata)

    async def load_conversation(self, conversation_id: str) -> Conversation:
        """Load a stored conversation and make it active.

        Raises:
            NotFoundError: If the conversation does not exist
            ConversationBusyError: If another controller holds it
        """
        self._ensure_idle()
        return await self.conversations.load(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        self._ensure_idle()
        await self.conversations.delete(conversation_id)

    async def list_conversations(
        self, filter: Optional[ConversationFilter] = None
    ) -> list[Conversation]:
        return await self.conversations.list_conversations(filter)

    async def flush(self) -> None:
        """Write unsaved changes of the active conversation to the store."""
        await self.conversations.flush()

    async def close(self) -> None:
        """Cancel any running turn, flush and release the conversation."""
        if self._closed:
            return
        self._closed = True
        await self.cancel()
        self.approvals.cancel_all()
        await self.conversations.close()
        logger.info("Session controller closed")

    async def __aenter__(self) -> SessionController:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ============================================
    # Turn plumbing
    # ============================================

    @property
    def _last_result(self) -> TurnResult:
        if self._turn is not None and self._turn.result is not None:
            return self._turn.result
        return TurnResult(status=TurnStatus.CANCELLED)

    def _ensure_idle(self) -> None:
        if self._closed:
            raise ValidationError("Session controller is closed")
        if self.is_busy:
            raise ValidationError("A turn is already in progress")

    def _coerce_input(self, message: TurnInput) -> list[Item]:
        """Validate caller input and turn it into the pending user message."""
        if isinstance(message, str):
            if not message.strip():
                raise ValidationError("Message must not be empty", field="message")
            if len(message) > MAX_MESSAGE_LENGTH:
                raise ValidationError(
                    f"Message exceeds {MAX_MESSAGE_LENGTH} characters", field="message"
                )
            return [MessageItem.user(message)]

        if isinstance(message, MessageItem):
            if message.role != MessageRole.USER:
                raise ValidationError("Turn input must be a user message", field="role")
            item = message
        elif isinstance(message, list) and all(isinstance(p, ContentPart) for p in message):
            item = MessageItem(role=MessageRole.USER, content=list(message))
        else:
            raise ValidationError(
                f"Unsupported input type {type(message).__name__}", field="message"
            )

        if not any(p.text and p.text.strip() or p.url for p in item.content):
            raise ValidationError("Message must not be empty", field="message")
        item.freeze()
        return [item]

    async def _run_turn(
        self,
        pending: list[Item],
        audio_input: Optional[tuple[bytes, Optional[str], str]] = None,
    ) -> AsyncIterator[ChatEvent]:
        self._ensure_idle()

        turn = _Turn(items=list(pending), audio_input=audio_input)
        stream = TurnEventStream(turn.turn_id)
        self._turn = turn
        self._events = stream

        task = asyncio.create_task(self._execute_turn(turn))
        task.add_done_callback(lambda _: stream.close())
        self._turn_task = task

        try:
            async for event in stream:
                yield event

            if turn.result is None:
                # Cancelled before the turn started running
                turn.result = TurnResult(
                    status=TurnStatus.CANCELLED,
                    conversation_id=turn.conversation_id,
                    turn_id=turn.turn_id,
                )
                yield stream.build(ChatEventType.CANCEL)
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            if self._events is stream:
                self._events = None

    def _emit(self, event_type: ChatEventType, **fields: Any) -> None:
        if self._events is not None:
            self._events.emit(event_type, **fields)

    def _on_state_change(self, previous: TurnState, current: TurnState) -> None:
        self._emit(
            ChatEventType.STATE_CHANGED,
            state=current.value,
            metadata={"previous": previous.value},
        )

    async def _execute_turn(self, turn: _Turn) -> None:
        try:
            turn.result = await self._drive(turn)
        except asyncio.CancelledError:
            turn.result = self._finish_cancelled(turn)
        except GenAgentError as e:
            turn.result = self._finish_failed(turn, e)
        except Exception as e:
            logger.exception(f"Unexpected error in turn {turn.turn_id}: {e}")
            turn.result = self._finish_failed(
                turn, GenAgentError(f"Unexpected error: {e}", cause=e)
            )

    async def _drive(self, turn: _Turn) -> TurnResult:
        sm = self.state_machine
        sm.transition(TurnState.DISPATCHED)
        logger.info(f"Turn {turn.turn_id} started")
        self._emit(ChatEventType.TURN_STARTED, metadata={"turn_id": turn.turn_id})
        if turn.audio_input is not None:
            await self._transcribe_input(turn)

        conversation = await self.conversations.get_or_create()
        turn.conversation_id = conversation.id
        provider = self.providers.get(self.config.chat_service)

        turn.summary = await self.assembler.summarize_if_needed(conversation)
        if turn.summary is not None:
            self._emit(
                ChatEventType.SUMMARY_UPDATED,
                content=turn.summary.summary,
                metadata={
                    "summarized_through": turn.summary.summarized_through,
                    "folded_items": turn.summary.folded_items,
                },
            )

        tools = self.tools.definitions()
        tool_choice = self.config.tool_choice
        depth = 0
        tools_disabled = False

        while True:
            payload = await self.assembler.assemble(
                conversation,
                turn.items,
                tools=tools,
                tool_choice=tool_choice,
                summary=turn.summary,
            )
            sm.transition(TurnState.AWAITING_PROVIDER_RESPONSE)
            message, calls = await self._call_provider(turn, provider, payload)
            turn.rounds += 1
            turn.final_message = message
            if message is not None:
                turn.items.append(message)

            if not calls:
                break

            turn.items.extend(calls)
            sm.transition(TurnState.TOOL_CALL_PENDING)

            if tools_disabled:
                raise MalformedResponseError(
                    "Provider requested tools after tools were disabled",
                    provider=provider.name,
                )

            if depth >= self.config.max_tool_call_depth:
                logger.warning(
                    f"Turn {turn.turn_id} reached the tool call depth limit "
                    f"({self.config.max_tool_call_depth}), disabling tools"
                )
                outputs = await self._reject_over_depth(calls)
                turn.items.extend(outputs)
                tools, tool_choice, tools_disabled = [], ToolChoice.NONE, True
                continue

            depth += 1
            outputs = await self._run_tools(calls, tool_choice, provider)
            turn.items.extend(outputs)
            if tool_choice == ToolChoice.REQUIRED:
                tool_choice = ToolChoice.AUTO

        return await self._finalize(turn, conversation)

    async def _call_provider(
        self,
        turn: _Turn,
        provider: IChatProvider,
        payload: RequestPayload,
    ) -> tuple[Optional[MessageItem], list[ToolCallItem]]:
        """Stream one provider answer into the turn.

        Recoverable provider errors are retried while nothing of the
        attempt has reached the caller.
        """
        cache_key = None
        if self.response_cache is not None and not payload.tools:
            cache_key = payload.fingerprint()
            cached = self.response_cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Response cache hit for turn {turn.turn_id}")
                if cached.text:
                    self.state_machine.transition(TurnState.STREAMING_PARTIAL)
                    self._emit(ChatEventType.TEXT_DELTA, content=cached.text, metadata={"cached": True})
                turn.add_usage(cached.usage)
                return MessageItem.assistant(cached.text), []

        timeout = self.config.provider_timeout_seconds

        async def attempt() -> tuple[Optional[MessageItem], list[ToolCallItem], ProviderResponse]:
            message: Optional[MessageItem] = None
            calls: list[ToolCallItem] = []
            names: dict[str, str] = {}
            response = ProviderResponse(model=payload.model)
            delivered = False

            events = aiter_with_timeout(
                provider.stream(payload),
                timeout,
                lambda: ProviderTimeoutError(
                    f"No response from {provider.name} within {timeout}s",
                    timeout_seconds=timeout,
                    provider=provider.name,
                ),
            )
            try:
                async for event in events:
                    if event.type == ChatEventType.TEXT_DELTA:
                        if not event.content:
                            continue
                        if message is None:
                            message = MessageItem.assistant("", partial=True)
                            self.state_machine.transition(TurnState.STREAMING_PARTIAL)
                        message.append_text(event.content)
                        delivered = True
                        self._emit(ChatEventType.TEXT_DELTA, content=event.content)
                    elif event.type == ChatEventType.TOOL_CALL_START:
                        names[event.tool_call_id] = event.tool_name
                        delivered = True
                        self._emit(
                            ChatEventType.TOOL_CALL_START,
                            tool_call_id=event.tool_call_id,
                            tool_name=event.tool_name,
                        )
                    elif event.type == ChatEventType.TOOL_CALL_END:
                        call = ToolCallItem(
                            call_id=event.tool_call_id,
                            name=event.tool_name or names.get(event.tool_call_id, ""),
                            arguments=event.tool_arguments or {},
                            raw_arguments=event.content,
                        )
                        calls.append(call)
                        delivered = True
                        self._emit(
                            ChatEventType.TOOL_CALL_END,
                            tool_call_id=call.call_id,
                            tool_name=call.name,
                            tool_arguments=call.arguments,
                            content=call.raw_arguments,
                        )
                    elif event.type == ChatEventType.DONE and event.metadata:
                        response.finish_reason = event.metadata.get("finish_reason")
                        response.usage = event.metadata.get("usage") or {}
            except ProviderError as e:
                if delivered:
                    raise _DeliveredStreamError(e) from e
                raise

            if message is not None:
                message.freeze()
                response.text = message.text
            return message, calls, response

        try:
            message, calls, response = await retry_async(
                attempt,
                max_attempts=self.config.provider_max_attempts,
                initial_delay=self.config.retry_initial_delay,
                backoff_factor=self.config.retry_backoff_factor,
                max_delay=self.config.retry_max_delay,
            )
        except _DeliveredStreamError as e:
            raise e.error

        turn.add_usage(response.usage)
        if cache_key is not None and not calls:
            self.response_cache.put(cache_key, response)
        return message, calls

    async def _transcribe_input(self, turn: _Turn) -> None:
        audio, language, mime_type = turn.audio_input
        turn.transcript, audio_item = await self.audio.transcribe(
            audio, language=language, mime_type=mime_type
        )
        turn.items[:0] = [audio_item, MessageItem.user(turn.transcript)]
        self._emit(ChatEventType.TRANSCRIPT, content=turn.transcript)

    async def _run_tools(
        self,
        calls: list[ToolCallItem],
        tool_choice: ToolChoice,
        provider: IChatProvider,
    ) -> list[ToolOutputItem]:
        sm = self.state_machine
        self.tool_runner.check_calls(calls, tool_choice)

        # Unregistered calls are resolved while the round is still pending
        rejected = await self.tool_runner.resolve_unregistered(
            self.tool_runner.unregistered(calls), self._emit
        )
        gated = self.tool_runner.needs_approval(calls)
        if gated:
            sm.transition(TurnState.AWAITING_APPROVAL)
            rejected.update(await self.tool_runner.request_approvals(gated, self._emit))

        if all(call.call_id in rejected for call in calls):
            outputs = await self.tool_runner.execute(calls, self._emit, rejected, ordered=True)
            sm.transition(TurnState.AWAITING_TOOL_RESUBMISSION)
            return outputs

        sm.transition(TurnState.EXECUTING_TOOLS)
        outputs = await self.tool_runner.execute(
            calls,
            self._emit,
            rejected,
            ordered=provider.requires_ordered_tool_outputs,
        )
        sm.transition(TurnState.AWAITING_TOOL_RESUBMISSION)
        return outputs

    async def _reject_over_depth(self, calls: list[ToolCallItem]) -> list[ToolOutputItem]:
        limit = self.config.max_tool_call_depth
        outputs = [
            ToolOutputItem.failure(
                call.call_id,
                f"Maximum tool call depth ({limit}) exceeded",
                tool_name=call.name,
                error_kind="tool_depth_exceeded",
            )
            for call in calls
        ]
        rejected = {o.call_id: o for o in outputs}
        outputs = await self.tool_runner.execute(calls, self._emit, rejected, ordered=True)
        self.state_machine.transition(TurnState.AWAITING_TOOL_RESUBMISSION)
        return outputs

    async def _finalize(self, turn: _Turn, conversation: Conversation) -> TurnResult:
        sm = self.state_machine
        sm.transition(TurnState.FINALIZING)

        final = turn.final_message
        if final is None:
            final = MessageItem.assistant("")
            turn.items.append(final)
            turn.final_message = final
        final.freeze()

        if self.config.speak_responses and self.audio is not None and final.text:
            await self._speak(turn, final.text)

        candidate = Conversation(id=conversation.id, items=[*conversation.items, *turn.items])
        try:
            candidate.validate_pairing()
        except ValueError as e:
            raise GenAgentError(f"Turn left tool calls unpaired: {e}") from e

        title = None
        if self.config.generate_titles and not conversation.metadata.title:
            title = await self.summarizer.generate_title(candidate.items)

        conversation.extend(turn.items)
        if turn.summary is not None:
            conversation.update_summary(turn.summary.summary, turn.summary.summarized_through)
        if title:
            conversation.metadata.title = title
        turn.committed = True

        turn.store_error = await asyncio.shield(self.conversations.persist())
        return self._finish_completed(turn)

    async def _speak(self, turn: _Turn, text: str) -> None:
        try:
            audio, audio_item = await self.audio.synthesize(text)
        except GenAgentError as e:
            logger.warning(f"Speech synthesis failed for turn {turn.turn_id}: {e}")
            self._emit(
                ChatEventType.ERROR,
                error=e.message,
                error_kind=e.kind,
                metadata={"fatal": False},
            )
            return
        turn.items.append(audio_item)
        turn.audio = audio
        self._emit(
            ChatEventType.AUDIO_OUTPUT,
            audio=audio,
            metadata={"mime_type": audio_item.mime_type, "size_bytes": audio_item.size_bytes},
        )

    # ============================================
    # Turn outcomes
    # ============================================

    def _finish_completed(self, turn: _Turn) -> TurnResult:
        if turn.store_error is not None:
            self._emit(
                ChatEventType.ERROR,
                error=turn.store_error.message,
                error_kind=turn.store_error.kind,
                metadata={"fatal": False},
            )
        if self.state_machine.state == TurnState.FINALIZING:
            self.state_machine.transition(TurnState.IDLE)

        result = TurnResult(
            status=TurnStatus.COMPLETED,
            conversation_id=turn.conversation_id,
            turn_id=turn.turn_id,
            message=turn.final_message,
            items=list(turn.items),
            store_error=turn.store_error,
            audio=turn.audio,
            rounds=turn.rounds,
        )
        logger.info(
            f"Turn {turn.turn_id} completed: {turn.rounds} provider calls, "
            f"{len(turn.items)} items"
        )
        self._emit(
            ChatEventType.DONE,
            metadata={
                "status": result.status.value,
                "conversation_id": turn.conversation_id,
                "rounds": turn.rounds,
                "usage": turn.usage,
                "events": self._events.counts() if self._events else {},
            },
        )
        return result

    def _finish_cancelled(self, turn: _Turn) -> TurnResult:
        if turn.committed:
            # The cancel landed after the turn was committed
            return self._finish_completed(turn)

        self.approvals.cancel_all()
        if self.state_machine.is_active:
            self.state_machine.stop(TurnState.CANCELLED)
        logger.info(f"Turn {turn.turn_id} cancelled, discarded {len(turn.items)} items")
        self._emit(ChatEventType.CANCEL, metadata={"discarded_items": len(turn.items)})
        return TurnResult(
            status=TurnStatus.CANCELLED,
            conversation_id=turn.conversation_id,
            turn_id=turn.turn_id,
            rounds=turn.rounds,
        )

    def _finish_failed(self, turn: _Turn, error: GenAgentError) -> TurnResult:
        if turn.committed:
            logger.error(f"Turn {turn.turn_id} failed after commit: {error}")
            return self._finish_completed(turn)

        self.approvals.cancel_all()
        if self.state_machine.is_active:
            self.state_machine.stop(TurnState.FAILED)
        logger.error(f"Turn {turn.turn_id} failed: {error}")
        self._emit(
            ChatEventType.ERROR,
            error=error.message,
            error_kind=error.kind,
            metadata={"fatal": True, "code": error.code, "recoverable": error.recoverable},
        )
        return TurnResult(
            status=TurnStatus.FAILED,
            conversation_id=turn.conversation_id,
            turn_id=turn.turn_id,
            error=error,
            rounds=turn.rounds,
        )
