"""
Tool Runner.

Handles one round of tool calls requested by the model: approval gating
for tools that require it, routing to the ToolRegistry, the unhandled-call
policy for unknown tools, parallel or sequential execution and the order
in which outputs are handed back to the provider.

Every call of a round ends with exactly one ToolOutputItem. Tool failures,
timeouts, denials and unknown tools become error outputs; only a misuse
of tool_choice=REQUIRED fails the turn.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from ..config import AgentConfig, UnhandledToolPolicy
from ..domain.entities import ChatEventType, ToolCallItem, ToolChoice, ToolOutputItem
from ..exceptions import ApprovalDenied, ToolNotFoundError, ValidationError
from ..tools.registry import ToolRegistry
from .approval_manager import ApprovalDecision, ApprovalManager

logger = logging.getLogger(__name__)

# Emits one event: emit(event_type, **fields)
EmitFn = Callable[..., None]

MAX_RESULT_EVENT_CHARS = 1000


class ToolRunner:
    """Executes a round of tool calls with error handling.

    Usage:
        runner = ToolRunner(registry, approvals, config)
        runner.check_calls(calls, tool_choice)
        rejected = await runner.request_approvals(calls, emit)
        outputs = await runner.execute(calls, emit, rejected, ordered=True)
    """

    def __init__(
        self,
        tool_registry: ToolRegistry,
        approvals: ApprovalManager,
        config: AgentConfig,
    ):
        """Initialize the tool runner.

        Args:
            tool_registry: Registry for tool discovery and execution
            approvals: Approval bookkeeping for gated tools
            config: Agent configuration (timeouts, policies, parallelism)
        """
        self.tools = tool_registry
        self.approvals = approvals
        self.config = config
        self._unhandled: dict[str, asyncio.Future] = {}

    # ============================================
    # Validation and approval
    # ============================================

    def check_calls(self, calls: list[ToolCallItem], tool_choice: ToolChoice) -> None:
        """Reject a round that forced tool use onto an unregistered tool.

        Raises:
            ValidationError: If tool_choice is REQUIRED and a name is unknown
        """
        if tool_choice != ToolChoice.REQUIRED:
            return
        unknown = [c.name for c in calls if not self.tools.has(c.name)]
        if unknown:
            raise ValidationError(
                f"Model called unregistered tool(s) {unknown} with tool_choice=required",
                field="tool_choice",
            )

    def unregistered(self, calls: list[ToolCallItem]) -> list[ToolCallItem]:
        """Calls naming a tool the registry does not know."""
        return [c for c in calls if not self.tools.has(c.name)]

    async def resolve_unregistered(
        self,
        calls: list[ToolCallItem],
        emit: EmitFn,
    ) -> dict[str, ToolOutputItem]:
        """Apply the unhandled-call policy to unregistered calls.

        Under RAISE_EVENT this waits until every call has a submitted
        output or has timed out.

        Returns:
            Outputs by call_id
        """
        results = await asyncio.gather(*(self._handle_unhandled(c, emit) for c in calls))
        return {output.call_id: output for output in results}

    def needs_approval(self, calls: list[ToolCallItem]) -> list[ToolCallItem]:
        """Calls whose registration requires approval before execution."""
        gated = []
        for call in calls:
            registration = self.tools.get(call.name)
            if registration is not None and registration.definition.requires_approval:
                gated.append(call)
        return gated

    async def request_approvals(
        self,
        calls: list[ToolCallItem],
        emit: EmitFn,
    ) -> dict[str, ToolOutputItem]:
        """Ask for approval of every gated call and wait for all decisions.

        Returns:
            Rejection outputs by call_id for denied or timed-out calls
        """
        results = await asyncio.gather(*(self._approve(call, emit) for call in calls))
        return {output.call_id: output for output in results if output is not None}

    async def _approve(self, call: ToolCallItem, emit: EmitFn) -> Optional[ToolOutputItem]:
        registration = self.tools.get(call.name)
        server_label = registration.definition.server_label if registration else None
        request = self.approvals.request(call, server_label=server_label)

        emit(
            ChatEventType.APPROVAL_REQUIRED,
            tool_call_id=call.call_id,
            tool_name=call.name,
            tool_arguments=call.arguments,
            approval_id=request.approval_id,
            metadata={"server_label": server_label},
        )

        decision = await self.approvals.wait(
            request.approval_id, self.config.approval_timeout_seconds
        )
        emit(
            ChatEventType.APPROVAL_RESOLVED,
            tool_call_id=call.call_id,
            tool_name=call.name,
            approval_id=request.approval_id,
            content=decision.value,
            metadata={"reason": request.reason} if request.reason else None,
        )

        if decision == ApprovalDecision.APPROVED:
            return None

        denied = ApprovalDenied(
            call.name,
            reason=request.reason,
            timed_out=decision == ApprovalDecision.TIMED_OUT,
        )
        logger.warning(str(denied))
        return ToolOutputItem.failure(
            call.call_id,
            denied.message,
            tool_name=call.name,
            error_kind=denied.kind,
            approval=decision.value,
        )

    # ============================================
    # Execution
    # ============================================

    async def execute(
        self,
        calls: list[ToolCallItem],
        emit: EmitFn,
        rejected: Optional[dict[str, ToolOutputItem]] = None,
        ordered: bool = True,
    ) -> list[ToolOutputItem]:
        """Execute a round of tool calls.

        Args:
            calls: Calls in the order the model issued them
            emit: Event callback
            rejected: Pre-computed outputs (denials, unhandled calls) by call_id
            ordered: Return outputs in call order rather than completion order

        Returns:
            One output per call
        """
        rejected = rejected or {}
        completed: list[ToolOutputItem] = []

        async def run_one(call: ToolCallItem) -> ToolOutputItem:
            if call.call_id in rejected:
                output = rejected[call.call_id]
            else:
                output = await self._execute_call(call, emit)
            completed.append(output)
            emit(
                ChatEventType.TOOL_RESULT,
                tool_call_id=call.call_id,
                tool_name=call.name,
                content=output.content[:MAX_RESULT_EVENT_CHARS],
                metadata={"is_error": output.is_error},
            )
            return output

        if self.config.parallel_tool_calls and len(calls) > 1:
            in_call_order = await asyncio.gather(*(run_one(c) for c in calls))
        else:
            in_call_order = [await run_one(c) for c in calls]

        return list(in_call_order) if ordered else completed

    async def _execute_call(self, call: ToolCallItem, emit: EmitFn) -> ToolOutputItem:
        logger.info(f"Executing tool: {call.name}")
        registration = self.tools.get(call.name)
        timeout = None
        if registration is not None and not (
            registration.definition.timeout_seconds or self.tools.default_timeout_seconds
        ):
            timeout = self.config.tool_timeout_seconds

        try:
            return await self.tools.dispatch(call, timeout_seconds=timeout)
        except ToolNotFoundError:
            return await self._handle_unhandled(call, emit)

    async def _handle_unhandled(self, call: ToolCallItem, emit: EmitFn) -> ToolOutputItem:
        policy = self.config.unhandled_tool_policy
        if policy == UnhandledToolPolicy.AUTO_REJECT:
            logger.warning(f"Rejecting call to unregistered tool {call.name}")
            return ToolOutputItem.failure(
                call.call_id,
                f"Tool '{call.name}' is not available",
                tool_name=call.name,
                error_kind=ToolNotFoundError.kind,
            )

        timeout = self.config.unhandled_tool_timeout_seconds
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._unhandled[call.call_id] = future
        emit(
            ChatEventType.TOOL_CALL_UNHANDLED,
            tool_call_id=call.call_id,
            tool_name=call.name,
            tool_arguments=call.arguments,
            metadata={"timeout_seconds": timeout},
        )
        try:
            output = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No output submitted for tool {call.name} within {timeout}s")
            return ToolOutputItem.failure(
                call.call_id,
                f"No output was submitted for tool '{call.name}' within {timeout}s",
                tool_name=call.name,
                error_kind="tool_timeout",
            )
        finally:
            self._unhandled.pop(call.call_id, None)
        return output

    def submit(
        self,
        call_id: str,
        output: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Resolve a tool call surfaced as unhandled.

        Returns:
            True if the call was waiting, False otherwise
        """
        future = self._unhandled.get(call_id)
        if future is None or future.done():
            return False
        if error is not None:
            item = ToolOutputItem.failure(call_id, error, submitted=True)
        else:
            text = output if isinstance(output, str) else _to_text(output)
            item = ToolOutputItem.success(call_id, text, submitted=True)
        future.set_result(item)
        logger.info(f"Received submitted output for tool call {call_id}")
        return True

    @property
    def waiting_calls(self) -> list[str]:
        """Call ids currently waiting for a submitted output."""
        return list(self._unhandled)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    return json.dumps(value, default=str)
