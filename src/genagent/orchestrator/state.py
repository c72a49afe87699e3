"""
Turn State Machine.

Tracks where the session controller is within a turn and rejects
transitions that the turn lifecycle does not allow.

    IDLE -> DISPATCHED -> AWAITING_PROVIDER_RESPONSE -> [STREAMING_PARTIAL]
         -> TOOL_CALL_PENDING -> [AWAITING_APPROVAL] -> EXECUTING_TOOLS
         -> AWAITING_TOOL_RESUBMISSION -> AWAITING_PROVIDER_RESPONSE ...
         -> FINALIZING -> IDLE

A round in which every call was rejected skips EXECUTING_TOOLS.
Unregistered calls under the raise-event policy wait in TOOL_CALL_PENDING.

Any active state may move to CANCELLED or FAILED. Both are terminal for
the turn; the next turn starts from them as from IDLE.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from ..exceptions import InvalidStateTransition

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    """Session controller states."""

    IDLE = "idle"
    DISPATCHED = "dispatched"
    AWAITING_PROVIDER_RESPONSE = "awaiting_provider_response"
    STREAMING_PARTIAL = "streaming_partial"
    TOOL_CALL_PENDING = "tool_call_pending"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_TOOL_RESUBMISSION = "awaiting_tool_resubmission"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnState.IDLE, TurnState.CANCELLED, TurnState.FAILED)


_STOP = {TurnState.CANCELLED, TurnState.FAILED}

ALLOWED_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.IDLE: {TurnState.DISPATCHED},
    TurnState.DISPATCHED: {TurnState.AWAITING_PROVIDER_RESPONSE} | _STOP,
    TurnState.AWAITING_PROVIDER_RESPONSE: {
        TurnState.STREAMING_PARTIAL,
        TurnState.TOOL_CALL_PENDING,
        TurnState.FINALIZING,
    } | _STOP,
    TurnState.STREAMING_PARTIAL: {
        TurnState.TOOL_CALL_PENDING,
        TurnState.FINALIZING,
    } | _STOP,
    TurnState.TOOL_CALL_PENDING: {
        TurnState.AWAITING_APPROVAL,
        TurnState.EXECUTING_TOOLS,
        TurnState.AWAITING_TOOL_RESUBMISSION,
    } | _STOP,
    TurnState.AWAITING_APPROVAL: {
        TurnState.EXECUTING_TOOLS,
        TurnState.AWAITING_TOOL_RESUBMISSION,
    } | _STOP,
    TurnState.EXECUTING_TOOLS: {TurnState.AWAITING_TOOL_RESUBMISSION} | _STOP,
    TurnState.AWAITING_TOOL_RESUBMISSION: {TurnState.AWAITING_PROVIDER_RESPONSE} | _STOP,
    TurnState.FINALIZING: {TurnState.IDLE} | _STOP,
    TurnState.CANCELLED: {TurnState.DISPATCHED, TurnState.IDLE},
    TurnState.FAILED: {TurnState.DISPATCHED, TurnState.IDLE},
}


class TurnStateMachine:
    """Enforces the allowed turn state transitions.

    Usage:
        machine = TurnStateMachine(on_change=lambda old, new: ...)
        machine.transition(TurnState.DISPATCHED)
    """

    def __init__(
        self,
        on_change: Optional[Callable[[TurnState, TurnState], None]] = None,
    ):
        self._state = TurnState.IDLE
        self.on_change = on_change

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_active(self) -> bool:
        """True while a turn is in progress."""
        return not self._state.is_terminal

    def can_transition(self, target: TurnState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._state]

    def transition(self, target: TurnState) -> None:
        """Move to target.

        Raises:
            InvalidStateTransition: If the lifecycle does not allow it
        """
        if not self.can_transition(target):
            raise InvalidStateTransition(self._state.value, target.value)
        previous = self._state
        self._state = target
        logger.debug(f"Turn state {previous.value} -> {target.value}")
        if self.on_change is not None:
            self.on_change(previous, target)

    def stop(self, target: TurnState) -> None:
        """Move to CANCELLED or FAILED unless the turn already ended there."""
        if target not in _STOP:
            raise ValueError(f"{target.value} is not a stop state")
        if self._state in _STOP:
            return
        self.transition(target)
