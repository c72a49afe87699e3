"""
Approval Manager.

Manages pending approvals for tool calls that require a human decision
(MCP tools registered with ``require_approval``). Each request is keyed by
an approval id and resolved exactly once: by the caller through
``resolve()``, by an optional approval handler, or by timing out.

This module keeps approval bookkeeping out of the session controller,
the same way pending confirmations are kept out of the chat loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..domain.entities import ToolCallItem, new_id, utcnow

logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    """How an approval request ended."""

    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


@dataclass
class ApprovalRequest:
    """A pending approval for one tool call.

    Attributes:
        approval_id: Identifier used to resolve the request
        tool_call: Call awaiting the decision
        server_label: MCP server exposing the tool
        reason: Reason supplied with the decision
    """

    tool_call: ToolCallItem
    server_label: Optional[str] = None
    approval_id: str = field(default_factory=lambda: new_id("apr"))
    created_at: datetime = field(default_factory=utcnow)
    reason: Optional[str] = None
    future: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def tool_name(self) -> str:
        return self.tool_call.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "call_id": self.tool_call.call_id,
            "tool_name": self.tool_call.name,
            "arguments": self.tool_call.arguments,
            "server_label": self.server_label,
            "created_at": self.created_at.isoformat(),
        }


ApprovalHandler = Callable[[ApprovalRequest], Awaitable[bool]]


class ApprovalManager:
    """Tracks approval requests and their decisions.

    Usage:
        manager = ApprovalManager()
        request = manager.request(tool_call, server_label="docs")
        # ...surface request.approval_id to the user...
        decision = await manager.wait(request.approval_id, timeout=300)

        # elsewhere
        manager.resolve(approval_id, approved=True)

    With a handler, decisions are made programmatically:
        manager = ApprovalManager(handler=my_policy)
    """

    def __init__(self, handler: Optional[ApprovalHandler] = None):
        """Initialize the approval manager.

        Args:
            handler: Optional coroutine deciding approvals without a caller
        """
        self.handler = handler
        self._pending: dict[str, ApprovalRequest] = {}

    def request(
        self,
        tool_call: ToolCallItem,
        server_label: Optional[str] = None,
    ) -> ApprovalRequest:
        """Register a new pending approval."""
        loop = asyncio.get_running_loop()
        request = ApprovalRequest(
            tool_call=tool_call,
            server_label=server_label,
            future=loop.create_future(),
        )
        self._pending[request.approval_id] = request
        logger.info(
            f"Approval {request.approval_id} requested for tool "
            f"'{tool_call.name}' (call {tool_call.call_id})"
        )
        return request

    def resolve(self, approval_id: str, approved: bool, reason: Optional[str] = None) -> bool:
        """Record a decision.

        Returns:
            True if the approval was pending, False if unknown or already decided
        """
        request = self._pending.get(approval_id)
        if request is None or request.future is None or request.future.done():
            logger.warning(f"No pending approval {approval_id}")
            return False

        request.reason = reason
        request.future.set_result(bool(approved))
        logger.info(f"Approval {approval_id} {'approved' if approved else 'denied'}")
        return True

    async def wait(self, approval_id: str, timeout: float) -> ApprovalDecision:
        """Wait for the decision on a pending approval.

        The request is removed from the pending set however it ends,
        including cancellation.
        """
        request = self._pending.get(approval_id)
        if request is None or request.future is None:
            raise KeyError(approval_id)

        try:
            if self.handler is not None and not request.future.done():
                approved = await asyncio.wait_for(self.handler(request), timeout)
            else:
                approved = await asyncio.wait_for(asyncio.shield(request.future), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Approval {approval_id} timed out after {timeout}s")
            return ApprovalDecision.TIMED_OUT
        finally:
            self._pending.pop(approval_id, None)
            if not request.future.done():
                request.future.cancel()

        return ApprovalDecision.APPROVED if approved else ApprovalDecision.DENIED

    def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        return self._pending.get(approval_id)

    def pending(self) -> list[ApprovalRequest]:
        """Pending approvals, oldest first."""
        return sorted(self._pending.values(), key=lambda r: r.created_at)

    def cancel_all(self) -> int:
        """Cancel every pending approval.

        Returns:
            Number of approvals cancelled
        """
        count = 0
        for request in list(self._pending.values()):
            if request.future is not None and not request.future.done():
                request.future.cancel()
                count += 1
        self._pending.clear()
        if count:
            logger.info(f"Cancelled {count} pending approvals")
        return count
