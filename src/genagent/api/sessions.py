"""
Session pool for the agent API.

Keeps one SessionController per conversation so that concurrent requests
for the same conversation share a controller (and its lease) while
different conversations run independently.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Callable, Optional

from ..domain.entities import Conversation
from ..domain.ports import IConversationStore
from ..exceptions import NotFoundError
from ..orchestrator import ApprovalRequest, SessionController

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], SessionController]


class SessionPool:
    """Session controllers keyed by conversation id.

    Usage:
        pool = SessionPool(lambda: SessionController(providers, store), store)
        session = await pool.acquire(conversation_id)
        result = await session.send("hi")
    """

    def __init__(
        self,
        factory: SessionFactory,
        store: IConversationStore,
        max_sessions: int = 100,
    ):
        """Initialize the pool.

        Args:
            factory: Builds a controller wired to ``store``
            store: Conversation store shared by every controller
            max_sessions: Idle sessions beyond this are closed, oldest first
        """
        self.factory = factory
        self.store = store
        self.max_sessions = max_sessions
        self._sessions: OrderedDict[str, SessionController] = OrderedDict()
        self._lock = asyncio.Lock()

    async def acquire(self, conversation_id: Optional[str] = None) -> SessionController:
        """Return the session for a conversation, creating it if needed.

        An unknown or missing conversation_id starts a new conversation.
        """
        async with self._lock:
            if conversation_id and conversation_id in self._sessions:
                self._sessions.move_to_end(conversation_id)
                return self._sessions[conversation_id]

            session = self.factory()
            conversation: Optional[Conversation] = None
            if conversation_id:
                try:
                    conversation = await session.load_conversation(conversation_id)
                except NotFoundError:
                    logger.warning(f"Conversation {conversation_id} not found, starting a new one")
            if conversation is None:
                conversation = await session.new_conversation()

            self._sessions[conversation.id] = session
            await self._evict_idle()
            logger.info(f"Opened session for conversation {conversation.id}")
            return session

    def get(self, conversation_id: str) -> Optional[SessionController]:
        return self._sessions.get(conversation_id)

    def sessions(self) -> list[SessionController]:
        return list(self._sessions.values())

    def find_by_approval(self, approval_id: str) -> Optional[SessionController]:
        for session in self._sessions.values():
            if session.approvals.get(approval_id) is not None:
                return session
        return None

    def pending_approvals(self) -> list[tuple[Optional[str], ApprovalRequest]]:
        """Pending approvals across sessions as (conversation_id, request)."""
        pending = []
        for conversation_id, session in self._sessions.items():
            for request in session.pending_approvals:
                pending.append((conversation_id, request))
        return pending

    async def release(self, conversation_id: str) -> None:
        """Close and forget the session of a conversation."""
        session = self._sessions.pop(conversation_id, None)
        if session is not None:
            await session.close()

    async def delete(self, conversation_id: str) -> None:
        """Delete a conversation, closing its session first.

        Raises:
            NotFoundError: If the conversation does not exist
        """
        session = self._sessions.pop(conversation_id, None)
        if session is not None:
            await session.cancel()
            await session.delete_conversation(conversation_id)
            await session.close()
        else:
            await self.store.delete(conversation_id)

    async def _evict_idle(self) -> None:
        while len(self._sessions) > self.max_sessions:
            victim = next(
                (cid for cid, s in self._sessions.items() if not s.is_busy),
                None,
            )
            if victim is None:
                return
            session = self._sessions.pop(victim)
            await session.close()
            logger.debug(f"Evicted idle session for conversation {victim}")

    async def close(self) -> None:
        """Close every session."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()

    def __len__(self) -> int:
        return len(self._sessions)
