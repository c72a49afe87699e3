"""
Conversation Manager.

Handles the lifecycle of the conversation held by one session controller:
creation, loading, persistence per policy, and the process-local lease
that keeps a conversation in at most one active controller.

This module extracts conversation-related responsibilities from
the SessionController to improve modularity and testability.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..config import PersistencePolicy
from ..domain.entities import Conversation, ConversationFilter, ConversationMetadata
from ..domain.ports import IConversationStore
from ..exceptions import ConversationBusyError, NotFoundError, StoreError
from ..memory.conversation import InMemoryConversationStore

logger = logging.getLogger(__name__)


class ConversationManager:
    """Manages the active conversation of one session controller.

    Persistence policies:
        IMMEDIATE: save after every finalized turn
        DEBOUNCED: save at most once per auto-save interval
        MANUAL: save only on flush()

    Usage:
        manager = ConversationManager(store, PersistencePolicy.IMMEDIATE)
        conversation = await manager.get_or_create(conversation_id)
        conversation.extend(turn_items)
        store_error = await manager.persist()
    """

    def __init__(
        self,
        conversation_store: Optional[IConversationStore] = None,
        policy: PersistencePolicy = PersistencePolicy.IMMEDIATE,
        auto_save_interval_seconds: float = 5.0,
    ):
        """Initialize the conversation manager.

        Args:
            conversation_store: Store for conversation persistence.
                If None, conversations live in process memory only.
            policy: When finalized turns are written to the store
            auto_save_interval_seconds: Debounce interval for DEBOUNCED
        """
        if conversation_store is None:
            logger.warning(
                "No conversation store available - conversations will be in-memory only"
            )
            conversation_store = InMemoryConversationStore()
        self.store = conversation_store
        self.policy = policy
        self.auto_save_interval_seconds = auto_save_interval_seconds
        self.conversation: Optional[Conversation] = None
        self.dirty = False
        self._save_task: Optional[asyncio.Task] = None
        self._save_lock = asyncio.Lock()

    # ============================================
    # Lease
    # ============================================

    def _acquire(self, conversation: Conversation) -> None:
        leases = self.store.leases
        holder = leases.get(conversation.id)
        if holder is not None and holder is not self:
            raise ConversationBusyError(conversation.id)
        leases[conversation.id] = self

    def _release(self) -> None:
        if self.conversation is None:
            return
        leases = self.store.leases
        if leases.get(self.conversation.id) is self:
            del leases[self.conversation.id]

    async def _activate(self, conversation: Conversation) -> Conversation:
        if self.conversation is not None and self.conversation.id != conversation.id:
            await self.deactivate()
        self._acquire(conversation)
        self.conversation = conversation
        self.dirty = False
        return conversation

    async def deactivate(self) -> None:
        """Flush pending changes and release the active conversation."""
        if self.conversation is None:
            return
        self._cancel_scheduled_save()
        if self.dirty:
            await self.flush()
        self._release()
        self.conversation = None

    # ============================================
    # Lifecycle
    # ============================================

    async def get_or_create(
        self,
        conversation_id: Optional[str] = None,
        metadata: Optional[ConversationMetadata] = None,
    ) -> Conversation:
        """Get the active, an existing or a new conversation.

        An unknown conversation_id falls back to creating a new conversation.

        Raises:
            ConversationBusyError: If another controller holds the conversation
        """
        if self.conversation is not None and conversation_id in (None, self.conversation.id):
            return self.conversation

        if conversation_id:
            try:
                conversation = await self.store.load(conversation_id)
                logger.debug(f"Retrieved existing conversation {conversation_id}")
                return await self._activate(conversation)
            except NotFoundError:
                logger.warning(f"Conversation {conversation_id} not found, creating a new one")

        return await self.new(metadata)

    async def new(self, metadata: Optional[ConversationMetadata] = None) -> Conversation:
        """Create a conversation and make it active."""
        conversation = await self.store.create(metadata)
        logger.info(f"Created new conversation {conversation.id}")
        return await self._activate(conversation)

    async def load(self, conversation_id: str) -> Conversation:
        """Load a conversation and make it active.

        Raises:
            NotFoundError: If the conversation does not exist
            ConversationBusyError: If another controller holds it
        """
        conversation = await self.store.load(conversation_id)
        logger.info(f"Loaded conversation {conversation_id} ({len(conversation.items)} items)")
        return await self._activate(conversation)

    async def delete(self, conversation_id: str) -> None:
        """Delete a conversation, releasing it first if it is active."""
        if self.conversation is not None and self.conversation.id == conversation_id:
            self._cancel_scheduled_save()
            self._release()
            self.conversation = None
            self.dirty = False
        elif self.store.leases.get(conversation_id) not in (None, self):
            raise ConversationBusyError(conversation_id)
        await self.store.delete(conversation_id)
        logger.info(f"Deleted conversation {conversation_id}")

    async def list_conversations(
        self, filter: Optional[ConversationFilter] = None
    ) -> list[Conversation]:
        return await self.store.list(filter)

    # ============================================
    # Persistence
    # ============================================

    def mark_dirty(self) -> None:
        self.dirty = True

    async def persist(self) -> Optional[StoreError]:
        """Apply the persistence policy after a finalized turn.

        Returns:
            The StoreError of a failed immediate save (the conversation stays
            dirty so the next save retries), otherwise None
        """
        self.mark_dirty()

        if self.policy == PersistencePolicy.IMMEDIATE:
            try:
                await self.flush()
            except StoreError as e:
                logger.warning(f"Saving conversation failed, keeping it dirty: {e}")
                return e
        elif self.policy == PersistencePolicy.DEBOUNCED:
            self._schedule_save()
        return None

    async def flush(self) -> None:
        """Save the active conversation now if it has unsaved changes.

        Raises:
            StoreError: If the store write fails
        """
        if self.conversation is None or not self.dirty:
            return
        async with self._save_lock:
            if not self.dirty:
                return
            snapshot = self.conversation.copy()
            self.dirty = False
            try:
                await self.store.save(snapshot)
            except StoreError:
                self.dirty = True
                raise
            except Exception as e:
                self.dirty = True
                raise StoreError(
                    f"Failed to save conversation {snapshot.id}: {e}",
                    conversation_id=snapshot.id,
                    cause=e,
                ) from e
        logger.debug(f"Saved conversation {snapshot.id} ({len(snapshot.items)} items)")

    def _schedule_save(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            return
        self._save_task = asyncio.create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self.auto_save_interval_seconds)
        try:
            await self.flush()
        except StoreError as e:
            logger.warning(f"Auto-save failed, will retry on the next save: {e}")

    def _cancel_scheduled_save(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = None

    async def close(self) -> None:
        """Flush, release the lease and stop background saves."""
        try:
            await self.deactivate()
        finally:
            self._cancel_scheduled_save()
