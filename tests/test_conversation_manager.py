"""Tests for ConversationManager leases and persistence policies."""

import asyncio
import gc

import pytest

from genagent.config import PersistencePolicy
from genagent.domain.entities import MessageItem
from genagent.exceptions import ConversationBusyError, NotFoundError, StoreError
from genagent.memory.conversation import InMemoryConversationStore
from genagent.orchestrator.conversation_manager import ConversationManager


class CountingStore(InMemoryConversationStore):
    """In-memory store that counts saves and can be made to fail."""

    def __init__(self):
        super().__init__()
        self.saves = 0
        self.fail_with = None

    async def save(self, conversation):
        if self.fail_with is not None:
            raise self.fail_with
        self.saves += 1
        await super().save(conversation)


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def managers(store):
    created = []

    def factory(**kwargs):
        manager = ConversationManager(store, **kwargs)
        created.append(manager)
        return manager

    yield factory

    for manager in created:
        manager._cancel_scheduled_save()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_get_or_create_new(self, managers):
        manager = managers()
        conversation = await manager.get_or_create()
        assert manager.conversation is conversation
        assert await manager.get_or_create() is conversation
        assert await manager.get_or_create(conversation.id) is conversation

    @pytest.mark.asyncio
    async def test_unknown_id_falls_back_to_new(self, managers):
        conversation = await managers().get_or_create("missing-id")
        assert conversation.id != "missing-id"

    @pytest.mark.asyncio
    async def test_load_unknown_raises(self, managers):
        with pytest.raises(NotFoundError):
            await managers().load("missing-id")

    @pytest.mark.asyncio
    async def test_switching_releases_previous(self, managers, store):
        first_manager = managers()
        first = await first_manager.new()
        await first_manager.new()

        # The first conversation is free again
        assert (await managers().load(first.id)).id == first.id

    @pytest.mark.asyncio
    async def test_default_store_is_in_memory(self):
        manager = ConversationManager()
        assert isinstance(manager.store, InMemoryConversationStore)


class TestLease:
    @pytest.mark.asyncio
    async def test_busy_in_second_manager(self, managers):
        conversation = await managers().new()
        with pytest.raises(ConversationBusyError):
            await managers().load(conversation.id)

    @pytest.mark.asyncio
    async def test_released_on_close(self, managers):
        holder = managers()
        conversation = await holder.new()
        await holder.close()
        assert (await managers().load(conversation.id)).id == conversation.id

    @pytest.mark.asyncio
    async def test_separate_stores_do_not_conflict(self, managers, store):
        conversation = await managers().new()
        other_store = InMemoryConversationStore()
        await other_store.save(conversation)
        other = ConversationManager(other_store)
        assert (await other.load(conversation.id)).id == conversation.id

    @pytest.mark.asyncio
    async def test_collected_holder_releases_lease(self, store):
        holder = ConversationManager(store)
        conversation = await holder.new()
        assert store.leases[conversation.id] is holder

        del holder
        gc.collect()

        assert conversation.id not in store.leases
        reloaded = await ConversationManager(store).load(conversation.id)
        assert reloaded.id == conversation.id

    @pytest.mark.asyncio
    async def test_delete_held_elsewhere(self, managers):
        conversation = await managers().new()
        with pytest.raises(ConversationBusyError):
            await managers().delete(conversation.id)

    @pytest.mark.asyncio
    async def test_delete_active(self, managers, store):
        manager = managers()
        conversation = await manager.new()
        await manager.delete(conversation.id)
        assert manager.conversation is None
        with pytest.raises(NotFoundError):
            await store.load(conversation.id)


class TestPersistence:
    @pytest.mark.asyncio
    async def test_immediate_saves_each_turn(self, managers, store):
        manager = managers()
        conversation = await manager.new()
        conversation.append(MessageItem.user("hi"))

        assert await manager.persist() is None

        assert store.saves == 1
        assert not manager.dirty
        assert len((await store.load(conversation.id)).items) == 1

    @pytest.mark.asyncio
    async def test_immediate_failure_returned_and_kept_dirty(self, managers, store):
        manager = managers()
        await manager.new()
        store.fail_with = StoreError("disk full")

        error = await manager.persist()

        assert isinstance(error, StoreError)
        assert manager.dirty

        store.fail_with = None
        await manager.flush()
        assert not manager.dirty

    @pytest.mark.asyncio
    async def test_unexpected_failure_wrapped(self, managers, store):
        manager = managers()
        await manager.new()
        store.fail_with = RuntimeError("socket closed")

        error = await manager.persist()

        assert isinstance(error, StoreError)
        assert isinstance(error.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_manual_saves_only_on_flush(self, managers, store):
        manager = managers(policy=PersistencePolicy.MANUAL)
        await manager.new()

        await manager.persist()
        assert store.saves == 0

        await manager.flush()
        assert store.saves == 1

    @pytest.mark.asyncio
    async def test_debounced_coalesces_saves(self, managers, store):
        manager = managers(policy=PersistencePolicy.DEBOUNCED, auto_save_interval_seconds=0.05)
        await manager.new()

        for _ in range(3):
            await manager.persist()
        assert store.saves == 0

        await asyncio.sleep(0.15)
        assert store.saves == 1
        assert not manager.dirty

    @pytest.mark.asyncio
    async def test_close_flushes_pending_changes(self, managers, store):
        manager = managers(policy=PersistencePolicy.DEBOUNCED, auto_save_interval_seconds=60)
        await manager.new()
        await manager.persist()

        await manager.close()

        assert store.saves == 1
        assert manager.conversation is None

    @pytest.mark.asyncio
    async def test_flush_without_changes_is_noop(self, managers, store):
        manager = managers()
        await manager.new()
        await manager.flush()
        assert store.saves == 0
