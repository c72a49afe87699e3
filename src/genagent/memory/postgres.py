"""
PostgreSQL Conversation Store.

Stores each conversation as one row with its items in a JSONB column.
Saves are upserts, so repeated saves of the same conversation are idempotent.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol

import asyncpg

from ..domain.entities import (
    Conversation,
    ConversationFilter,
    ConversationMetadata,
    item_from_dict,
    item_to_dict,
)
from ..domain.ports import IConversationStore
from ..exceptions import NotFoundError, StoreError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS genagent_conversations (
    id TEXT PRIMARY KEY,
    title TEXT,
    tags TEXT[] NOT NULL DEFAULT '{}',
    custom JSONB NOT NULL DEFAULT '{}'::jsonb,
    memory_summary TEXT,
    summarized_through INTEGER NOT NULL DEFAULT 0,
    items JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_genagent_conversations_updated
    ON genagent_conversations (updated_at DESC);
"""


class IAsyncDBPool(Protocol):
    """Protocol for async database pool."""

    def acquire(self): ...
    async def close(self) -> None: ...


class PostgresConversationStore(IConversationStore):
    """PostgreSQL-based conversation store.

    Usage:
        pool = await asyncpg.create_pool(dsn)
        store = PostgresConversationStore(pool)
        await store.initialize()

        conv = await store.create()
        conv = await store.load(conv.id)
    """

    def __init__(self, db_pool: IAsyncDBPool, owns_pool: bool = False):
        """Initialize the conversation store.

        Args:
            db_pool: Async database connection pool
            owns_pool: Close the pool when the store is closed
        """
        self.db = db_pool
        self.owns_pool = owns_pool

    @classmethod
    async def connect(cls, dsn: str, **pool_options: Any) -> PostgresConversationStore:
        """Create a pool for the DSN and ensure the schema exists."""
        try:
            pool = await asyncpg.create_pool(dsn, **pool_options)
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreError(f"Failed to connect to database: {e}", cause=e) from e
        store = cls(pool, owns_pool=True)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Create the table if needed."""
        async with self.db.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Conversation schema ready")

    def _row_to_conversation(self, row: Any) -> Conversation:
        items = row["items"]
        if isinstance(items, str):
            items = json.loads(items)
        custom = row["custom"]
        if isinstance(custom, str):
            custom = json.loads(custom)
        return Conversation(
            id=row["id"],
            items=[item_from_dict(i) for i in items],
            metadata=ConversationMetadata(
                title=row["title"],
                tags=list(row["tags"] or []),
                custom=custom or {},
            ),
            memory_summary=row["memory_summary"],
            summarized_through=row["summarized_through"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def create(self, metadata: Optional[ConversationMetadata] = None) -> Conversation:
        conversation = Conversation(metadata=metadata or ConversationMetadata())
        await self.save(conversation)
        logger.info(f"Created conversation {conversation.id}")
        return conversation

    async def load(self, conversation_id: str) -> Conversation:
        try:
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT id, title, tags, custom, memory_summary,
                           summarized_through, items, created_at, updated_at
                    FROM genagent_conversations
                    WHERE id = $1
                    """,
                    conversation_id,
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreError(
                f"Failed to load conversation {conversation_id}: {e}",
                conversation_id=conversation_id,
                cause=e,
            ) from e

        if not row:
            raise NotFoundError(conversation_id)
        return self._row_to_conversation(row)

    async def save(self, conversation: Conversation) -> None:
        items_json = json.dumps([item_to_dict(i) for i in conversation.items])
        try:
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        INSERT INTO genagent_conversations (
                            id, title, tags, custom, memory_summary,
                            summarized_through, items, created_at, updated_at
                        ) VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7::jsonb, $8, $9)
                        ON CONFLICT (id) DO UPDATE SET
                            title = EXCLUDED.title,
                            tags = EXCLUDED.tags,
                            custom = EXCLUDED.custom,
                            memory_summary = EXCLUDED.memory_summary,
                            summarized_through = EXCLUDED.summarized_through,
                            items = EXCLUDED.items,
                            updated_at = EXCLUDED.updated_at
                        """,
                        conversation.id,
                        conversation.metadata.title,
                        list(conversation.metadata.tags),
                        json.dumps(conversation.metadata.custom),
                        conversation.memory_summary,
                        conversation.summarized_through,
                        items_json,
                        conversation.created_at,
                        conversation.updated_at,
                    )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreError(
                f"Failed to save conversation {conversation.id}: {e}",
                conversation_id=conversation.id,
                cause=e,
            ) from e

        logger.debug(f"Saved conversation {conversation.id} ({len(conversation.items)} items)")

    async def list(self, filter: Optional[ConversationFilter] = None) -> list[Conversation]:
        criteria = filter or ConversationFilter()
        try:
            async with self.db.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, title, tags, custom, memory_summary,
                           summarized_through, items, created_at, updated_at
                    FROM genagent_conversations
                    WHERE ($1::text[] IS NULL OR tags @> $1::text[])
                      AND ($2::text IS NULL OR title ILIKE '%' || $2 || '%')
                    ORDER BY updated_at DESC
                    LIMIT $3 OFFSET $4
                    """,
                    criteria.tags or None,
                    criteria.title_contains,
                    criteria.limit,
                    criteria.offset,
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreError(f"Failed to list conversations: {e}", cause=e) from e

        return [self._row_to_conversation(row) for row in rows]

    async def delete(self, conversation_id: str) -> None:
        try:
            async with self.db.acquire() as conn:
                status = await conn.execute(
                    "DELETE FROM genagent_conversations WHERE id = $1",
                    conversation_id,
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreError(
                f"Failed to delete conversation {conversation_id}: {e}",
                conversation_id=conversation_id,
                cause=e,
            ) from e

        if status.endswith(" 0"):
            raise NotFoundError(conversation_id)
        logger.info(f"Deleted conversation {conversation_id}")

    async def close(self) -> None:
        if self.owns_pool:
            await self.db.close()
