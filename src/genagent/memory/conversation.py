"""
Conversation Store Implementations.

In-memory and local-file persistence. Both hand out independent copies so
callers never share mutable state with the store.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Optional

from ..domain.entities import Conversation, ConversationFilter, ConversationMetadata
from ..domain.ports import IConversationStore
from ..exceptions import NotFoundError, StoreError

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_\-]+$")


class InMemoryConversationStore(IConversationStore):
    """Process-local store. Conversations are lost when the process exits.

    Usage:
        store = InMemoryConversationStore()
        conv = await store.create()
        await store.save(conv)
    """

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}

    async def create(self, metadata: Optional[ConversationMetadata] = None) -> Conversation:
        conversation = Conversation(metadata=metadata or ConversationMetadata())
        self._conversations[conversation.id] = conversation.copy()
        logger.info(f"Created conversation {conversation.id}")
        return conversation

    async def load(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError(conversation_id)
        return conversation.copy()

    async def save(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation.copy()
        logger.debug(f"Saved conversation {conversation.id} ({len(conversation.items)} items)")

    async def list(self, filter: Optional[ConversationFilter] = None) -> list[Conversation]:
        criteria = filter or ConversationFilter()
        return [c.copy() for c in criteria.apply(list(self._conversations.values()))]

    async def delete(self, conversation_id: str) -> None:
        if self._conversations.pop(conversation_id, None) is None:
            raise NotFoundError(conversation_id)
        logger.info(f"Deleted conversation {conversation_id}")


class FileConversationStore(IConversationStore):
    """One JSON document per conversation in a directory.

    Writes go to a temporary file that atomically replaces the previous
    version. File I/O runs in worker threads.

    Usage:
        store = FileConversationStore("~/.genagent/conversations")
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    def _path(self, conversation_id: str) -> Path:
        if not _SAFE_ID.match(conversation_id):
            raise NotFoundError(conversation_id)
        return self.directory / f"{conversation_id}.json"

    def _write(self, conversation: Conversation) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(conversation.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(conversation.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def _read(self, conversation_id: str) -> Conversation:
        path = self._path(conversation_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise NotFoundError(conversation_id) from None
        return Conversation.from_dict(data)

    def _read_all(self) -> list[Conversation]:
        if not self.directory.exists():
            return []
        conversations = []
        for path in self.directory.glob("*.json"):
            try:
                conversations.append(
                    Conversation.from_dict(json.loads(path.read_text(encoding="utf-8")))
                )
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable conversation file {path.name}: {e}")
        return conversations

    def _remove(self, conversation_id: str) -> None:
        try:
            self._path(conversation_id).unlink()
        except FileNotFoundError:
            raise NotFoundError(conversation_id) from None

    async def create(self, metadata: Optional[ConversationMetadata] = None) -> Conversation:
        conversation = Conversation(metadata=metadata or ConversationMetadata())
        await self.save(conversation)
        logger.info(f"Created conversation {conversation.id} in {self.directory}")
        return conversation

    async def load(self, conversation_id: str) -> Conversation:
        try:
            return await asyncio.to_thread(self._read, conversation_id)
        except NotFoundError:
            raise
        except (OSError, ValueError, KeyError) as e:
            raise StoreError(
                f"Failed to load conversation {conversation_id}: {e}",
                conversation_id=conversation_id,
                cause=e,
            ) from e

    async def save(self, conversation: Conversation) -> None:
        try:
            await asyncio.to_thread(self._write, conversation)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(
                f"Failed to save conversation {conversation.id}: {e}",
                conversation_id=conversation.id,
                cause=e,
            ) from e
        logger.debug(f"Saved conversation {conversation.id} ({len(conversation.items)} items)")

    async def list(self, filter: Optional[ConversationFilter] = None) -> list[Conversation]:
        try:
            conversations = await asyncio.to_thread(self._read_all)
        except OSError as e:
            raise StoreError(f"Failed to list conversations: {e}", cause=e) from e
        return (filter or ConversationFilter()).apply(conversations)

    async def delete(self, conversation_id: str) -> None:
        try:
            await asyncio.to_thread(self._remove, conversation_id)
        except NotFoundError:
            raise
        except OSError as e:
            raise StoreError(
                f"Failed to delete conversation {conversation_id}: {e}",
                conversation_id=conversation_id,
                cause=e,
            ) from e
        logger.info(f"Deleted conversation {conversation_id}")
