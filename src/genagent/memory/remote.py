"""
Remote and session-scoped conversation stores.

- ServerThreadConversationStore keeps conversations in a remote thread
  service reached over HTTP.
- RealtimeSessionConversationStore keeps conversations only for the life of
  a realtime (voice) session.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from ..domain.entities import Conversation, ConversationFilter, ConversationMetadata
from ..domain.ports import IConversationStore, IOAuthTokenProvider
from ..exceptions import NotFoundError, StoreError

logger = logging.getLogger(__name__)


# ============================================
# Server Thread Store
# ============================================


@dataclass
class ThreadAPIConfig:
    """Configuration for the remote thread service.

    Attributes:
        base_url: Service root (threads live under ``{base_url}/threads``)
        timeout: Request timeout in seconds
        api_key: Static bearer token
        oauth_service: Service name for the token provider (overrides api_key)
    """

    base_url: str
    timeout: float = 30.0
    api_key: Optional[str] = None
    oauth_service: Optional[str] = None


class ServerThreadConversationStore(IConversationStore):
    """Conversations held by a remote thread API.

    Endpoints:
        POST   /threads              create (body: metadata)
        GET    /threads/{id}         load
        PUT    /threads/{id}         save (full document, overwrite)
        GET    /threads              list (tags, title, limit, offset)
        DELETE /threads/{id}         delete
    """

    def __init__(
        self,
        config: ThreadAPIConfig,
        token_provider: Optional[IOAuthTokenProvider] = None,
    ):
        self.config = config
        self.token_provider = token_provider
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token_provider is not None and self.config.oauth_service:
            token = await self.token_provider.get_access_token(self.config.oauth_service)
            headers["Authorization"] = f"Bearer {token}"
        elif self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/threads{path}"

    async def _request(
        self,
        method: str,
        path: str,
        conversation_id: Optional[str] = None,
        json_body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        session = await self._get_session()
        try:
            async with session.request(
                method,
                self._url(path),
                headers=await self._get_headers(),
                json=json_body,
                params=params,
            ) as response:
                if response.status == 404 and conversation_id:
                    raise NotFoundError(conversation_id)
                if response.status >= 400:
                    text = await response.text()
                    raise StoreError(
                        f"Thread API {method} {path} failed: {response.status} - {text[:200]}",
                        conversation_id=conversation_id,
                        details={"status": response.status},
                    )
                if response.status == 204:
                    return None
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise StoreError(
                f"Failed to reach thread API: {e}",
                conversation_id=conversation_id,
                cause=e,
            ) from e

    async def create(self, metadata: Optional[ConversationMetadata] = None) -> Conversation:
        metadata = metadata or ConversationMetadata()
        data = await self._request("POST", "", json_body={"metadata": metadata.to_dict()})
        conversation = Conversation.from_dict({"metadata": metadata.to_dict(), **(data or {})})
        logger.info(f"Created remote thread {conversation.id}")
        return conversation

    async def load(self, conversation_id: str) -> Conversation:
        data = await self._request("GET", f"/{conversation_id}", conversation_id)
        return Conversation.from_dict(data)

    async def save(self, conversation: Conversation) -> None:
        await self._request(
            "PUT", f"/{conversation.id}", conversation.id, json_body=conversation.to_dict()
        )
        logger.debug(f"Saved remote thread {conversation.id}")

    async def list(self, filter: Optional[ConversationFilter] = None) -> list[Conversation]:
        criteria = filter or ConversationFilter()
        params: dict[str, Any] = {"limit": criteria.limit, "offset": criteria.offset}
        if criteria.tags:
            params["tags"] = ",".join(criteria.tags)
        if criteria.title_contains:
            params["title"] = criteria.title_contains
        data = await self._request("GET", "", params=params) or {}
        return [Conversation.from_dict(d) for d in data.get("data", [])]

    async def delete(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/{conversation_id}", conversation_id)
        logger.info(f"Deleted remote thread {conversation_id}")


# ============================================
# Realtime Session Store
# ============================================


class RealtimeSessionConversationStore(IConversationStore):
    """Conversations scoped to one realtime session.

    Entries expire ttl_seconds after their last save and are all dropped
    when the session ends.
    """

    def __init__(self, session_id: Optional[str] = None, ttl_seconds: float = 1800.0):
        self.session_id = session_id
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, tuple[Conversation, float]] = {}
        self._ended = False

    def _check_open(self) -> None:
        if self._ended:
            raise StoreError("Realtime session has ended", details={"session_id": self.session_id})

    def _purge_expired(self) -> None:
        now = time.monotonic()
        expired = [cid for cid, (_, ts) in self._entries.items() if now - ts > self.ttl_seconds]
        for cid in expired:
            del self._entries[cid]
            logger.debug(f"Realtime conversation {cid} expired")

    async def create(self, metadata: Optional[ConversationMetadata] = None) -> Conversation:
        self._check_open()
        conversation = Conversation(metadata=metadata or ConversationMetadata())
        self._entries[conversation.id] = (conversation.copy(), time.monotonic())
        return conversation

    async def load(self, conversation_id: str) -> Conversation:
        self._check_open()
        self._purge_expired()
        entry = self._entries.get(conversation_id)
        if entry is None:
            raise NotFoundError(conversation_id)
        return entry[0].copy()

    async def save(self, conversation: Conversation) -> None:
        self._check_open()
        self._entries[conversation.id] = (conversation.copy(), time.monotonic())

    async def list(self, filter: Optional[ConversationFilter] = None) -> list[Conversation]:
        self._check_open()
        self._purge_expired()
        criteria = filter or ConversationFilter()
        return [c.copy() for c in criteria.apply([c for c, _ in self._entries.values()])]

    async def delete(self, conversation_id: str) -> None:
        self._check_open()
        if self._entries.pop(conversation_id, None) is None:
            raise NotFoundError(conversation_id)

    async def end_session(self) -> None:
        """Drop every conversation of the session."""
        count = len(self._entries)
        self._entries.clear()
        self._ended = True
        logger.info(f"Realtime session {self.session_id} ended, dropped {count} conversations")

    async def close(self) -> None:
        await self.end_session()
