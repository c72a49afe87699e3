"""Conversation persistence backends and summarization."""

from __future__ import annotations

from enum import Enum
from typing import Any, Union

from ..domain.ports import IConversationStore
from ..exceptions import ConfigurationError
from .conversation import FileConversationStore, InMemoryConversationStore
from .postgres import PostgresConversationStore
from .remote import (
    RealtimeSessionConversationStore,
    ServerThreadConversationStore,
    ThreadAPIConfig,
)
from .summarizer import ConversationSummarizer


class StoreType(str, Enum):
    """Available conversation store backends."""

    NONE = "none"
    MEMORY = "memory"
    LOCAL_FILE = "local_file"
    SERVER_THREAD = "server_thread"
    REALTIME_SESSION = "realtime_session"
    POSTGRES = "postgres"
    CUSTOM = "custom"


async def create_conversation_store(
    store_type: Union[StoreType, str],
    **options: Any,
) -> IConversationStore:
    """Build a conversation store.

    Options by type:
        local_file: path
        server_thread: base_url, api_key, oauth_service, token_provider, timeout
        realtime_session: session_id, ttl_seconds
        postgres: pool or dsn
        custom: store

    Raises:
        ConfigurationError: If the type is unknown or a required option is missing
    """
    try:
        store_type = StoreType(store_type)
    except ValueError:
        raise ConfigurationError(
            f"Unknown conversation store type: {store_type}",
            details={"available": [t.value for t in StoreType]},
        ) from None

    if store_type in (StoreType.NONE, StoreType.MEMORY):
        return InMemoryConversationStore()

    if store_type == StoreType.LOCAL_FILE:
        if not options.get("path"):
            raise ConfigurationError("local_file store requires 'path'", missing_keys=["path"])
        return FileConversationStore(options["path"])

    if store_type == StoreType.SERVER_THREAD:
        if not options.get("base_url"):
            raise ConfigurationError(
                "server_thread store requires 'base_url'", missing_keys=["base_url"]
            )
        config = ThreadAPIConfig(
            base_url=options["base_url"],
            timeout=options.get("timeout", 30.0),
            api_key=options.get("api_key"),
            oauth_service=options.get("oauth_service"),
        )
        return ServerThreadConversationStore(config, options.get("token_provider"))

    if store_type == StoreType.REALTIME_SESSION:
        return RealtimeSessionConversationStore(
            session_id=options.get("session_id"),
            ttl_seconds=options.get("ttl_seconds", 1800.0),
        )

    if store_type == StoreType.POSTGRES:
        if options.get("pool") is not None:
            return PostgresConversationStore(options["pool"])
        if options.get("dsn"):
            return await PostgresConversationStore.connect(options["dsn"])
        raise ConfigurationError(
            "postgres store requires 'pool' or 'dsn'", missing_keys=["pool", "dsn"]
        )

    store = options.get("store")
    if not isinstance(store, IConversationStore):
        raise ConfigurationError(
            "custom store requires 'store' implementing IConversationStore",
            missing_keys=["store"],
        )
    return store


__all__ = [
    "StoreType",
    "create_conversation_store",
    "ConversationSummarizer",
    "FileConversationStore",
    "InMemoryConversationStore",
    "PostgresConversationStore",
    "RealtimeSessionConversationStore",
    "ServerThreadConversationStore",
    "ThreadAPIConfig",
]
