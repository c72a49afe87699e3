"""FastAPI application for the agent runtime.

This is the main entry point for the agent API server.

Usage:
    uvicorn genagent.app:app --port 8080
    python -m genagent.app
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI

from .api import create_agent_dependencies, router as agent_router
from .api.sessions import SessionPool
from .config import AgentSettings
from .domain.ports import IConversationStore, IOAuthTokenProvider
from .memory import ConversationSummarizer, StoreType, create_conversation_store
from .orchestrator import AudioController, ResponseCache, SessionController
from .providers import (
    AnthropicChatProvider,
    OpenAIChatProvider,
    OpenAISpeechProvider,
    OpenAITranscriptionProvider,
    ProviderConfig,
    ProviderRegistry,
)
from .tools import (
    MCPClient,
    MCPClientConfig,
    OAuthClientCredentials,
    OAuthTokenManager,
    ToolRegistry,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class AgentRuntime:
    """Shared collaborators of every session in the process."""

    settings: AgentSettings
    providers: ProviderRegistry
    tools: ToolRegistry
    store: IConversationStore
    audio: Optional[AudioController] = None
    token_provider: Optional[IOAuthTokenProvider] = None
    response_cache: Optional[ResponseCache] = None
    closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    def new_session(self) -> SessionController:
        """Build a controller wired to the shared collaborators."""
        config = self.settings.agent
        summarizer = None
        if config.chat_service in self.providers:
            summarizer = ConversationSummarizer(self.providers.get(config.chat_service))
        return SessionController(
            providers=self.providers,
            tool_registry=self.tools,
            conversation_store=self.store,
            config=config,
            summarizer=summarizer,
            audio=self.audio,
            response_cache=self.response_cache,
        )

    async def close(self) -> None:
        for closer in reversed(self.closers):
            try:
                await closer()
            except Exception as e:
                logger.warning(f"Error during shutdown: {e}")


async def build_runtime(settings: AgentSettings) -> AgentRuntime:
    """Build providers, tools and the conversation store from settings.

    Raises:
        ConfigurationError: If the store settings are incomplete
    """
    providers = ProviderRegistry()
    audio = None

    if settings.openai_api_key:
        openai_config = ProviderConfig(
            api_key=settings.openai_api_key,
            model=settings.agent.model if settings.agent.chat_service == "openai" else "gpt-4o",
            base_url=settings.openai_base_url,
        )
        providers.register(OpenAIChatProvider(openai_config))
        audio = AudioController(
            transcriber=OpenAITranscriptionProvider(ProviderConfig(api_key=settings.openai_api_key)),
            synthesizer=OpenAISpeechProvider(ProviderConfig(api_key=settings.openai_api_key)),
            voice_id=settings.agent.voice_id,
            speed=settings.agent.speech_speed,
            language=settings.agent.transcription_language,
        )
        logger.info("OpenAI chat, transcription and speech providers configured")

    if settings.anthropic_api_key:
        anthropic_config = ProviderConfig(
            api_key=settings.anthropic_api_key,
            model=(
                settings.agent.model
                if settings.agent.chat_service == "anthropic"
                else AnthropicChatProvider.DEFAULT_MODEL
            ),
        )
        providers.register(AnthropicChatProvider(anthropic_config))
        logger.info("Anthropic chat provider configured")

    if settings.agent.chat_service not in providers:
        logger.warning(
            f"Chat service '{settings.agent.chat_service}' has no configured provider; "
            f"turns will fail until one is registered"
        )

    token_provider: Optional[OAuthTokenManager] = None
    if settings.oauth_token_url and settings.oauth_client_id and settings.oauth_client_secret:
        token_provider = OAuthTokenManager(
            {
                settings.mcp_server_label: OAuthClientCredentials(
                    token_url=settings.oauth_token_url,
                    client_id=settings.oauth_client_id,
                    client_secret=settings.oauth_client_secret,
                )
            }
        )

    store = await create_conversation_store(
        settings.store_type,
        path=settings.store_path,
        dsn=settings.database_url,
        base_url=settings.thread_api_url,
        token_provider=token_provider,
        oauth_service=settings.mcp_server_label if token_provider else None,
    )
    logger.info(f"Conversation store: {StoreType(settings.store_type).value}")

    runtime = AgentRuntime(
        settings=settings,
        providers=providers,
        tools=ToolRegistry(default_timeout_seconds=settings.agent.tool_timeout_seconds),
        store=store,
        audio=audio,
        token_provider=token_provider,
    )
    if settings.agent.enable_response_cache:
        runtime.response_cache = ResponseCache(
            settings.agent.response_cache_size,
            settings.agent.response_cache_ttl_seconds,
        )
    runtime.closers.extend([providers.close, store.close])

    if settings.mcp_server_url:
        mcp_client = MCPClient(
            MCPClientConfig(
                url=settings.mcp_server_url,
                server_label=settings.mcp_server_label,
                oauth_service=settings.mcp_server_label if runtime.token_provider else None,
            ),
            runtime.token_provider,
        )
        runtime.closers.append(mcp_client.close)
        try:
            names = await runtime.tools.register_mcp_server(
                mcp_client, require_approval=settings.mcp_require_approval
            )
            logger.info(f"MCP tools available: {', '.join(names) or '(none)'}")
        except Exception as e:
            logger.warning(f"Failed to register MCP tools from {settings.mcp_server_url}: {e}")

    return runtime


def create_app(settings: Optional[AgentSettings] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Deployment settings (read from the environment if None)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        - Startup: build providers, tools and store, register the session pool
        - Shutdown: close sessions, then shared clients and the store
        """
        logger.info("Starting agent API...")
        runtime = await build_runtime(settings or AgentSettings.from_env())
        pool = SessionPool(runtime.new_session, runtime.store)
        create_agent_dependencies(pool)
        app.state.runtime = runtime
        logger.info("Agent API ready")

        yield

        logger.info("Shutting down agent API...")
        create_agent_dependencies(None)
        await pool.close()
        await runtime.close()
        logger.info("Agent API stopped")

    app = FastAPI(
        title="genagent",
        description="Conversation and session runtime for generative-AI agents",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(agent_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    return app


app = create_app()


def main() -> None:
    """Run the API server with uvicorn."""
    import uvicorn

    uvicorn.run(
        "genagent.app:app",
        host=os.getenv("GENAGENT_HOST", "0.0.0.0"),
        port=int(os.getenv("GENAGENT_PORT", "8080")),
    )


if __name__ == "__main__":
    main()
