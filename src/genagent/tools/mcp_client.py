"""
MCP Client for remote tool servers.

Speaks JSON-RPC 2.0 over HTTP (``tools/list``, ``tools/call``) with a bearer
token obtained from an IOAuthTokenProvider. Tracks the server-assigned
session id across requests and caches tool definitions.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from ..domain.entities import ToolDefinition, ToolKind
from ..domain.ports import IOAuthTokenProvider
from ..exceptions import MCPError

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
PROTOCOL_VERSION = "2025-06-18"


@dataclass
class MCPClientConfig:
    """Configuration for MCP client.

    Attributes:
        url: JSON-RPC endpoint of the MCP server
        server_label: Label used for approvals and logging
        timeout: Request timeout in seconds
        max_retries: Attempts for rate-limited or unreachable requests
        oauth_service: Service name passed to the token provider
        oauth_scopes: Scopes requested for the bearer token
        verify_ssl: Verify TLS certificates
    """

    url: str = "http://localhost:8000/mcp"
    server_label: str = "mcp"
    timeout: float = 30.0
    max_retries: int = 3
    oauth_service: Optional[str] = None
    oauth_scopes: Optional[list[str]] = None
    verify_ssl: bool = True


class MCPClient:
    """Client for a remote MCP server.

    Usage:
        config = MCPClientConfig(url="https://tools.example.com/mcp", server_label="crm")
        client = MCPClient(config, token_provider)

        tools = await client.list_tools()
        result = await client.call_tool("lookup_customer", {"email": "a@b.c"})

    Architecture:
        - One aiohttp session per client, created lazily
        - initialize handshake on first request, session id echoed afterwards
        - 429 and connection errors retried with exponential backoff
    """

    # Cache TTL for tool definitions
    TOOL_CACHE_TTL_SECONDS = 300

    def __init__(
        self,
        config: MCPClientConfig,
        token_provider: Optional[IOAuthTokenProvider] = None,
    ):
        """Initialize the MCP client.

        Args:
            config: Client configuration
            token_provider: Source of bearer tokens (None = unauthenticated)
        """
        self.config = config
        self.token_provider = token_provider
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_id: Optional[str] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._tools_cache: Optional[list[ToolDefinition]] = None
        self._tools_cache_time: float = 0

    @property
    def server_label(self) -> str:
        return self.config.server_label

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            connector = aiohttp.TCPConnector(ssl=None if self.config.verify_ssl else False)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    async def close(self) -> None:
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._session_id = None
        self._initialized = False

    async def _get_headers(self) -> dict[str, str]:
        """Build request headers with auth and session id."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "MCP-Protocol-Version": PROTOCOL_VERSION,
        }

        if self.token_provider is not None:
            token = await self.token_provider.get_access_token(
                self.config.oauth_service or self.config.server_label,
                self.config.oauth_scopes,
            )
            headers["Authorization"] = f"Bearer {token}"

        if self._session_id:
            headers[SESSION_HEADER] = self._session_id

        return headers

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self._rpc(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "genagent", "version": "0.1.0"},
                },
            )
            await self._notify("notifications/initialized")
            self._initialized = True
            logger.info(f"MCP session initialized with {self.config.server_label}")

    async def _notify(self, method: str) -> None:
        session = await self._get_session()
        body = {"jsonrpc": "2.0", "method": method}
        try:
            async with session.post(
                self.config.url, headers=await self._get_headers(), json=body
            ) as response:
                await response.read()
        except aiohttp.ClientError as e:
            raise MCPError(f"Failed to reach MCP server: {e}", cause=e) from e

    async def _rpc(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        tool_name: Optional[str] = None,
        reinitialize: bool = True,
    ) -> dict[str, Any]:
        """Send one JSON-RPC request and return its result object.

        A 404 for a known session id means the server dropped the session;
        the client initializes a new session and resends the request once.

        Raises:
            MCPError: On transport failure, HTTP error or JSON-RPC error
        """
        session = await self._get_session()
        request_id = next(self._ids)
        body: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            body["params"] = params

        expired = False
        for attempt in range(self.config.max_retries):
            try:
                async with session.post(
                    self.config.url,
                    headers=await self._get_headers(),
                    json=body,
                ) as response:
                    session_id = response.headers.get(SESSION_HEADER)
                    if session_id:
                        self._session_id = session_id

                    if response.status == 429:
                        if attempt < self.config.max_retries - 1:
                            wait_time = 2 ** attempt
                            logger.warning(f"Rate limited by MCP server, retrying in {wait_time}s")
                            await asyncio.sleep(wait_time)
                            continue
                        raise MCPError("Rate limited by MCP server", tool_name=tool_name)

                    if response.status == 404 and self._session_id and method != "initialize":
                        expired = True
                        break

                    if response.status >= 400:
                        text = await response.text()
                        raise MCPError(
                            f"MCP request {method} failed: {response.status} - {text}",
                            tool_name=tool_name,
                            details={"status": response.status},
                        )

                    content_type = response.headers.get("Content-Type", "")
                    if content_type.startswith("text/event-stream"):
                        message = _parse_sse(await response.text(), request_id)
                    else:
                        message = await response.json(content_type=None)

            except aiohttp.ClientError as e:
                if attempt < self.config.max_retries - 1:
                    wait_time = 2 ** attempt
                    logger.warning(f"Connection error, retrying in {wait_time}s: {e}")
                    await asyncio.sleep(wait_time)
                    continue
                raise MCPError(
                    f"Failed to connect to MCP server: {e}",
                    tool_name=tool_name,
                    cause=e,
                ) from e

            if not isinstance(message, dict):
                raise MCPError(f"Malformed MCP response to {method}", tool_name=tool_name)
            if "error" in message:
                error = message["error"] or {}
                raise MCPError(
                    f"MCP error {error.get('code')}: {error.get('message')}",
                    tool_name=tool_name,
                    details={"rpc_code": error.get("code")},
                )
            return message.get("result") or {}

        if expired:
            self._session_id = None
            self._initialized = False
            if not reinitialize:
                raise MCPError("MCP session expired", tool_name=tool_name)
            logger.warning(f"MCP session with {self.config.server_label} expired, reinitializing")
            await self._ensure_initialized()
            return await self._rpc(method, params, tool_name, reinitialize=False)

        raise MCPError(
            f"MCP request {method} failed after {self.config.max_retries} attempts",
            tool_name=tool_name,
        )

    async def list_tools(self, refresh: bool = False) -> list[ToolDefinition]:
        """List available tools from the MCP server.

        Caches results for TOOL_CACHE_TTL_SECONDS.

        Returns:
            List of tool definitions (kind MCP)
        """
        if (
            not refresh
            and self._tools_cache is not None
            and time.time() - self._tools_cache_time < self.TOOL_CACHE_TTL_SECONDS
        ):
            return self._tools_cache

        await self._ensure_initialized()

        tools: list[ToolDefinition] = []
        cursor: Optional[str] = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            result = await self._rpc("tools/list", params)
            for tool_data in result.get("tools", []):
                tools.append(
                    ToolDefinition(
                        name=tool_data["name"],
                        description=tool_data.get("description", ""),
                        parameters=tool_data.get("inputSchema")
                        or {"type": "object", "properties": {}},
                        kind=ToolKind.MCP,
                        server_label=self.config.server_label,
                    )
                )
            cursor = result.get("nextCursor")
            if not cursor:
                break

        self._tools_cache = tools
        self._tools_cache_time = time.time()

        logger.info(f"Discovered {len(tools)} MCP tools on {self.config.server_label}")
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Execute a tool on the MCP server.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            Concatenated text content of the result

        Raises:
            MCPError: On transport failure or when the tool reports an error
        """
        await self._ensure_initialized()
        result = await self._rpc(
            "tools/call", {"name": name, "arguments": arguments}, tool_name=name
        )

        text = _content_to_text(result.get("content", []))
        if not text and "structuredContent" in result:
            text = json.dumps(result["structuredContent"])

        if result.get("isError"):
            raise MCPError(f"Tool {name} failed: {text}", tool_name=name)
        return text


def _content_to_text(content: list[dict[str, Any]]) -> str:
    parts = []
    for block in content:
        if block.get("type") == "text":
            parts.append(block.get("text", ""))
        else:
            parts.append(json.dumps(block))
    return "\n".join(parts)


def _parse_sse(body: str, request_id: int) -> Any:
    """Pick the JSON-RPC response for request_id out of an SSE body."""
    for line in body.splitlines():
        if not line.startswith("data:"):
            continue
        try:
            message = json.loads(line[5:].strip())
        except json.JSONDecodeError:
            continue
        if isinstance(message, dict) and message.get("id") == request_id:
            return message
    return None
