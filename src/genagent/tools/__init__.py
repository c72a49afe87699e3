"""Tool executors, registry and remote tool integration."""

from .executors import (
    FunctionToolExecutor,
    HostedToolExecutor,
    MCPToolExecutor,
    ShellToolExecutor,
    definition_from_function,
)
from .mcp_client import MCPClient, MCPClientConfig
from .oauth import CachedToken, OAuthClientCredentials, OAuthTokenManager, StaticTokenProvider
from .registry import ToolRegistration, ToolRegistry

__all__ = [
    "FunctionToolExecutor",
    "HostedToolExecutor",
    "MCPToolExecutor",
    "ShellToolExecutor",
    "definition_from_function",
    "MCPClient",
    "MCPClientConfig",
    "CachedToken",
    "OAuthClientCredentials",
    "OAuthTokenManager",
    "StaticTokenProvider",
    "ToolRegistration",
    "ToolRegistry",
]
