"""
Agent API.

REST, NDJSON streaming and WebSocket endpoints over pooled session
controllers.
"""

from .router import create_agent_dependencies, get_session_pool, router
from .schemas import (
    ApprovalDecisionRequest,
    ApprovalResponse,
    ChatRequest,
    ChatResponse,
    ConversationListItem,
    ConversationListResponse,
    ConversationResponse,
    ErrorResponse,
    ToolOutputRequest,
)
from .sessions import SessionPool

__all__ = [
    "router",
    "create_agent_dependencies",
    "get_session_pool",
    "SessionPool",
    "ApprovalDecisionRequest",
    "ApprovalResponse",
    "ChatRequest",
    "ChatResponse",
    "ConversationListItem",
    "ConversationListResponse",
    "ConversationResponse",
    "ErrorResponse",
    "ToolOutputRequest",
]
