"""
Pydantic schemas for agent API.

Defines request/response models for the agent service.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..domain.entities import Conversation, TurnResult, item_to_dict


# =============================================================================
# Constants
# =============================================================================

MAX_MESSAGE_LENGTH = 10000
MAX_TOOL_OUTPUT_LENGTH = 100000


# =============================================================================
# Chat Schemas
# =============================================================================


class ChatRequest(BaseModel):
    """Request to run one turn."""

    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    conversation_id: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "message": "What's the weather in Paris?",
                "conversation_id": None,
            }
        }


class ChatResponse(BaseModel):
    """Outcome of a non-streaming turn."""

    conversation_id: Optional[str] = None
    turn_id: Optional[str] = None
    status: str
    message: str = ""
    rounds: int = 0
    error: Optional[dict[str, Any]] = None
    store_error: Optional[dict[str, Any]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "conversation_id": "550e8400-e29b-41d4-a716-446655440000",
                "turn_id": "turn_0f8a...",
                "status": "completed",
                "message": "It is 18°C and sunny in Paris.",
                "rounds": 2,
            }
        }

    @classmethod
    def from_result(cls, result: TurnResult) -> ChatResponse:
        return cls(
            conversation_id=result.conversation_id,
            turn_id=result.turn_id,
            status=result.status.value,
            message=result.text,
            rounds=result.rounds,
            error=result.error.to_dict() if result.error else None,
            store_error=result.store_error.to_dict() if result.store_error else None,
        )


# =============================================================================
# Conversation Schemas
# =============================================================================


class ConversationResponse(BaseModel):
    """A conversation with its items."""

    id: str
    title: Optional[str] = None
    tags: list[str] = []
    memory_summary: Optional[str] = None
    summarized_through: int = 0
    item_count: int
    items: list[dict[str, Any]] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> ConversationResponse:
        return cls(
            id=conversation.id,
            title=conversation.metadata.title,
            tags=list(conversation.metadata.tags),
            memory_summary=conversation.memory_summary,
            summarized_through=conversation.summarized_through,
            item_count=len(conversation.items),
            items=[item_to_dict(i) for i in conversation.items],
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class ConversationListItem(BaseModel):
    """Summary of a conversation for listing."""

    id: str
    title: Optional[str] = None
    tags: list[str] = []
    item_count: int
    last_message_preview: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> ConversationListItem:
        last = conversation.last_assistant_message
        return cls(
            id=conversation.id,
            title=conversation.metadata.title,
            tags=list(conversation.metadata.tags),
            item_count=len(conversation.items),
            last_message_preview=last.text[:100] if last else None,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class ConversationListResponse(BaseModel):
    """Response for listing conversations."""

    conversations: list[ConversationListItem]
    total: int
    limit: int
    offset: int


# =============================================================================
# Approval and Tool Output Schemas
# =============================================================================


class ApprovalResponse(BaseModel):
    """A pending approval for a gated tool call."""

    approval_id: str
    conversation_id: Optional[str] = None
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = {}
    server_label: Optional[str] = None
    created_at: datetime


class ApprovalDecisionRequest(BaseModel):
    """Approve or deny a pending tool call."""

    approved: bool
    reason: Optional[str] = Field(default=None, max_length=1000)

    class Config:
        json_schema_extra = {"example": {"approved": True, "reason": None}}


class ToolOutputRequest(BaseModel):
    """Output for a tool call surfaced as unhandled."""

    call_id: str = Field(..., min_length=1)
    output: Optional[str] = Field(default=None, max_length=MAX_TOOL_OUTPUT_LENGTH)
    error: Optional[str] = Field(default=None, max_length=MAX_TOOL_OUTPUT_LENGTH)


# =============================================================================
# Error Schemas
# =============================================================================


class ErrorResponse(BaseModel):
    """Typed error body."""

    error_type: str
    kind: str
    message: str
    code: str
    details: dict[str, Any] = {}
    recoverable: bool = False
