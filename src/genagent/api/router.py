"""
FastAPI Router for the agent runtime.

Provides REST endpoints, an NDJSON event stream and a WebSocket handler
over pooled session controllers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import StreamingResponse

from ..domain.entities import ConversationFilter
from ..exceptions import (
    ConfigurationError,
    ConversationBusyError,
    GenAgentError,
    NotFoundError,
    ValidationError,
)
from ..orchestrator import SessionController
from .schemas import (
    MAX_MESSAGE_LENGTH,
    ApprovalDecisionRequest,
    ApprovalResponse,
    ChatRequest,
    ChatResponse,
    ConversationListItem,
    ConversationListResponse,
    ConversationResponse,
    ToolOutputRequest,
)
from .sessions import SessionPool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agent", tags=["agent"])


# =============================================================================
# Dependencies
# =============================================================================


class AgentDependencies:
    """Container for agent dependencies.

    Injected at application startup.
    """

    pool: Optional[SessionPool] = None


_deps = AgentDependencies()


def create_agent_dependencies(pool: Optional[SessionPool]) -> None:
    """Initialize agent dependencies.

    Call this at application startup (and with None at shutdown).
    """
    _deps.pool = pool


def get_session_pool() -> SessionPool:
    """Get the session pool dependency."""
    if not _deps.pool:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Agent not initialized",
        )
    return _deps.pool


def _http_error(error: GenAgentError) -> HTTPException:
    """Map a runtime error onto an HTTP error with a typed body."""
    if isinstance(error, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ConversationBusyError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, ConfigurationError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    body = error.to_dict()
    body.pop("cause", None)
    return HTTPException(status_code=code, detail=body)


async def _session_for(pool: SessionPool, conversation_id: Optional[str]) -> SessionController:
    try:
        return await pool.acquire(conversation_id)
    except GenAgentError as e:
        raise _http_error(e) from e


# =============================================================================
# Chat Endpoints
# =============================================================================


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    pool: SessionPool = Depends(get_session_pool),
) -> ChatResponse:
    """Run one turn and return its outcome.

    For incremental output, use /chat/stream or the WebSocket endpoint.
    """
    session = await _session_for(pool, request.conversation_id)
    try:
        result = await session.send(request.message)
    except ValidationError as e:
        raise _http_error(e) from e
    return ChatResponse.from_result(result)


@router.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    pool: SessionPool = Depends(get_session_pool),
) -> StreamingResponse:
    """Run one turn, streaming its events as newline-delimited JSON."""
    session = await _session_for(pool, request.conversation_id)
    if session.is_busy:
        raise _http_error(ValidationError("A turn is already in progress"))

    async def events() -> AsyncIterator[bytes]:
        try:
            async for event in session.stream(request.message):
                yield (json.dumps(event.to_dict(), default=str) + "\n").encode()
        except GenAgentError as e:
            yield (json.dumps({"type": "error", **e.to_dict()}, default=str) + "\n").encode()

    return StreamingResponse(events(), media_type="application/x-ndjson")


@router.post("/conversations/{conversation_id}/cancel")
async def cancel_turn(
    conversation_id: str,
    pool: SessionPool = Depends(get_session_pool),
) -> dict[str, Any]:
    """Cancel the turn running in a conversation."""
    session = pool.get(conversation_id)
    cancelled = await session.cancel() if session is not None else False
    return {"conversation_id": conversation_id, "cancelled": cancelled}


# =============================================================================
# Conversation Endpoints
# =============================================================================


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    tag: Optional[list[str]] = Query(default=None),
    title: Optional[str] = Query(default=None, max_length=200),
    pool: SessionPool = Depends(get_session_pool),
) -> ConversationListResponse:
    """List stored conversations, most recently updated first."""
    criteria = ConversationFilter(tags=tag or [], title_contains=title, limit=limit, offset=offset)
    try:
        conversations = await pool.store.list(criteria)
    except GenAgentError as e:
        raise _http_error(e) from e

    items = [ConversationListItem.from_conversation(c) for c in conversations]
    return ConversationListResponse(
        conversations=items,
        total=len(items),
        limit=limit,
        offset=offset,
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    pool: SessionPool = Depends(get_session_pool),
) -> ConversationResponse:
    """Get a conversation with its items."""
    session = pool.get(conversation_id)
    if session is not None and session.conversation is not None:
        return ConversationResponse.from_conversation(session.conversation)

    try:
        conversation = await pool.store.load(conversation_id)
    except GenAgentError as e:
        raise _http_error(e) from e
    return ConversationResponse.from_conversation(conversation)


@router.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: str,
    pool: SessionPool = Depends(get_session_pool),
) -> None:
    """Delete a conversation."""
    try:
        await pool.delete(conversation_id)
    except GenAgentError as e:
        raise _http_error(e) from e


# =============================================================================
# Approvals and Tool Outputs
# =============================================================================


@router.get("/approvals", response_model=list[ApprovalResponse])
async def list_approvals(
    pool: SessionPool = Depends(get_session_pool),
) -> list[ApprovalResponse]:
    """List approvals waiting for a decision."""
    return [
        ApprovalResponse(conversation_id=conversation_id, **request.to_dict())
        for conversation_id, request in pool.pending_approvals()
    ]


@router.post("/approvals/{approval_id}")
async def resolve_approval(
    approval_id: str,
    request: ApprovalDecisionRequest,
    pool: SessionPool = Depends(get_session_pool),
) -> dict[str, Any]:
    """Approve or deny a pending tool call."""
    session = pool.find_by_approval(approval_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Pending approval not found",
        )
    try:
        session.resolve_approval(approval_id, request.approved, request.reason)
    except ValidationError as e:
        raise _http_error(e) from e
    return {"approval_id": approval_id, "status": "approved" if request.approved else "denied"}


@router.post("/conversations/{conversation_id}/tool-outputs")
async def submit_tool_output(
    conversation_id: str,
    request: ToolOutputRequest,
    pool: SessionPool = Depends(get_session_pool),
) -> dict[str, Any]:
    """Submit the output of a tool call the agent could not run itself."""
    session = pool.get(conversation_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active session for conversation",
        )
    try:
        session.submit_tool_output(request.call_id, output=request.output, error=request.error)
    except ValidationError as e:
        raise _http_error(e) from e
    return {"call_id": request.call_id, "status": "accepted"}


# =============================================================================
# WebSocket Handler
# =============================================================================


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for streaming chat.

    Message formats:
    - Client -> Server:
        {"type": "chat", "message": "...", "conversation_id": "..."}
        {"type": "approve", "approval_id": "...", "approved": true/false, "reason": "..."}
        {"type": "tool_output", "call_id": "...", "output": "...", "error": null}
        {"type": "cancel"}
        {"type": "ping"}

    - Server -> Client:
        {"type": "turn_started", ...}
        {"type": "text_delta", "content": "...", ...}
        {"type": "tool_call_start", "tool_name": "...", ...}
        {"type": "approval_required", "approval_id": "...", ...}
        {"type": "done", ...}
        {"type": "error", "error": "...", "error_kind": "...", ...}
    """
    pool = _deps.pool
    await websocket.accept()

    if not pool:
        await websocket.send_json({"type": "error", "error": "Agent not initialized"})
        await websocket.close()
        return

    session: Optional[SessionController] = None
    current_task: Optional[asyncio.Task] = None

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "chat")

            if msg_type == "chat":
                message = data.get("message", "")
                if not isinstance(message, str) or not message.strip():
                    await websocket.send_json({"type": "error", "error": "Message must not be empty"})
                    continue
                if len(message) > MAX_MESSAGE_LENGTH:
                    await websocket.send_json({"type": "error", "error": "Message too long"})
                    continue
                if current_task and not current_task.done():
                    await websocket.send_json(
                        {"type": "error", "error": "A turn is already in progress"}
                    )
                    continue

                conversation_id = data.get("conversation_id")
                if session is None or (
                    conversation_id
                    and session.conversation is not None
                    and session.conversation.id != conversation_id
                ):
                    session = await pool.acquire(conversation_id)

                current_task = asyncio.create_task(_stream_chat(websocket, session, message))

            elif msg_type == "approve":
                target = pool.find_by_approval(str(data.get("approval_id")))
                if target is None:
                    await websocket.send_json(
                        {"type": "error", "error": "Pending approval not found"}
                    )
                    continue
                target.resolve_approval(
                    str(data.get("approval_id")),
                    bool(data.get("approved", False)),
                    data.get("reason"),
                )

            elif msg_type == "tool_output":
                if session is None:
                    await websocket.send_json({"type": "error", "error": "No active session"})
                    continue
                try:
                    session.submit_tool_output(
                        str(data.get("call_id")),
                        output=data.get("output"),
                        error=data.get("error"),
                    )
                except ValidationError as e:
                    await websocket.send_json(
                        {"type": "error", "error": e.message, "error_kind": e.kind}
                    )

            elif msg_type == "cancel":
                if session is not None:
                    await session.cancel()

            elif msg_type == "ping":
                await websocket.send_json({"type": "pong"})

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected")
    except Exception as e:
        logger.exception(f"WebSocket error: {e}")
        try:
            await websocket.send_json({"type": "error", "error": "WebSocket error"})
        except RuntimeError:
            logger.debug("WebSocket already closed")
    finally:
        if current_task and not current_task.done():
            current_task.cancel()


async def _stream_chat(websocket: WebSocket, session: SessionController, message: str) -> None:
    """Stream one turn's events to the WebSocket."""
    try:
        async for event in session.stream(message):
            await websocket.send_json(event.to_dict())
    except asyncio.CancelledError:
        logger.info("Chat streaming cancelled")
        raise
    except GenAgentError as e:
        await websocket.send_json({"type": "error", "error": e.message, "error_kind": e.kind})
    except Exception as e:
        logger.exception(f"Chat streaming error: {e}")
        await websocket.send_json({"type": "error", "error": "Chat error", "error_kind": "internal"})
