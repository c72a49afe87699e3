"""Turn orchestration: session controller and its sub-controllers."""

from .agent import SessionController
from .approval_manager import ApprovalDecision, ApprovalManager, ApprovalRequest
from .audio_controller import AudioController
from .context_assembler import (
    ContextAssembler,
    SummaryUpdate,
    estimate_item_tokens,
    estimate_tokens,
)
from .conversation_manager import ConversationManager
from .event_streamer import TurnEventStream
from .response_cache import ResponseCache
from .state import ALLOWED_TRANSITIONS, TurnState, TurnStateMachine
from .tool_runner import ToolRunner

__all__ = [
    "SessionController",
    "ApprovalDecision",
    "ApprovalManager",
    "ApprovalRequest",
    "AudioController",
    "ContextAssembler",
    "SummaryUpdate",
    "estimate_item_tokens",
    "estimate_tokens",
    "ConversationManager",
    "TurnEventStream",
    "ResponseCache",
    "ALLOWED_TRANSITIONS",
    "TurnState",
    "TurnStateMachine",
    "ToolRunner",
]
