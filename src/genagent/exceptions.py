"""Exception hierarchy for the genagent runtime.

All errors raised by the runtime inherit from GenAgentError so callers can
catch everything with a single except clause, while still distinguishing the
taxonomy kinds that drive turn handling.

Exception Hierarchy:
    GenAgentError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    ├── ValidationError (bad caller input - fails fast, no side effects)
    ├── ContextOverflowError (caller must shrink input)
    ├── InvalidStateTransition (session state machine misuse)
    ├── ProviderError (may be recoverable - retry)
    │   ├── ProviderAuthError
    │   ├── RateLimitedError
    │   ├── InvalidRequestError
    │   ├── MalformedResponseError
    │   ├── ProviderUnavailableError
    │   └── ProviderTimeoutError
    ├── ToolExecutionError (absorbed into a tool output)
    │   ├── ToolNotFoundError
    │   └── ToolTimeoutError
    ├── ApprovalDenied (normal negative outcome)
    ├── StoreError (surfaced, conversation kept in memory)
    │   ├── NotFoundError
    │   └── ConversationBusyError
    ├── MCPError
    └── OAuthError
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================


class GenAgentError(Exception):
    """Base exception for all runtime errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "RATE_LIMITED")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might be recoverable with retry
    """

    kind = "internal"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [f"[{self.code}]", self.message]
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Caller Errors
# ============================================


class ConfigurationError(GenAgentError):
    """Raised when configuration is missing or invalid."""

    kind = "configuration"

    def __init__(self, message: str, missing_keys: Optional[list[str]] = None, **kwargs):
        details = kwargs.pop("details", {}) or {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details=details, **kwargs)
        self.missing_keys = missing_keys or []


class ValidationError(GenAgentError):
    """Bad caller input. Raised before any side effect takes place."""

    kind = "validation"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)
        self.field = field


class ContextOverflowError(GenAgentError):
    """The non-droppable part of a request exceeds the token budget."""

    kind = "context_overflow"

    def __init__(self, message: str, required_tokens: int, budget_tokens: int, **kwargs):
        super().__init__(
            message,
            details={"required_tokens": required_tokens, "budget_tokens": budget_tokens},
            **kwargs,
        )
        self.required_tokens = required_tokens
        self.budget_tokens = budget_tokens


class InvalidStateTransition(GenAgentError):
    """A session state transition that the state machine does not allow."""

    kind = "state"

    def __init__(self, source: str, target: str):
        super().__init__(
            f"Illegal turn state transition {source} -> {target}",
            details={"from": source, "to": target},
        )
        self.source = source
        self.target = target


# ============================================
# Provider Errors
# ============================================


class ProviderError(GenAgentError):
    """Error reported by a provider service adapter."""

    kind = "provider"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {}) or {}
        if provider:
            details["provider"] = provider
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details, **kwargs)
        self.provider = provider
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Provider rejected the credentials. Never retried."""

    kind = "provider_auth"

    def __init__(self, message: str = "Provider authentication failed", **kwargs):
        kwargs.setdefault("recoverable", False)
        super().__init__(message, **kwargs)


class RateLimitedError(ProviderError):
    """Provider rate limit exceeded."""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class InvalidRequestError(ProviderError):
    """Provider rejected the request payload."""

    kind = "invalid_request"


class MalformedResponseError(ProviderError):
    """Provider returned something the adapter could not interpret."""

    kind = "malformed_response"


class ProviderUnavailableError(ProviderError):
    """Provider could not be reached or returned a server error."""

    kind = "provider_unavailable"

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ProviderTimeoutError(ProviderError):
    """Provider did not answer within the configured timeout."""

    kind = "provider_timeout"

    def __init__(self, message: str, timeout_seconds: Optional[float] = None, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds
        if timeout_seconds is not None:
            self.details["timeout_seconds"] = timeout_seconds


# ============================================
# Tool Errors
# ============================================


class ToolExecutionError(GenAgentError):
    """A single tool execution failed.

    Captured per tool and converted into a ToolOutput error payload.
    """

    kind = "tool_execution"

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {}) or {}
        if tool_name:
            details["tool_name"] = tool_name
        super().__init__(message, details=details, **kwargs)
        self.tool_name = tool_name


class ToolNotFoundError(ToolExecutionError):
    """No executor is registered under the requested tool name."""

    kind = "tool_not_found"

    def __init__(self, tool_name: str):
        super().__init__(f"No executor registered for tool '{tool_name}'", tool_name=tool_name)


class ToolTimeoutError(ToolExecutionError):
    """Tool execution exceeded its timeout."""

    kind = "tool_timeout"

    def __init__(self, tool_name: str, timeout_seconds: float):
        super().__init__(
            f"Tool '{tool_name}' timed out after {timeout_seconds:g}s",
            tool_name=tool_name,
            details={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class ApprovalDenied(GenAgentError):
    """An MCP tool call was denied or its approval timed out."""

    kind = "approval_denied"

    def __init__(self, tool_name: str, reason: Optional[str] = None, timed_out: bool = False):
        message = f"Approval denied for tool '{tool_name}'"
        if timed_out:
            message = f"Approval for tool '{tool_name}' timed out"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            details={"tool_name": tool_name, "timed_out": timed_out},
        )
        self.tool_name = tool_name
        self.reason = reason
        self.timed_out = timed_out


# ============================================
# Store Errors
# ============================================


class StoreError(GenAgentError):
    """Conversation store load/save failure."""

    kind = "store"

    def __init__(self, message: str, conversation_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {}) or {}
        if conversation_id:
            details["conversation_id"] = conversation_id
        kwargs.setdefault("recoverable", True)
        super().__init__(message, details=details, **kwargs)
        self.conversation_id = conversation_id


class NotFoundError(StoreError):
    """Conversation does not exist in the store."""

    kind = "not_found"

    def __init__(self, conversation_id: str):
        super().__init__(
            f"Conversation {conversation_id} not found",
            conversation_id=conversation_id,
            recoverable=False,
        )


class ConversationBusyError(StoreError):
    """Conversation is already held active by another session controller."""

    kind = "conversation_busy"

    def __init__(self, conversation_id: str):
        super().__init__(
            f"Conversation {conversation_id} is already active in another session",
            conversation_id=conversation_id,
            recoverable=False,
        )


# ============================================
# Integration Errors
# ============================================


class MCPError(GenAgentError):
    """Error talking to an MCP server."""

    kind = "mcp"

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {}) or {}
        if tool_name:
            details["tool_name"] = tool_name
        super().__init__(message, details=details, **kwargs)
        self.tool_name = tool_name


class OAuthError(GenAgentError):
    """Access token could not be obtained."""

    kind = "oauth"

    def __init__(self, message: str, service: Optional[str] = None, attempts: int = 0, **kwargs):
        details = kwargs.pop("details", {}) or {}
        if service:
            details["service"] = service
        if attempts:
            details["attempts"] = attempts
        super().__init__(message, details=details, **kwargs)
        self.service = service
        self.attempts = attempts
