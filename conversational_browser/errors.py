"""
Error taxonomy for Conversational Browser.

Every error carries a machine-checkable ``kind`` so the boundary layer can
render guidance without matching on message strings.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-checkable error categories."""
    PROVIDER_NOT_CONFIGURED = "provider_not_configured"
    PROVIDER_ERROR = "provider_error"
    CONTEXT_OVERFLOW = "context_overflow"
    GATEWAY_STARTUP = "gateway_startup"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    GATEWAY_CONNECTION = "gateway_connection"
    TOOL_EXECUTION = "tool_execution"
    UNKNOWN_ACTION = "unknown_action"
    CANCELLED = "cancelled"
    ITERATION_LIMIT = "iteration_limit"
    CONSECUTIVE_ERROR_LIMIT = "consecutive_error_limit"
    RUN_IN_PROGRESS = "run_in_progress"
    PLAYBOOK = "playbook"


class BrowserAgentError(Exception):
    """Base class for all Conversational Browser errors."""

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR
    fatal: bool = True

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status

    def to_dict(self) -> dict:
        """Convert to dictionary for the boundary layer."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "status": self.status,
        }


class ProviderNotConfigured(BrowserAgentError):
    """No credentials or endpoint could be resolved for the model provider."""
    kind = ErrorKind.PROVIDER_NOT_CONFIGURED

    def __init__(self, message: str, provider: str = "", status: Optional[int] = 401):
        super().__init__(message, status)
        self.provider = provider


class ProviderRequestError(BrowserAgentError):
    """The model provider rejected or failed a request."""
    kind = ErrorKind.PROVIDER_ERROR


class ContextOverflow(BrowserAgentError):
    """The provider rejected the request because the history is too large."""
    kind = ErrorKind.CONTEXT_OVERFLOW


class GatewayStartupError(BrowserAgentError):
    """The automation process never became reachable."""
    kind = ErrorKind.GATEWAY_STARTUP


class GatewayUnavailable(BrowserAgentError):
    """The gateway has no usable connection (reconnecting or failed)."""
    kind = ErrorKind.GATEWAY_UNAVAILABLE


class GatewayConnectionError(BrowserAgentError):
    """A connection-class failure (timeout or reset) that warrants reconnecting."""
    kind = ErrorKind.GATEWAY_CONNECTION


class ToolExecutionError(BrowserAgentError):
    """An individual tool call failed. Not fatal to the run."""
    kind = ErrorKind.TOOL_EXECUTION
    fatal = False


class UnknownActionError(ToolExecutionError):
    """A free-text action named something that maps to no tool."""
    kind = ErrorKind.UNKNOWN_ACTION

    def __init__(self, action: str, message: Optional[str] = None):
        super().__init__(message or f"Unknown action: {action}")
        self.action = action


class CancelledByUser(BrowserAgentError):
    """The user cancelled the current run."""
    kind = ErrorKind.CANCELLED
    fatal = False


class IterationLimitExceeded(BrowserAgentError):
    """The agent loop ran more model round-trips than allowed."""
    kind = ErrorKind.ITERATION_LIMIT


class ConsecutiveToolErrorLimitExceeded(BrowserAgentError):
    """Too many tool calls failed in a row."""
    kind = ErrorKind.CONSECUTIVE_ERROR_LIMIT


class RunInProgress(BrowserAgentError):
    """A message arrived while another run was still active."""
    kind = ErrorKind.RUN_IN_PROGRESS
    fatal = False


class PlaybookError(BrowserAgentError):
    """A playbook could not be parsed or one of its steps failed."""
    kind = ErrorKind.PLAYBOOK


# Environment variables holding each provider's key, for user guidance
_KEY_HINTS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GEMINI_API_KEY",
    "openai": "VISION_API_KEY",
    "lm_studio": "VISION_ENDPOINT",
}


def describe_error(error: BaseException) -> str:
    """Render a user-facing message for an error.

    Args:
        error: The exception raised by a session operation

    Returns:
        Guidance text suitable for display
    """
    if not isinstance(error, BrowserAgentError):
        return f"Unexpected error: {type(error).__name__}: {error}"

    if error.kind == ErrorKind.PROVIDER_NOT_CONFIGURED:
        hint = _KEY_HINTS.get(getattr(error, "provider", ""), "the provider API key")
        return f"{error.message}. Please set {hint} in the .env file."
    if error.kind == ErrorKind.CONTEXT_OVERFLOW:
        return "The conversation grew too large and was cleared. Please send your message again."
    if error.kind in (ErrorKind.GATEWAY_STARTUP, ErrorKind.GATEWAY_UNAVAILABLE):
        return f"Browser automation server unavailable: {error.message}"
    if error.kind == ErrorKind.CANCELLED:
        return "Execution cancelled."
    if error.kind == ErrorKind.RUN_IN_PROGRESS:
        return "Still working on the previous message. Cancel it or wait for it to finish."
    if error.kind == ErrorKind.PROVIDER_ERROR and error.status == 429:
        return "The model provider is rate limiting requests. Please wait and try again."
    return error.message
