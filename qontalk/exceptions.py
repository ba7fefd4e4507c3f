"""Custom exceptions for structured error handling and propagation.

This module provides engine-specific exceptions with error codes so that
configuration errors, runtime-recoverable conditions and lifecycle errors
can be told apart by the host application.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standard error codes for categorizing failures."""

    # Configuration errors (1xxx) - raised at registration/construction time
    INVALID_PATTERN = "CONFIG_1001"
    NIL_CALLBACK = "CONFIG_1002"
    DUPLICATE_TRANSITION = "CONFIG_1003"

    # State/event lookup errors (2xxx)
    STATE_NOT_FOUND = "STATE_2001"
    INVALID_STATE = "STATE_2002"
    INVALID_EVENT = "STATE_2003"

    # Runtime-recoverable conditions (3xxx) - reported, never fatal
    NO_MATCHING_RULE = "RUNTIME_3001"
    ACTION_FAILED = "RUNTIME_3002"
    ACTION_TIMEOUT = "RUNTIME_3003"
    LISTENER_FAILED = "RUNTIME_3004"

    # Lifecycle errors (4xxx)
    ENGINE_STOPPED = "LIFECYCLE_4001"


class QontalkException(Exception):
    """Base exception for all engine errors.

    All custom exceptions should inherit from this to enable
    structured error handling and propagation.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        """Initialize exception with structured error information.

        Args:
            message: Technical error message (for logging)
            error_code: Standard error code for categorization
            user_message: Best-effort text a host may send back to the user
            details: Additional error context
            original_exception: Original exception if wrapping
        """
        super().__init__(message)
        self.error_code = error_code
        self.user_message = user_message or "Something went wrong"
        self.details = details or {}
        self.original_exception = original_exception

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "success": False,
            "error_code": self.error_code.value,
            "message": str(self),
            "user_message": self.user_message,
            "details": self.details,
        }


class InvalidPatternError(QontalkException):
    """Raised when a rule pattern is not a valid regular expression."""

    def __init__(self, rule_name: str, pattern: str, **kwargs):
        super().__init__(
            message=f"Invalid pattern for rule {rule_name}: {pattern!r}",
            error_code=ErrorCode.INVALID_PATTERN,
            details={"rule_name": rule_name, "pattern": pattern},
            **kwargs,
        )


class StateNotFoundError(QontalkException):
    """Raised when a state name (or FSM source state) is not registered."""

    def __init__(self, state: Any, user_id: Optional[str] = None, **kwargs):
        super().__init__(
            message=f"State not found: {state}",
            error_code=ErrorCode.STATE_NOT_FOUND,
            user_message="State not found",
            details={"state": state, "user_id": user_id},
            **kwargs,
        )


class NilCallbackError(QontalkException):
    """Raised when an FSM is constructed without a global callback."""

    def __init__(self, **kwargs):
        super().__init__(
            message="FSM requires a global callback",
            error_code=ErrorCode.NIL_CALLBACK,
            **kwargs,
        )


class DuplicateTransitionError(QontalkException):
    """Raised when two transitions share the same (from, event) key."""

    def __init__(self, from_state: Any, event: Any, **kwargs):
        super().__init__(
            message=f"Duplicate transition: {from_state} --{event}-->",
            error_code=ErrorCode.DUPLICATE_TRANSITION,
            details={"from_state": from_state, "event": event},
            **kwargs,
        )


class InvalidStateError(QontalkException):
    """Raised when the current FSM state has no outgoing transitions."""

    def __init__(self, state: Any, **kwargs):
        super().__init__(
            message=f"No transitions registered for state: {state}",
            error_code=ErrorCode.INVALID_STATE,
            details={"state": state},
            **kwargs,
        )


class InvalidEventError(QontalkException):
    """Raised when an event is not registered for the current FSM state."""

    def __init__(self, state: Any, event: Any, **kwargs):
        super().__init__(
            message=f"Event {event} is not valid in state {state}",
            error_code=ErrorCode.INVALID_EVENT,
            details={"state": state, "event": event},
            **kwargs,
        )


class EngineStoppedError(QontalkException):
    """Raised when an engine is used after stop()."""

    def __init__(self, engine: str, **kwargs):
        super().__init__(
            message=f"{engine} has been stopped",
            error_code=ErrorCode.ENGINE_STOPPED,
            details={"engine": engine},
            **kwargs,
        )


class NoMatchingRuleError(QontalkException):
    """Diagnostic reported when no transition or rule matched a message."""

    def __init__(self, state: str, user_id: str, message: str, **kwargs):
        super().__init__(
            message=f"No valid rule found in state {state} for message: {message!r}",
            error_code=ErrorCode.NO_MATCHING_RULE,
            details={"state": state, "user_id": user_id},
            **kwargs,
        )


class ActionFailedError(QontalkException):
    """Raised (or reported) when a transition action fails or times out."""

    def __init__(self, from_state: Any, event: Any, timed_out: bool = False, **kwargs):
        super().__init__(
            message=(
                f"Action timed out for {from_state} --{event}-->"
                if timed_out
                else f"Action failed for {from_state} --{event}-->"
            ),
            error_code=ErrorCode.ACTION_TIMEOUT if timed_out else ErrorCode.ACTION_FAILED,
            details={"from_state": from_state, "event": event},
            **kwargs,
        )


class ListenerError(QontalkException):
    """Reported when a state or rule listener raises or exceeds its timeout."""

    def __init__(self, listener: str, user_id: str, **kwargs):
        super().__init__(
            message=f"Listener {listener} failed for user {user_id}",
            error_code=ErrorCode.LISTENER_FAILED,
            details={"listener": listener, "user_id": user_id},
            **kwargs,
        )
