"""Structured logging utility for engine operations with correlation IDs and JSON formatting.

This module provides structured logging capabilities for tracking state
machine operations, state transitions, session lifecycle and rule matches.
"""

import json
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from qontalk.utils.logger import log

# Context variable for correlation ID (task-local under asyncio)
correlation_id_var: ContextVar[Optional[str]] = ContextVar(
    "correlation_id", default=None
)


class StructuredLogger:
    """Structured logger with JSON formatting and correlation ID support."""

    def __init__(self, component: str):
        """Initialize structured logger for a component.

        Args:
            component: Name of the component (e.g., "fsm.bot", "fsm.engine")
        """
        self.component = component

    def _format_structured_log(
        self, level: str, message: str, **kwargs: Any
    ) -> Dict[str, Any]:
        """Format log entry as structured JSON.

        Args:
            level: Log level (INFO, WARNING, ERROR, etc.)
            message: Log message
            **kwargs: Additional structured data

        Returns:
            Structured log entry as dictionary
        """
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "component": self.component,
            "message": message,
            "correlation_id": correlation_id_var.get(),
        }

        if kwargs:
            log_entry["data"] = kwargs

        return log_entry

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        structured_data = self._format_structured_log(level, message, **kwargs)
        log_message = f"[FSM] {message} | {json.dumps(structured_data, default=str)}"

        # opt(depth=2) reports the caller of debug()/info()/... as the log location
        log.opt(depth=2).log(level, log_message)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message with structured data."""
        self._log("DEBUG", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message with structured data."""
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message with structured data."""
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message with structured data."""
        self._log("ERROR", message, **kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        """Log critical message with structured data."""
        self._log("CRITICAL", message, **kwargs)

    def log_transition(
        self,
        from_state: Any,
        to_state: Any,
        trigger: Any,
        user_id: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        """Log a state transition with structured data.

        Args:
            from_state: Source state
            to_state: Target state
            trigger: Event or message that triggered the transition
            user_id: User identifier (Session Rule Engine only)
            success: Whether transition succeeded
            error: Error message if transition failed
            **kwargs: Additional context
        """
        self._log(
            "INFO" if success else "WARNING",
            f"State transition: {from_state} -> {to_state}",
            user_id=user_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            success=success,
            error=error,
            **kwargs,
        )


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set correlation ID for current context.

    Args:
        correlation_id: Optional correlation ID. If None, generates new UUID.

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())

    correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def clear_correlation_id() -> None:
    """Clear correlation ID from current context."""
    correlation_id_var.set(None)


def get_structured_logger(component: str) -> StructuredLogger:
    """Factory function to create a structured logger for a component."""
    return StructuredLogger(component)
