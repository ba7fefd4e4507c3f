"""qontalk: state machine engines for chat-bot conversations."""

from qontalk.exceptions import (
    DuplicateTransitionError,
    EngineStoppedError,
    ErrorCode,
    InvalidEventError,
    InvalidPatternError,
    InvalidStateError,
    NilCallbackError,
    QontalkException,
    StateNotFoundError,
)
from qontalk.fsm import (
    FSM,
    Action,
    Bot,
    CustomError,
    FSMTransition,
    Rule,
    SetVariableAction,
    State,
    Transition,
    UserSession,
)

__version__ = "0.1.0"

__all__ = [
    "Bot",
    "FSM",
    "State",
    "Transition",
    "Rule",
    "Action",
    "SetVariableAction",
    "CustomError",
    "UserSession",
    "FSMTransition",
    "ErrorCode",
    "QontalkException",
    "InvalidPatternError",
    "StateNotFoundError",
    "NilCallbackError",
    "DuplicateTransitionError",
    "InvalidStateError",
    "InvalidEventError",
    "EngineStoppedError",
]
