"""Finite State Machine (FSM) module.

This module provides two engines:
- Bot: session-scoped, rule-based chatbot state machine
- FSM: generic event-driven transition engine with async actions
"""

from qontalk.fsm.bot import Bot, ErrorLogger, ListenerFunc
from qontalk.fsm.engine import FSM, Callback
from qontalk.fsm.models import (
    Action,
    CustomError,
    FSMTransition,
    Rule,
    RuleOutcome,
    SetVariableAction,
    State,
    Transition,
    TransitionResult,
    UserSession,
)
from qontalk.fsm.session import SessionStore

__all__ = [
    "Bot",
    "FSM",
    "SessionStore",
    "State",
    "Transition",
    "Rule",
    "RuleOutcome",
    "Action",
    "SetVariableAction",
    "CustomError",
    "UserSession",
    "FSMTransition",
    "TransitionResult",
    "Callback",
    "ListenerFunc",
    "ErrorLogger",
]
