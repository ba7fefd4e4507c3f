"""Pydantic models for FSM (Finite State Machine) components.

This module defines the data model shared by the Session Rule Engine
(states, transitions, rules, actions, user sessions) and the Generic
Transition Engine (keyed transitions and their audit records).
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from qontalk.exceptions import InvalidPatternError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compile_pattern(rule_name: str, pattern: str) -> re.Pattern:
    """Compile a rule pattern, raising InvalidPatternError on failure."""
    try:
        return re.compile(pattern)
    except re.error as e:
        raise InvalidPatternError(rule_name, pattern, original_exception=e) from e


# ============================================================================
# Session Rule Engine
# ============================================================================


class Transition(BaseModel):
    """Literal event-to-state edge.

    Attributes:
        event: Message text that triggers the transition (exact match)
        target: Name of the state entered
    """
    event: str
    target: str


class SetVariableAction(BaseModel):
    """Copy session variable ``value`` into session variable ``name``.

    The copy only happens when ``value`` is already bound.
    """
    name: str
    value: str


class Action(BaseModel):
    """Side effect executed after a rule matches."""
    set_variable: Optional[SetVariableAction] = None

    def apply(self, variables: Dict[str, str]) -> None:
        if self.set_variable is not None:
            source = self.set_variable.value
            if source in variables:
                variables[self.set_variable.name] = variables[source]


class CustomError(BaseModel):
    """Error response attached to a rule.

    When the error condition ``kind`` has been flagged for the session's
    current state, ``message`` is emitted instead of the rule's response and
    the flag is cleared.

    Attributes:
        kind: Name of the error condition
        message: Response template emitted when the condition is flagged
        pattern: Legacy trigger; a message matching it emits ``message``
            directly (deprecated single ``ErrorRule`` form)
    """
    kind: str
    message: str
    pattern: Optional[re.Pattern] = None

    @classmethod
    def from_pattern(cls, kind: str, pattern: str, message: str) -> "CustomError":
        """Build a legacy pattern-triggered error rule."""
        return cls(kind=kind, message=message, pattern=compile_pattern(kind, pattern))


class Rule(BaseModel):
    """Regex-driven matcher bound to a state.

    Attributes:
        name: Rule name (used to address rule listeners)
        pattern: Compiled regular expression; named groups bind variables
        respond: Response template
        actions: Actions executed after a match, in order
        error_rules: Error responses that take precedence when flagged
    """
    name: str
    pattern: re.Pattern
    respond: str
    actions: List[Action] = Field(default_factory=list)
    error_rules: List[CustomError] = Field(default_factory=list)

    @classmethod
    def from_pattern(
        cls,
        name: str,
        pattern: str,
        respond: str,
        actions: Optional[List[Action]] = None,
        error_rules: Optional[List[CustomError]] = None,
    ) -> "Rule":
        """Compile ``pattern`` and build a rule.

        Raises:
            InvalidPatternError: If the pattern does not compile
        """
        return cls(
            name=name,
            pattern=compile_pattern(name, pattern),
            respond=respond,
            actions=actions or [],
            error_rules=error_rules or [],
        )


class State(BaseModel):
    """A conversational state with its entry message, transitions and rules."""
    name: str
    entry_message: str
    transitions: List[Transition] = Field(default_factory=list)
    rules: List[Rule] = Field(default_factory=list)

    def find_transition(self, message: str) -> Optional[Transition]:
        """Return the first transition whose event equals ``message``."""
        for transition in self.transitions:
            if transition.event == message:
                return transition
        return None


class UserSession(BaseModel):
    """Per-user conversational context.

    Attributes:
        user_id: Conversational participant identifier
        state: Name of the session's current state
        variables: Session variable bindings
        created_at: When the session was created
        last_active: Timestamp of the last processed message
        error_flags: Flagged error conditions, keyed by state name
    """
    user_id: str
    state: str
    variables: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_active: datetime = Field(default_factory=utcnow)
    error_flags: Dict[str, Set[str]] = Field(default_factory=dict)

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_active = now or utcnow()

    def is_expired(self, timeout: timedelta, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) - self.last_active > timeout

    def flag_error(self, kind: str, state: Optional[str] = None) -> None:
        self.error_flags.setdefault(state or self.state, set()).add(kind)

    def clear_error(self, kind: str, state: Optional[str] = None) -> None:
        state = state or self.state
        flags = self.error_flags.get(state)
        if flags is None:
            return
        flags.discard(kind)
        if not flags:
            del self.error_flags[state]

    def pending_error(self, rule: Rule) -> Optional[CustomError]:
        """Return the first error rule of ``rule`` flagged for the current state."""
        flags = self.error_flags.get(self.state)
        if not flags:
            return None
        for custom_error in rule.error_rules:
            if custom_error.kind in flags:
                return custom_error
        return None


class RuleOutcome(BaseModel):
    """Result of evaluating one matched rule against a message.

    Attributes:
        index: Registration index of the rule within its state
        rule_name: Name of the rule
        response: Rendered response text
        error_kind: Flagged error condition whose response replaced the
            rule's response, if any
    """
    index: int
    rule_name: str
    response: str
    error_kind: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error_kind is not None


# ============================================================================
# Generic Transition Engine
# ============================================================================


class FSMTransition(BaseModel):
    """Keyed ``(from_state, event) -> to_state`` edge.

    States and events are any hashable values.

    Attributes:
        from_state: Source state
        event: Triggering event
        to_state: Target state on success
        action: Optional sync or async callable run before committing
        timeout: Optional upper bound (seconds) for the action; 0 means none
        on_error: Optional state entered when the action fails or times out
    """
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    from_state: Any
    event: Any
    to_state: Any
    action: Optional[Callable[[], Any]] = None
    timeout: Optional[float] = Field(default=None, ge=0)
    on_error: Any = None

    @property
    def key(self) -> tuple:
        return (self.from_state, self.event)


class TransitionResult(BaseModel):
    """Audit record of a Transition Engine transition.

    Attributes:
        success: Whether the action (if any) succeeded
        from_state: Source state
        event: Triggering event
        to_state: State committed (``on_error`` when redirected, source when
            the failed transition had no redirect)
        error: Error message if the action failed
        timestamp: When the transition was resolved
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    from_state: Any
    event: Any
    to_state: Any
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
