"""Session Rule Engine: a message-driven chatbot state machine.

Each user gets an independent session (current state + variables). An
inbound message is checked against the current state's literal transitions
first, then evaluated concurrently against the state's regex rules. Named
capture groups bind into the session, actions run, and the response template
of the winning rule is rendered with session and bot variables.

State and rule tables are meant to be registered before serving traffic;
registering while messages are being processed is not guaranteed safe.
"""

import asyncio
import inspect
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from qontalk.config import settings
from qontalk.exceptions import (
    EngineStoppedError,
    ListenerError,
    NoMatchingRuleError,
    QontalkException,
    StateNotFoundError,
)
from qontalk.fsm.models import (
    Action,
    CustomError,
    Rule,
    RuleOutcome,
    State,
    Transition,
    UserSession,
)
from qontalk.fsm.session import SessionStore
from qontalk.services.metrics import MetricsService
from qontalk.utils.structured_logger import get_structured_logger, set_correlation_id
from qontalk.utils.template import find_placeholders, replace_variables

logger = get_structured_logger("fsm.bot")

# listener(user_id, message, session, bot); may return an awaitable
ListenerFunc = Callable[[str, str, UserSession, "Bot"], Any]
ErrorLogger = Callable[[QontalkException], None]
Duration = Union[float, int, timedelta]


def _is_coroutine_callable(func: Callable[..., Any]) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class Bot:
    """FSM-based chatbot owning states, rules, listeners and user sessions."""

    def __init__(
        self,
        name: str,
        starting_state: Optional[str] = None,
        session_timeout: Optional[Duration] = None,
        session_cleanup_interval: Optional[Duration] = None,
        concurrent_access: Optional[bool] = None,
        error_logger: Optional[ErrorLogger] = None,
        listener_timeout: Optional[Duration] = None,
        session_store: Optional[SessionStore] = None,
    ):
        """Initialize the bot; unset options fall back to ``settings``.

        Args:
            name: Bot name (used in logs and metrics)
            starting_state: State assigned to newly created sessions
            session_timeout: Idle age after which a session is evicted
            session_cleanup_interval: Sweep period, 0 disables the sweeper
            concurrent_access: Lock per user instead of one bot-wide lock
            error_logger: Receives non-fatal diagnostics
            listener_timeout: Upper bound for coroutine listeners
            session_store: Session storage (in-memory by default)
        """
        self.name = name
        self.starting_state = starting_state or settings.starting_state
        self.session_timeout = timedelta(
            seconds=_seconds(
                settings.session_timeout_seconds
                if session_timeout is None
                else session_timeout
            )
        )
        self.session_cleanup_interval = _seconds(
            settings.session_cleanup_interval_seconds
            if session_cleanup_interval is None
            else session_cleanup_interval
        )
        self.concurrent_access = (
            settings.concurrent_access
            if concurrent_access is None
            else concurrent_access
        )
        self.listener_timeout = _seconds(
            settings.listener_timeout_seconds
            if listener_timeout is None
            else listener_timeout
        )
        self.error_logger = error_logger

        self.sessions = session_store if session_store is not None else SessionStore()
        self.states: Dict[str, State] = {}
        self.global_vars: Dict[str, str] = {}
        self.state_listeners: Dict[str, ListenerFunc] = {}
        self.rule_listeners: Dict[str, ListenerFunc] = {}
        self.metrics = MetricsService(name)

        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._stopped = False
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_state(
        self,
        name: str,
        entry_message: str,
        transitions: Optional[List[Transition]] = None,
        rules: Optional[List[Rule]] = None,
    ) -> State:
        """Insert or replace a state by name (last registration wins)."""
        if name in self.states:
            logger.warning("Replacing existing state", state=name)

        state = State(
            name=name,
            entry_message=entry_message,
            transitions=transitions or [],
            rules=rules or [],
        )
        self.states[name] = state
        return state

    def register_rule(
        self,
        state_name: str,
        rule_name: str,
        pattern: str,
        respond: str,
        actions: Optional[List[Action]] = None,
        error_rules: Optional[List[CustomError]] = None,
    ) -> Rule:
        """Compile ``pattern`` and append a rule to a registered state.

        Raises:
            InvalidPatternError: If the pattern does not compile
            StateNotFoundError: If ``state_name`` is not registered
        """
        rule = Rule.from_pattern(rule_name, pattern, respond, actions, error_rules)

        state = self.states.get(state_name)
        if state is None:
            raise StateNotFoundError(state_name)

        state.rules.append(rule)
        logger.debug("Rule registered", state=state_name, rule=rule_name)
        return rule

    def register_state_listener(self, state_name: str, listener: ListenerFunc) -> None:
        self.state_listeners[state_name] = listener

    def register_rule_listener(self, rule_name: str, listener: ListenerFunc) -> None:
        self.rule_listeners[rule_name] = listener

    def set_global_variable(self, name: str, value: str) -> None:
        """Set a bot-level variable, rendered as ``{{bot.<name>}}``."""
        self.global_vars[name] = value

    @property
    def global_variables(self) -> Dict[str, str]:
        return dict(self.global_vars)

    # ------------------------------------------------------------------
    # Message processing
    # ------------------------------------------------------------------

    async def process_message(self, user_id: str, message: str) -> str:
        """Process one inbound message and return the response text.

        Args:
            user_id: Conversational participant identifier
            message: Raw message text

        Returns:
            Response text (rule response, entry message or error response)

        Raises:
            StateNotFoundError: If the session's state (or a transition
                target) is not registered
            EngineStoppedError: If the bot has been stopped
        """
        if self._stopped:
            raise EngineStoppedError(f"Bot {self.name}")

        self._ensure_sweeper()
        set_correlation_id()

        async with self._message_lock(user_id):
            return await self._process(user_id, message)

    async def _process(self, user_id: str, message: str) -> str:
        session, created = await self.sessions.get_or_create(
            user_id, self.starting_state
        )
        if created:
            self.metrics.track_session_created(user_id)
        session.touch()
        self.metrics.track_message()

        state = self.states.get(session.state)
        if state is None:
            error = StateNotFoundError(session.state, user_id=user_id)
            self._report(error)
            raise error

        # Literal transitions take precedence over rules
        transition = state.find_transition(message)
        if transition is not None:
            return await self._enter_state(session, transition, message)

        legacy_error = self._match_legacy_error(state, message)
        if legacy_error is not None:
            logger.info(
                "Error rule matched",
                user_id=user_id,
                state=state.name,
                kind=legacy_error.kind,
            )
            return self._render(legacy_error.message, session)

        outcomes = await asyncio.gather(
            *(
                self._evaluate_rule(index, rule, state, session, message)
                for index, rule in enumerate(state.rules)
            )
        )
        matched = [outcome for outcome in outcomes if outcome is not None]

        if matched:
            # Error responses first, then lowest registration index,
            # independent of completion order
            winner = min(
                matched, key=lambda outcome: (not outcome.is_error, outcome.index)
            )
            if winner.is_error:
                session.clear_error(winner.error_kind)
            self.metrics.track_rule_match(len(matched))
            logger.info(
                "Rule matched",
                user_id=user_id,
                state=state.name,
                rule=winner.rule_name,
                is_error=winner.is_error,
                matched=len(matched),
            )
            return winner.response

        self.metrics.track_fallback()
        self._report(NoMatchingRuleError(state.name, user_id, message))
        return self._render(state.entry_message, session)

    async def _enter_state(
        self, session: UserSession, transition: Transition, message: str
    ) -> str:
        target = self.states.get(transition.target)
        if target is None:
            error = StateNotFoundError(transition.target, user_id=session.user_id)
            self._report(error)
            raise error

        from_state = session.state
        session.state = target.name
        self.metrics.track_transition()
        logger.log_transition(
            from_state=from_state,
            to_state=target.name,
            trigger=message,
            user_id=session.user_id,
        )

        response = self._render(target.entry_message, session)
        await self._notify(
            self.state_listeners.get(target.name),
            f"state:{target.name}",
            session,
            message,
        )
        return response

    async def _evaluate_rule(
        self,
        index: int,
        rule: Rule,
        state: State,
        session: UserSession,
        message: str,
    ) -> Optional[RuleOutcome]:
        match = rule.pattern.search(message)
        if match is None:
            return None

        # Non-participating groups bind as empty strings
        for name, value in match.groupdict().items():
            session.variables[name] = value if value is not None else ""

        for action in rule.actions:
            action.apply(session.variables)

        custom_error = session.pending_error(rule)
        if custom_error is not None:
            # Cleared only if this outcome wins
            return RuleOutcome(
                index=index,
                rule_name=rule.name,
                response=self._render(custom_error.message, session),
                error_kind=custom_error.kind,
            )

        response = self._render(rule.respond, session)
        await self._notify(
            self.state_listeners.get(state.name), f"state:{state.name}", session, message
        )
        await self._notify(
            self.rule_listeners.get(rule.name), f"rule:{rule.name}", session, message
        )
        return RuleOutcome(index=index, rule_name=rule.name, response=response)

    def _match_legacy_error(self, state: State, message: str) -> Optional[CustomError]:
        for rule in state.rules:
            for custom_error in rule.error_rules:
                if custom_error.pattern is not None and custom_error.pattern.search(
                    message
                ):
                    return custom_error
        return None

    def _render(self, text: str, session: UserSession) -> str:
        rendered = replace_variables(text, session.variables, self.global_vars)
        unresolved = find_placeholders(rendered)
        if unresolved:
            logger.debug(
                "Unresolved placeholders left verbatim",
                user_id=session.user_id,
                placeholders=unresolved,
            )
        return rendered

    async def _notify(
        self,
        listener: Optional[ListenerFunc],
        label: str,
        session: UserSession,
        message: str,
    ) -> None:
        """Invoke a listener; failures and timeouts are reported, never raised."""
        if listener is None:
            return

        args = (session.user_id, message, session, self)
        try:
            if _is_coroutine_callable(listener):
                await asyncio.wait_for(listener(*args), timeout=self.listener_timeout)
                return

            # Blocking listeners run in a worker thread so the timeout holds
            result = await asyncio.wait_for(
                asyncio.to_thread(listener, *args), timeout=self.listener_timeout
            )
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.listener_timeout)
        except Exception as e:
            self._report(ListenerError(label, session.user_id, original_exception=e))

    def _report(self, error: QontalkException) -> None:
        """Send a non-fatal diagnostic to the logs and the error logger."""
        self.metrics.track_error()
        logger.warning(str(error), error_code=error.error_code.value, **error.details)

        if self.error_logger is None:
            return
        try:
            self.error_logger(error)
        except Exception as e:
            logger.error(f"Error logger failed: {str(e)}")

    def _message_lock(self, user_id: str) -> asyncio.Lock:
        if self.concurrent_access:
            return self.sessions.user_lock(user_id)
        return self._lock

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def get_session(self, user_id: str) -> Optional[UserSession]:
        return self.sessions.get(user_id)

    async def move_to_state(self, user_id: str, state_name: str) -> UserSession:
        """Force a user's session into ``state_name``.

        Creates the session if needed. Variables are kept.

        Raises:
            StateNotFoundError: If ``state_name`` is not registered
        """
        if state_name not in self.states:
            raise StateNotFoundError(state_name, user_id=user_id)

        async with self._message_lock(user_id):
            session, created = await self.sessions.get_or_create(
                user_id, self.starting_state
            )
            if created:
                self.metrics.track_session_created(user_id)

            from_state = session.state
            session.state = state_name
            session.touch()

        logger.log_transition(
            from_state=from_state,
            to_state=state_name,
            trigger="move_to_state",
            user_id=user_id,
        )
        return session

    async def report_error(self, user_id: str, kind: str) -> bool:
        """Flag error condition ``kind`` for the user's current state.

        The next rule carrying a matching error rule responds with that
        error message instead of its own response.

        Returns:
            True if the user has a session
        """
        return await self.sessions.flag_error(user_id, kind)

    async def reset_session(self, user_id: str) -> bool:
        async with self._message_lock(user_id):
            return await self.sessions.delete(user_id)

    async def sweep_expired_sessions(self) -> List[str]:
        """Evict sessions idle for longer than ``session_timeout``."""
        if self.concurrent_access:
            evicted = await self.sessions.sweep(
                self.session_timeout, skip=self.sessions.busy_user_ids()
            )
        else:
            async with self._lock:
                evicted = await self.sessions.sweep(self.session_timeout)

        self.metrics.track_sessions_evicted(len(evicted))
        return evicted

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return not self._stopped

    async def start(self) -> None:
        """Start the background session sweeper."""
        if self._stopped:
            raise EngineStoppedError(f"Bot {self.name}")
        self._ensure_sweeper()

    async def stop(self) -> None:
        """Stop the sweeper and wait for it to exit. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()

        if self._sweeper is not None:
            await self._sweeper
            self._sweeper = None

        logger.info("Bot stopped", bot=self.name, sessions=len(self.sessions))

    async def __aenter__(self) -> "Bot":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _ensure_sweeper(self) -> None:
        if self._sweeper is not None or self.session_cleanup_interval <= 0:
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_loop(), name=f"{self.name}-session-sweeper"
        )

    async def _sweep_loop(self) -> None:
        logger.info(
            "Session sweeper started",
            bot=self.name,
            interval=self.session_cleanup_interval,
            timeout=self.session_timeout.total_seconds(),
        )
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.session_cleanup_interval
                )
            except asyncio.TimeoutError:
                try:
                    await self.sweep_expired_sessions()
                except Exception as e:
                    logger.error(f"Session sweep failed: {str(e)}", bot=self.name)
        logger.info("Session sweeper stopped", bot=self.name)
