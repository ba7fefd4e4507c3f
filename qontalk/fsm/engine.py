"""Generic Transition Engine: a keyed ``(state, event) -> state`` machine.

States and events are opaque hashable values. A transition may carry an
action; actions run as detached tasks, optionally bounded by a timeout, and
either commit the target state or redirect to the transition's ``on_error``
state. Every committed transition is reported to a single global callback.

Unlike the Session Rule Engine this machine is not session-scoped: one
instance holds one current state.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from qontalk.exceptions import (
    ActionFailedError,
    DuplicateTransitionError,
    EngineStoppedError,
    InvalidEventError,
    InvalidStateError,
    NilCallbackError,
    StateNotFoundError,
)
from qontalk.fsm.models import FSMTransition, TransitionResult
from qontalk.utils.structured_logger import get_structured_logger, set_correlation_id

logger = get_structured_logger("fsm.engine")

# callback(from_state, event, to_state, params); may return an awaitable
Callback = Callable[[Any, Any, Any, Optional[Dict[str, Any]]], Any]


class FSM:
    """Event-driven finite state machine with async actions."""

    def __init__(
        self,
        initial_state: Any,
        transitions: Iterable[FSMTransition],
        callback: Optional[Callback],
    ):
        """Build the transition table.

        Every state appearing as a source, target or error redirect becomes a
        known state, even if it has no outgoing transitions.

        Args:
            initial_state: State the machine starts in
            transitions: Initial transitions
            callback: Global observer invoked on every committed transition

        Raises:
            NilCallbackError: If ``callback`` is None
            DuplicateTransitionError: If two transitions share (from, event)
        """
        if callback is None:
            raise NilCallbackError()

        self._callback = callback
        self._current_state = initial_state
        self._transitions: Dict[Any, Dict[Any, FSMTransition]] = {initial_state: {}}
        self._history: List[TransitionResult] = []
        self._pending: Set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self._stopped = False

        for transition in transitions:
            if transition.event in self._transitions.get(transition.from_state, {}):
                raise DuplicateTransitionError(transition.from_state, transition.event)
            self._register(transition)

    def _register(self, transition: FSMTransition) -> None:
        self._transitions.setdefault(transition.from_state, {})[
            transition.event
        ] = transition
        self._transitions.setdefault(transition.to_state, {})
        if transition.on_error is not None:
            self._transitions.setdefault(transition.on_error, {})

    # ------------------------------------------------------------------
    # Transition table
    # ------------------------------------------------------------------

    def add_transition(self, transition: FSMTransition) -> None:
        """Insert a transition, replacing any existing one with the same key."""
        existing = self._transitions.get(transition.from_state, {}).get(
            transition.event
        )
        if existing is not None:
            logger.info(
                "Replacing transition",
                from_state=transition.from_state,
                event=transition.event,
                old_to_state=existing.to_state,
                new_to_state=transition.to_state,
            )
        self._register(transition)

    def remove_transition(self, from_state: Any, event: Any) -> None:
        """Remove ``(from_state, event)``; absent events are a no-op.

        Raises:
            StateNotFoundError: If ``from_state`` is not a known state
        """
        events = self._transitions.get(from_state)
        if events is None:
            raise StateNotFoundError(from_state)
        events.pop(event, None)

    def transition_exists(self, from_state: Any, event: Any) -> bool:
        """Check whether ``(from_state, event)`` is registered.

        Raises:
            StateNotFoundError: If ``from_state`` is not a known state
        """
        events = self._transitions.get(from_state)
        if events is None:
            raise StateNotFoundError(from_state)
        return event in events

    @property
    def states(self) -> List[Any]:
        return list(self._transitions)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def get_current_state(self) -> Any:
        return self._current_state

    @property
    def current_state(self) -> Any:
        return self._current_state

    @property
    def history(self) -> List[TransitionResult]:
        """Resolved transitions (copy to avoid external mutation)."""
        return list(self._history)

    @property
    def pending_actions(self) -> int:
        return len(self._pending)

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    async def send_event(
        self, event: Any, params: Optional[Dict[str, Any]] = None
    ) -> None:
        """Fire ``event`` from the current state.

        Transitions without an action are committed before this returns.
        Transitions with an action are resolved by a detached task; use
        ``wait_for_pending`` to wait for them.

        Raises:
            EngineStoppedError: If the machine has been stopped
            InvalidStateError: If the current state has no transitions
            InvalidEventError: If ``event`` is not registered for the state
        """
        if self._stopped:
            raise EngineStoppedError("FSM")

        set_correlation_id()
        from_state = self._current_state

        events = self._transitions.get(from_state)
        if not events:
            raise InvalidStateError(from_state)

        transition = events.get(event)
        if transition is None:
            raise InvalidEventError(from_state, event)

        if transition.action is None:
            self._commit(transition, transition.to_state, params)
            await self._invoke_callback(from_state, event, transition.to_state, params)
            return

        task = asyncio.get_running_loop().create_task(
            self._run_action(transition, params)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_action(
        self, transition: FSMTransition, params: Optional[Dict[str, Any]]
    ) -> None:
        action_task = asyncio.ensure_future(self._call_action(transition.action))
        # Retrieve late results of abandoned actions so they are not reported as lost
        action_task.add_done_callback(lambda t: t.cancelled() or t.exception())
        stop_task = asyncio.ensure_future(self._stop_event.wait())

        try:
            done, _ = await asyncio.wait(
                {action_task, stop_task},
                timeout=transition.timeout or None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_task.cancel()

        if self._stopped:
            action_task.cancel()
            logger.info(
                "Action abandoned on stop",
                from_state=transition.from_state,
                event=transition.event,
            )
            return

        error: Optional[ActionFailedError] = None
        if action_task not in done:
            action_task.cancel()
            error = ActionFailedError(
                transition.from_state, transition.event, timed_out=True
            )
        elif action_task.cancelled():
            error = ActionFailedError(transition.from_state, transition.event)
        elif action_task.exception() is not None:
            error = ActionFailedError(
                transition.from_state,
                transition.event,
                original_exception=action_task.exception(),
            )

        if error is None:
            target = transition.to_state
        elif transition.on_error is not None:
            target = transition.on_error
        else:
            self._history.append(
                TransitionResult(
                    success=False,
                    from_state=transition.from_state,
                    event=transition.event,
                    to_state=self._current_state,
                    error=str(error),
                )
            )
            logger.error(
                str(error),
                from_state=transition.from_state,
                event=transition.event,
                cause=str(error.original_exception),
            )
            return

        self._commit(transition, target, params, error)
        await self._invoke_callback(
            transition.from_state, transition.event, target, params
        )

    async def _call_action(self, action: Callable[[], Any]) -> None:
        if inspect.iscoroutinefunction(action):
            await action()
            return

        # Blocking actions run in a worker thread so the timeout can win the race
        result = await asyncio.to_thread(action)
        if inspect.isawaitable(result):
            await result

    def _commit(
        self,
        transition: FSMTransition,
        target: Any,
        params: Optional[Dict[str, Any]],
        error: Optional[ActionFailedError] = None,
    ) -> None:
        self._current_state = target
        self._history.append(
            TransitionResult(
                success=error is None,
                from_state=transition.from_state,
                event=transition.event,
                to_state=target,
                error=str(error) if error else None,
            )
        )
        logger.log_transition(
            from_state=transition.from_state,
            to_state=target,
            trigger=transition.event,
            success=error is None,
            error=str(error) if error else None,
            params=params,
        )

    async def _invoke_callback(
        self,
        from_state: Any,
        event: Any,
        to_state: Any,
        params: Optional[Dict[str, Any]],
    ) -> None:
        try:
            result = self._callback(from_state, event, to_state, params)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # Don't undo the transition if the observer fails
            logger.error(
                f"Transition callback failed: {str(e)}",
                from_state=from_state,
                event=event,
                to_state=to_state,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_for_pending(self) -> None:
        """Wait until every in-flight action has been resolved."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stop(self) -> None:
        """Signal in-flight actions to abandon and wait for all of them.

        Only the first call has an effect.
        """
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()

        await self.wait_for_pending()
        logger.info("FSM stopped", current_state=self._current_state)
