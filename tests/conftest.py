"""Shared pytest fixtures and configuration for all test suites.

This module provides common fixtures that can be used across all test files:
- A ready-made growth-tracking bot (states, transitions, rules)
- An error log collecting diagnostics sent to the bot's error logger
- Transition Engine helpers (callback recorder)
"""

from typing import Any, List, Tuple

import pytest
import pytest_asyncio

from qontalk.fsm import FSM, Bot, FSMTransition, Transition

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test (fast)")
    config.addinivalue_line("markers", "fsm: mark test as FSM-related test")
    config.addinivalue_line(
        "markers", "integration: mark test as timing-dependent integration test"
    )


# ============================================================================
# Session Rule Engine Fixtures
# ============================================================================

START_MESSAGE = (
    "Hi there! Reply with one of the following options:\n"
    "1 View growth history\n"
    "2 Update growth data"
)
HISTORY_MESSAGE = "Growth history of {{name}}: Month: {{month}}"
UPDATE_MESSAGE = (
    "Please provide the growth information, "
    "e.g. 'Month: January Name: Ann'"
)


@pytest.fixture
def error_log() -> List[Exception]:
    """Collects every diagnostic passed to a bot's error logger."""
    return []


def build_growth_bot(error_log: List[Exception], **options: Any) -> Bot:
    """Build the growth-tracking bot used across scenario tests."""
    options.setdefault("session_cleanup_interval", 0)
    bot = Bot("GrowthBot", error_logger=error_log.append, **options)

    bot.register_state(
        "start",
        START_MESSAGE,
        [
            Transition(event="1", target="history"),
            Transition(event="2", target="update"),
        ],
    )
    bot.register_state(
        "history", HISTORY_MESSAGE, [Transition(event="exit", target="start")]
    )
    bot.register_state(
        "update", UPDATE_MESSAGE, [Transition(event="exit", target="start")]
    )
    bot.register_rule(
        "update",
        "rule_update",
        r"Month: (?P<month>.+) Name: (?P<name>.+)",
        "Thanks {{name}} for {{month}}",
    )
    return bot


@pytest.fixture
def growth_bot_factory(error_log):
    """Factory building growth bots with custom options."""

    def _build(**options: Any) -> Bot:
        return build_growth_bot(error_log, **options)

    return _build


@pytest_asyncio.fixture
async def growth_bot(error_log):
    """Growth bot with the background sweeper disabled."""
    bot = build_growth_bot(error_log)
    yield bot
    await bot.stop()


# ============================================================================
# Transition Engine Fixtures
# ============================================================================


class CallbackRecorder:
    """Global FSM callback recording every (from, event, to, params) call."""

    def __init__(self):
        self.calls: List[Tuple[Any, Any, Any, Any]] = []

    def __call__(self, from_state, event, to_state, params):
        self.calls.append((from_state, event, to_state, params))

    @property
    def count(self) -> int:
        return len(self.calls)


@pytest.fixture
def recorder() -> CallbackRecorder:
    return CallbackRecorder()


@pytest_asyncio.fixture
async def abc_fsm(recorder):
    """FSM with (A, X) -> B and (B, Y) -> C, starting at A."""
    fsm = FSM(
        "A",
        [
            FSMTransition(from_state="A", event="X", to_state="B"),
            FSMTransition(from_state="B", event="Y", to_state="C"),
        ],
        recorder,
    )
    yield fsm
    await fsm.stop()
