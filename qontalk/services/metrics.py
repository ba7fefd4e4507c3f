"""Metrics tracking for the state machine engines."""

from typing import Any, Dict

from qontalk.utils.logger import log


class MetricsService:
    """Counters describing session lifecycle and message handling.

    One instance per engine, counters reset on restart.
    """

    def __init__(self, name: str = "bot"):
        self.name = name
        self.reset_metrics()

    def track_session_created(self, user_id: str) -> None:
        self.sessions_created += 1
        log.debug(f"METRIC [{self.name}]: session created for user {user_id}")

    def track_sessions_evicted(self, count: int) -> None:
        self.sessions_evicted += count

    def track_message(self) -> None:
        self.messages_processed += 1

    def track_transition(self) -> None:
        self.transitions_taken += 1

    def track_rule_match(self, count: int = 1) -> None:
        self.rules_matched += count

    def track_fallback(self) -> None:
        self.fallbacks += 1

    def track_error(self) -> None:
        self.errors_reported += 1

    def get_fallback_ratio(self) -> float:
        """Share of processed messages that matched nothing.

        Returns:
            Ratio (0.0-1.0), or 0.0 if no message was processed yet
        """
        if self.messages_processed == 0:
            return 0.0
        return self.fallbacks / self.messages_processed

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all tracked metrics."""
        return {
            "sessions_created": self.sessions_created,
            "sessions_evicted": self.sessions_evicted,
            "messages_processed": self.messages_processed,
            "transitions_taken": self.transitions_taken,
            "rules_matched": self.rules_matched,
            "fallbacks": self.fallbacks,
            "fallback_ratio": self.get_fallback_ratio(),
            "errors_reported": self.errors_reported,
        }

    def log_metrics_summary(self) -> None:
        metrics = self.get_metrics_summary()

        log.info(f"Metrics summary [{self.name}]:")
        log.info(f"   Messages processed: {metrics['messages_processed']}")
        log.info(f"   Transitions taken: {metrics['transitions_taken']}")
        log.info(f"   Rules matched: {metrics['rules_matched']}")
        log.info(f"   Fallbacks: {metrics['fallbacks']} ({metrics['fallback_ratio']:.2%})")
        log.info(
            f"   Sessions created/evicted: "
            f"{metrics['sessions_created']}/{metrics['sessions_evicted']}"
        )

    def reset_metrics(self) -> None:
        """Reset all metrics counters."""
        self.sessions_created = 0
        self.sessions_evicted = 0
        self.messages_processed = 0
        self.transitions_taken = 0
        self.rules_matched = 0
        self.fallbacks = 0
        self.errors_reported = 0
