"""Freshness and replay policy for verified initData."""

import math

from .models import SecurityCheckResult
from .replay import ReplayGuard

DEFAULT_FRESHNESS_WINDOW = 300


def payload_age(auth_date_seconds: int, now_millis: int) -> int:
    """Whole seconds elapsed since auth_date, truncated toward zero."""
    return math.trunc((now_millis - auth_date_seconds * 1000) / 1000)


def evaluate(
    auth_date_seconds: int,
    now_millis: int,
    freshness_window_seconds: int = DEFAULT_FRESHNESS_WINDOW,
    replay_protected: bool = False,
) -> SecurityCheckResult:
    """Pure freshness check of an already signature-verified payload.

    Negative ages (auth_date in the future) are rejected as well as ages
    beyond the window.
    """
    age = payload_age(auth_date_seconds, now_millis)
    return SecurityCheckResult(
        signature_valid=True,
        timestamp_valid=0 <= age <= freshness_window_seconds,
        age_seconds=age,
        replay_protected=replay_protected,
    )


class SecurityPolicy:
    """Freshness window plus a replay store sized to that window."""

    def __init__(self, freshness_window: int = DEFAULT_FRESHNESS_WINDOW, replay_cache_size: int = 10000):
        self.freshness_window = freshness_window
        self.replay_guard = ReplayGuard(ttl=freshness_window, max_entries=replay_cache_size)

    def evaluate(self, auth_date_seconds: int, now_millis: int, received_hash: str) -> SecurityCheckResult:
        """Check freshness, then record the hash. Stale payloads are never recorded.

        Raises ReplayStoreFull when a fresh payload cannot be recorded.
        """
        result = evaluate(auth_date_seconds, now_millis, self.freshness_window)
        if not result.timestamp_valid:
            return result
        fresh = self.replay_guard.check_and_remember(received_hash, now_millis / 1000)
        return SecurityCheckResult(
            signature_valid=True,
            timestamp_valid=True,
            age_seconds=result.age_seconds,
            replay_protected=fresh,
        )
