"""Tests for the freshness window and the replay store."""

import pytest

from tma_auth.replay import ReplayGuard, ReplayStoreFull
from tma_auth.security import SecurityPolicy, evaluate, payload_age

AUTH_DATE = 1_700_000_000


class TestEvaluate:
    def test_fresh(self):
        result = evaluate(AUTH_DATE, (AUTH_DATE + 10) * 1000, 300)
        assert result.signature_valid
        assert result.timestamp_valid
        assert result.age_seconds == 10

    def test_exactly_at_window(self):
        result = evaluate(AUTH_DATE, (AUTH_DATE + 300) * 1000, 300)
        assert result.timestamp_valid

    def test_one_second_past_window(self):
        result = evaluate(AUTH_DATE, (AUTH_DATE + 301) * 1000, 300)
        assert result.signature_valid
        assert not result.timestamp_valid
        assert result.age_seconds == 301
        assert not result.ok

    def test_future_auth_date(self):
        result = evaluate(AUTH_DATE, (AUTH_DATE - 5) * 1000, 300)
        assert result.age_seconds == -5
        assert not result.timestamp_valid

    def test_default_window_is_five_minutes(self):
        assert evaluate(AUTH_DATE, (AUTH_DATE + 300) * 1000).timestamp_valid
        assert not evaluate(AUTH_DATE, (AUTH_DATE + 301) * 1000).timestamp_valid

    def test_age_truncates_milliseconds(self):
        assert payload_age(AUTH_DATE, AUTH_DATE * 1000 + 1999) == 1
        assert payload_age(AUTH_DATE, AUTH_DATE * 1000 - 500) == 0


class TestReplayGuard:
    def test_first_use_accepted(self):
        guard = ReplayGuard(ttl=300)
        assert guard.check_and_remember("h1", now=100.0)
        assert "h1" in guard

    def test_reuse_rejected(self):
        guard = ReplayGuard(ttl=300)
        guard.check_and_remember("h1", now=100.0)
        assert not guard.check_and_remember("h1", now=200.0)

    def test_forgotten_after_ttl(self):
        guard = ReplayGuard(ttl=300)
        guard.check_and_remember("h1", now=100.0)
        assert guard.check_and_remember("h1", now=401.0)

    def test_purge_drops_only_expired(self):
        guard = ReplayGuard(ttl=300)
        guard.check_and_remember("old", now=0.0)
        guard.check_and_remember("new", now=200.0)
        guard.purge(now=350.0)
        assert "old" not in guard
        assert "new" in guard

    def test_full_store_refuses_new_hashes(self):
        guard = ReplayGuard(ttl=300, max_entries=2)
        guard.check_and_remember("a", now=0.0)
        guard.check_and_remember("b", now=1.0)
        with pytest.raises(ReplayStoreFull):
            guard.check_and_remember("c", now=2.0)
        assert len(guard) == 2
        assert "c" not in guard
        # a still-fresh hash is never evicted, so it stays rejected
        assert not guard.check_and_remember("a", now=2.0)

    def test_full_store_accepts_again_after_expiry(self):
        guard = ReplayGuard(ttl=300, max_entries=2)
        guard.check_and_remember("a", now=0.0)
        guard.check_and_remember("b", now=1.0)
        assert guard.check_and_remember("c", now=300.0)
        assert "a" not in guard

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            ReplayGuard(ttl=300, max_entries=0)


class TestSecurityPolicy:
    def test_replay_detected(self):
        policy = SecurityPolicy(freshness_window=300)
        now_ms = (AUTH_DATE + 1) * 1000
        first = policy.evaluate(AUTH_DATE, now_ms, "abc")
        second = policy.evaluate(AUTH_DATE, now_ms + 1000, "abc")
        assert first.ok and first.replay_protected
        assert second.timestamp_valid
        assert not second.replay_protected
        assert not second.ok

    def test_stale_payload_not_remembered(self):
        policy = SecurityPolicy(freshness_window=300)
        result = policy.evaluate(AUTH_DATE, (AUTH_DATE + 1000) * 1000, "abc")
        assert not result.timestamp_valid
        assert "abc" not in policy.replay_guard

    def test_store_sized_to_window(self):
        policy = SecurityPolicy(freshness_window=120, replay_cache_size=50)
        assert policy.replay_guard.ttl == 120
        assert policy.replay_guard.max_entries == 50
