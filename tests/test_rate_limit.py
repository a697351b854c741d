from types import SimpleNamespace

import pytest

from src.parley.config import RateLimitConfig, rate_limits_from_env
from src.parley.domain.errors import RateLimited
from src.parley.security.rate_limit import GLOBAL_KEY, RateLimitGate, RateLimiter, retry_after_seconds


CHAT = RateLimitConfig(window_ms=60_000, max_requests=20)


@pytest.fixture
def clock():
    state = SimpleNamespace(now=1_000_000)
    return state


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=lambda: clock.now)


def test_fixed_window_counts_down_then_denies(limiter):
    remaining = [limiter.check("chat:alice", CHAT) for _ in range(20)]
    assert all(r.allowed for r in remaining)
    assert [r.remaining for r in remaining] == list(range(19, -1, -1))

    denied = limiter.check("chat:alice", CHAT)
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.reset_at == remaining[0].reset_at


def test_window_resets_once_reset_at_passes(limiter, clock):
    first = limiter.check("chat:alice", CHAT)
    for _ in range(20):
        limiter.check("chat:alice", CHAT)

    clock.now = first.reset_at
    fresh = limiter.check("chat:alice", CHAT)
    assert fresh.allowed is True
    assert fresh.remaining == CHAT.max_requests - 1
    assert fresh.reset_at == clock.now + CHAT.window_ms


def test_keys_are_counted_independently(limiter):
    for _ in range(20):
        limiter.check("chat:alice", CHAT)
    assert limiter.check("chat:alice", CHAT).allowed is False
    assert limiter.check("chat:bob", CHAT).allowed is True


def test_sweep_evicts_only_expired_entries(limiter, clock):
    limiter.check("a", RateLimitConfig(window_ms=1_000, max_requests=5))
    limiter.check("b", RateLimitConfig(window_ms=10_000, max_requests=5))
    assert len(limiter) == 2

    clock.now += 1_000
    assert limiter.sweep() == 1
    assert "a" not in limiter
    assert "b" in limiter


def test_sweep_thread_lifecycle():
    limiter = RateLimiter(sweep_interval_seconds=0.01)
    assert not limiter.running
    limiter.start()
    try:
        assert limiter.running
        limiter.start()  # idempotent
    finally:
        limiter.stop()
    assert not limiter.running


def test_reset_clears_counters(limiter):
    limiter.check("x", CHAT)
    limiter.reset()
    assert len(limiter) == 0


def test_retry_after_rounds_up_and_is_at_least_one():
    assert retry_after_seconds(reset_at=10_500, now=10_000) == 1
    assert retry_after_seconds(reset_at=12_001, now=10_000) == 3
    assert retry_after_seconds(reset_at=10_000, now=10_000) == 1


def test_gate_rejects_identity_over_quota(limiter, clock):
    gate = RateLimitGate(limiter, {"chat": RateLimitConfig(60_000, 2), "global": RateLimitConfig(60_000, 100)})
    gate.enforce("chat", "alice")
    gate.enforce("chat", "alice")

    clock.now += 15_000
    with pytest.raises(RateLimited) as exc_info:
        gate.enforce("chat", "alice")
    err = exc_info.value
    assert err.retry_after == 45
    assert err.limit == 2
    assert err.remaining == 0

    # other callers are unaffected
    assert gate.enforce("chat", "bob").allowed


def test_gate_applies_global_ceiling_across_identities(limiter):
    gate = RateLimitGate(limiter, {"chat": RateLimitConfig(60_000, 10), "global": RateLimitConfig(60_000, 3)})
    for caller in ("a", "b", "c"):
        gate.enforce("chat", caller)

    with pytest.raises(RateLimited) as exc_info:
        gate.enforce("chat", "d")
    assert "high load" in exc_info.value.message
    assert exc_info.value.limit == 3
    assert GLOBAL_KEY in limiter


def test_gate_skips_global_check_when_identity_denied(limiter):
    gate = RateLimitGate(limiter, {"chat": RateLimitConfig(60_000, 1), "global": RateLimitConfig(60_000, 100)})
    gate.enforce("chat", "alice")
    with pytest.raises(RateLimited):
        gate.enforce("chat", "alice")
    # only the allowed request reached the global counter
    assert limiter.check(GLOBAL_KEY, RateLimitConfig(60_000, 100)).remaining == 100 - 2


def test_gate_disabled_allows_everything(limiter):
    gate = RateLimitGate(limiter, {"chat": RateLimitConfig(60_000, 1), "global": RateLimitConfig(60_000, 1)}, disabled=True)
    for _ in range(5):
        assert gate.enforce("chat", "alice").allowed
    assert len(limiter) == 0


def test_gate_unknown_category_raises(limiter):
    gate = RateLimitGate(limiter)
    with pytest.raises(KeyError):
        gate.enforce("uploads", "alice")


def test_rate_limits_from_env_overrides_and_ignores_invalid(monkeypatch):
    monkeypatch.setenv("PARLEY_RATE_LIMIT_CHAT_MAX", "5")
    monkeypatch.setenv("PARLEY_RATE_LIMIT_CHAT_WINDOW_MS", "1000")
    monkeypatch.setenv("PARLEY_RATE_LIMIT_GLOBAL_MAX", "not-a-number")
    monkeypatch.setenv("PARLEY_RATE_LIMIT_KV_MAX", "-3")

    limits = rate_limits_from_env()
    assert limits["chat"] == RateLimitConfig(window_ms=1000, max_requests=5)
    assert limits["global"].max_requests == 1000
    assert limits["kv"].max_requests == 100
