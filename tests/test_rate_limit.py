"""
Tests for Rate Limiting Module
==============================

Tests for WindowStore, RateLimiter and the database audit sink.
"""

import tempfile
import threading
from pathlib import Path

import pytest
from sqlalchemy import select

from adaptloop.db import RateLimitLogModel, init_db
from adaptloop.errors import RateLimited
from adaptloop.rate_limit import (
    RateLimitAuditLog,
    RateLimitDecision,
    RateLimiter,
    WindowStore,
)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    """A limiter allowing 3 requests per 60 seconds."""
    return RateLimiter(WindowStore(), max_requests=3, window_seconds=60, clock=clock)


# =============================================================================
# RateLimiter Tests
# =============================================================================

class TestRateLimiter:
    """Tests for fixed-window decisions."""

    def test_allows_until_ceiling(self, limiter):
        """Test that requests up to the ceiling pass with decreasing remaining."""
        decisions = [limiter.check("ip-1") for _ in range(3)]

        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]
        assert [d.count for d in decisions] == [1, 2, 3]

    def test_denies_over_ceiling_with_unchanged_reset(self, limiter, clock):
        """Test that the request after the ceiling is denied and keeps reset_at."""
        first = limiter.check("ip-1")
        limiter.check("ip-1")
        limiter.check("ip-1")

        clock.advance(10)
        denied = limiter.check("ip-1")

        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.reset_at == first.reset_at
        assert denied.reset_at == 1_060.0

    def test_window_resets_after_expiry(self, limiter, clock):
        """Test that a new window starts once now > reset_at."""
        for _ in range(4):
            limiter.check("ip-1")

        clock.advance(60)
        assert limiter.check("ip-1").allowed is False  # now == reset_at, still live

        clock.advance(0.001)
        decision = limiter.check("ip-1")
        assert decision.allowed is True
        assert decision.count == 1
        assert decision.reset_at == pytest.approx(clock.now + 60)

    def test_identifiers_are_independent(self, limiter):
        """Test that one identifier's window doesn't affect another's."""
        for _ in range(3):
            limiter.check("ip-1")

        assert limiter.check("ip-1").allowed is False
        assert limiter.check("ip-2").allowed is True

    def test_enforce_raises_rate_limited(self, limiter):
        """Test that enforce raises with the decision attached."""
        for _ in range(3):
            limiter.enforce("ip-1")

        with pytest.raises(RateLimited) as exc_info:
            limiter.enforce("ip-1")

        assert exc_info.value.decision.allowed is False
        assert exc_info.value.decision.identifier == "ip-1"

    def test_invalid_configuration(self):
        """Test that nonsensical limits are rejected."""
        with pytest.raises(ValueError):
            RateLimiter(max_requests=0)
        with pytest.raises(ValueError):
            RateLimiter(window_seconds=0)

    def test_concurrent_checks_never_exceed_ceiling(self):
        """Test that parallel threads can't over-admit."""
        limiter = RateLimiter(WindowStore(), max_requests=50, window_seconds=60)
        allowed = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                d = limiter.check("shared")
                if d.allowed:
                    with lock:
                        allowed.append(d)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(allowed) == 50


# =============================================================================
# Audit Sink Tests
# =============================================================================

class TestAuditSink:
    """Tests for best-effort audit delivery."""

    def test_sink_receives_decisions(self, clock):
        """Test that the sink is called with (identifier, count, blocked)."""
        calls = []
        limiter = RateLimiter(
            max_requests=1, window_seconds=60, clock=clock,
            audit_sink=lambda *args: calls.append(args),
        )

        limiter.check("ip-1")
        limiter.check("ip-1")

        assert calls == [("ip-1", 1, False), ("ip-1", 1, True)]

    def test_sink_failure_does_not_change_decision(self, clock):
        """Test that a failing sink is logged and ignored."""
        def broken_sink(identifier, count, blocked):
            raise RuntimeError("log table unavailable")

        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock, audit_sink=broken_sink)

        assert limiter.check("ip-1").allowed is True
        assert limiter.check("ip-1").allowed is False

    @pytest.mark.asyncio
    async def test_database_audit_log(self):
        """Test that RateLimitAuditLog writes rows from inside a running loop."""
        with tempfile.TemporaryDirectory() as tmpdir:
            db = await init_db(Path(tmpdir))
            session_maker = db.session_maker
            audit = RateLimitAuditLog(session_maker)
            limiter = RateLimiter(max_requests=1, window_seconds=60, audit_sink=audit)

            limiter.check("ip-9")
            limiter.check("ip-9")
            await audit.flush()

            async with session_maker() as session:
                result = await session.execute(select(RateLimitLogModel).order_by(RateLimitLogModel.id))
                rows = result.scalars().all()

            assert [(r.identifier, r.request_count, r.blocked) for r in rows] == [
                ("ip-9", 1, False),
                ("ip-9", 1, True),
            ]

            await db.dispose()


# =============================================================================
# WindowStore / Decision Tests
# =============================================================================

class TestWindowStore:
    """Tests for window bookkeeping."""

    def test_prune_drops_expired(self):
        """Test that prune removes only expired windows."""
        store = WindowStore()
        store.hit("old", now=0, max_requests=5, window_seconds=10)
        store.hit("new", now=8, max_requests=5, window_seconds=10)

        removed = store.prune(now=12)

        assert removed == 1
        assert len(store) == 1

    def test_store_stays_bounded_as_clock_advances(self, clock):
        """Test that expired windows of one-off callers are swept automatically."""
        store = WindowStore(prune_threshold=100)
        limiter = RateLimiter(store, max_requests=3, window_seconds=60, clock=clock)

        for i in range(5_000):
            assert limiter.check(f"10.0.{i // 256}.{i % 256}").allowed
            clock.advance(100)

        assert len(store) <= 100

    def test_sweep_keeps_live_windows(self, clock):
        """Test that sweeping never resets a window that is still live."""
        store = WindowStore(prune_threshold=10)
        limiter = RateLimiter(store, max_requests=3, window_seconds=60, clock=clock)

        for i in range(30):
            limiter.check(f"ip-{i}")

        assert len(store) == 30
        assert limiter.check("ip-0").count == 2

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            WindowStore(prune_threshold=0)


class TestRateLimitDecision:
    """Tests for header rendering."""

    def test_headers_when_allowed(self):
        decision = RateLimitDecision(
            identifier="ip", allowed=True, remaining=4, reset_at=1060.2,
            limit=10, count=6, checked_at=1000.0,
        )
        headers = decision.headers()

        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "4"
        assert headers["X-RateLimit-Reset"] == "1061"
        assert "Retry-After" not in headers

    def test_headers_when_blocked(self):
        """Test that a blocked decision carries Retry-After."""
        decision = RateLimitDecision(
            identifier="ip", allowed=False, remaining=0, reset_at=1060.0,
            limit=10, count=10, checked_at=1015.5,
        )

        assert decision.retry_after_seconds() == pytest.approx(44.5)
        assert decision.headers()["Retry-After"] == "45"
