"""
Rate Limiting
=============

Fixed-window request limiting for the error-reporting entry point.

Each identifier (an IP address, API key or project id) gets a window that is
created lazily on first sight and reset once the clock passes its reset time.
While a window is live every call increments its counter; once the ceiling is
reached further calls are denied until the window expires.

Windows live in a WindowStore owned by whoever constructs the RateLimiter.
Limits are per process: several service instances each keep their own windows.

Usage:
    from adaptloop.rate_limit import RateLimiter, WindowStore

    limiter = RateLimiter(WindowStore(), max_requests=10, window_seconds=60)
    decision = limiter.check("203.0.113.7")
    if not decision.allowed:
        ...  # respond 429 with decision.headers()
"""

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adaptloop.db.models import RateLimitLogModel
from adaptloop.errors import RateLimited

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 10
DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_PRUNE_THRESHOLD = 1024

# (identifier, count, blocked) -> None
AuditSink = Callable[[str, int, bool], None]


@dataclass
class RateLimitDecision:
    """Outcome of a single rate limit check."""
    identifier: str
    allowed: bool
    remaining: int
    reset_at: float      # epoch seconds
    limit: int
    count: int
    checked_at: float    # epoch seconds

    def retry_after_seconds(self) -> float:
        """Seconds until the window resets (0 once it has)."""
        return max(0.0, self.reset_at - self.checked_at)

    def headers(self) -> Dict[str, str]:
        """HTTP headers describing this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(int(math.ceil(self.retry_after_seconds())))
        return headers

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat(),
            "limit": self.limit,
            "count": self.count,
        }


@dataclass
class _Window:
    count: int
    reset_at: float


class WindowStore:
    """
    Thread-safe, in-process map of identifier -> live window.

    The check-and-increment happens under one lock so two concurrent
    requests for the same identifier can never both take the last slot.
    Expired windows are swept whenever a new identifier arrives and the map
    has reached the sweep threshold, so the map only holds windows that were
    live at the last sweep.
    """

    def __init__(self, prune_threshold: int = DEFAULT_PRUNE_THRESHOLD):
        if prune_threshold < 1:
            raise ValueError("prune_threshold must be at least 1")
        self.prune_threshold = prune_threshold
        self._next_prune = prune_threshold
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def hit(
        self,
        identifier: str,
        now: float,
        max_requests: int,
        window_seconds: float,
    ) -> tuple[bool, int, float]:
        """
        Count one request against the identifier's window.

        Returns:
            (allowed, count, reset_at)
        """
        with self._lock:
            window = self._windows.get(identifier)
            if window is None and len(self._windows) >= self._next_prune:
                self._drop_expired(now)
                # Many live windows: wait for the map to double before sweeping again
                self._next_prune = max(self.prune_threshold, 2 * len(self._windows))
            if window is None or now > window.reset_at:
                window = _Window(count=0, reset_at=now + window_seconds)
                self._windows[identifier] = window

            if window.count >= max_requests:
                return False, window.count, window.reset_at

            window.count += 1
            return True, window.count, window.reset_at

    def prune(self, now: float) -> int:
        """Drop expired windows. Returns the number removed."""
        with self._lock:
            return self._drop_expired(now)

    def _drop_expired(self, now: float) -> int:
        expired = [key for key, w in self._windows.items() if now > w.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class RateLimiter:
    """Fixed-window rate limiter over an explicitly owned WindowStore."""

    def __init__(
        self,
        store: Optional[WindowStore] = None,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        audit_sink: Optional[AuditSink] = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.store = store if store is not None else WindowStore()
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.audit_sink = audit_sink

    def check(self, identifier: str) -> RateLimitDecision:
        """Count a request and decide whether it may proceed."""
        now = self.clock()
        allowed, count, reset_at = self.store.hit(
            identifier, now, self.max_requests, self.window_seconds
        )

        decision = RateLimitDecision(
            identifier=identifier,
            allowed=allowed,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
            limit=self.max_requests,
            count=count,
            checked_at=now,
        )

        if not allowed:
            logger.warning(
                "Rate limit exceeded for %s (%d/%d)", identifier, count, self.max_requests
            )

        self._audit(decision)
        return decision

    def enforce(self, identifier: str) -> RateLimitDecision:
        """Like check(), but raises RateLimited when the request is denied."""
        decision = self.check(identifier)
        if not decision.allowed:
            raise RateLimited(decision)
        return decision

    def _audit(self, decision: RateLimitDecision) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink(decision.identifier, decision.count, not decision.allowed)
        except Exception as e:
            logger.warning("Rate limit audit sink failed for %s: %s", decision.identifier, e)


class RateLimitAuditLog:
    """
    Audit sink that appends decisions to the rate_limit_log table.

    Writes are fire-and-forget when called from inside a running event loop.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        self._pending: set[asyncio.Task] = set()

    def __call__(self, identifier: str, count: int, blocked: bool) -> None:
        try:
            loop = asyncio.get_running_loop()
            task = loop.create_task(self._write(identifier, count, blocked))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        except RuntimeError:
            # No loop running
            asyncio.run(self._write(identifier, count, blocked))

    async def flush(self) -> None:
        """Wait for scheduled writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def _write(self, identifier: str, count: int, blocked: bool) -> None:
        try:
            async with self._session_maker() as session:
                session.add(RateLimitLogModel(
                    identifier=identifier,
                    request_count=count,
                    blocked=blocked,
                ))
                await session.commit()
        except Exception as e:
            logger.warning("Failed to write rate limit audit row for %s: %s", identifier, e)
