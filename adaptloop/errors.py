"""
Error Types
===========

Failures surfaced by the error-learning and prompt-evolution loop.

Classification and signature normalization never raise. Expected early exits
of the improvement loop are ImprovementStatus values, not exceptions.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from adaptloop.rate_limit import RateLimitDecision


class AdaptLoopError(Exception):
    """Base class for all loop failures."""


class RateLimited(AdaptLoopError):
    """The caller exceeded its window; back off until decision.reset_at."""

    def __init__(self, decision: "RateLimitDecision"):
        self.decision = decision
        super().__init__(
            f"Rate limit exceeded for {decision.identifier!r}; "
            f"retry after {decision.retry_after_seconds():.0f}s"
        )


class SynthesisUnavailable(AdaptLoopError):
    """
    The completion service was unreachable, timed out, or returned content
    that could not be parsed into the requested structure.
    """

    TIMEOUT = "timeout"
    SERVICE = "service"
    UNPARSABLE = "unparsable"

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"[{kind}] {message}")


class StoreUnavailable(AdaptLoopError):
    """The relational store rejected or failed a business-critical operation."""


class NoActivePromptVersion(AdaptLoopError):
    """No active prompt version exists to derive an improvement from."""
