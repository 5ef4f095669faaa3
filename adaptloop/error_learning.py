"""
Error Learning
==============

Entry point for errors reported by generated applications.

Flow for one report:
  rate limit gate -> classify -> normalize -> pattern lookup
  hit:  count the sighting and return the cached fix
  miss: synthesize a fix with the model and store it as a new pattern
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from adaptloop.classifier import classify
from adaptloop.fix_synthesizer import FixSynthesizer
from adaptloop.pattern_store import ErrorPattern, PatternStore
from adaptloop.rate_limit import RateLimiter, RateLimitDecision
from adaptloop.signature import normalize

logger = logging.getLogger(__name__)


@dataclass
class FixResult:
    """What a caller gets back for one reported error."""
    category: str
    signature: str
    confidence: float
    is_known: bool
    pattern_id: Optional[int]
    diagnosis: str
    root_cause: str
    fix_type: str
    solution: Dict[str, Any]
    prevention_tips: List[str] = field(default_factory=list)
    times_encountered: int = 1
    ambiguous: bool = False
    message: str = ""
    rate_limit: Optional[RateLimitDecision] = None

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "signature": self.signature,
            "confidence": self.confidence,
            "is_known": self.is_known,
            "pattern_id": self.pattern_id,
            "diagnosis": self.diagnosis,
            "root_cause": self.root_cause,
            "fix_type": self.fix_type,
            "solution": self.solution,
            "prevention_tips": self.prevention_tips,
            "times_encountered": self.times_encountered,
            "ambiguous": self.ambiguous,
            "message": self.message,
        }

    @classmethod
    def from_pattern(cls, pattern: ErrorPattern, is_known: bool, ambiguous: bool = False) -> "FixResult":
        if is_known:
            message = (
                f"Known {pattern.category} error - applying learned fix "
                f"({round(pattern.confidence_score * 100)}% confidence)"
            )
        else:
            message = f"Learned how to fix this {pattern.category} error"

        return cls(
            category=pattern.category,
            signature=pattern.signature,
            confidence=pattern.confidence_score,
            is_known=is_known,
            pattern_id=pattern.id,
            diagnosis=pattern.diagnosis,
            root_cause=pattern.root_cause,
            fix_type=pattern.fix_type,
            solution=pattern.solution,
            prevention_tips=pattern.prevention_tips,
            times_encountered=pattern.times_encountered,
            ambiguous=ambiguous,
            message=message,
        )


class ErrorLearningService:
    """Resolves reported errors from learned patterns or by synthesis."""

    def __init__(
        self,
        limiter: RateLimiter,
        store: PatternStore,
        synthesizer: FixSynthesizer,
    ):
        self.limiter = limiter
        self.store = store
        self.synthesizer = synthesizer

    async def report_error(
        self,
        error_text: str,
        identifier: str,
        error_context: Optional[Dict[str, Any]] = None,
        project_context: Optional[Dict[str, Any]] = None,
        deployment_provider: Optional[str] = None,
    ) -> FixResult:
        """
        Resolve one reported error.

        Args:
            error_text: Raw error message or stack trace
            identifier: Rate limit key for the caller (IP, API key, project)
            error_context: Free-form details (environment, file, stack)
            project_context: Free-form project details (projectId, framework)
            deployment_provider: Hosting provider, if the error came from a deploy

        Raises:
            ValueError: If error_text is empty
            RateLimited: If the caller is over its window
            SynthesisUnavailable: If a new error could not be learned
            StoreUnavailable: If the pattern store failed
        """
        if not error_text or not error_text.strip():
            raise ValueError("error_text is required")

        decision = self.limiter.enforce(identifier)

        classification = classify(error_text)
        signature = normalize(error_text, classification.category)
        logger.info(
            "Classified error as %s (confidence %.2f%s)",
            classification.category.value,
            classification.confidence,
            ", ambiguous" if classification.ambiguous else "",
        )

        known = await self.store.lookup(classification.category.value, signature)
        if known is not None:
            updated = await self.store.record_hit(known.id)
            result = FixResult.from_pattern(updated or known, is_known=True,
                                            ambiguous=classification.ambiguous)
        else:
            learned = await self.synthesizer.synthesize(
                error_text,
                classification,
                signature,
                error_context=error_context,
                project_context=project_context,
                deployment_provider=deployment_provider,
            )
            result = FixResult.from_pattern(learned, is_known=False,
                                            ambiguous=classification.ambiguous)

        result.rate_limit = decision
        return result
