"""
AdaptLoop Service
=================

Caller-facing entry points for the error-learning and prompt-evolution loop.

Usage:
    loop = await AdaptiveLoop.from_config()
    fix = await loop.report_error("Module not found: cannot resolve 'lodash'", identifier="10.0.0.1")
    version = await loop.select_prompt_for_generation()
    await loop.record_outcome(version.version, "A bakery landing page", "success")
    result = await loop.run_scheduled_improvement()
    await loop.close()
"""

import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from adaptloop.completion import CompletionClient
from adaptloop.config import LoopConfig
from adaptloop.db.connection import Database, init_db
from adaptloop.db.models import utcnow
from adaptloop.error_learning import ErrorLearningService, FixResult
from adaptloop.fix_synthesizer import FixSynthesizer
from adaptloop.generation import GeneratedSite, WebsiteGenerator
from adaptloop.improvement_loop import ImprovementResult, ScheduledImprovementLoop
from adaptloop.notifications import Notifier
from adaptloop.outcomes import OutcomeRecorder
from adaptloop.pattern_store import PatternStore
from adaptloop.prompt_router import PromptRouter
from adaptloop.prompt_versions import PromptVersion, PromptVersionStore
from adaptloop.rate_limit import RateLimiter, RateLimitAuditLog, WindowStore

logger = logging.getLogger(__name__)


class AdaptiveLoop:
    """Wires every loop component to one store and one completion client."""

    def __init__(
        self,
        db: Database,
        completion: CompletionClient,
        config: Optional[LoopConfig] = None,
        limiter: Optional[RateLimiter] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config or LoopConfig()
        self.completion = completion

        self.limiter = limiter or RateLimiter(
            WindowStore(),
            max_requests=self.config.rate_limit_max_requests,
            window_seconds=self.config.rate_limit_window_seconds,
        )

        session_maker = db.session_maker
        self.patterns = PatternStore(session_maker)
        self.versions = PromptVersionStore(session_maker)
        self.outcomes = OutcomeRecorder(session_maker)
        self.notifier = Notifier(session_maker)

        self.synthesizer = FixSynthesizer(completion, self.patterns)
        self.errors = ErrorLearningService(self.limiter, self.patterns, self.synthesizer)
        self.router = PromptRouter(self.versions, rng=rng)
        self.generator = WebsiteGenerator(self.router, self.outcomes, completion)
        self.improvement = ScheduledImprovementLoop(
            self.outcomes,
            self.versions,
            completion,
            notifier=self.notifier,
            window_days=self.config.improvement_window_days,
            min_sample_size=self.config.min_sample_size,
            healthy_success_rate=self.config.healthy_success_rate,
            failure_sample_size=self.config.failure_sample_size,
            artifact_snippet_chars=self.config.artifact_snippet_chars,
            candidate_cooldown_hours=self.config.candidate_cooldown_hours,
            clock=clock,
        )

    @classmethod
    async def from_config(
        cls,
        config: Optional[LoopConfig] = None,
        completion: Optional[CompletionClient] = None,
    ) -> "AdaptiveLoop":
        """Initialize the database and build a loop from configuration."""
        config = config or LoopConfig.load()
        db = await init_db(config.database_url)

        if completion is None:
            completion = CompletionClient(
                model=config.model,
                timeout_seconds=config.completion_timeout_seconds,
                max_tokens=config.max_tokens,
            )

        limiter = RateLimiter(
            WindowStore(),
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
            audit_sink=RateLimitAuditLog(db.session_maker) if config.rate_limit_audit else None,
        )

        return cls(db, completion, config=config, limiter=limiter)

    async def close(self) -> None:
        """Flush pending audit writes and dispose this loop's engine."""
        if isinstance(self.limiter.audit_sink, RateLimitAuditLog):
            await self.limiter.audit_sink.flush()
        await self.db.dispose()

    # =========================================================================
    # Caller-facing operations
    # =========================================================================

    async def report_error(
        self,
        error_text: str,
        identifier: str = "unknown",
        error_context: Optional[Dict[str, Any]] = None,
        project_context: Optional[Dict[str, Any]] = None,
        deployment_provider: Optional[str] = None,
    ) -> FixResult:
        return await self.errors.report_error(
            error_text,
            identifier,
            error_context=error_context,
            project_context=project_context,
            deployment_provider=deployment_provider,
        )

    async def select_prompt_for_generation(self) -> PromptVersion:
        return await self.router.select_version()

    async def record_outcome(
        self,
        prompt_version: str,
        user_prompt: str,
        status: str,
        error_message: Optional[str] = None,
        generation_time_ms: Optional[int] = None,
        generated_artifact: Optional[str] = None,
        model_used: Optional[str] = None,
    ) -> bool:
        return await self.outcomes.record(
            prompt_version,
            user_prompt,
            status,
            error_message=error_message,
            generation_time_ms=generation_time_ms,
            generated_artifact=generated_artifact,
            model_used=model_used,
        )

    async def run_scheduled_improvement(self) -> ImprovementResult:
        result = await self.improvement.run()
        logger.info("Improvement run finished: %s", result.status.value)
        return result

    async def generate_website(self, user_prompt: str) -> GeneratedSite:
        return await self.generator.generate(user_prompt)

    async def set_traffic(self, allocation: Dict[str, float]) -> List[PromptVersion]:
        return await self.versions.set_traffic(allocation)
