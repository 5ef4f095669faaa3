"""
Scheduled Improvement Loop
==========================

Periodic pass that looks at recent generation outcomes and, when quality has
dropped, asks the model for a revised system prompt and stores it as an
inactive candidate version.

One run, in order:
1. Gather outcomes from the trailing window.
2. Too few outcomes -> SKIPPED_INSUFFICIENT_DATA.
3. Success rate at or above the healthy threshold -> SKIPPED_HEALTHY.
4. Sample the most recent failures (none -> SKIPPED_NO_FAILURES).
5. Find the primary active prompt version.
6. A recent candidate from the same parent exists -> SKIPPED_COOLDOWN.
7. Ask the model for {newPrompt, improvements, reasoning}.
8. Store the candidate and its improvement record together.
9. Notify reviewers.

Candidates never activate themselves; an operator promotes them with
PromptVersionStore.set_traffic().
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from adaptloop.completion import CompletionClient
from adaptloop.db.models import utcnow
from adaptloop.errors import NoActivePromptVersion, SynthesisUnavailable
from adaptloop.notifications import Notifier
from adaptloop.outcomes import OutcomeRecorder
from adaptloop.prompt_versions import PromptVersionStore
from adaptloop.response_parser import ResponseParseError, parse_structured_response

logger = logging.getLogger(__name__)

META_TEMPERATURE = 0.3
META_MAX_TOKENS = 4000

META_PROMPT = """You are a prompt engineer. Analyze these failures and improve the system prompt.

Current Prompt ({version}):
{system_prompt}

Recent Failures:
{failures}

Current Success Rate: {success_rate:.1f}%

Generate an improved prompt that:
1. Addresses these failure patterns
2. Maintains existing strengths
3. Improves reliability
4. Uses specific, clear instructions

Return JSON:
{{
  "newPrompt": "improved system prompt",
  "improvements": ["specific improvements"],
  "reasoning": "why these help"
}}"""


class ImprovementStatus(Enum):
    """How a run ended."""
    SKIPPED_INSUFFICIENT_DATA = "skipped_insufficient_data"
    SKIPPED_HEALTHY = "skipped_healthy"
    SKIPPED_NO_FAILURES = "skipped_no_failures"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    CREATED = "created"


@dataclass
class ImprovementResult:
    """Summary of one improvement run."""
    status: ImprovementStatus
    sample_size: int = 0
    success_rate: Optional[float] = None   # 0.0 - 1.0
    failure_count: int = 0
    parent_version: Optional[str] = None
    new_version: Optional[str] = None
    improvements: List[str] = field(default_factory=list)
    reasoning: str = ""
    message: str = ""

    @property
    def created(self) -> bool:
        return self.status == ImprovementStatus.CREATED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "sample_size": self.sample_size,
            "success_rate": round(self.success_rate * 100, 1) if self.success_rate is not None else None,
            "failure_count": self.failure_count,
            "parent_version": self.parent_version,
            "new_version": self.new_version,
            "improvements": self.improvements,
            "reasoning": self.reasoning,
            "message": self.message,
        }


def build_meta_prompt(version: str, system_prompt: str, failures: List[dict], success_rate: float) -> str:
    return META_PROMPT.format(
        version=version,
        system_prompt=system_prompt,
        failures=json.dumps(failures, indent=2, ensure_ascii=False),
        success_rate=success_rate * 100,
    )


class ScheduledImprovementLoop:
    """Proposes better prompt versions from recent failures."""

    def __init__(
        self,
        recorder: OutcomeRecorder,
        versions: PromptVersionStore,
        completion: CompletionClient,
        notifier: Optional[Notifier] = None,
        window_days: int = 7,
        min_sample_size: int = 50,
        healthy_success_rate: float = 0.90,
        failure_sample_size: int = 30,
        artifact_snippet_chars: int = 300,
        candidate_cooldown_hours: float = 24.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.recorder = recorder
        self.versions = versions
        self.completion = completion
        self.notifier = notifier
        self.window_days = window_days
        self.min_sample_size = min_sample_size
        self.healthy_success_rate = healthy_success_rate
        self.failure_sample_size = failure_sample_size
        self.artifact_snippet_chars = artifact_snippet_chars
        self.candidate_cooldown_hours = candidate_cooldown_hours
        self.clock = clock

    async def run(self) -> ImprovementResult:
        """
        Execute one pass.

        Raises:
            NoActivePromptVersion: No active version to improve on
            SynthesisUnavailable: Model unreachable or reply unusable
            StoreUnavailable: Outcomes or versions could not be read or written
        """
        now = self.clock()
        since = now - timedelta(days=self.window_days)

        # 1-2. Gather
        counts = await self.recorder.window_statuses(since)
        total = sum(counts.values())
        if total < self.min_sample_size:
            logger.info("Not enough data for improvement (%d/%d outcomes)", total, self.min_sample_size)
            return ImprovementResult(
                status=ImprovementStatus.SKIPPED_INSUFFICIENT_DATA,
                sample_size=total,
                message=f"Insufficient data for improvement ({total} outcomes)",
            )

        # 3. Success rate
        success_rate = counts.get("success", 0) / total
        logger.info("Success rate: %.1f%% over %d outcomes", success_rate * 100, total)
        if success_rate >= self.healthy_success_rate:
            return ImprovementResult(
                status=ImprovementStatus.SKIPPED_HEALTHY,
                sample_size=total,
                success_rate=success_rate,
                message="System performing well",
            )

        # 4. Failure sample
        failures = await self.recorder.recent_failures(since, self.failure_sample_size)
        if not failures:
            return ImprovementResult(
                status=ImprovementStatus.SKIPPED_NO_FAILURES,
                sample_size=total,
                success_rate=success_rate,
                message="No failures to analyze",
            )

        # 5. Current prompt
        current = await self.versions.get_primary()
        if current is None:
            raise NoActivePromptVersion("No active prompt version found")

        # 6. Cool-down
        cooldown_since = now - timedelta(hours=self.candidate_cooldown_hours)
        if await self.versions.recent_candidate_exists(current.version, cooldown_since):
            logger.info("Candidate from %s already pending, skipping", current.version)
            return ImprovementResult(
                status=ImprovementStatus.SKIPPED_COOLDOWN,
                sample_size=total,
                success_rate=success_rate,
                failure_count=len(failures),
                parent_version=current.version,
                message=f"A candidate derived from {current.version} is already pending review",
            )

        # 7. Synthesize
        samples = [f.failure_sample(self.artifact_snippet_chars) for f in failures]
        prompt = build_meta_prompt(current.version, current.system_prompt, samples, success_rate)
        reply = await self.completion.complete(
            [{"role": "user", "content": prompt}],
            temperature=META_TEMPERATURE,
            max_tokens=META_MAX_TOKENS,
        )

        try:
            data = parse_structured_response(reply, required=("newPrompt",))
        except ResponseParseError as e:
            raise SynthesisUnavailable(SynthesisUnavailable.UNPARSABLE, str(e)) from e

        new_prompt = data["newPrompt"]
        if not isinstance(new_prompt, str) or not new_prompt.strip():
            raise SynthesisUnavailable(SynthesisUnavailable.UNPARSABLE, "newPrompt is empty")

        improvements = data.get("improvements") or []
        if not isinstance(improvements, list):
            improvements = [str(improvements)]
        improvements = [str(item) for item in improvements]
        reasoning = str(data.get("reasoning") or "")

        # 8. Persist
        candidate = await self.versions.create_candidate(
            parent=current,
            system_prompt=new_prompt.strip(),
            improvements=improvements,
            reasoning=reasoning,
            analysis={
                "failure_count": len(failures),
                "success_rate": round(success_rate * 100, 1),
                "sample_size": total,
                "improvements": improvements,
            },
        )

        # 9. Notify
        if self.notifier is not None:
            await self.notifier.notify(
                notification_type="improvement",
                title="Scheduled AI Improvement",
                message=(
                    f"New candidate version {candidate.version} created from {current.version}. "
                    f"Success rate was {success_rate * 100:.1f}%."
                ),
                data={
                    "old_version": current.version,
                    "new_version": candidate.version,
                    "success_rate": round(success_rate * 100, 1),
                    "improvement_count": len(improvements),
                },
            )

        return ImprovementResult(
            status=ImprovementStatus.CREATED,
            sample_size=total,
            success_rate=success_rate,
            failure_count=len(failures),
            parent_version=current.version,
            new_version=candidate.version,
            improvements=improvements,
            reasoning=reasoning,
            message=f"Created candidate prompt version {candidate.version}",
        )
