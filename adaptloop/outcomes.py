"""
Outcome Recorder
================

Append-only log of generation attempts, plus the read queries the
improvement loop aggregates over.

Recording is telemetry: a failed write is logged and reported as False,
never raised into the caller's response path.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adaptloop.db.models import GenerationOutcomeModel
from adaptloop.errors import StoreUnavailable

logger = logging.getLogger(__name__)

STATUSES = ("success", "failure", "error")
FAILURE_STATUSES = ("failure", "error")


@dataclass
class GenerationOutcome:
    """One logged generation attempt."""
    prompt_version: str
    user_prompt: str
    status: str
    error_message: Optional[str] = None
    generated_artifact: Optional[str] = None
    generation_time_ms: Optional[int] = None
    model_used: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def from_model(cls, row: GenerationOutcomeModel) -> "GenerationOutcome":
        return cls(
            id=row.id,
            prompt_version=row.prompt_version,
            user_prompt=row.user_prompt,
            status=row.status,
            error_message=row.error_message,
            generated_artifact=row.generated_artifact,
            generation_time_ms=row.generation_time_ms,
            model_used=row.model_used,
            created_at=row.created_at,
        )

    def failure_sample(self, snippet_chars: int = 300) -> dict:
        """Compact view sent to the model when proposing a better prompt."""
        return {
            "userPrompt": self.user_prompt,
            "error": self.error_message,
            "generatedCode": self.generated_artifact[:snippet_chars] if self.generated_artifact else "N/A",
        }


@dataclass
class VersionStats:
    """Per-version outcome counts over a window."""
    prompt_version: str
    total: int = 0
    successes: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.total if self.total else 0.0

    def to_dict(self) -> dict:
        return {
            "prompt_version": self.prompt_version,
            "total": self.total,
            "successes": self.successes,
            "success_rate": round(self.success_rate, 4),
        }


class OutcomeRecorder:
    """Writes and aggregates generation outcomes."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def record(
        self,
        prompt_version: str,
        user_prompt: str,
        status: str,
        error_message: Optional[str] = None,
        generation_time_ms: Optional[int] = None,
        generated_artifact: Optional[str] = None,
        model_used: Optional[str] = None,
    ) -> bool:
        """
        Append one outcome.

        Returns:
            True if written, False if the write failed (already logged)

        Raises:
            ValueError: If status is not success, failure or error
        """
        if status not in STATUSES:
            raise ValueError(f"Unknown outcome status: {status!r}")

        try:
            async with self._session_maker() as session:
                session.add(GenerationOutcomeModel(
                    prompt_version=prompt_version,
                    user_prompt=user_prompt,
                    status=status,
                    error_message=error_message,
                    generated_artifact=generated_artifact,
                    generation_time_ms=generation_time_ms,
                    model_used=model_used,
                ))
                await session.commit()
            return True
        except Exception as e:
            logger.error("Failed to record %s outcome for %s: %s", status, prompt_version, e)
            return False

    async def window_statuses(self, since: datetime) -> Dict[str, int]:
        """Outcome count per status for rows created at or after since."""
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(GenerationOutcomeModel.status, func.count(GenerationOutcomeModel.id))
                    .where(GenerationOutcomeModel.created_at >= since)
                    .group_by(GenerationOutcomeModel.status)
                )
                return {status: count for status, count in result.all()}
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Reading outcome window failed: {e}") from e

    async def recent_failures(self, since: datetime, limit: int = 30) -> List[GenerationOutcome]:
        """Most recent failed or errored outcomes, newest first."""
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(GenerationOutcomeModel)
                    .where(
                        GenerationOutcomeModel.created_at >= since,
                        GenerationOutcomeModel.status.in_(FAILURE_STATUSES),
                    )
                    .order_by(GenerationOutcomeModel.created_at.desc(), GenerationOutcomeModel.id.desc())
                    .limit(limit)
                )
                return [GenerationOutcome.from_model(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Reading recent failures failed: {e}") from e

    async def version_stats(self, since: datetime) -> List[VersionStats]:
        """Totals and successes per prompt version over the window."""
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(
                        GenerationOutcomeModel.prompt_version,
                        GenerationOutcomeModel.status,
                        func.count(GenerationOutcomeModel.id),
                    )
                    .where(GenerationOutcomeModel.created_at >= since)
                    .group_by(GenerationOutcomeModel.prompt_version, GenerationOutcomeModel.status)
                )
                rows = result.all()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Reading version stats failed: {e}") from e

        stats: Dict[str, VersionStats] = {}
        for version, status, count in rows:
            entry = stats.setdefault(version, VersionStats(prompt_version=version))
            entry.total += count
            if status == "success":
                entry.successes += count
        return sorted(stats.values(), key=lambda s: s.prompt_version)
