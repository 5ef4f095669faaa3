"""
Pattern Store
=============

Persistence for learned error patterns.

One row exists per (category, signature). The first sighting inserts it;
every later sighting, including one that loses an insert race, increments
the row's counters in place. Counter updates are issued as in-database
increments so concurrent hits are never lost.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adaptloop.db.models import ErrorPatternModel, utcnow
from adaptloop.errors import StoreUnavailable

logger = logging.getLogger(__name__)

FIX_TYPES = ("code", "config", "dependency", "architecture", "data")


@dataclass
class ErrorPattern:
    """A learned error -> fix association."""
    category: str
    signature: str
    raw_pattern: str
    diagnosis: str = ""
    root_cause: str = ""
    fix_type: str = "code"
    solution: Dict[str, Any] = field(default_factory=dict)
    prevention_tips: List[str] = field(default_factory=list)
    related_errors: List[str] = field(default_factory=list)
    common_triggers: List[str] = field(default_factory=list)
    affected_technologies: List[str] = field(default_factory=list)
    subcategory: Optional[str] = None
    confidence_score: float = 0.0
    times_encountered: int = 1
    last_used_at: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0
    last_success_at: Optional[datetime] = None
    environment: Optional[str] = None
    deployment_provider: Optional[str] = None
    learned_from_project_id: Optional[str] = None
    learned_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "category": self.category,
            "subcategory": self.subcategory,
            "signature": self.signature,
            "raw_pattern": self.raw_pattern,
            "diagnosis": self.diagnosis,
            "root_cause": self.root_cause,
            "fix_type": self.fix_type,
            "solution": self.solution,
            "prevention_tips": self.prevention_tips,
            "related_errors": self.related_errors,
            "common_triggers": self.common_triggers,
            "affected_technologies": self.affected_technologies,
            "confidence_score": self.confidence_score,
            "times_encountered": self.times_encountered,
            "last_used_at": _iso(self.last_used_at),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_success_at": _iso(self.last_success_at),
            "environment": self.environment,
            "deployment_provider": self.deployment_provider,
            "learned_from_project_id": self.learned_from_project_id,
            "learned_at": _iso(self.learned_at),
        }

    @classmethod
    def from_model(cls, row: ErrorPatternModel) -> "ErrorPattern":
        return cls(
            id=row.id,
            category=row.category,
            subcategory=row.subcategory,
            signature=row.signature,
            raw_pattern=row.raw_pattern,
            diagnosis=row.diagnosis or "",
            root_cause=row.root_cause or "",
            fix_type=row.fix_type or "code",
            solution=row.solution or {},
            prevention_tips=row.prevention_tips or [],
            related_errors=row.related_errors or [],
            common_triggers=row.common_triggers or [],
            affected_technologies=row.affected_technologies or [],
            confidence_score=row.confidence_score,
            times_encountered=row.times_encountered,
            last_used_at=row.last_used_at,
            success_count=row.success_count,
            failure_count=row.failure_count,
            last_success_at=row.last_success_at,
            environment=row.environment,
            deployment_provider=row.deployment_provider,
            learned_from_project_id=row.learned_from_project_id,
            learned_at=row.learned_at,
        )

    def to_model(self) -> ErrorPatternModel:
        return ErrorPatternModel(
            category=self.category,
            subcategory=self.subcategory,
            signature=self.signature,
            raw_pattern=self.raw_pattern,
            diagnosis=self.diagnosis,
            root_cause=self.root_cause,
            fix_type=self.fix_type,
            solution=self.solution,
            prevention_tips=self.prevention_tips,
            related_errors=self.related_errors,
            common_triggers=self.common_triggers,
            affected_technologies=self.affected_technologies,
            confidence_score=self.confidence_score,
            times_encountered=1,
            last_used_at=utcnow(),
            environment=self.environment,
            deployment_provider=self.deployment_provider,
            learned_from_project_id=self.learned_from_project_id,
        )


class PatternStore:
    """Async access to the error_patterns table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    # =========================================================================
    # Lookup
    # =========================================================================

    async def lookup(self, category: str, signature: str) -> Optional[ErrorPattern]:
        """Exact (category, signature) match, highest confidence first."""
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(ErrorPatternModel)
                    .where(
                        ErrorPatternModel.category == category,
                        ErrorPatternModel.signature == signature,
                    )
                    .order_by(ErrorPatternModel.confidence_score.desc())
                    .limit(1)
                )
                row = result.scalar_one_or_none()
                return ErrorPattern.from_model(row) if row else None
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Pattern lookup failed: {e}") from e

    async def get(self, pattern_id: int) -> Optional[ErrorPattern]:
        try:
            async with self._session_maker() as session:
                row = await session.get(ErrorPatternModel, pattern_id)
                return ErrorPattern.from_model(row) if row else None
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Pattern fetch failed: {e}") from e

    async def list_patterns(
        self,
        category: Optional[str] = None,
        limit: int = 50,
    ) -> List[ErrorPattern]:
        """Most frequently encountered patterns first."""
        query = select(ErrorPatternModel).order_by(
            ErrorPatternModel.times_encountered.desc(),
            ErrorPatternModel.id,
        )
        if category:
            query = query.where(ErrorPatternModel.category == category)
        query = query.limit(limit)

        try:
            async with self._session_maker() as session:
                result = await session.execute(query)
                return [ErrorPattern.from_model(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Pattern listing failed: {e}") from e

    async def category_counts(self) -> Dict[str, int]:
        """Number of learned patterns per category."""
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(ErrorPatternModel.category, func.count(ErrorPatternModel.id))
                    .group_by(ErrorPatternModel.category)
                )
                return {category: count for category, count in result.all()}
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Category count failed: {e}") from e

    # =========================================================================
    # Writes
    # =========================================================================

    async def record_hit(self, pattern_id: int) -> Optional[ErrorPattern]:
        """Increment times_encountered and refresh last_used_at."""
        try:
            async with self._session_maker() as session:
                await self._increment(session, ErrorPatternModel.id == pattern_id)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Recording pattern hit failed: {e}") from e

        return await self.get(pattern_id)

    async def upsert(self, pattern: ErrorPattern) -> ErrorPattern:
        """
        Insert a new pattern, or count another sighting of an existing one.

        Never creates a second row for the same (category, signature).
        """
        same_key = (
            (ErrorPatternModel.category == pattern.category)
            & (ErrorPatternModel.signature == pattern.signature)
        )

        try:
            async with self._session_maker() as session:
                result = await session.execute(select(ErrorPatternModel.id).where(same_key))
                existing_id = result.scalar_one_or_none()

                if existing_id is not None:
                    await self._increment(session, same_key)
                    await session.commit()
                    logger.debug("Pattern %s already known, counted sighting", pattern.signature)
                else:
                    session.add(pattern.to_model())
                    try:
                        await session.commit()
                        logger.info("Learned new %s pattern: %s", pattern.category, pattern.signature)
                    except IntegrityError:
                        # Another writer inserted the same key first
                        await session.rollback()
                        await self._increment(session, same_key)
                        await session.commit()
                        logger.debug("Lost insert race for %s, counted sighting", pattern.signature)

                result = await session.execute(
                    select(ErrorPatternModel)
                    .where(same_key)
                    .execution_options(populate_existing=True)
                )
                return ErrorPattern.from_model(result.scalar_one())
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Pattern upsert failed: {e}") from e

    async def record_fix_outcome(self, pattern_id: int, success: bool) -> ErrorPattern:
        """
        Record whether applying a pattern's fix worked.

        Raises:
            LookupError: If the pattern does not exist
        """
        values: Dict[str, Any] = {}
        if success:
            values["success_count"] = ErrorPatternModel.success_count + 1
            values["last_success_at"] = utcnow()
        else:
            values["failure_count"] = ErrorPatternModel.failure_count + 1

        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    update(ErrorPatternModel)
                    .where(ErrorPatternModel.id == pattern_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise LookupError(f"Unknown pattern id: {pattern_id}")
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Recording fix outcome failed: {e}") from e

        pattern = await self.get(pattern_id)
        if pattern is None:
            raise LookupError(f"Unknown pattern id: {pattern_id}")
        return pattern

    async def _increment(self, session: AsyncSession, condition) -> None:
        await session.execute(
            update(ErrorPatternModel)
            .where(condition)
            .values(
                times_encountered=ErrorPatternModel.times_encountered + 1,
                last_used_at=utcnow(),
            )
        )
