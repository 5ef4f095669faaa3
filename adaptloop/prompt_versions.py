"""
Prompt Versions
===============

Storage for generation system prompts and their traffic allocation.

Versions are named vMAJOR.MINOR.PATCH. Operators seed and promote versions;
the improvement loop only ever adds inactive candidates with zero traffic.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adaptloop.db.models import PromptVersionModel, PromptImprovementModel
from adaptloop.errors import StoreUnavailable

logger = logging.getLogger(__name__)

TRAFFIC_TOTAL = 100.0
TRAFFIC_TOLERANCE = 0.01

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?")


@dataclass
class PromptVersion:
    """One system prompt version."""
    version: str
    system_prompt: str
    traffic_percentage: float = 0.0
    is_active: bool = False
    parent_version: Optional[str] = None
    improvements_made: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    created_by: str = "operator"
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version": self.version,
            "parent_version": self.parent_version,
            "system_prompt": self.system_prompt,
            "traffic_percentage": self.traffic_percentage,
            "is_active": self.is_active,
            "improvements_made": self.improvements_made,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_model(cls, row: PromptVersionModel) -> "PromptVersion":
        return cls(
            id=row.id,
            version=row.version,
            parent_version=row.parent_version,
            system_prompt=row.system_prompt,
            traffic_percentage=row.traffic_percentage,
            is_active=row.is_active,
            improvements_made=row.improvements_made or [],
            notes=row.notes,
            created_by=row.created_by,
            created_at=row.created_at,
        )


def next_version(current: str) -> str:
    """Bump the minor component: v1.2.3 -> v1.3.0."""
    match = _VERSION_RE.match(current or "")
    if not match:
        return "v1.1.0"
    major, minor = int(match.group(1)), int(match.group(2))
    return f"v{major}.{minor + 1}.0"


def validate_allocation(allocation: Dict[str, float]) -> None:
    """
    Check a traffic allocation before it is applied.

    Raises:
        ValueError: Empty, non-positive or not summing to 100
    """
    if not allocation:
        raise ValueError("Traffic allocation must name at least one version")
    for version, pct in allocation.items():
        if pct is None or pct <= 0:
            raise ValueError(f"Traffic for {version} must be greater than 0")
    total = sum(allocation.values())
    if abs(total - TRAFFIC_TOTAL) > TRAFFIC_TOLERANCE:
        raise ValueError(f"Traffic percentages must sum to 100 (got {total:g})")


class PromptVersionStore:
    """Async access to the prompt_versions table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def list_versions(self) -> List[PromptVersion]:
        """All versions, newest first."""
        return await self._fetch(
            select(PromptVersionModel).order_by(PromptVersionModel.id.desc())
        )

    async def list_serving(self) -> List[PromptVersion]:
        """Versions with traffic_percentage > 0, in creation order."""
        return await self._fetch(
            select(PromptVersionModel)
            .where(PromptVersionModel.traffic_percentage > 0)
            .order_by(PromptVersionModel.id)
        )

    async def get(self, version: str) -> Optional[PromptVersion]:
        rows = await self._fetch(
            select(PromptVersionModel).where(PromptVersionModel.version == version)
        )
        return rows[0] if rows else None

    async def get_primary(self) -> Optional[PromptVersion]:
        """The active version serving the most traffic (oldest wins ties)."""
        rows = await self._fetch(
            select(PromptVersionModel)
            .where(PromptVersionModel.is_active.is_(True))
            .order_by(PromptVersionModel.traffic_percentage.desc(), PromptVersionModel.id)
            .limit(1)
        )
        return rows[0] if rows else None

    async def recent_candidate_exists(self, parent_version: str, since: datetime) -> bool:
        """Whether an inactive candidate derived from parent_version was created after since."""
        rows = await self._fetch(
            select(PromptVersionModel)
            .where(
                PromptVersionModel.parent_version == parent_version,
                PromptVersionModel.is_active.is_(False),
                PromptVersionModel.created_at >= since,
            )
            .limit(1)
        )
        return bool(rows)

    async def create_version(
        self,
        version: str,
        system_prompt: str,
        traffic_percentage: float = 0.0,
        is_active: bool = False,
        parent_version: Optional[str] = None,
        notes: Optional[str] = None,
        improvements_made: Optional[List[str]] = None,
        created_by: str = "operator",
    ) -> PromptVersion:
        """
        Add a version manually.

        Raises:
            ValueError: If the version name already exists
        """
        row = PromptVersionModel(
            version=version,
            parent_version=parent_version,
            system_prompt=system_prompt,
            traffic_percentage=traffic_percentage,
            is_active=is_active,
            improvements_made=improvements_made or [],
            notes=notes,
            created_by=created_by,
        )
        try:
            async with self._session_maker() as session:
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise ValueError(f"Prompt version {version} already exists") from e
                logger.info("Created prompt version %s", version)
                return PromptVersion.from_model(row)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Creating prompt version failed: {e}") from e

    async def create_candidate(
        self,
        parent: PromptVersion,
        system_prompt: str,
        improvements: List[str],
        reasoning: str,
        analysis: Dict[str, Any],
        reason: str = "Scheduled automatic improvement",
    ) -> PromptVersion:
        """
        Insert an inactive, zero-traffic candidate derived from parent and
        its improvement record in a single transaction.
        """
        try:
            async with self._session_maker() as session:
                result = await session.execute(select(PromptVersionModel.version))
                taken = set(result.scalars().all())

                version = next_version(parent.version)
                while version in taken:
                    version = next_version(version)

                row = PromptVersionModel(
                    version=version,
                    parent_version=parent.version,
                    system_prompt=system_prompt,
                    traffic_percentage=0.0,
                    is_active=False,
                    improvements_made=list(improvements),
                    notes=reasoning,
                    created_by="improvement_loop",
                )
                session.add(row)
                session.add(PromptImprovementModel(
                    improvement_type="prompt",
                    old_version=parent.version,
                    new_version=version,
                    reason=reason,
                    analysis=analysis,
                    status="pending",
                ))
                await session.commit()
                logger.info("Created candidate prompt version %s from %s", version, parent.version)
                return PromptVersion.from_model(row)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Persisting candidate prompt failed: {e}") from e

    async def set_traffic(self, allocation: Dict[str, float]) -> List[PromptVersion]:
        """
        Replace the traffic split. Listed versions become active with the
        given percentages; every other version becomes inactive at 0.

        Raises:
            ValueError: Invalid percentages
            LookupError: Unknown version name
        """
        validate_allocation(allocation)

        try:
            async with self._session_maker() as session:
                result = await session.execute(select(PromptVersionModel))
                rows = {row.version: row for row in result.scalars().all()}

                unknown = sorted(set(allocation) - set(rows))
                if unknown:
                    raise LookupError(f"Unknown prompt version(s): {', '.join(unknown)}")

                for name, row in rows.items():
                    if name in allocation:
                        row.traffic_percentage = float(allocation[name])
                        row.is_active = True
                    else:
                        row.traffic_percentage = 0.0
                        row.is_active = False

                await session.commit()
                logger.info("Traffic split updated: %s", allocation)
                return [
                    PromptVersion.from_model(row)
                    for row in sorted(rows.values(), key=lambda r: r.id)
                    if row.version in allocation
                ]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Updating traffic failed: {e}") from e

    async def _fetch(self, query) -> List[PromptVersion]:
        try:
            async with self._session_maker() as session:
                result = await session.execute(query)
                return [PromptVersion.from_model(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Prompt version query failed: {e}") from e
