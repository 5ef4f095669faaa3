"""
Operational Notifications
=========================

Notices for human reviewers, e.g. "a new candidate prompt is waiting".
Each notification is logged and stored in admin_notifications.
Delivery is best-effort.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adaptloop.db.models import AdminNotificationModel
from adaptloop.errors import StoreUnavailable

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    notification_type: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "notification_type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Notifier:
    """Logs notifications and keeps them for the admin view."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def notify(
        self,
        notification_type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Emit a notification. Returns False if it could not be stored."""
        logger.info("[%s] %s: %s", notification_type, title, message)
        try:
            async with self._session_maker() as session:
                session.add(AdminNotificationModel(
                    notification_type=notification_type,
                    title=title,
                    message=message,
                    data=data or {},
                ))
                await session.commit()
            return True
        except Exception as e:
            logger.error("Failed to store notification %r: %s", title, e)
            return False

    async def recent(self, limit: int = 20) -> List[Notification]:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(AdminNotificationModel)
                    .order_by(AdminNotificationModel.id.desc())
                    .limit(limit)
                )
                return [
                    Notification(
                        id=row.id,
                        notification_type=row.notification_type,
                        title=row.title,
                        message=row.message,
                        data=row.data or {},
                        created_at=row.created_at,
                    )
                    for row in result.scalars().all()
                ]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Reading notifications failed: {e}") from e
