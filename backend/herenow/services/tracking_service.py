from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from typing import Callable, Optional
from datetime import datetime
from uuid import uuid4
import logging

from herenow.models.page_event import PageEvent
from herenow.services.presence_service import utcnow

logger = logging.getLogger(__name__)


class TrackingError(Exception):
    """Не удалось записать событие визита."""
    pass


class TrackingService:
    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def track_visit(
        self,
        domain: str,
        path: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PageEvent:
        """Запись визита; недостающие идентификаторы генерируются на сервере"""
        event = PageEvent(
            domain=domain,
            path=path,
            user_id=user_id or str(uuid4()),
            session_id=session_id or str(uuid4()),
            user_agent=user_agent or None,
            timestamp=self.clock(),
        )
        try:
            self.db.add(event)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Tracking error for {domain}{path}: {e}", exc_info=True)
            raise TrackingError(str(e)) from e
        return event
