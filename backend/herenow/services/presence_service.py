"""
Агрегация присутствия по странице: here (уникальные посетители за все время)
и now (уникальные посетители внутри окна активности).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy import select, func, case, distinct
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from herenow import config
from herenow.models.page_event import PageEvent

logger = logging.getLogger(__name__)


class StoreUnavailableError(Exception):
    """Хранилище событий недоступно или запрос завершился ошибкой."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PresenceSnapshot:
    domain: str
    path: str
    here: int
    now: int
    computed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "here": self.here,
            "now": self.now,
            "domain": self.domain,
            "path": self.path,
        }


class PresenceAggregator:
    """Считает here/now одним запросом к таблице page_events"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        window_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        seconds = config.ACTIVITY_THRESHOLD_SECONDS if window_seconds is None else window_seconds
        self.window = timedelta(seconds=seconds)
        self.clock = clock

    async def aggregate(
        self,
        domain: str,
        path: str,
        now: Optional[datetime] = None,
        window: Optional[timedelta] = None,
    ) -> PresenceSnapshot:
        """
        Получение снимка присутствия для (domain, path)

        Args:
            domain: Домен сайта
            path: Путь страницы
            now: Момент запроса (по умолчанию часы сервиса)
            window: Окно активности (по умолчанию из настроек)

        Raises:
            StoreUnavailableError: ошибка обращения к хранилищу, без повторов
        """
        if not domain or not path:
            raise ValueError("domain and path must be non-empty")

        if now is None:
            now = self.clock()
        if window is None:
            window = self.window
        threshold = now - window

        # Оба счетчика в одном запросе: now всегда подмножество here
        query = select(
            func.count(distinct(PageEvent.user_id)).label("here_count"),
            func.count(
                distinct(case((PageEvent.timestamp >= threshold, PageEvent.user_id)))
            ).label("now_count"),
        ).where(
            PageEvent.domain == domain,
            PageEvent.path == path,
        )

        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                row = result.one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Stats query failed for {domain}{path}: {e}", exc_info=True)
            raise StoreUnavailableError(str(e)) from e

        here = int(row.here_count or 0) if row is not None else 0
        now_count = int(row.now_count or 0) if row is not None else 0

        return PresenceSnapshot(
            domain=domain,
            path=path,
            here=here,
            now=now_count,
            computed_at=now,
        )
