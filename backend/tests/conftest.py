import os

# До импорта herenow: настройки читаются при импорте
os.environ["ALLOWED_DOMAINS"] = "localhost,example.com"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from herenow import config
from herenow.database.connection import Base, get_db, make_engine, make_session_factory
from herenow.main import app
from herenow.models import PageEvent
from herenow.services.presence_service import PresenceAggregator
from herenow.services.stats_cache import StatsCache

ACTIVITY_WINDOW = 300
CACHE_TTL = 30


class FakeClock:
    """Управляемые часы сервиса (UTC)"""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

    def monotonic(self) -> float:
        return self.now.timestamp()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def allowed_domains(monkeypatch):
    monkeypatch.setattr(config, "ALLOWED_DOMAINS", ["localhost", "example.com"])


@pytest.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'events.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def add_event(session_factory):
    async def _add(domain, path, user_id, at, session_id="s1"):
        async with session_factory() as session:
            session.add(PageEvent(
                domain=domain,
                path=path,
                user_id=user_id,
                session_id=session_id,
                timestamp=at,
            ))
            await session.commit()
    return _add


@pytest.fixture
def aggregator(session_factory, clock):
    return PresenceAggregator(session_factory, window_seconds=ACTIVITY_WINDOW, clock=clock)


@pytest.fixture
async def api_client(session_factory, aggregator, clock):
    async def _get_db():
        async with session_factory() as session:
            yield session

    saved_cache = app.state.stats_cache
    saved_clock = app.state.clock

    app.dependency_overrides[get_db] = _get_db
    app.state.clock = clock
    app.state.stats_cache = StatsCache(
        aggregator,
        ttl_seconds=CACHE_TTL,
        max_entries=100,
        clock=clock.monotonic,
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()
    app.state.stats_cache = saved_cache
    app.state.clock = saved_clock
