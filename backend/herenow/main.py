from fastapi import FastAPI, Request, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
import logging
import traceback

from herenow import config
from herenow.api import track, stats, widget
from herenow.api.dependencies import error_response
from herenow.database.connection import AsyncSessionLocal
from herenow.services.presence_service import PresenceAggregator, utcnow
from herenow.services.stats_cache import StatsCache

logger = logging.getLogger(__name__)

# Таблица page_events создается скриптом create_page_events_table.py

app = FastAPI(
    title="here/now analytics API",
    description="Счетчики присутствия here/now для страниц сайтов",
    version="1.0.0"
)


def build_stats_cache(session_factory, clock=utcnow) -> StatsCache:
    """Кэш статистики поверх агрегатора; один экземпляр на приложение"""
    aggregator = PresenceAggregator(session_factory, clock=clock)
    return StatsCache(aggregator)


app.state.clock = utcnow
app.state.stats_cache = build_stats_cache(AsyncSessionLocal)


# Неверные типы полей и битый JSON: 400 в общем формате {"error": ...}
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Invalid request on {request.method} {request.url.path}: {exc.errors()}")
    return error_response(400, "Invalid request parameters")


# Глобальный обработчик ошибок
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error on %s %s: %s\n%s",
        request.method,
        request.url.path,
        exc,
        traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "details": str(exc)}
    )


# Виджет встраивается на сторонние сайты: любые origin, без credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Подключение роутеров
app.include_router(track.router, prefix="/api/track", tags=["track"])
app.include_router(stats.router, prefix="/api/stats", tags=["stats"])
app.include_router(widget.router, tags=["widget"])


@app.get("/")
async def root():
    return {
        "name": "here/now analytics API",
        "version": "1.0.0",
        "endpoints": {
            "track": "POST /api/track",
            "stats": "GET /api/stats",
            "widget": "GET /widget.js",
            "health": "GET /health",
        },
    }


@app.get("/health")
async def health(debug: bool = Query(False)):
    """
    Lightweight health check.

    If debug=true (non-production only), also reports whether the event
    store is reachable.
    """
    payload = {"status": "ok", "service": "here-now-api"}

    if config.ENVIRONMENT == "production" or not debug:
        return payload

    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        payload["database"] = True
    except Exception as e:
        payload.update({"database": False, "debug_error": str(e)})

    return payload
