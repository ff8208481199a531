"""
Общие зависимости и проверки для API трекинга и статистики
"""
from typing import Callable, Optional
from datetime import datetime

from fastapi import Request
from fastapi.responses import JSONResponse

from herenow import config
from herenow.services.stats_cache import StatsCache
from herenow.services.presence_service import utcnow


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def validate_page_params(domain: Optional[str], path: Optional[str]) -> Optional[JSONResponse]:
    """
    Проверка параметров до любого обращения к хранилищу.

    Returns:
        JSONResponse с ошибкой 400/403 или None, если запрос допустим
    """
    if not domain:
        return error_response(400, "Missing required parameter: domain")

    if not path:
        return error_response(400, "Missing required parameter: path")

    if not config.is_domain_allowed(domain):
        return error_response(403, "Domain not allowed")

    return None


def get_stats_cache(request: Request) -> StatsCache:
    return request.app.state.stats_cache


def get_clock(request: Request) -> Callable[[], datetime]:
    return getattr(request.app.state, "clock", utcnow)
