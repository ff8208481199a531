from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from herenow.api.dependencies import error_response, get_stats_cache, validate_page_params
from herenow.services.presence_service import StoreUnavailableError
from herenow.services.stats_cache import StatsCache

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
async def get_stats(
    domain: Optional[str] = Query(None),
    path: Optional[str] = Query(None),
    cache: StatsCache = Depends(get_stats_cache),
):
    """Текущие here/now для страницы"""
    rejected = validate_page_params(domain, path)
    if rejected is not None:
        return rejected

    try:
        snapshot = await cache.get(domain, path)
    except StoreUnavailableError as e:
        logger.error(f"Stats error for domain={domain} path={path}: {e}")
        return error_response(
            500,
            "Failed to get stats",
            details=str(e),
            domain=domain,
            path=path,
        )

    return snapshot.to_dict()
