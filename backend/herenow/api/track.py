from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from typing import Callable, Optional
from datetime import datetime
import logging

from herenow.api.dependencies import error_response, get_clock, validate_page_params
from herenow.database.connection import get_db
from herenow.services.tracking_service import TrackingError, TrackingService

router = APIRouter()
logger = logging.getLogger(__name__)


class TrackRequest(BaseModel):
    domain: Optional[str] = None
    path: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None


@router.post("")
async def track_visit(
    request: Request,
    payload: Optional[TrackRequest] = Body(None),
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """Запись визита на страницу"""
    payload = payload or TrackRequest()

    rejected = validate_page_params(payload.domain, payload.path)
    if rejected is not None:
        return rejected

    service = TrackingService(db, clock=clock)
    try:
        event = await service.track_visit(
            domain=payload.domain,
            path=payload.path,
            user_id=payload.user_id,
            session_id=payload.session_id,
            user_agent=request.headers.get("user-agent", ""),
        )
    except TrackingError:
        return error_response(500, "Failed to track event")

    logger.debug(f"Tracked visit {event.id} for {payload.domain}{payload.path}")
    return {"success": True, "event_id": str(event.id)}
