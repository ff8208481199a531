from fastapi import APIRouter, Request
from fastapi.responses import Response

from herenow import config
from herenow.widget.script import render_widget_script

router = APIRouter()


@router.get("/widget.js")
async def widget_script(request: Request):
    """Скрипт виджета, собирается на каждый запрос"""
    api_base_url = config.API_BASE_URL or str(request.base_url).rstrip("/")

    return Response(
        content=render_widget_script(api_base_url),
        media_type="application/javascript",
        headers={"Cache-Control": f"public, max-age={config.WIDGET_CACHE_MAX_AGE}"},
    )
