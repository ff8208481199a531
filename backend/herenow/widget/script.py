"""
Генерация скрипта виджета для /widget.js.

Шаблон widget.js содержит плейсхолдеры __NAME__, которые заменяются
значениями текущего развертывания (адрес API, белый список доменов,
окно активности и задержки).
"""
import json
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from herenow import config

TEMPLATE_PATH = Path(__file__).parent / "widget.js"


@lru_cache(maxsize=1)
def load_template() -> str:
    return TEMPLATE_PATH.read_text(encoding="utf-8")


def render_widget_script(
    api_base_url: str,
    allowed_domains: Optional[List[str]] = None,
    activity_threshold_seconds: Optional[int] = None,
    stats_refresh_seconds: Optional[int] = None,
    navigation_delay_ms: Optional[int] = None,
    hydration_delay_ms: Optional[int] = None,
) -> str:
    """Скрипт виджета с подставленными настройками"""
    if allowed_domains is None:
        allowed_domains = config.ALLOWED_DOMAINS
    if activity_threshold_seconds is None:
        activity_threshold_seconds = config.ACTIVITY_THRESHOLD_SECONDS
    if stats_refresh_seconds is None:
        stats_refresh_seconds = config.STATS_REFRESH_SECONDS
    if navigation_delay_ms is None:
        navigation_delay_ms = config.WIDGET_NAVIGATION_DELAY_MS
    if hydration_delay_ms is None:
        hydration_delay_ms = config.WIDGET_HYDRATION_DELAY_MS

    # json.dumps дает корректные JS-литералы для строк и списков
    values = {
        "__HERENOW_API__": json.dumps(api_base_url.rstrip("/")),
        "__ALLOWED_DOMAINS__": json.dumps(list(allowed_domains)),
        "__ACTIVITY_THRESHOLD_MS__": str(int(activity_threshold_seconds) * 1000),
        "__STATS_REFRESH_MS__": str(int(stats_refresh_seconds) * 1000),
        "__NAVIGATION_DELAY_MS__": str(int(navigation_delay_ms)),
        "__HYDRATION_DELAY_MS__": str(int(hydration_delay_ms)),
    }

    script = load_template()
    for placeholder, value in values.items():
        script = script.replace(placeholder, value)
    return script
