"""
Настройки сервиса here/now.

Все значения читаются из переменных окружения (и .env) один раз при импорте.
Окно активности и TTL кэша общие для серверной агрегации и для
генерируемого скрипта виджета.
"""
import os
from typing import List, Optional

from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv(usecwd=True), override=False)


def _env_int(name: str, default: str) -> int:
    value = os.getenv(name, default).strip()
    try:
        return int(value)
    except ValueError:
        return int(default)


# Окно активности: используется и для "now", и для интервала heartbeat в виджете
ACTIVITY_THRESHOLD_SECONDS = _env_int("ACTIVITY_THRESHOLD_SECONDS", "300")

# Кэш статистики
STATS_CACHE_TTL_SECONDS = _env_int("STATS_CACHE_TTL_SECONDS", "30")
STATS_CACHE_MAX_ENTRIES = _env_int("STATS_CACHE_MAX_ENTRIES", "100")

# Параметры клиентского виджета
STATS_REFRESH_SECONDS = _env_int("STATS_REFRESH_SECONDS", "30")
WIDGET_NAVIGATION_DELAY_MS = _env_int("WIDGET_NAVIGATION_DELAY_MS", "100")
WIDGET_HYDRATION_DELAY_MS = _env_int("WIDGET_HYDRATION_DELAY_MS", "500")
WIDGET_CACHE_MAX_AGE = _env_int("WIDGET_CACHE_MAX_AGE", "3600")

API_BASE_URL = os.getenv("API_BASE_URL", "").strip().rstrip("/")

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


def get_allowed_domains() -> List[str]:
    """Список разрешенных доменов из ALLOWED_DOMAINS (через запятую)."""
    env_domains = os.getenv("ALLOWED_DOMAINS")
    if env_domains:
        return [d.strip() for d in env_domains.split(",") if d.strip()]

    # Для разработки
    return ["localhost"]


ALLOWED_DOMAINS = get_allowed_domains()


def is_domain_allowed(domain: str, allowed_domains: Optional[List[str]] = None) -> bool:
    """
    Проверка домена по белому списку.

    Разрешен точный матч, либо домен с префиксом www., если в списке есть
    версия без www.
    """
    if not domain:
        return False

    allowed = ALLOWED_DOMAINS if allowed_domains is None else allowed_domains

    if domain in allowed:
        return True

    if domain.startswith("www."):
        return domain[len("www."):] in allowed

    return False
