"""
HTTP-клиент движка виджета для /api/track и /api/stats.

Ошибки сети и ответы не-2xx не пробрасываются: они логируются и
возвращаются как мягкий отказ (False / None).
"""
import httpx
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("herenow.widget")

PREFIX = "[herenow]"


class PresenceApiClient:
    """Клиент API присутствия на httpx.AsyncClient"""

    def __init__(
        self,
        api_base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    async def track_visit(
        self,
        domain: str,
        path: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> bool:
        """True, только если сервер сохранил визит"""
        try:
            response = await self.client.post(
                f"{self.api_base_url}/api/track",
                json={
                    "domain": domain,
                    "path": path,
                    "user_id": user_id,
                    "session_id": session_id,
                },
            )
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"{PREFIX} Tracking failed with status: {e.response.status_code}")
            return False
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{PREFIX} Tracking failed: {e}")
            return False

        if not isinstance(result, dict):
            logger.error(f"{PREFIX} Tracking response malformed: {result!r}")
            return False
        return result.get("success") is True

    async def fetch_stats(self, domain: str, path: str) -> Optional[Dict[str, Any]]:
        """Статистика страницы или None при любой ошибке"""
        try:
            response = await self.client.get(
                f"{self.api_base_url}/api/stats",
                params={"domain": domain, "path": path},
            )
            response.raise_for_status()
            stats = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"{PREFIX} Stats failed with status: {e.response.status_code}")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{PREFIX} Stats failed: {e}")
            return None

        if not isinstance(stats, dict) or "here" not in stats or "now" not in stats:
            logger.error(f"{PREFIX} Stats response malformed: {stats!r}")
            return None
        return stats
