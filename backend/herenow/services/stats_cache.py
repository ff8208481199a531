"""
Кэш снимков присутствия перед агрегатором.

Снимок моложе TTL отдается без пересчета. Одновременные промахи по одному
ключу не объединяются: каждый запрос может пересчитать снимок сам.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from herenow import config
from herenow.services.presence_service import PresenceAggregator, PresenceSnapshot

logger = logging.getLogger(__name__)

# Не может встретиться ни в домене, ни в пути
KEY_SEPARATOR = "\x00"


def cache_key(domain: str, path: str) -> str:
    return f"{domain}{KEY_SEPARATOR}{path}"


@dataclass(frozen=True)
class _CacheEntry:
    snapshot: PresenceSnapshot
    timestamp: float  # момент начала вычисления по часам кэша


class StatsCache:
    """Кэш (domain, path) -> PresenceSnapshot с TTL и ленивой очисткой"""

    def __init__(
        self,
        aggregator: PresenceAggregator,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.aggregator = aggregator
        self.ttl = float(config.STATS_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
        self.max_entries = config.STATS_CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self.clock = clock
        self._entries: Dict[str, _CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, domain: str, path: str) -> PresenceSnapshot:
        key = cache_key(domain, path)
        started = self.clock()

        cached = self._entries.get(key)
        if cached is not None and started - cached.timestamp < self.ttl:
            return cached.snapshot

        # Вычисление вне какой-либо блокировки; ошибки агрегатора пробрасываются
        snapshot = await self.aggregator.aggregate(domain, path)
        self._store(key, _CacheEntry(snapshot=snapshot, timestamp=started))
        return snapshot

    def _store(self, key: str, entry: _CacheEntry) -> None:
        current = self._entries.get(key)
        # Медленный конкурентный пересчет не затирает более свежий снимок
        if current is None or current.timestamp <= entry.timestamp:
            self._entries[key] = entry

        if len(self._entries) > self.max_entries:
            self._sweep()

    def _sweep(self) -> None:
        cutoff = self.clock() - self.ttl * 2
        stale = sorted(
            (entry.timestamp, key)
            for key, entry in self._entries.items()
            if entry.timestamp <= cutoff
        )
        for _, key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"Stats cache sweep removed {len(stale)} entries, {len(self._entries)} left")

    def invalidate(self, domain: str, path: str) -> None:
        self._entries.pop(cache_key(domain, path), None)

    def clear(self) -> None:
        self._entries.clear()
