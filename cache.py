import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from config import CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


class CacheKind:
    USER_PROFILE = "user_profile"
    USER_VIDEOS = "user_videos"
    USER_BATTLES = "user_battles"
    USER_SAVED = "user_saved"
    CONVERSATIONS = "conversations"
    NOTIFICATIONS = "notifications"
    HOME_FEED = "home_feed"


def cache_key(kind: str, owner: Optional[str] = None) -> str:
    """Ключ кэша: одно пространство на пару (вид ресурса, владелец)."""
    return f"{kind}:{owner}" if owner else kind


@dataclass
class CacheEntry:
    key: str
    payload: Any
    stored_at: float
    stale_served: bool = False


@dataclass
class CacheRead:
    data: Any
    is_fresh: bool


class TTLCache:
    """Кэш в памяти процесса с TTL.

    Записи не вытесняются заранее: просроченная запись один раз отдаётся
    как устаревшая (is_fresh=False), после чего считается промахом до
    следующей записи.
    """

    def __init__(self, ttl: float = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def read(self, key: str) -> Optional[CacheRead]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() - entry.stored_at < self.ttl:
            return CacheRead(data=entry.payload, is_fresh=True)
        if entry.stale_served:
            return None
        entry.stale_served = True
        logger.debug(f"Serving stale cache entry for {key}")
        return CacheRead(data=entry.payload, is_fresh=False)

    def write(self, key: str, data: Any) -> None:
        self._entries[key] = CacheEntry(key=key, payload=data, stored_at=self.clock())

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_owner(self, owner: str) -> int:
        """Удаляет все записи владельца (например, при выходе из аккаунта)."""
        suffix = f":{owner}"
        keys = [k for k in self._entries if k.endswith(suffix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class CachedReader:
    """Чтение через кэш по схеме stale-while-revalidate."""

    def __init__(self, cache: TTLCache):
        self.cache = cache
        self._refreshing: Dict[str, asyncio.Task] = {}

    async def get(self, key: str, fetch: Callable[[], Awaitable[Any]]) -> CacheRead:
        cached = self.cache.read(key)
        if cached is not None:
            if not cached.is_fresh:
                self._schedule_refresh(key, fetch)
            return cached

        # Промах: блокирующая загрузка, ошибки хранилища пробрасываются
        data = await fetch()
        self.cache.write(key, data)
        return CacheRead(data=data, is_fresh=True)

    def _schedule_refresh(self, key: str, fetch: Callable[[], Awaitable[Any]]) -> None:
        if key in self._refreshing:
            return
        task = asyncio.create_task(self._refresh(key, fetch))
        self._refreshing[key] = task
        task.add_done_callback(lambda _: self._refreshing.pop(key, None))

    async def _refresh(self, key: str, fetch: Callable[[], Awaitable[Any]]) -> None:
        try:
            data = await fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Background refresh for {key} failed: {e}")
            return
        self.cache.write(key, data)
        logger.debug(f"Cache refreshed for {key}")

    @property
    def pending(self) -> Set[str]:
        return set(self._refreshing)

    async def wait_pending(self) -> None:
        """Ожидает завершения фоновых обновлений."""
        tasks = list(self._refreshing.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._refreshing.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshing.clear()
