import logging
from datetime import timedelta
from typing import Optional

from battles import BattleManager
from cache import CachedReader, TTLCache
from config import (
    BATTLE_DURATION_HOURS,
    CACHE_TTL_SECONDS,
    MIN_VIEW_DURATION_MS,
    PRESENCE_INTERVAL_SECONDS,
    SWEEP_BATCH_SIZE,
    SWEEP_INTERVAL_SECONDS,
)
from database.operations import DocumentStore
from follows import FollowManager
from notifications import NotificationSystem
from presence import PresenceTracker
from scheduler import PeriodicTask
from views import ViewLedger

logger = logging.getLogger(__name__)


class Engine:
    """Сборка компонентов движка: зависимости передаются через конструкторы."""

    def __init__(
        self,
        store: DocumentStore,
        push_client=None,
        cache_ttl: float = CACHE_TTL_SECONDS,
        battle_duration: timedelta = timedelta(hours=BATTLE_DURATION_HOURS),
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        sweep_batch_size: int = SWEEP_BATCH_SIZE,
        min_view_duration_ms: int = MIN_VIEW_DURATION_MS,
        presence_interval: float = PRESENCE_INTERVAL_SECONDS,
    ):
        self.store = store
        self.push_client = push_client
        self.cache = TTLCache(ttl=cache_ttl)
        self.reader = CachedReader(self.cache)
        self.notifications = NotificationSystem(store, push_client, self.reader)
        self.views = ViewLedger(store, min_duration_ms=min_view_duration_ms)
        self.follows = FollowManager(store, self.notifications)
        self.battles = BattleManager(store, self.notifications, self.reader, duration=battle_duration)
        self.presence = PresenceTracker(store, interval=presence_interval)
        self.sweep_batch_size = sweep_batch_size
        self.sweeper = PeriodicTask("battle-expiration-sweep", sweep_interval, self.sweep)

    async def sweep(self) -> int:
        return await self.battles.process_expired_battles(self.sweep_batch_size)

    def start(self) -> bool:
        """Запуск фоновых задач"""
        return self.sweeper.start()

    async def logout(self, user_id: Optional[str] = None) -> None:
        """Выход пользователя: остановка presence и очистка его кэша"""
        await self.presence.stop()
        if user_id:
            self.cache.invalidate_owner(user_id)

    async def stop(self) -> None:
        """Остановка фоновых задач и закрытие клиентов"""
        await self.sweeper.stop()
        await self.presence.stop()
        await self.reader.close()
        if self.push_client is not None:
            await self.push_client.close()
        logger.info("Engine stopped")
