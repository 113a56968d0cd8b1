import logging
from typing import Optional

from config import PRESENCE_INTERVAL_SECONDS
from database.operations import Collections, DocumentStore
from scheduler import PeriodicTask
from utils.error_handler import StoreError
from utils.helpers import utcnow

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Онлайн-статус текущего пользователя.

    Пока приложение на переднем плане, статус подтверждается каждые interval
    секунд. Отслеживается только один пользователь за раз.
    """

    def __init__(self, store: DocumentStore, interval: float = PRESENCE_INTERVAL_SECONDS):
        self.store = store
        self.interval = interval
        self.user_id: Optional[str] = None
        self.foreground = True
        self._task: Optional[PeriodicTask] = None

    @property
    def tracking(self) -> bool:
        return self._task is not None and self._task.running

    async def set_online_status(self, user_id: str, is_online: bool) -> bool:
        """Обновление онлайн-статуса; ошибки только логируются"""
        if not user_id:
            return False
        try:
            await self.store.update(Collections.USERS, user_id, {
                "isOnline": is_online,
                "lastSeen": utcnow(),
            })
            return True
        except StoreError as e:
            logger.warning(f"Could not set online status for {user_id}: {e}")
            return False

    async def is_online(self, user_id: str) -> bool:
        if not user_id:
            return False
        user = await self.store.get(Collections.USERS, user_id)
        return bool((user or {}).get("isOnline", False))

    async def _ping(self) -> None:
        if self.user_id and self.foreground:
            await self.set_online_status(self.user_id, True)

    async def start(self, user_id: str) -> bool:
        """Начать отслеживание пользователя"""
        if not user_id:
            return False
        if self.user_id == user_id and self.tracking:
            return False
        if self.user_id:
            await self.stop()

        self.user_id = user_id
        self.foreground = True
        self._task = PeriodicTask(f"presence:{user_id}", self.interval, self._ping)
        self._task.start()
        return True

    async def set_foreground(self, foreground: bool) -> None:
        """Приложение перешло на передний план или в фон"""
        self.foreground = foreground
        if self.user_id:
            await self.set_online_status(self.user_id, foreground)

    async def stop(self) -> None:
        """Остановить отслеживание и отметить пользователя офлайн"""
        task, self._task = self._task, None
        if task:
            await task.stop()
        user_id, self.user_id = self.user_id, None
        if user_id:
            await self.set_online_status(user_id, False)
