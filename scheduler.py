import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from utils.helpers import utcnow

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Повторяющаяся фоновая задача с одним владельцем.

    У экземпляра не бывает больше одной запущенной задачи: повторный start()
    ничего не делает. stop() можно вызывать многократно.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Запускает задачу; False, если она уже запущена"""
        if self.running:
            logger.debug(f"Periodic task {self.name} is already running")
            return False
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"Periodic task {self.name} started (every {self.interval}s)")
        return True

    async def stop(self) -> None:
        """Останавливает задачу"""
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Periodic task {self.name} stopped")

    async def run_once(self) -> None:
        try:
            await self.func()
            self.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.error(f"Error in periodic task {self.name}: {e}")
        finally:
            self.runs += 1
            self.last_run_at = utcnow()

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self.running,
            "interval": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }
