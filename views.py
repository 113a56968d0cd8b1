import logging
from typing import List, Optional

from config import MIN_VIEW_DURATION_MS
from database.models import ViewRecord
from database.operations import Collections, DocumentStore
from utils.error_handler import AlreadyExists, StoreError
from utils.helpers import utcnow, view_record_id

logger = logging.getLogger(__name__)


class ViewLedger:
    """Учёт уникальных просмотров видео: не больше одной записи на пару (видео, зритель).

    Запись просмотра создаётся с детерминированным id, поэтому при гонке двух
    одновременных вызовов второй create получает AlreadyExists и возвращает False.
    Счётчик views у видео меняется только атомарным increment; если он не удался
    после создания записи, просмотр всё равно считается записанным.
    """

    def __init__(self, store: DocumentStore, min_duration_ms: int = MIN_VIEW_DURATION_MS):
        self.store = store
        self.min_duration_ms = min_duration_ms

    async def has_user_viewed(self, video_id: str, user_id: str) -> bool:
        """Проверка, смотрел ли пользователь видео"""
        if not video_id or not user_id:
            return False
        views = await self.store.query(
            Collections.VIEWS,
            [("videoId", "==", video_id), ("userId", "==", user_id)],
            limit=1
        )
        return len(views) > 0

    async def record_view(
        self,
        video_id: str,
        user_id: str,
        source: str = "unknown",
        duration_ms: Optional[int] = None,
    ) -> bool:
        """Записывает просмотр. True только если запись создана этим вызовом."""
        if not video_id or not user_id:
            logger.warning("Cannot record view: video_id and user_id are required")
            return False

        if await self.has_user_viewed(video_id, user_id):
            logger.debug(f"User {user_id} has already viewed video {video_id}")
            return False

        if duration_ms is None or duration_ms < self.min_duration_ms:
            return False

        try:
            await self.store.create(
                Collections.VIEWS,
                {
                    "videoId": video_id,
                    "userId": user_id,
                    "source": source,
                    "viewDuration": duration_ms,
                    "viewedAt": utcnow(),
                },
                view_record_id(video_id, user_id)
            )
        except AlreadyExists:
            # Параллельный вызов успел раньше
            logger.info(f"View for video {video_id} by user {user_id} was recorded concurrently")
            return False

        try:
            await self.store.increment(Collections.VIDEOS, video_id, "views", 1)
        except StoreError as e:
            # Счётчик пересчитывается отдельно, откат записи не атомарен
            logger.warning(f"View recorded but counter increment failed for video {video_id}: {e}")
            return True

        logger.info(f"View recorded for video {video_id} by user {user_id}")
        return True

    async def get_video_views(self, video_id: str) -> int:
        """Текущее число просмотров видео"""
        if not video_id:
            return 0
        video = await self.store.get(Collections.VIDEOS, video_id)
        return (video or {}).get("views", 0)

    async def get_view_history(self, user_id: str, limit: int = 50) -> List[ViewRecord]:
        """История просмотров пользователя, новые первыми"""
        docs = await self.store.query(
            Collections.VIEWS,
            [("userId", "==", user_id)],
            ("viewedAt", "desc"),
            limit
        )
        return [ViewRecord.from_document(doc) for doc in docs]
