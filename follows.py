import logging
from typing import List

from database.models import Follow
from database.operations import Collections, DocumentStore
from notifications import NotificationSystem, NotificationType
from utils.error_handler import AlreadyExists, NotFound, ValidationError, run_side_effects
from utils.helpers import follow_record_id

logger = logging.getLogger(__name__)


class FollowManager:
    """Подписки пользователей друг на друга.

    Запись подписки создаётся с детерминированным id, поэтому повторная
    подписка не создаёт дубликат и не шлёт второе уведомление. Счётчики
    followersCount и followingCount обновляются как побочные эффекты.
    """

    def __init__(self, store: DocumentStore, notifier: NotificationSystem):
        self.store = store
        self.notifier = notifier

    async def follow_user(self, follower_id: str, following_id: str) -> bool:
        """Подписка. True, если подписка создана этим вызовом."""
        if not follower_id or not following_id:
            raise ValidationError("Both users are required")
        if follower_id == following_id:
            raise ValidationError("A user cannot follow themselves")

        try:
            await self.store.create(Collections.FOLLOWS, {
                "followerId": follower_id,
                "followingId": following_id,
            }, follow_record_id(follower_id, following_id))
        except AlreadyExists:
            logger.debug(f"User {follower_id} already follows {following_id}")
            return False
        logger.info(f"User {follower_id} followed {following_id}")

        await run_side_effects([
            ("following count", lambda: self.store.increment(Collections.USERS, follower_id, "followingCount", 1)),
            ("followers count", lambda: self.store.increment(Collections.USERS, following_id, "followersCount", 1)),
            ("notify follow_request", lambda: self.notifier.notify(
                following_id, NotificationType.FOLLOW_REQUEST, {"senderId": follower_id}
            )),
        ])
        return True

    async def unfollow_user(self, follower_id: str, following_id: str) -> bool:
        """Отписка. False, если подписки не было."""
        try:
            await self.store.delete(Collections.FOLLOWS, follow_record_id(follower_id, following_id))
        except NotFound:
            return False
        logger.info(f"User {follower_id} unfollowed {following_id}")

        await run_side_effects([
            ("following count", lambda: self.store.increment(Collections.USERS, follower_id, "followingCount", -1)),
            ("followers count", lambda: self.store.increment(Collections.USERS, following_id, "followersCount", -1)),
        ])
        return True

    async def is_following(self, follower_id: str, following_id: str) -> bool:
        if not follower_id or not following_id:
            return False
        doc = await self.store.get(Collections.FOLLOWS, follow_record_id(follower_id, following_id))
        return doc is not None

    async def get_followers(self, user_id: str, limit: int = 100) -> List[Follow]:
        docs = await self.store.query(
            Collections.FOLLOWS, [("followingId", "==", user_id)], ("createdAt", "desc"), limit
        )
        return [Follow.from_document(doc) for doc in docs]

    async def get_following(self, user_id: str, limit: int = 100) -> List[Follow]:
        docs = await self.store.query(
            Collections.FOLLOWS, [("followerId", "==", user_id)], ("createdAt", "desc"), limit
        )
        return [Follow.from_document(doc) for doc in docs]
