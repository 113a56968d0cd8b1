import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from cache import CacheKind, CachedReader, cache_key
from database.models import Notification
from database.operations import Collections, DocumentStore
from utils.error_handler import NotFound, PushDeliveryFailed, StoreError, ValidationError
from utils.helpers import resolve_display_name, utcnow

logger = logging.getLogger(__name__)


class NotificationType(Enum):
    # Социальные уведомления
    FOLLOW_REQUEST = "follow_request"

    # Уведомления о батлах
    BATTLE_REQUEST = "battle_request"
    BATTLE_ACCEPTED = "battle_accepted"
    BATTLE_REJECTED = "battle_rejected"
    BATTLE_EXPIRED = "battle_expired"
    BATTLE_COMPLETED = "battle_completed"
    VOTE = "vote"


@dataclass
class NotificationTemplate:
    type: Optional[NotificationType]
    title: str
    message: str


DEFAULT_TEMPLATE = NotificationTemplate(
    type=None,
    title="Notification",
    message="You have a new notification"
)


class _TemplateData(dict):
    def __missing__(self, key):
        return ""


class NotificationSystem:
    """Создание уведомлений из доменных событий и доставка push.

    Запись уведомления в хранилище первична: push отправляется только после
    успешной записи, и его ошибка не влияет на результат notify(). Дедупликации
    здесь нет, вызывающий код отвечает за однократный вызов на событие.
    """

    def __init__(self, store: DocumentStore, push_client=None, reader: Optional[CachedReader] = None):
        self.store = store
        self.push_client = push_client
        self.reader = reader
        self.templates = self._load_templates()

    def _load_templates(self) -> Dict[NotificationType, NotificationTemplate]:
        """Загрузка шаблонов уведомлений"""
        return {
            NotificationType.FOLLOW_REQUEST: NotificationTemplate(
                type=NotificationType.FOLLOW_REQUEST,
                title="New Follower",
                message="{sender_name} started following you"
            ),
            NotificationType.BATTLE_REQUEST: NotificationTemplate(
                type=NotificationType.BATTLE_REQUEST,
                title="Battle Request",
                message="{sender_name} sent you a battle request"
            ),
            NotificationType.BATTLE_ACCEPTED: NotificationTemplate(
                type=NotificationType.BATTLE_ACCEPTED,
                title="Battle Accepted",
                message="{sender_name} accepted your battle request"
            ),
            NotificationType.BATTLE_REJECTED: NotificationTemplate(
                type=NotificationType.BATTLE_REJECTED,
                title="Battle Rejected",
                message="{sender_name} rejected your battle request"
            ),
            NotificationType.BATTLE_EXPIRED: NotificationTemplate(
                type=NotificationType.BATTLE_EXPIRED,
                title="Battle Expired",
                message="Your battle with {opponent_name} has expired.{outcome}"
            ),
            NotificationType.BATTLE_COMPLETED: NotificationTemplate(
                type=NotificationType.BATTLE_COMPLETED,
                title="Battle Completed",
                message="Your battle with {opponent_name} has ended.{outcome}"
            ),
            NotificationType.VOTE: NotificationTemplate(
                type=NotificationType.VOTE,
                title="New Vote",
                message="{sender_name} voted on your battle"
            ),
        }

    def get_template(self, notification_type: Union[NotificationType, str]) -> NotificationTemplate:
        try:
            return self.templates[NotificationType(notification_type)]
        except (ValueError, KeyError):
            return DEFAULT_TEMPLATE

    def render(self, notification_type: Union[NotificationType, str], data: Dict[str, Any], sender_name: str):
        """Возвращает (title, message) для уведомления."""
        template = self.get_template(notification_type)
        opponent_name = data.get("opponentName") or "opponent"
        outcome = ""
        if "isWinner" in data:
            if data["isWinner"]:
                outcome = " You won!"
            elif data.get("winnerId") is None:
                outcome = " It's a tie."
            else:
                outcome = f" {opponent_name} won."
        values = _TemplateData(
            sender_name=sender_name,
            opponent_name=opponent_name,
            outcome=outcome,
        )
        return template.title, template.message.format_map(values)

    async def notify(
        self,
        recipient_id: str,
        notification_type: Union[NotificationType, str],
        data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Создаёт уведомление и пытается отправить push. Возвращает id уведомления."""
        if not recipient_id:
            raise ValidationError("recipient_id is required")

        type_value = notification_type.value if isinstance(notification_type, NotificationType) else notification_type
        data = dict(data or {})
        sender_id = data.get("senderId")
        sender_profile = await self._get_user(sender_id)
        sender_name = resolve_display_name(sender_profile)
        title, message = self.render(type_value, data, sender_name)

        # Ошибка записи пробрасывается: уведомление без записи не считается созданным
        notification_id = await self.store.create(Collections.NOTIFICATIONS, {
            "recipientId": recipient_id,
            "senderId": sender_id,
            "senderName": sender_name,
            "senderAvatar": (sender_profile or {}).get("profileImage") or (sender_profile or {}).get("avatar"),
            "type": type_value,
            "title": title,
            "message": message,
            "data": data,
            "read": False,
        })
        logger.info(f"Notification created: {type_value} for user {recipient_id}")
        self._invalidate(recipient_id)

        await self._deliver_push(recipient_id, title, message, {
            "notificationId": notification_id,
            "type": type_value,
            **data,
        })
        return notification_id

    async def _get_user(self, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not user_id:
            return None
        try:
            return await self.store.get(Collections.USERS, user_id)
        except StoreError as e:
            logger.warning(f"Could not load profile for {user_id}: {e}")
            return None

    async def _deliver_push(self, recipient_id: str, title: str, body: str, data: Dict[str, Any]) -> bool:
        if self.push_client is None:
            return False
        try:
            recipient = await self.store.get(Collections.USERS, recipient_id)
            token = (recipient or {}).get("pushToken")
            if not token:
                logger.info(f"No push token for user {recipient_id}, skipping push notification")
                return False
            await self.push_client.send(token, title, body, data)
            logger.info(f"Push notification sent to user {recipient_id}")
            return True
        except (PushDeliveryFailed, StoreError) as e:
            logger.warning(f"Push delivery to {recipient_id} failed: {e}")
            return False
        except Exception as e:
            logger.error(f"Unexpected push error for {recipient_id}: {e}")
            return False

    def _invalidate(self, user_id: str) -> None:
        if self.reader:
            self.reader.cache.invalidate(cache_key(CacheKind.NOTIFICATIONS, user_id))

    async def get_notifications(self, user_id: str, limit: Optional[int] = None) -> List[Notification]:
        """Уведомления пользователя, новые первыми"""
        docs = await self.store.query(
            Collections.NOTIFICATIONS,
            [("recipientId", "==", user_id)],
            ("createdAt", "desc"),
            limit
        )
        return [Notification.from_document(doc) for doc in docs]

    async def get_cached_notifications(self, user_id: str):
        """Уведомления через кэш; возвращает CacheRead."""
        if self.reader is None:
            raise ValidationError("Cached reads are not configured")
        return await self.reader.get(
            cache_key(CacheKind.NOTIFICATIONS, user_id),
            lambda: self.get_notifications(user_id)
        )

    async def mark_as_read(self, notification_id: str) -> bool:
        """Отметить уведомление как прочитанное. False, если оно уже прочитано."""
        doc = await self.store.get(Collections.NOTIFICATIONS, notification_id)
        if doc is None:
            raise NotFound(f"Notification {notification_id} not found", Collections.NOTIFICATIONS, notification_id)
        changed = await self.store.compare_and_set(
            Collections.NOTIFICATIONS,
            notification_id,
            {"read": False},
            {"read": True, "readAt": utcnow()}
        )
        if changed:
            self._invalidate(doc["recipientId"])
        return changed

    async def mark_all_as_read(self, user_id: str) -> int:
        """Отметить все уведомления пользователя прочитанными"""
        unread = await self.store.query(
            Collections.NOTIFICATIONS,
            [("recipientId", "==", user_id), ("read", "==", False)]
        )
        count = 0
        for doc in unread:
            if await self.store.compare_and_set(
                Collections.NOTIFICATIONS, doc["id"], {"read": False}, {"read": True, "readAt": utcnow()}
            ):
                count += 1
        self._invalidate(user_id)
        logger.info(f"Marked {count} notifications as read for user {user_id}")
        return count

    async def delete_notification(self, notification_id: str) -> None:
        doc = await self.store.get(Collections.NOTIFICATIONS, notification_id)
        await self.store.delete(Collections.NOTIFICATIONS, notification_id)
        if doc:
            self._invalidate(doc["recipientId"])

    async def get_unread_count(self, user_id: str) -> int:
        unread = await self.store.query(
            Collections.NOTIFICATIONS,
            [("recipientId", "==", user_id), ("read", "==", False)]
        )
        return len(unread)
