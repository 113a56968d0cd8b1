import hashlib
import json
from datetime import datetime, UTC
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Текущее время в UTC (timezone-aware)."""
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Приводит datetime к UTC; naive-значения считаются UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def pair_record_id(first: str, second: str) -> str:
    """Детерминированный id для пары значений; разные пары дают разные id."""
    encoded = json.dumps([first, second], separators=(",", ":"))
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


def view_record_id(video_id: str, user_id: str) -> str:
    """Id записи просмотра: одна запись на пару (видео, зритель)."""
    return pair_record_id(video_id, user_id)


def vote_record_id(battle_id: str, voter_id: str) -> str:
    """Id голоса: один голос на пару (батл, голосующий)."""
    return pair_record_id(battle_id, voter_id)


def follow_record_id(follower_id: str, following_id: str) -> str:
    """Id подписки: одна запись на пару (подписчик, автор)."""
    return pair_record_id(follower_id, following_id)


def resolve_display_name(profile: Optional[Dict[str, Any]], default: str = "Someone") -> str:
    """Имя пользователя для отображения в уведомлениях."""
    if not profile:
        return default
    return (
        profile.get("displayName")
        or profile.get("userName")
        or profile.get("name")
        or default
    )


