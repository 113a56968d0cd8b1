from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BattleStatus:
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    REJECTED = "rejected"

    TERMINAL = frozenset({COMPLETED, EXPIRED, REJECTED})


class DocumentModel(BaseModel):
    """Базовая модель документа: в хранилище поля в camelCase, в Python в snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]):
        return cls.model_validate(doc)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# Участник батла
class PlayerSlot(DocumentModel):
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    video_id: Optional[str] = None
    votes: int = 0
    views: int = 0


# Модель батла
class Battle(DocumentModel):
    id: str
    player1: PlayerSlot = Field(default_factory=PlayerSlot)  # вызывающий
    player2: PlayerSlot = Field(default_factory=PlayerSlot)  # вызванный
    category: Optional[str] = None
    status: str = BattleStatus.PENDING
    total_votes: int = 0
    winner_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    settled_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in BattleStatus.TERMINAL

    def participant_ids(self):
        return [p.user_id for p in (self.player1, self.player2) if p.user_id]


# Модель просмотра видео
class ViewRecord(DocumentModel):
    id: str
    video_id: str
    user_id: str
    source: str = "unknown"
    view_duration: Optional[int] = None  # мс
    viewed_at: Optional[datetime] = None


# Модель голоса в батле
class Vote(DocumentModel):
    id: str
    battle_id: str
    voter_id: str
    player_number: int
    created_at: Optional[datetime] = None


# Модель уведомления
class Notification(DocumentModel):
    id: str
    recipient_id: str
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_avatar: Optional[str] = None
    type: str  # follow_request, battle_request, vote, battle_expired и т.д.
    title: str
    message: str
    data: Dict[str, Any] = {}
    read: bool = False
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# Модель подписки
class Follow(DocumentModel):
    id: str
    follower_id: str
    following_id: str
    created_at: Optional[datetime] = None
