import logging
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Dict, List, Optional

from cache import CacheKind, CachedReader, CacheRead, cache_key
from config import BATTLE_DURATION_HOURS, GAME_CATEGORIES, SWEEP_BATCH_SIZE
from database.models import Battle, BattleStatus, Vote
from database.operations import Collections, DocumentStore
from notifications import NotificationSystem, NotificationType
from utils.error_handler import (
    AlreadyExists,
    AlreadyTerminal,
    InvalidTransition,
    NotFound,
    StoreError,
    TransitionConflict,
    ValidationError,
    run_side_effects,
)
from utils.helpers import ensure_utc, utcnow, vote_record_id

logger = logging.getLogger(__name__)

MAX_TRANSITION_ATTEMPTS = 5

FEED_NEW = "New"
FEED_TRENDING = "Trending"
FEED_GAME_BATTLES = "Game Battles"

# Разрешённые переходы: целевой статус -> допустимые исходные
TRANSITIONS = {
    BattleStatus.ACTIVE: {BattleStatus.PENDING},
    BattleStatus.REJECTED: {BattleStatus.PENDING},
    BattleStatus.COMPLETED: {BattleStatus.ACTIVE},
    BattleStatus.EXPIRED: {BattleStatus.PENDING, BattleStatus.ACTIVE},
}


def determine_winner(votes1: int, votes2: int, player1_id: Optional[str], player2_id: Optional[str]) -> Optional[str]:
    """Победитель по голосам; None при ничьей."""
    if votes1 > votes2:
        return player1_id
    if votes2 > votes1:
        return player2_id
    return None


def is_battle_expired(battle: Battle, now: datetime, duration: timedelta = timedelta(hours=BATTLE_DURATION_HOURS)) -> bool:
    """Батл истёк, если createdAt + duration <= now."""
    created_at = ensure_utc(battle.created_at)
    if created_at is None:
        return False
    return created_at + duration <= ensure_utc(now)


def check_transition(battle: Battle, target: str) -> None:
    """Бросает AlreadyTerminal или InvalidTransition, если переход невозможен."""
    if battle.is_terminal:
        raise AlreadyTerminal(battle.id, battle.status)
    if battle.status not in TRANSITIONS[target]:
        raise InvalidTransition(f"Cannot move battle {battle.id} from {battle.status} to {target}")


class BattleManager:
    """Жизненный цикл батла: pending -> active/rejected, active -> completed.

    Каждый переход применяется через compare_and_set по текущему статусу, поэтому
    при конкурентных вызовах переход и его побочные эффекты выполняются ровно
    одним вызывающим. Повторный вызов на терминальном батле возвращает его без
    изменений.
    """

    def __init__(
        self,
        store: DocumentStore,
        notifier: NotificationSystem,
        reader: Optional[CachedReader] = None,
        duration: timedelta = timedelta(hours=BATTLE_DURATION_HOURS),
        game_categories: Optional[List[str]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.reader = reader
        self.duration = duration
        self.game_categories = list(game_categories or GAME_CATEGORIES)
        self.clock = clock

    async def get_battle(self, battle_id: str) -> Battle:
        doc = await self.store.get(Collections.BATTLES, battle_id)
        if doc is None:
            raise NotFound(f"Battle {battle_id} not found", Collections.BATTLES, battle_id)
        return Battle.from_document(doc)

    async def create_battle(
        self,
        challenger_id: str,
        opponent_id: str,
        video_id: str,
        category: Optional[str] = None,
        challenger_name: Optional[str] = None,
        opponent_name: Optional[str] = None,
    ) -> Battle:
        """Создание вызова на батл в статусе pending"""
        if not challenger_id or not opponent_id:
            raise ValidationError("Both players are required")
        if challenger_id == opponent_id:
            raise ValidationError("A user cannot challenge themselves")
        if not video_id:
            raise ValidationError("Challenger video is required")

        battle_id = await self.store.create(Collections.BATTLES, {
            "player1": {"userId": challenger_id, "userName": challenger_name, "videoId": video_id, "votes": 0, "views": 0},
            "player2": {"userId": opponent_id, "userName": opponent_name, "videoId": None, "votes": 0, "views": 0},
            "category": category,
            "status": BattleStatus.PENDING,
            "totalVotes": 0,
            "winnerId": None,
        })
        logger.info(f"Battle {battle_id} created: {challenger_id} challenged {opponent_id}")

        await run_side_effects([
            ("notify battle_request", lambda: self.notifier.notify(
                opponent_id, NotificationType.BATTLE_REQUEST, {"senderId": challenger_id, "battleId": battle_id}
            )),
        ])
        return await self.get_battle(battle_id)

    async def _transition(self, battle_id: str, target: str, build_patch: Callable[[Battle], Dict[str, Any]]):
        """Применяет переход; возвращает (battle, applied).

        build_patch получает текущий батл и возвращает изменения; ожидаемые
        значения для compare_and_set: статус и счётчики голосов, прочитанные
        вместе с батлом.
        """
        for _ in range(MAX_TRANSITION_ATTEMPTS):
            battle = await self.get_battle(battle_id)
            try:
                check_transition(battle, target)
            except AlreadyTerminal:
                return battle, False

            patch = build_patch(battle)
            expected = {
                "status": battle.status,
                "player1.votes": battle.player1.votes,
                "player2.votes": battle.player2.votes,
            }
            if await self.store.compare_and_set(Collections.BATTLES, battle_id, expected, patch):
                logger.info(f"Battle {battle_id}: {battle.status} -> {target}")
                return await self.get_battle(battle_id), True
            logger.debug(f"Battle {battle_id} changed concurrently, retrying {target}")

        raise TransitionConflict(f"Battle {battle_id} kept changing while moving to {target}")

    def _require_opponent(self, battle: Battle, user_id: str) -> None:
        if battle.player2.user_id != user_id:
            raise InvalidTransition(f"Only the challenged player can respond to battle {battle.id}")

    async def accept_battle(self, battle_id: str, user_id: str, video_id: Optional[str] = None) -> Battle:
        """Принятие вызова: pending -> active"""
        battle = await self.get_battle(battle_id)
        self._require_opponent(battle, user_id)
        if battle.status == BattleStatus.ACTIVE:
            return battle

        def build_patch(current: Battle) -> Dict[str, Any]:
            patch = {"status": BattleStatus.ACTIVE, "acceptedAt": self.clock()}
            if video_id:
                patch["player2.videoId"] = video_id
            return patch

        try:
            battle, applied = await self._transition(battle_id, BattleStatus.ACTIVE, build_patch)
        except InvalidTransition:
            # Принят параллельным вызовом
            battle = await self.get_battle(battle_id)
            if battle.status != BattleStatus.ACTIVE:
                raise
            return battle
        if applied:
            await run_side_effects([
                ("notify battle_accepted", lambda: self.notifier.notify(
                    battle.player1.user_id, NotificationType.BATTLE_ACCEPTED, {"senderId": user_id, "battleId": battle_id}
                )),
            ])
        return battle

    async def reject_battle(self, battle_id: str, user_id: str) -> Battle:
        """Отклонение вызова: pending -> rejected"""
        battle = await self.get_battle(battle_id)
        self._require_opponent(battle, user_id)

        battle, applied = await self._transition(
            battle_id,
            BattleStatus.REJECTED,
            lambda current: {"status": BattleStatus.REJECTED, "rejectedAt": self.clock()}
        )
        if applied:
            await run_side_effects([
                ("notify battle_rejected", lambda: self.notifier.notify(
                    battle.player1.user_id, NotificationType.BATTLE_REJECTED, {"senderId": user_id, "battleId": battle_id}
                )),
            ])
        return battle

    async def complete_battle(self, battle_id: str, settled_by: Optional[str] = None) -> Battle:
        """Завершение батла с определением победителя: active -> completed.

        Победитель вычисляется один раз по голосам, зафиксированным переходом.
        Статистика игроков и уведомления выполняются независимо друг от друга.
        """
        def build_patch(current: Battle) -> Dict[str, Any]:
            patch = {
                "status": BattleStatus.COMPLETED,
                "winnerId": determine_winner(
                    current.player1.votes, current.player2.votes,
                    current.player1.user_id, current.player2.user_id
                ),
                "completedAt": self.clock(),
            }
            if settled_by:
                patch["settledBy"] = settled_by
            return patch

        battle, applied = await self._transition(battle_id, BattleStatus.COMPLETED, build_patch)
        if not applied:
            return battle

        notification_type = NotificationType.BATTLE_COMPLETED if settled_by else NotificationType.BATTLE_EXPIRED
        errors = await run_side_effects(
            self._stats_effects(battle) + self._completion_notice_effects(battle, notification_type)
        )
        if errors:
            logger.warning(f"Battle {battle_id} completed with {len(errors)} failed side effects")
        return battle

    def _stats_effects(self, battle: Battle):
        effects = []
        for player in (battle.player1, battle.player2):
            if not player.user_id:
                continue
            deltas = {"totalBattles": 1}
            if battle.winner_id == player.user_id:
                deltas["battlesWon"] = 1
            effects.append((
                f"stats {player.user_id}",
                lambda user_id=player.user_id, deltas=deltas: self.store.increment_fields(Collections.USERS, user_id, deltas)
            ))
        return effects

    def _completion_notice_effects(self, battle: Battle, notification_type: NotificationType):
        effects = []
        pairs = ((battle.player1, battle.player2), (battle.player2, battle.player1))
        for player, opponent in pairs:
            if not player.user_id:
                continue
            data = {
                "battleId": battle.id,
                "opponentName": opponent.user_name or "Opponent",
                "winnerId": battle.winner_id,
                "isWinner": battle.winner_id == player.user_id,
            }
            effects.append((
                f"notify {notification_type.value} {player.user_id}",
                lambda user_id=player.user_id, data=data: self.notifier.notify(user_id, notification_type, data)
            ))
        return effects

    async def expire_battle(self, battle_id: str) -> Battle:
        """Ручное истечение батла без определения победителя (для аудита)"""
        battle, applied = await self._transition(
            battle_id,
            BattleStatus.EXPIRED,
            lambda current: {"status": BattleStatus.EXPIRED, "expiredAt": self.clock()}
        )
        return battle

    async def cast_vote(self, battle_id: str, voter_id: str, player_number: int) -> bool:
        """Голос за игрока. True, если голос засчитан этим вызовом."""
        if player_number not in (1, 2):
            raise ValidationError("player_number must be 1 or 2")
        if not voter_id:
            raise ValidationError("voter_id is required")

        battle = await self.get_battle(battle_id)
        if battle.status != BattleStatus.ACTIVE:
            raise InvalidTransition(f"Battle {battle_id} is {battle.status}, voting is closed")
        if voter_id in battle.participant_ids():
            raise ValidationError("Players cannot vote in their own battle")

        try:
            await self.store.create(Collections.VOTES, {
                "battleId": battle_id,
                "voterId": voter_id,
                "playerNumber": player_number,
            }, vote_record_id(battle_id, voter_id))
        except AlreadyExists:
            logger.info(f"User {voter_id} has already voted in battle {battle_id}")
            return False

        # Оба счётчика в одном атомарном обновлении: totalVotes == player1.votes + player2.votes
        try:
            counted = await self.store.increment_fields(
                Collections.BATTLES,
                battle_id,
                {f"player{player_number}.votes": 1, "totalVotes": 1},
                expect={"status": BattleStatus.ACTIVE}
            )
        except StoreError:
            # Неучтённый голос не должен оставаться в votes
            await self._discard_vote(battle_id, voter_id)
            raise
        if not counted:
            logger.warning(f"Vote by {voter_id} arrived after battle {battle_id} closed")
            await self._discard_vote(battle_id, voter_id)
            return False

        await run_side_effects([
            (f"notify vote {user_id}", lambda user_id=user_id: self.notifier.notify(
                user_id, NotificationType.VOTE,
                {"senderId": voter_id, "battleId": battle_id, "playerNumber": player_number}
            ))
            for user_id in battle.participant_ids()
        ])
        return True

    async def _discard_vote(self, battle_id: str, voter_id: str) -> None:
        try:
            await self.store.delete(Collections.VOTES, vote_record_id(battle_id, voter_id))
        except StoreError as e:
            logger.warning(f"Could not discard uncounted vote by {voter_id} in battle {battle_id}: {e}")

    async def get_vote(self, battle_id: str, voter_id: str) -> Optional[Vote]:
        """Голос пользователя в батле, если он был"""
        doc = await self.store.get(Collections.VOTES, vote_record_id(battle_id, voter_id))
        return Vote.from_document(doc) if doc else None

    async def process_expired_battles(self, limit: int = SWEEP_BATCH_SIZE) -> int:
        """Завершает истёкшие активные батлы, не больше limit за проход."""
        docs = await self.store.query(
            Collections.BATTLES,
            [("status", "==", BattleStatus.ACTIVE)],
            ("createdAt", "asc"),  # старые первыми
            limit
        )
        now = self.clock()
        processed = 0
        for doc in docs:
            battle = Battle.from_document(doc)
            if battle.created_at is None:
                logger.warning(f"Active battle {battle.id} has no createdAt, skipping")
                continue
            if not is_battle_expired(battle, now, self.duration):
                # Дальше только более новые батлы
                break
            try:
                await self.complete_battle(battle.id)
                processed += 1
            except Exception as e:
                logger.error(f"Error processing expired battle {battle.id}: {e}")

        logger.info(f"Processed {processed} expired battles")
        return processed

    async def get_battle_feed(self, category: str = FEED_NEW, limit: int = 20) -> List[Battle]:
        """Лента активных батлов: New, Trending, Game Battles или конкретная категория"""
        filters = [("status", "==", BattleStatus.ACTIVE)]
        order_by = ("createdAt", "desc")
        if category == FEED_TRENDING:
            order_by = ("totalVotes", "desc")
        elif category == FEED_GAME_BATTLES:
            filters.append(("category", "in", self.game_categories))
        elif category != FEED_NEW:
            filters.append(("category", "==", category))

        docs = await self.store.query(Collections.BATTLES, filters, order_by, limit)
        return [Battle.from_document(doc) for doc in docs]

    async def get_cached_feed(self, category: str = FEED_NEW, limit: int = 20) -> CacheRead:
        if self.reader is None:
            raise ValidationError("Cached reads are not configured")
        return await self.reader.get(
            cache_key(CacheKind.HOME_FEED, category),
            lambda: self.get_battle_feed(category, limit)
        )

    async def get_user_battles(self, user_id: str, limit: int = 50) -> List[Battle]:
        """Батлы пользователя в любой роли, новые первыми"""
        found: Dict[str, Battle] = {}
        for field in ("player1.userId", "player2.userId"):
            docs = await self.store.query(Collections.BATTLES, [(field, "==", user_id)], ("createdAt", "desc"), limit)
            for doc in docs:
                battle = Battle.from_document(doc)
                found[battle.id] = battle
        battles = sorted(
            found.values(),
            key=lambda b: ensure_utc(b.created_at) or datetime.min.replace(tzinfo=UTC),
            reverse=True
        )
        return battles[:limit]
