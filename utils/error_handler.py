import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Tuple

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Базовое исключение движка."""
    pass


class ValidationError(EngineError):
    """Исключение для ошибок валидации."""
    pass


class StoreError(EngineError):
    """Ошибка хранилища документов."""

    def __init__(self, message: str, collection: str = None, doc_id: str = None):
        super().__init__(message)
        self.collection = collection
        self.doc_id = doc_id


class StoreUnavailable(StoreError):
    """Хранилище временно недоступно, можно повторить запрос."""
    pass


class NotFound(StoreError):
    """Документ не найден."""
    pass


class AlreadyExists(StoreError):
    """Документ с таким id уже существует."""
    pass


class AlreadyTerminal(EngineError):
    """Батл уже в терминальном состоянии."""

    def __init__(self, battle_id: str, status: str):
        super().__init__(f"Battle {battle_id} is already {status}")
        self.battle_id = battle_id
        self.status = status


class InvalidTransition(EngineError):
    """Переход недопустим из текущего состояния."""
    pass


class TransitionConflict(EngineError):
    """Переход не удалось применить из-за конкурентных записей."""
    pass


class PushDeliveryFailed(EngineError):
    """Не удалось доставить push-уведомление."""
    pass


@dataclass
class SideEffectError:
    name: str
    error: Exception


SideEffect = Tuple[str, Callable[[], Awaitable[object]]]


async def run_side_effects(effects: Iterable[SideEffect]) -> List[SideEffectError]:
    """Выполняет побочные эффекты по порядку, ошибка одного не останавливает остальные.

    Каждый эффект задаётся парой (имя, фабрика корутины). Возвращает список
    ошибок; сама функция ничего не пробрасывает.
    """
    errors = []
    for name, effect in effects:
        try:
            await effect()
        except Exception as e:
            logger.warning(f"Side effect '{name}' failed: {e}")
            errors.append(SideEffectError(name=name, error=e))
    return errors
