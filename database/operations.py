import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from utils.error_handler import AlreadyExists, NotFound, StoreError, StoreUnavailable, ValidationError
from utils.helpers import utcnow

logger = logging.getLogger(__name__)

SUBSCRIPTION_MAX_SEEN = 10000

Filter = Tuple[str, str, Any]
OrderBy = Tuple[str, str]
ChangeHandler = Callable[[Dict[str, Any]], Any]


class Collections:
    BATTLES = "battles"
    VIDEOS = "videos"
    USERS = "users"
    VIEWS = "views"
    VOTES = "votes"
    FOLLOWS = "follows"
    NOTIFICATIONS = "notifications"


FILTER_OPERATORS = {
    "==": "$eq",
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
    "in": "$in",
    "not-in": "$nin",
}


def new_document_id() -> str:
    return str(ObjectId())


def stamp_create(data: Dict[str, Any], doc_id: Optional[str], now: datetime) -> Dict[str, Any]:
    """Проставляет id, createdAt и updatedAt для нового документа."""
    document = dict(data)
    document["id"] = doc_id or document.get("id") or new_document_id()
    document.setdefault("createdAt", now)
    document["updatedAt"] = now
    return document


def stamp_update(patch: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    document = dict(patch)
    document["updatedAt"] = now
    return document


def validate_filters(filters: Sequence[Filter]) -> None:
    for field, op, value in filters:
        if op not in FILTER_OPERATORS:
            raise ValidationError(f"Unsupported filter operator: {op}")
        if op in ("in", "not-in") and not isinstance(value, (list, tuple, set)):
            raise ValidationError(f"Operator '{op}' requires a list value for {field}")


class Subscription:
    """Подписка на изменения коллекции.

    Повторная доставка уже обработанной версии документа (id + updatedAt)
    подавляется. Помнится последняя версия не более чем max_seen документов,
    давно не менявшиеся вытесняются первыми. unsubscribe() можно вызывать
    сколько угодно раз.
    """

    def __init__(self, collection: str, on_change: ChangeHandler, max_seen: int = SUBSCRIPTION_MAX_SEEN):
        self.collection = collection
        self.on_change = on_change
        self.max_seen = max_seen
        self._seen: "OrderedDict[str, Any]" = OrderedDict()
        self._task: Optional[asyncio.Task] = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def attach(self, task: asyncio.Task) -> None:
        self._task = task

    async def deliver(self, document: Dict[str, Any]) -> bool:
        """Передаёт документ обработчику; возвращает False для дубликата."""
        if not self._active:
            return False
        version = document.get("updatedAt")
        doc_id = document.get("id")
        if doc_id in self._seen and self._seen[doc_id] == version:
            return False
        self._seen[doc_id] = version
        self._seen.move_to_end(doc_id)
        while len(self._seen) > self.max_seen:
            self._seen.popitem(last=False)
        try:
            result = self.on_change(document)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Change handler for {self.collection}/{doc_id} failed: {e}")
        return True

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        logger.info(f"Unsubscribed from {self.collection}")


class DocumentStore(ABC):
    """Контракт хранилища документов."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, patch: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    @abstractmethod
    async def increment_fields(
        self,
        collection: str,
        doc_id: str,
        deltas: Dict[str, int],
        expect: Optional[Dict[str, Any]] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> bool:
        ...

    @abstractmethod
    def subscribe(
        self,
        collection: str,
        filters: Sequence[Filter],
        on_change: ChangeHandler,
    ) -> Subscription:
        ...

    async def increment(self, collection: str, doc_id: str, field: str, delta: int = 1) -> None:
        """Атомарное приращение числового поля на стороне сервера."""
        await self.increment_fields(collection, doc_id, {field: delta})


def store_operation(func):
    """Переводит ошибки pymongo в ошибки хранилища."""
    @wraps(func)
    async def wrapper(self, collection, *args, **kwargs):
        try:
            return await func(self, collection, *args, **kwargs)
        except StoreError:
            raise
        except DuplicateKeyError as e:
            raise AlreadyExists(f"Duplicate document in {collection}: {e}", collection) from e
        except PyMongoError as e:
            logger.error(f"Error in {func.__name__} on {collection}: {e}")
            raise StoreUnavailable(str(e), collection) from e
    return wrapper


def _to_mongo_field(field: str) -> str:
    return "_id" if field == "id" else field


def build_mongo_filter(filters: Sequence[Filter]) -> Dict[str, Any]:
    validate_filters(filters)
    query: Dict[str, Any] = {}
    for field, op, value in filters:
        key = _to_mongo_field(field)
        if op in ("in", "not-in"):
            value = list(value)
        query.setdefault(key, {})[FILTER_OPERATORS[op]] = value
    return query


def _equality_filter(doc_id: str, expected: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    query = {"_id": doc_id}
    for field, value in (expected or {}).items():
        query[_to_mongo_field(field)] = value
    return query


def _from_mongo(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    doc_id = doc.pop("_id", None)
    doc.setdefault("id", doc_id)
    return doc


class MongoStore(DocumentStore):
    def __init__(self, db: AsyncIOMotorDatabase, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    @store_operation
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.db[collection].find_one({"_id": doc_id})
        return _from_mongo(doc)

    @store_operation
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(build_mongo_filter(filters))
        if order_by:
            field, direction = order_by
            cursor = cursor.sort(_to_mongo_field(field), DESCENDING if direction == "desc" else ASCENDING)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return [_from_mongo(doc) for doc in docs]

    @store_operation
    async def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        document = stamp_create(data, doc_id, self.clock())
        document["_id"] = document["id"]
        await self.db[collection].insert_one(document)
        return document["id"]

    @store_operation
    async def update(self, collection: str, doc_id: str, patch: Dict[str, Any]) -> None:
        result = await self.db[collection].update_one(
            {"_id": doc_id},
            {"$set": stamp_update(patch, self.clock())}
        )
        if result.matched_count == 0:
            raise NotFound(f"{collection}/{doc_id} not found", collection, doc_id)

    @store_operation
    async def delete(self, collection: str, doc_id: str) -> None:
        result = await self.db[collection].delete_one({"_id": doc_id})
        if result.deleted_count == 0:
            raise NotFound(f"{collection}/{doc_id} not found", collection, doc_id)

    @store_operation
    async def increment_fields(
        self,
        collection: str,
        doc_id: str,
        deltas: Dict[str, int],
        expect: Optional[Dict[str, Any]] = None,
    ) -> bool:
        result = await self.db[collection].update_one(
            _equality_filter(doc_id, expect),
            {"$inc": dict(deltas), "$set": {"updatedAt": self.clock()}}
        )
        return await self._check_matched(collection, doc_id, result.matched_count)

    @store_operation
    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> bool:
        result = await self.db[collection].update_one(
            _equality_filter(doc_id, expected),
            {"$set": stamp_update(patch, self.clock())}
        )
        return await self._check_matched(collection, doc_id, result.matched_count)

    async def _check_matched(self, collection: str, doc_id: str, matched: int) -> bool:
        if matched:
            return True
        # Условие не выполнилось или документа нет
        exists = await self.db[collection].count_documents({"_id": doc_id}, limit=1)
        if not exists:
            raise NotFound(f"{collection}/{doc_id} not found", collection, doc_id)
        return False

    def subscribe(
        self,
        collection: str,
        filters: Sequence[Filter],
        on_change: ChangeHandler,
    ) -> Subscription:
        subscription = Subscription(collection, on_change)
        task = asyncio.create_task(self._watch(subscription, list(filters)))
        subscription.attach(task)
        return subscription

    async def _watch(self, subscription: Subscription, filters: List[Filter]) -> None:
        """Отдаёт текущие документы, затем поток изменений."""
        collection = subscription.collection
        match = {
            f"fullDocument.{field}": condition
            for field, condition in build_mongo_filter(filters).items()
        }
        pipeline = [{"$match": match}] if match else []
        try:
            async with self.db[collection].watch(pipeline, full_document="updateLookup") as stream:
                for doc in await self.query(collection, filters):
                    await subscription.deliver(doc)
                async for change in stream:
                    if not subscription.active:
                        break
                    doc = _from_mongo(change.get("fullDocument"))
                    if doc is not None:
                        await subscription.deliver(doc)
        except asyncio.CancelledError:
            raise
        except PyMongoError as e:
            logger.error(f"Change stream on {collection} stopped: {e}")
