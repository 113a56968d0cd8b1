import asyncio
import copy
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional

import pytest

from battles import BattleManager
from cache import CachedReader, TTLCache
from database.operations import DocumentStore, Subscription, stamp_create, stamp_update, validate_filters
from notifications import NotificationSystem
from push import PushResult
from utils.error_handler import AlreadyExists, NotFound, PushDeliveryFailed
from views import ViewLedger

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _matches(doc: Dict[str, Any], filters) -> bool:
    for field, op, expected in filters:
        value = _get_path(doc, field)
        if op == "==" and value != expected:
            return False
        if op == "!=" and value == expected:
            return False
        if op == "in" and value not in expected:
            return False
        if op == "not-in" and value in expected:
            return False
        if op in ("<", "<=", ">", ">=") and value is None:
            return False
        if op == "<" and not value < expected:
            return False
        if op == "<=" and not value <= expected:
            return False
        if op == ">" and not value > expected:
            return False
        if op == ">=" and not value >= expected:
            return False
    return True


class FakeStore(DocumentStore):
    """Хранилище в памяти с тем же контрактом, что и MongoStore."""

    def __init__(self, clock=None):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.clock = clock or (lambda: datetime.now(UTC))
        self.failures: Dict[tuple, Exception] = {}
        self.calls: List[tuple] = []
        self._subscriptions: List[tuple] = []
        self._tasks: List[asyncio.Task] = []

    def fail(self, method: str, collection: str, error: Exception) -> None:
        self.failures[(method, collection)] = error

    def _call(self, method: str, collection: str) -> None:
        self.calls.append((method, collection))
        error = self.failures.get((method, collection))
        if error is not None:
            raise error

    def docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(collection, {})

    def seed(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        document = stamp_create(data, doc_id, self.clock())
        self.docs(collection)[doc_id] = document
        return document

    def _notify(self, collection: str, document: Dict[str, Any]) -> None:
        for sub_collection, filters, subscription in self._subscriptions:
            if sub_collection == collection and subscription.active and _matches(document, filters):
                self._tasks.append(asyncio.ensure_future(subscription.deliver(copy.deepcopy(document))))

    async def flush(self) -> None:
        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks)

    async def get(self, collection, doc_id):
        self._call("get", collection)
        doc = self.docs(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def query(self, collection, filters=(), order_by=None, limit=None):
        self._call("query", collection)
        validate_filters(filters)
        docs = [d for d in self.docs(collection).values() if _matches(d, filters)]
        if order_by:
            field, direction = order_by
            docs.sort(
                key=lambda d: (_get_path(d, field) is not None, _get_path(d, field)),
                reverse=direction == "desc"
            )
        if limit:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    async def create(self, collection, data, doc_id=None):
        self._call("create", collection)
        document = stamp_create(data, doc_id, self.clock())
        if document["id"] in self.docs(collection):
            raise AlreadyExists(f"{collection}/{document['id']} exists", collection, document["id"])
        self.docs(collection)[document["id"]] = document
        self._notify(collection, document)
        return document["id"]

    def _existing(self, collection, doc_id):
        doc = self.docs(collection).get(doc_id)
        if doc is None:
            raise NotFound(f"{collection}/{doc_id} not found", collection, doc_id)
        return doc

    async def update(self, collection, doc_id, patch):
        self._call("update", collection)
        doc = self._existing(collection, doc_id)
        for field, value in stamp_update(patch, self.clock()).items():
            _set_path(doc, field, value)
        self._notify(collection, doc)

    async def delete(self, collection, doc_id):
        self._call("delete", collection)
        self._existing(collection, doc_id)
        del self.docs(collection)[doc_id]

    async def increment_fields(self, collection, doc_id, deltas, expect=None):
        self._call("increment_fields", collection)
        doc = self._existing(collection, doc_id)
        if any(_get_path(doc, f) != v for f, v in (expect or {}).items()):
            return False
        for field, delta in deltas.items():
            _set_path(doc, field, (_get_path(doc, field) or 0) + delta)
        doc["updatedAt"] = self.clock()
        self._notify(collection, doc)
        return True

    async def compare_and_set(self, collection, doc_id, expected, patch):
        self._call("compare_and_set", collection)
        doc = self._existing(collection, doc_id)
        if any(_get_path(doc, f) != v for f, v in expected.items()):
            return False
        for field, value in stamp_update(patch, self.clock()).items():
            _set_path(doc, field, value)
        self._notify(collection, doc)
        return True

    def subscribe(self, collection, filters, on_change):
        subscription = Subscription(collection, on_change)
        self._subscriptions.append((collection, list(filters), subscription))
        for doc in self.docs(collection).values():
            if _matches(doc, filters):
                self._tasks.append(asyncio.ensure_future(subscription.deliver(copy.deepcopy(doc))))
        return subscription


class FakePushClient:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def send(self, device_token, title, body, data=None):
        if self.fail:
            raise PushDeliveryFailed("device unreachable")
        self.sent.append({"to": device_token, "title": title, "body": body, "data": data})
        return PushResult(status="ok", ticket_id=f"ticket-{len(self.sent)}")

    async def close(self):
        self.closed = True


class ManualClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def push_client():
    return FakePushClient()


@pytest.fixture
def cache_clock():
    return ManualClock()


@pytest.fixture
def cache(cache_clock):
    return TTLCache(ttl=300, clock=cache_clock)


@pytest.fixture
def reader(cache):
    return CachedReader(cache)


@pytest.fixture
def notifier(store, push_client, reader):
    return NotificationSystem(store, push_client, reader)


@pytest.fixture
def battle_manager(store, notifier, reader):
    return BattleManager(store, notifier, reader, duration=timedelta(hours=24))


@pytest.fixture
def ledger(store):
    return ViewLedger(store, min_duration_ms=3000)


@pytest.fixture
def users(store):
    store.seed("users", "alice", {"displayName": "Alice", "pushToken": "ExponentPushToken[alice]", "totalBattles": 0, "battlesWon": 0})
    store.seed("users", "bob", {"userName": "bob_b", "pushToken": "ExponentPushToken[bob]", "totalBattles": 0, "battlesWon": 0})
    store.seed("users", "carol", {"name": "Carol", "totalBattles": 0, "battlesWon": 0})
    return store


def seed_battle(
    store: FakeStore,
    battle_id: str,
    status: str = "active",
    votes1: int = 0,
    votes2: int = 0,
    created_at: Optional[datetime] = None,
    category: Optional[str] = None,
    player1: str = "alice",
    player2: str = "bob",
) -> Dict[str, Any]:
    return store.seed("battles", battle_id, {
        "player1": {"userId": player1, "userName": player1.title(), "videoId": f"{battle_id}-v1", "votes": votes1, "views": 0},
        "player2": {"userId": player2, "userName": player2.title(), "videoId": f"{battle_id}-v2", "votes": votes2, "views": 0},
        "category": category,
        "status": status,
        "totalVotes": votes1 + votes2,
        "winnerId": None,
        "createdAt": created_at or datetime.now(UTC),
    })
