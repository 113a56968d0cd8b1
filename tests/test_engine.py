import json
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import T0, seed_battle
from engine import Engine
from healthcheck import healthcheck


@pytest.mark.asyncio
async def test_engine_sweep_settles_expired_battles(store, users, push_client):
    engine = Engine(store, push_client, battle_duration=timedelta(hours=24), sweep_batch_size=10)
    engine.battles.clock = lambda: T0 + timedelta(hours=25)
    seed_battle(store, "b1", votes1=3, votes2=7, created_at=T0)

    assert await engine.sweep() == 1
    assert store.docs("battles")["b1"]["winnerId"] == "bob"


@pytest.mark.asyncio
async def test_engine_start_stop(store, push_client):
    engine = Engine(store, push_client, sweep_interval=60)

    assert engine.start() is True
    assert engine.start() is False
    await engine.stop()

    assert not engine.sweeper.running
    assert push_client.closed


@pytest.mark.asyncio
async def test_logout_clears_user_cache(store, users, push_client):
    engine = Engine(store, push_client, presence_interval=60)
    await engine.presence.start("alice")
    engine.cache.write("notifications:alice", [])
    engine.cache.write("notifications:bob", [])

    await engine.logout("alice")

    assert engine.cache.read("notifications:alice") is None
    assert engine.cache.read("notifications:bob") is not None
    assert not engine.presence.tracking
    await engine.stop()


def make_request(engine, db_manager=None):
    request = MagicMock()
    request.app = {"engine": engine, "db_manager": db_manager}
    return request


@pytest.mark.asyncio
async def test_healthcheck_ok(store):
    engine = Engine(store)
    db_manager = MagicMock()
    db_manager.ping = AsyncMock(return_value=True)

    response = await healthcheck(make_request(engine, db_manager))

    assert response.status == 200
    body = json.loads(response.text)
    assert body["status"] == "ok"
    assert body["sweeper"]["name"] == "battle-expiration-sweep"


@pytest.mark.asyncio
async def test_healthcheck_store_down(store):
    db_manager = MagicMock()
    db_manager.ping = AsyncMock(return_value=False)

    response = await healthcheck(make_request(Engine(store), db_manager))

    assert response.status == 503
    assert json.loads(response.text)["status"] == "degraded"
