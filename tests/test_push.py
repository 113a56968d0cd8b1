import asyncio
import json

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock

from push import ExpoPushClient
from utils.error_handler import PushDeliveryFailed


def make_session(status=200, payload=None, error=None):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    response.text = AsyncMock(return_value="error body")

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value = context
    return session


@pytest.mark.asyncio
async def test_send_returns_ticket():
    session = make_session(payload={"data": {"status": "ok", "id": "ticket-1"}})
    client = ExpoPushClient(url="https://push.test/send", session=session)

    result = await client.send("ExponentPushToken[bob]", "New Vote", "Alice voted", {"battleId": "b1"})

    assert result.status == "ok"
    assert result.ticket_id == "ticket-1"
    args, kwargs = session.post.call_args
    assert args == ("https://push.test/send",)
    assert kwargs["json"]["to"] == "ExponentPushToken[bob]"
    assert kwargs["json"]["title"] == "New Vote"
    assert kwargs["json"]["data"] == {"battleId": "b1"}


@pytest.mark.asyncio
async def test_send_accepts_ticket_list():
    session = make_session(payload={"data": [{"status": "ok", "id": "ticket-2"}]})
    client = ExpoPushClient(session=session)

    result = await client.send("token", "t", "b")
    assert result.ticket_id == "ticket-2"


@pytest.mark.asyncio
async def test_http_error_raises():
    client = ExpoPushClient(session=make_session(status=500))
    with pytest.raises(PushDeliveryFailed):
        await client.send("token", "t", "b")


@pytest.mark.asyncio
async def test_rejected_ticket_raises():
    payload = {"data": {"status": "error", "message": "DeviceNotRegistered"}}
    client = ExpoPushClient(session=make_session(payload=payload))
    with pytest.raises(PushDeliveryFailed, match="DeviceNotRegistered"):
        await client.send("token", "t", "b")


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()])
async def test_transport_errors_raise(error):
    client = ExpoPushClient(session=make_session(error=error))
    with pytest.raises(PushDeliveryFailed):
        await client.send("token", "t", "b")


@pytest.mark.asyncio
async def test_close_closes_session():
    session = make_session()
    client = ExpoPushClient(session=session)

    await client.close()
    session.close.assert_awaited_once()
    await client.close()


@pytest.mark.asyncio
async def test_malformed_body_raises_delivery_failure():
    session = make_session()
    response = session.post.return_value.__aenter__.return_value
    response.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
    client = ExpoPushClient(session=session)

    with pytest.raises(PushDeliveryFailed):
        await client.send("token", "t", "b")


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"data": "oops"}, ["not", "a", "dict"], None, {"data": []}])
async def test_unexpected_body_raises_delivery_failure(payload):
    client = ExpoPushClient(session=make_session(payload=payload))
    with pytest.raises(PushDeliveryFailed):
        await client.send("token", "t", "b")
