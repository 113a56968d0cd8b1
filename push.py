import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from config import EXPO_PUSH_URL, PUSH_TIMEOUT_SECONDS
from utils.error_handler import PushDeliveryFailed

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    status: str
    ticket_id: Optional[str] = None
    message: Optional[str] = None


class ExpoPushClient:
    """Отправка push-уведомлений через Expo Push API."""

    def __init__(
        self,
        url: str = EXPO_PUSH_URL,
        timeout: float = PUSH_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def send(
        self,
        device_token: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> PushResult:
        """Отправляет одно уведомление; при любой неудаче бросает PushDeliveryFailed."""
        message = {
            "to": device_token,
            "sound": "default",
            "title": title,
            "body": body,
            "data": data or {},
            "badge": 1,
        }
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        try:
            session = self._get_session()
            async with session.post(self.url, json=message, headers=headers) as response:
                if response.status != 200:
                    text = await response.text()
                    raise PushDeliveryFailed(f"Expo push returned HTTP {response.status}: {text}")
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PushDeliveryFailed(f"Expo push request failed: {e}") from e
        except ValueError as e:
            raise PushDeliveryFailed(f"Expo push returned malformed JSON: {e}") from e

        ticket = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else None
        if not isinstance(ticket, dict):
            raise PushDeliveryFailed(f"Expo push returned unexpected body: {payload!r}")
        if ticket.get("status") != "ok":
            raise PushDeliveryFailed(f"Expo push rejected: {ticket.get('message') or payload}")

        return PushResult(status="ok", ticket_id=ticket.get("id"))

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
