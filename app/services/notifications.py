from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Dict, List, Optional, Protocol

import httpx
from fastapi.concurrency import run_in_threadpool
from loguru import logger
from sqlalchemy import select
from sqlalchemy.engine import Engine

from app.core.config import EXPO_PUSH_URL
from app.core.proximity_config import MAX_DISTANCE_METERS
from app.models.push_token import PushToken
from app.services.proximity_query import NearbyUser


class NotificationError(Exception):
    pass


class Notifier(Protocol):
    async def notify(self, user_id: str, nearby: List[NearbyUser]) -> None:
        ...


def is_expo_token(token: str) -> bool:
    return token.startswith("ExponentPushToken[")


def build_proximity_message(expo_token: str, nearby: List[NearbyUser]) -> Dict[str, Any]:
    return {
        "to": expo_token,
        "sound": "default",
        "title": "Nearby User Detected",
        "body": f"{len(nearby)} user(s) within {MAX_DISTANCE_METERS}m",
        "data": {
            "type": "proximity_alert",
            "users": [
                {
                    "user_id": u.user_id,
                    "distance_meters": u.distance_meters,
                    "last_updated": u.last_updated.isoformat(),
                }
                for u in nearby
            ],
        },
        "priority": "high",
    }


# ---------------------------
# Expo push
# ---------------------------

class ExpoProximityNotifier:
    def __init__(
        self,
        engine: Engine,
        push_url: str = EXPO_PUSH_URL,
        timeout: float = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._engine = engine
        self._push_url = push_url
        self._timeout = timeout
        self._transport = transport

    def _get_token(self, user_id: str) -> Optional[str]:
        with self._engine.begin() as conn:
            return conn.execute(
                select(PushToken.expo_push_token).where(PushToken.user_id == user_id)
            ).scalar_one_or_none()

    async def _send_expo_push(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(self._push_url, json=messages)

        try:
            data = resp.json()
        except ValueError:
            raise NotificationError(f"Expo returned non-JSON: {resp.text[:200]}")

        if resp.status_code >= 400:
            raise NotificationError(f"Expo push failed: {data}")

        # Expo reports per-message failures inside a 200 response
        tickets = data.get("data") or []
        errors = [t for t in tickets if isinstance(t, dict) and t.get("status") == "error"]
        if errors:
            raise NotificationError(f"Expo rejected message: {errors[0].get('message')}")

        return data

    async def notify(self, user_id: str, nearby: List[NearbyUser]) -> None:
        token = await run_in_threadpool(self._get_token, user_id)
        if not token:
            logger.debug(f"No push token registered, skipping alert | user={user_id}")
            return

        await self._send_expo_push([build_proximity_message(token, nearby)])


# ---------------------------
# Fire-and-forget dispatch
# ---------------------------

class NotificationDispatcher:
    """
    Runs notifications as detached tasks.

    Callers only wait for the task to be created; failures are reported
    through the log, never back to the caller.
    """

    def __init__(self, notifier: Notifier):
        self._notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, user_id: str, nearby: List[NearbyUser]) -> asyncio.Task:
        task = asyncio.create_task(
            self._notifier.notify(user_id, list(nearby)),
            name=f"proximity-alert:{user_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(partial(self._on_done, user_id))
        return task

    def _on_done(self, user_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)

        if task.cancelled():
            logger.warning(f"Proximity alert cancelled | user={user_id}")
            return

        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Failed to send proximity alert | user={user_id}")
            return

        logger.info(f"Proximity alert sent | user={user_id}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
