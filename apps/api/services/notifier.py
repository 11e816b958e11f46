"""Progress event fan-out (in-process queues or Redis pub/sub)."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, Optional, Set

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "vsp:events:"


def asset_scope(asset_id: str) -> str:
    return f"video:{asset_id}"


def user_scope(user_id: str) -> str:
    return f"user:{user_id}"


class ProgressNotifier:
    """Fire-and-forget publisher; subclasses choose the transport."""

    async def publish(self, scope: str, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def subscription(self) -> "Subscription":
        raise NotImplementedError


class Subscription:
    """A single subscriber's view of one or more scopes."""

    async def subscribe(self, scope: str) -> None:
        raise NotImplementedError

    async def unsubscribe(self, scope: str) -> None:
        raise NotImplementedError

    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class InMemoryNotifier(ProgressNotifier):
    """Single-process backend: each subscription owns an asyncio queue."""

    def __init__(self, max_queue_size: int = 256):
        self._subscribers: Dict[str, Set["_InMemorySubscription"]] = defaultdict(set)
        self._max_queue_size = max_queue_size

    async def publish(self, scope: str, event: str, payload: Dict[str, Any]) -> None:
        message = {"scope": scope, "event": event, "data": payload}
        for subscriber in list(self._subscribers.get(scope, ())):
            subscriber.deliver(message)

    def subscription(self) -> "_InMemorySubscription":
        return _InMemorySubscription(self)

    def _attach(self, scope: str, subscriber: "_InMemorySubscription") -> None:
        self._subscribers[scope].add(subscriber)

    def _detach(self, scope: str, subscriber: "_InMemorySubscription") -> None:
        members = self._subscribers.get(scope)
        if not members:
            return
        members.discard(subscriber)
        if not members:
            self._subscribers.pop(scope, None)


class _InMemorySubscription(Subscription):
    def __init__(self, notifier: InMemoryNotifier):
        self._notifier = notifier
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=notifier._max_queue_size)
        self._scopes: Set[str] = set()

    def deliver(self, message: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Dropping %s event for slow subscriber", message.get("event"))

    async def subscribe(self, scope: str) -> None:
        self._scopes.add(scope)
        self._notifier._attach(scope, self)

    async def unsubscribe(self, scope: str) -> None:
        self._scopes.discard(scope)
        self._notifier._detach(scope, self)

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            yield await self._queue.get()

    async def close(self) -> None:
        for scope in list(self._scopes):
            await self.unsubscribe(scope)


class RedisNotifier(ProgressNotifier):
    """Multi-process backend: one Redis pub/sub channel per scope."""

    def __init__(self, redis_url: Optional[str] = None):
        self._redis_url = redis_url or settings.REDIS_URL
        self._client: Optional[redis.Redis] = None

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def publish(self, scope: str, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({"scope": scope, "event": event, "data": payload}, default=str)
        await self._get_client().publish(f"{CHANNEL_PREFIX}{scope}", message)

    def subscription(self) -> "_RedisSubscription":
        return _RedisSubscription(self._get_client().pubsub())

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class _RedisSubscription(Subscription):
    def __init__(self, pubsub):
        self._pubsub = pubsub

    async def subscribe(self, scope: str) -> None:
        await self._pubsub.subscribe(f"{CHANNEL_PREFIX}{scope}")

    async def unsubscribe(self, scope: str) -> None:
        await self._pubsub.unsubscribe(f"{CHANNEL_PREFIX}{scope}")

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            if not self._pubsub.subscribed:
                await asyncio.sleep(0.1)
                continue
            raw = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if raw is None:
                continue
            try:
                yield json.loads(raw["data"])
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed progress event on %s", raw.get("channel"))

    async def close(self) -> None:
        await self._pubsub.aclose()


async def safe_publish(notifier: ProgressNotifier, scope: str, event: str, payload: Dict[str, Any]) -> None:
    """Publish without letting transport failures reach the caller."""
    try:
        await notifier.publish(scope, event, payload)
    except Exception as exc:
        logger.warning("Could not publish %s to %s: %s", event, scope, exc)


_notifier: Optional[ProgressNotifier] = None


def get_notifier() -> ProgressNotifier:
    """Return the process-wide notifier for the configured backend."""
    global _notifier
    if _notifier is None:
        if settings.NOTIFIER_BACKEND == "redis":
            _notifier = RedisNotifier()
        else:
            _notifier = InMemoryNotifier()
    return _notifier
