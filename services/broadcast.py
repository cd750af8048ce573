"""Per-session broadcast channel: fan-out of drill stream events.

Workflows publish; SSE connections subscribe.  The in-memory hub serves a
single process (and tests); the Redis hub uses pub/sub so a workflow running
in one worker reaches SSE clients connected to another.

Channel names are ``drill:{session_id}``.  Payloads are JSON strings in the
``models.sse_events`` shapes.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict

from models.base import CamelModel

logger = logging.getLogger(__name__)


def session_channel(session_id: str) -> str:
    return f"drill:{session_id}"


def _encode(payload: CamelModel | str) -> str:
    if isinstance(payload, str):
        return payload
    return payload.model_dump_json(by_alias=True)


# ── Abstract Interface ───────────────────────────────────────


class Subscription(ABC):
    """One subscriber's view of a channel."""

    def __init__(self, channel: str) -> None:
        self.channel = channel
        self.closed = False

    @abstractmethod
    async def get(self, timeout: float | None = None) -> str | None:
        """Next payload, or None if *timeout* seconds pass first."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Unsubscribe.  Safe to call more than once."""
        ...

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class BroadcastHub(ABC):
    @abstractmethod
    async def publish(self, channel: str, payload: CamelModel | str) -> None:
        ...

    @abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        ...

    async def close(self) -> None:
        return None


# ── In-Memory Implementation ────────────────────────────────


class _QueueSubscription(Subscription):
    def __init__(self, hub: InMemoryBroadcastHub, channel: str) -> None:
        super().__init__(channel)
        self._hub = hub
        self.queue: asyncio.Queue[str] = asyncio.Queue()

    async def get(self, timeout: float | None = None) -> str | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub._detach(self)


class InMemoryBroadcastHub(BroadcastHub):
    """Process-local hub: one unbounded queue per subscriber."""

    def __init__(self) -> None:
        self._subscribers: defaultdict[str, set[_QueueSubscription]] = defaultdict(set)

    async def publish(self, channel: str, payload: CamelModel | str) -> None:
        data = _encode(payload)
        for sub in list(self._subscribers.get(channel, ())):
            sub.queue.put_nowait(data)

    async def subscribe(self, channel: str) -> Subscription:
        sub = _QueueSubscription(self, channel)
        self._subscribers[channel].add(sub)
        logger.debug("Subscribed to %s (%d total)", channel, len(self._subscribers[channel]))
        return sub

    def _detach(self, sub: _QueueSubscription) -> None:
        subs = self._subscribers.get(sub.channel)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.channel]
        logger.debug("Unsubscribed from %s", sub.channel)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))


# ── Redis Implementation ─────────────────────────────────────


class _RedisSubscription(Subscription):
    def __init__(self, pubsub, channel: str) -> None:
        super().__init__(channel)
        self._pubsub = pubsub

    async def get(self, timeout: float | None = None) -> str | None:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            wait = 1.0 if deadline is None else max(deadline - loop.time(), 0.0)
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=wait
            )
            if message is not None and message.get("type") == "message":
                return message["data"]
            if deadline is not None and loop.time() >= deadline:
                return None

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        finally:
            await self._pubsub.aclose()


class RedisBroadcastHub(BroadcastHub):
    """Redis pub/sub hub for multi-worker deployments (at-most-once delivery)."""

    def __init__(self, redis_url: str) -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(redis_url, decode_responses=True)

    async def publish(self, channel: str, payload: CamelModel | str) -> None:
        await self._redis.publish(channel, _encode(payload))

    async def subscribe(self, channel: str) -> Subscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return _RedisSubscription(pubsub, channel)

    async def close(self) -> None:
        await self._redis.aclose()


# ── Module-level Singleton ───────────────────────────────────

_hub: BroadcastHub | None = None


def get_broadcast_hub() -> BroadcastHub:
    """Get the singleton broadcast hub."""
    global _hub
    if _hub is None:
        from config.settings import get_settings

        settings = get_settings()
        if settings.store_type == "redis" and settings.redis_url:
            _hub = RedisBroadcastHub(settings.redis_url)
            logger.info("Initialized RedisBroadcastHub")
        else:
            _hub = InMemoryBroadcastHub()
            logger.info("Initialized InMemoryBroadcastHub")
    return _hub


async def close_broadcast_hub() -> None:
    global _hub
    if _hub is not None:
        await _hub.close()
    _hub = None
