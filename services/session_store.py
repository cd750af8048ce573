"""Drill session and topic stores.

Provides abstract interfaces with in-memory and Redis implementations.
Both back ends keep records as JSON, so every ``get`` returns a fresh copy:
mutating a loaded session never changes stored state until ``save``.
Sessions are never deleted here; retention is handled elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable

from errors.exceptions import AccessDeniedError, NotFoundError
from models.drill import DrillSession, SessionStatus, Topic, utcnow

logger = logging.getLogger(__name__)


# ── Abstract Interfaces ──────────────────────────────────────


class DrillSessionStore(ABC):
    """Abstract drill session store: implement for different backends."""

    @abstractmethod
    async def get(self, session_id: str) -> DrillSession | None:
        """Retrieve a session by ID.  Returns None if not found."""
        ...

    @abstractmethod
    async def save(self, session: DrillSession) -> None:
        """Persist a session (create or update)."""
        ...

    @abstractmethod
    async def list_for_topic(self, topic_id: str) -> list[DrillSession]:
        """All sessions for a topic, oldest first."""
        ...

    @abstractmethod
    def _lock(self, session_id: str) -> asyncio.Lock:
        ...

    async def require(self, session_id: str, owner_id: str) -> DrillSession:
        """Load a session owned by *owner_id* or raise."""
        session = await self.get(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        if session.owner_id != owner_id:
            raise AccessDeniedError("session", session_id)
        return session

    async def mutate(
        self, session_id: str, mutator: Callable[[DrillSession], object]
    ) -> DrillSession:
        """Read-modify-write against the latest stored copy.

        Serialized per session within this process only; writers in other
        processes still race with last-write-wins.
        """
        async with self._lock(session_id):
            session = await self.get(session_id)
            if session is None:
                raise NotFoundError("session", session_id)
            mutator(session)
            session.touch()
            await self.save(session)
            return session

    async def recent_completed(
        self, topic_id: str, owner_id: str, limit: int = 3
    ) -> list[DrillSession]:
        """Most recently finished sessions (by chat completion time) for a topic."""
        sessions = [
            s for s in await self.list_for_topic(topic_id)
            if s.owner_id == owner_id
            and s.status == SessionStatus.COMPLETED
            and s.chat_completed_at is not None
        ]
        sessions.sort(key=lambda s: s.chat_completed_at, reverse=True)
        return sessions[:limit]


class TopicStore(ABC):
    """Read access to learning topics (topic CRUD lives in another service)."""

    @abstractmethod
    async def get(self, topic_id: str) -> Topic | None:
        ...

    @abstractmethod
    async def save(self, topic: Topic) -> None:
        ...

    async def require(self, topic_id: str, owner_id: str | None = None) -> Topic:
        topic = await self.get(topic_id)
        if topic is None:
            raise NotFoundError("topic", topic_id)
        if owner_id is not None and topic.owner_id != owner_id:
            raise AccessDeniedError("topic", topic_id)
        return topic

    async def touch_last_practiced(self, topic_id: str) -> None:
        topic = await self.get(topic_id)
        if topic is None:
            raise NotFoundError("topic", topic_id)
        topic.last_practiced_at = utcnow()
        await self.save(topic)


# ── In-Memory Implementation ────────────────────────────────


class InMemoryDrillSessionStore(DrillSessionStore):
    """Process-local store.  Suitable for single-instance deployments and tests."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks[session_id]

    async def get(self, session_id: str) -> DrillSession | None:
        data = self._store.get(session_id)
        if data is None:
            return None
        return DrillSession.model_validate_json(data)

    async def save(self, session: DrillSession) -> None:
        self._store[session.id] = session.model_dump_json(by_alias=True)

    async def list_for_topic(self, topic_id: str) -> list[DrillSession]:
        sessions = [DrillSession.model_validate_json(d) for d in self._store.values()]
        return sorted(
            (s for s in sessions if s.topic_id == topic_id),
            key=lambda s: s.created_at,
        )

    @property
    def size(self) -> int:
        return len(self._store)


class InMemoryTopicStore(TopicStore):
    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def get(self, topic_id: str) -> Topic | None:
        data = self._store.get(topic_id)
        return Topic.model_validate_json(data) if data is not None else None

    async def save(self, topic: Topic) -> None:
        self._store[topic.id] = topic.model_dump_json(by_alias=True)


# ── Redis Implementation ─────────────────────────────────────


def _redis_client(redis_url: str):
    import redis.asyncio as aioredis

    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=10,
        socket_timeout=10,
    )


class RedisDrillSessionStore(DrillSessionStore):
    """Redis-backed store for multi-worker deployments.

    Sessions are JSON strings without TTL; a per-topic set indexes session ids.
    """

    _KEY_PREFIX = "drill:session:"
    _TOPIC_INDEX_PREFIX = "drill:topic-sessions:"

    def __init__(self, redis_url: str) -> None:
        self._redis = _redis_client(redis_url)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _key(self, session_id: str) -> str:
        return f"{self._KEY_PREFIX}{session_id}"

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks[session_id]

    async def get(self, session_id: str) -> DrillSession | None:
        data = await self._redis.get(self._key(session_id))
        if data is None:
            return None
        return DrillSession.model_validate_json(data)

    async def save(self, session: DrillSession) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(session.id), session.model_dump_json(by_alias=True))
            pipe.sadd(f"{self._TOPIC_INDEX_PREFIX}{session.topic_id}", session.id)
            await pipe.execute()

    async def list_for_topic(self, topic_id: str) -> list[DrillSession]:
        ids = await self._redis.smembers(f"{self._TOPIC_INDEX_PREFIX}{topic_id}")
        if not ids:
            return []
        raw = await self._redis.mget([self._key(i) for i in ids])
        sessions = [DrillSession.model_validate_json(d) for d in raw if d is not None]
        return sorted(sessions, key=lambda s: s.created_at)

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self._redis.aclose()

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            return await self._redis.ping()
        except Exception:
            return False


class RedisTopicStore(TopicStore):
    _KEY_PREFIX = "drill:topic:"

    def __init__(self, redis_url: str) -> None:
        self._redis = _redis_client(redis_url)

    async def get(self, topic_id: str) -> Topic | None:
        data = await self._redis.get(f"{self._KEY_PREFIX}{topic_id}")
        return Topic.model_validate_json(data) if data is not None else None

    async def save(self, topic: Topic) -> None:
        await self._redis.set(f"{self._KEY_PREFIX}{topic.id}", topic.model_dump_json(by_alias=True))

    async def close(self) -> None:
        await self._redis.aclose()


# ── Module-level Singletons ──────────────────────────────────

_session_store: DrillSessionStore | None = None
_topic_store: TopicStore | None = None


def _use_redis() -> str | None:
    from config.settings import get_settings

    settings = get_settings()
    if settings.store_type == "redis" and settings.redis_url:
        return settings.redis_url
    return None


def get_session_store() -> DrillSessionStore:
    """Get the singleton drill session store."""
    global _session_store
    if _session_store is None:
        redis_url = _use_redis()
        if redis_url:
            _session_store = RedisDrillSessionStore(redis_url)
            logger.info("Initialized RedisDrillSessionStore")
        else:
            _session_store = InMemoryDrillSessionStore()
            logger.info("Initialized InMemoryDrillSessionStore")
    return _session_store


def get_topic_store() -> TopicStore:
    """Get the singleton topic store."""
    global _topic_store
    if _topic_store is None:
        redis_url = _use_redis()
        _topic_store = RedisTopicStore(redis_url) if redis_url else InMemoryTopicStore()
    return _topic_store


async def close_stores() -> None:
    """Release backend connections and drop the singletons."""
    global _session_store, _topic_store
    for store in (_session_store, _topic_store):
        close = getattr(store, "close", None)
        if close is not None:
            await close()
    _session_store = None
    _topic_store = None
