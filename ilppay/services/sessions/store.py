"""Session store abstraction and its in-memory and Redis implementations.

The store is the single owner of session records. Readers get copies; every
change goes through `update`, which applies a mutator atomically and bumps the
record's `state_version`. Expiry is evaluated lazily: a record past its
`expires_at` is dropped the moment it is read.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from redis.asyncio import Redis
from redis.exceptions import WatchError

from ilppay.common.errors import InternalConfigError, SessionNotFoundError
from ilppay.common.logging import logger
from ilppay.services.sessions.models import PaymentSession

Clock = Callable[[], datetime]
Mutator = Callable[[PaymentSession], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore(ABC):
    """Keyed storage for payment sessions with per-session mutual exclusion."""

    @abstractmethod
    async def create(self, session: PaymentSession) -> None:
        pass

    @abstractmethod
    async def get(self, session_id: str) -> PaymentSession | None:
        pass

    @abstractmethod
    async def update(self, session_id: str, mutator: Mutator, ignore_expiry: bool = False) -> PaymentSession:
        """Apply `mutator` to the live record atomically and return the result.

        Raises `SessionNotFoundError` when the record is absent, or expired unless
        `ignore_expiry` is set. If the mutator raises, the stored record is left
        untouched.
        """

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        pass

    @abstractmethod
    async def list_all(self) -> list[PaymentSession]:
        """Every stored record, expired ones included, in no particular order."""

    @abstractmethod
    def lock(self, session_id: str) -> AsyncIterator[None]:
        """Async context manager serializing whole operations on one session."""

    async def close(self) -> None:
        return None


class InMemorySessionStore(SessionStore):
    """Process-local store.

    Reads and writes never await between checking and replacing a record, so on
    a single event loop every `update` is indivisible.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._sessions: dict[str, PaymentSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._clock = clock

    def _live(self, session_id: str) -> PaymentSession | None:
        session = self._sessions.get(session_id)
        if session is not None and session.is_expired(self._clock()):
            del self._sessions[session_id]
            self._forget_lock(session_id)
            logger.info("session_expired_on_read session_id=%s status=%s", session_id, session.status)
            return None
        return session

    async def create(self, session: PaymentSession) -> None:
        if self._live(session.id) is not None:
            raise ValueError(f"session {session.id} already exists")
        self._sessions[session.id] = session.model_copy(deep=True)

    async def get(self, session_id: str) -> PaymentSession | None:
        session = self._live(session_id)
        return session.model_copy(deep=True) if session is not None else None

    def _forget_lock(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]

    async def update(self, session_id: str, mutator: Mutator, ignore_expiry: bool = False) -> PaymentSession:
        current = self._sessions.get(session_id) if ignore_expiry else self._live(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)
        updated = current.model_copy(deep=True)
        mutator(updated)
        updated.state_version = current.state_version + 1
        self._sessions[session_id] = updated
        return updated.model_copy(deep=True)

    async def delete(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        self._forget_lock(session_id)
        return removed

    async def list_all(self) -> list[PaymentSession]:
        return [session.model_copy(deep=True) for session in self._sessions.values()]

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        try:
            async with lock:
                yield
        finally:
            if session_id not in self._sessions and not lock.locked():
                self._locks.pop(session_id, None)


class RedisSessionStore(SessionStore):
    """Redis-backed store: JSON records with a Redis expiry matching `expires_at`.

    `update` is an optimistic WATCH/MULTI transaction retried on conflict, and
    `lock` is a Redis lock so several processes can share the sessions.
    """

    def __init__(
        self,
        client: Redis,
        prefix: str = "ilppay",
        clock: Clock = utc_now,
        lock_timeout_seconds: float = 60.0,
    ) -> None:
        self._redis = client
        self._prefix = prefix
        self._clock = clock
        self._lock_timeout = lock_timeout_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisSessionStore":
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}:session:{session_id}"

    def _ttl_ms(self, session: PaymentSession) -> int:
        remaining = (session.expires_at - self._clock()).total_seconds()
        return max(1, int(remaining * 1000))

    async def create(self, session: PaymentSession) -> None:
        created = await self._redis.set(
            self._key(session.id), session.model_dump_json(), px=self._ttl_ms(session), nx=True
        )
        if not created:
            raise ValueError(f"session {session.id} already exists")

    async def get(self, session_id: str) -> PaymentSession | None:
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return None
        session = PaymentSession.model_validate_json(raw)
        if session.is_expired(self._clock()):
            await self._redis.delete(self._key(session_id))
            return None
        return session

    async def update(self, session_id: str, mutator: Mutator, ignore_expiry: bool = False) -> PaymentSession:
        key = self._key(session_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise SessionNotFoundError(session_id)
                    current = PaymentSession.model_validate_json(raw)
                    if not ignore_expiry and current.is_expired(self._clock()):
                        raise SessionNotFoundError(session_id)
                    updated = current.model_copy(deep=True)
                    mutator(updated)
                    updated.state_version = current.state_version + 1
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json(), px=self._ttl_ms(updated))
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.info("session_update_conflict session_id=%s retrying", session_id)
                    continue

    async def delete(self, session_id: str) -> bool:
        return await self._redis.delete(self._key(session_id)) > 0

    async def list_all(self) -> list[PaymentSession]:
        sessions = []
        async for key in self._redis.scan_iter(match=f"{self._prefix}:session:*"):
            raw = await self._redis.get(key)
            if raw is not None:
                sessions.append(PaymentSession.model_validate_json(raw))
        return sessions

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        async with self._redis.lock(
            f"{self._prefix}:lock:{session_id}",
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        ):
            yield

    async def close(self) -> None:
        await self._redis.aclose()


def build_session_store(backend: str, redis_url: str, redis_prefix: str, clock: Clock = utc_now) -> SessionStore:
    """Select the store implementation named by configuration."""

    if backend == "memory":
        return InMemorySessionStore(clock=clock)
    if backend == "redis":
        return RedisSessionStore.from_url(redis_url, prefix=redis_prefix, clock=clock)
    raise InternalConfigError(f"unknown session backend: {backend}")
