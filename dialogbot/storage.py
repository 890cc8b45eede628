"""
Session storage for in-flight conversations.

Sessions are field maps keyed by "<team>:<channel>" with a TTL that is set
once at creation. Redis is the production backend; the in-memory backend
only serves tests and single-process local runs.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import redis

from .errors import SessionStoreError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "sesslock"
LOCK_TIMEOUT = 10
LOCK_BLOCKING_TIMEOUT = 5.0


def session_key(team_id: str, channel_id: str) -> str:
    """Build the store key for a conversation."""
    return f"{team_id}:{channel_id}"


class SessionStore(ABC):
    """Keyed, field-structured, TTL-expiring session storage."""

    @abstractmethod
    def get(self, key: str) -> dict[str, str]:
        """Return all fields for key; an empty dict means no active session."""
        pass

    @abstractmethod
    def create(self, key: str, fields: dict[str, str], ttl: int) -> None:
        """Replace whatever is stored under key with fields, expiring in ttl seconds."""
        pass

    @abstractmethod
    def set_fields(self, key: str, fields: dict[str, str]) -> bool:
        """
        Overwrite fields of a live session without touching its TTL.

        Returns:
            False if the key no longer exists, in which case nothing is written
        """
        pass

    def append_field(self, key: str, name: str, value: str) -> bool:
        """Write a single field of a live session; see set_fields."""
        return self.set_fields(key, {name: value})

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the session entirely."""
        pass

    @abstractmethod
    def lock(self, key: str) -> Iterator[None]:
        """
        Context manager serializing read-modify-write cycles for one key.

        Raises:
            SessionStoreError: If the lock can't be acquired in time
        """
        pass


class RedisSessionStore(SessionStore):
    """Sessions as Redis hashes, locked with Redis distributed locks."""

    def __init__(
        self,
        client: redis.Redis,
        lock_timeout: int = LOCK_TIMEOUT,
        blocking_timeout: float = LOCK_BLOCKING_TIMEOUT
    ):
        self._client = client
        self._lock_timeout = lock_timeout
        self._blocking_timeout = blocking_timeout

    def _lock_key(self, key: str) -> str:
        return f"{LOCK_PREFIX}:{key}"

    def get(self, key: str) -> dict[str, str]:
        try:
            return self._client.hgetall(key)
        except redis.RedisError as e:
            raise SessionStoreError(f"Redis error reading {key}: {e}") from e

    def create(self, key: str, fields: dict[str, str], ttl: int) -> None:
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping=fields)
            pipe.expire(key, ttl)
            pipe.execute()
        except redis.RedisError as e:
            raise SessionStoreError(f"Error setting hash {key}: {e}") from e

    def set_fields(self, key: str, fields: dict[str, str]) -> bool:
        if not fields:
            return True
        try:
            with self._client.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(key)
                        if not pipe.exists(key):
                            pipe.unwatch()
                            return False
                        pipe.multi()
                        pipe.hset(key, mapping=fields)
                        pipe.execute()
                        return True
                    except redis.WatchError:
                        # Key changed (most likely expired) under us; look again
                        continue
        except redis.RedisError as e:
            raise SessionStoreError(f"Error saving {list(fields)} into hash {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as e:
            raise SessionStoreError(f"Error deleting hash {key}: {e}") from e

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        lock = self._client.lock(
            self._lock_key(key),
            timeout=self._lock_timeout,
            blocking_timeout=self._blocking_timeout,
        )
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise SessionStoreError(f"Error locking session {key}: {e}") from e

        if not acquired:
            raise SessionStoreError(f"Timed out waiting for session lock on {key}")

        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # Lock expired while we held it
                logger.warning(f"Session lock on {key} expired before release")


class MemorySessionStore(SessionStore):
    """Process-local session store with the same TTL semantics as Redis."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, dict[str, str]] = {}
        self._expiry: dict[str, float] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._guard = threading.Lock()

    def _purge_if_expired(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def get(self, key: str) -> dict[str, str]:
        with self._guard:
            self._purge_if_expired(key)
            return dict(self._data.get(key, {}))

    def create(self, key: str, fields: dict[str, str], ttl: int) -> None:
        with self._guard:
            self._data[key] = dict(fields)
            self._expiry[key] = self._clock() + ttl

    def set_fields(self, key: str, fields: dict[str, str]) -> bool:
        with self._guard:
            self._purge_if_expired(key)
            if key not in self._data:
                return False
            self._data[key].update(fields)
            return True

    def delete(self, key: str) -> None:
        with self._guard:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left before key expires, or None if it never will."""
        with self._guard:
            self._purge_if_expired(key)
            expires_at = self._expiry.get(key)
            if key not in self._data or expires_at is None:
                return None
            return expires_at - self._clock()

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._guard:
            key_lock = self._locks.setdefault(key, threading.Lock())
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            if not key_lock.acquire(timeout=LOCK_BLOCKING_TIMEOUT):
                raise SessionStoreError(f"Timed out waiting for session lock on {key}")
            try:
                yield
            finally:
                key_lock.release()
        finally:
            with self._guard:
                self._lock_users[key] -= 1
                if not self._lock_users[key]:
                    # Nobody holds or waits for it
                    del self._lock_users[key]
                    del self._locks[key]

    def lock_count(self) -> int:
        """Number of keys with a live lock entry."""
        with self._guard:
            return len(self._locks)


def create_redis_client(addr: str, password: str = "", db: int = 0) -> redis.Redis:
    """
    Connect to Redis and check it answers.

    Raises:
        SessionStoreError: If the server can't be reached
    """
    host, _, port = addr.rpartition(":")
    if not host:
        host, port = addr, "6379"
    if not port.isdigit():
        raise SessionStoreError(f"Invalid Redis address: {addr}")

    client = redis.Redis(
        host=host,
        port=int(port),
        password=password or None,
        db=db,
        decode_responses=True,
    )
    try:
        client.ping()
    except redis.RedisError as e:
        raise SessionStoreError(f"Redis error: {e}") from e

    logger.info(f"Connected to Redis at {addr} (db {db})")
    return client


def create_session_store(config) -> SessionStore:
    """Build the session store backend named in config."""
    if config.session_backend == "memory":
        logger.warning(
            "Using in-memory session store; sessions are not shared between processes"
        )
        return MemorySessionStore()

    if config.session_backend != "redis":
        raise SessionStoreError(f"Unknown session backend: {config.session_backend}")

    client = create_redis_client(config.redis_addr, config.redis_password, config.redis_db)
    return RedisSessionStore(client)
