"""Per-key mutual exclusion for recomputation jobs.

Keys are ``(entity-kind, *ids)`` tuples, e.g. ``("quiz_result", 7, 12)`` or
``("rollup", 3, "2025-08-18")``. At most one holder per key at a time;
latecomers block up to ``LOCK_WAIT_SECONDS`` and then fail with
``ConcurrencyConflict`` so the caller can back off and retry.

Two backends:
  * ``redis`` – redis-py ``Lock`` (SET NX PX under the hood), shared by every
    worker process talking to the same Redis.
  * ``local`` – one ``threading.Lock`` per key, for eager mode and tests.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

import redis
from redis.exceptions import LockError

from grade_engine.config import settings
from grade_engine.core.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

_pool: redis.ConnectionPool | None = None


def _get_redis() -> redis.Redis:
    """Return a Redis client backed by a shared connection pool."""
    global _pool
    if _pool is None:
        _pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            max_connections=20,
        )
    return redis.Redis(connection_pool=_pool)


def lock_name(kind: str, *ids: Any) -> str:
    return "lock:" + ":".join([kind, *(str(i) for i in ids)])


class LocalLockManager:
    """In-process lock table; one ``threading.Lock`` per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name, threading.Lock())

    @contextmanager
    def hold(self, kind: str, *ids: Any, wait: float | None = None) -> Iterator[None]:
        name = lock_name(kind, *ids)
        lock = self._lock_for(name)
        timeout = settings.LOCK_WAIT_SECONDS if wait is None else wait
        if not lock.acquire(timeout=timeout):
            logger.info("Lock busy: %s", name)
            raise ConcurrencyConflict(kind, ids, "lock held by another recomputation")
        logger.debug("Acquired lock: %s", name)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released lock: %s", name)


class RedisLockManager:
    """Distributed lock table on top of redis-py ``Lock``."""

    def __init__(self, client: redis.Redis | None = None) -> None:
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = _get_redis()
        return self._client

    @contextmanager
    def hold(self, kind: str, *ids: Any, wait: float | None = None) -> Iterator[None]:
        name = lock_name(kind, *ids)
        lock = self.client.lock(
            name,
            timeout=settings.LOCK_TTL_SECONDS,
            blocking_timeout=settings.LOCK_WAIT_SECONDS if wait is None else wait,
        )
        if not lock.acquire():
            logger.info("Lock busy: %s", name)
            raise ConcurrencyConflict(kind, ids, "lock held by another worker")
        logger.debug("Acquired lock: %s", name)
        try:
            yield
        finally:
            try:
                lock.release()
                logger.debug("Released lock: %s", name)
            except LockError:
                # TTL expired while we held it; the next holder already owns the key
                logger.warning("Lock %s expired before release", name)


_manager: LocalLockManager | RedisLockManager | None = None


def get_lock_manager() -> LocalLockManager | RedisLockManager:
    global _manager
    if _manager is None:
        if settings.LOCK_BACKEND == "redis":
            _manager = RedisLockManager()
        else:
            _manager = LocalLockManager()
    return _manager
