# bookings_service/locks.py
"""
Resource-scoped mutual exclusion for the check-then-write booking flow.

Every strategy exposes ``hold(db, resource_id, timeout)``, a context
manager that blocks for at most ``timeout`` seconds and raises
:class:`ConcurrencyTimeout` when the lock cannot be taken. The caller
commits its transaction inside the ``with`` block.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

import redis
from redis.exceptions import LockError
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .errors import ConcurrencyTimeout

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATE for lock_not_available
PG_LOCK_NOT_AVAILABLE = "55P03"


class LocalResourceLocks:
    """
    One ``threading.Lock`` per resource, shared by all threads of the process.

    Enough for a single worker process (and for SQLite, which has no
    row or advisory locks).
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def _lock_for(self, resource_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = self._locks[resource_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, db: Optional[Session], resource_id: int, timeout: float):
        lock = self._lock_for(resource_id)
        if not lock.acquire(timeout=timeout):
            logger.warning("Timed out waiting for local lock on resource %s", resource_id)
            raise ConcurrencyTimeout(resource_id, timeout)
        try:
            yield
        finally:
            lock.release()


class AdvisoryResourceLocks:
    """
    Transaction-scoped PostgreSQL advisory lock keyed on the resource id.

    The lock is released by PostgreSQL when the surrounding transaction
    commits or rolls back, so it also serializes writers in other processes.
    """

    # first key of the two-key advisory lock space
    NAMESPACE = 7301

    @contextmanager
    def hold(self, db: Session, resource_id: int, timeout: float):
        try:
            db.execute(
                text("SELECT set_config('lock_timeout', :value, true)"),
                {"value": f"{int(timeout * 1000)}ms"},
            )
            db.execute(
                text("SELECT pg_advisory_xact_lock(:namespace, :key)"),
                {"namespace": self.NAMESPACE, "key": resource_id},
            )
        except OperationalError as exc:
            db.rollback()
            if getattr(exc.orig, "pgcode", None) == PG_LOCK_NOT_AVAILABLE:
                logger.warning("Timed out waiting for advisory lock on resource %s", resource_id)
                raise ConcurrencyTimeout(resource_id, timeout) from exc
            raise
        yield


class RedisResourceLocks:
    """
    Distributed lock per resource built on redis-py's ``Lock``.

    ``ttl_seconds`` bounds how long a crashed holder can keep a resource
    locked.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = 30):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @contextmanager
    def hold(self, db: Optional[Session], resource_id: int, timeout: float):
        lock = self.client.lock(
            f"lock:resource:{resource_id}",
            timeout=self.ttl_seconds,
            blocking_timeout=timeout,
        )
        if not lock.acquire():
            logger.warning("Timed out waiting for redis lock on resource %s", resource_id)
            raise ConcurrencyTimeout(resource_id, timeout)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                logger.warning("Redis lock on resource %s expired before release", resource_id)


def make_resource_locks(backend: Optional[str], database_url: str, redis_url: Optional[str] = None):
    """
    Build the lock strategy named by ``backend``.

    Parameters
    ----------
    backend : Optional[str]
        'local', 'advisory' or 'redis'. When empty, PostgreSQL URLs get
        advisory locks and everything else gets local locks.
    database_url : str
        The bookings database URL.
    redis_url : Optional[str]
        Required for the 'redis' backend.

    Raises
    ------
    ValueError
        If the backend is unknown or its prerequisites are missing.
    """
    if not backend:
        backend = "advisory" if database_url.startswith("postgresql") else "local"

    if backend == "local":
        return LocalResourceLocks()
    if backend == "advisory":
        if not database_url.startswith("postgresql"):
            raise ValueError("Advisory locks require a PostgreSQL DATABASE_URL")
        return AdvisoryResourceLocks()
    if backend == "redis":
        if not redis_url:
            raise ValueError("The redis lock backend requires REDIS_URL")
        return RedisResourceLocks(redis.from_url(redis_url))
    raise ValueError(f"Unknown lock backend: {backend}")
