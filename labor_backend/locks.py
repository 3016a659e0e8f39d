"""
Single-writer lock guarding the shared CSV export blob.

Supports an in-process fallback for tests/local runs and a Redis-backed
implementation when several service instances share one bucket.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import ContextManager, Iterator, Protocol

import redis
from redis import exceptions as redis_exceptions

from labor_backend.errors import StorageError


class ExportLock(Protocol):
    """Mutual-exclusion boundary for read-modify-replace of the export."""

    def hold(self) -> ContextManager[None]:
        ...


@dataclass
class InMemoryExportLock:
    """Serializes writers within one process only."""

    timeout: float = 30.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise StorageError(f"Timed out waiting for export lock after {self.timeout}s")
        try:
            yield
        finally:
            self._lock.release()


@dataclass
class RedisExportLock:
    """Redis lock shared by every process pointing at the same Redis."""

    url: str
    key: str = "labor:csv-export-lock"
    timeout: float = 30.0

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    @contextmanager
    def hold(self) -> Iterator[None]:
        # The lock expires after ``timeout`` so a crashed writer cannot block
        # the export forever; waiting for it is bounded by the same value.
        lock = self.client.lock(
            self.key, timeout=self.timeout, blocking_timeout=self.timeout
        )
        try:
            acquired = lock.acquire()
        except redis_exceptions.ConnectionError as exc:
            # Connection resets happen on managed Redis; reconnect next time.
            self.client = redis.Redis.from_url(self.url)
            raise StorageError("Export lock unavailable") from exc
        if not acquired:
            raise StorageError(f"Timed out waiting for export lock {self.key}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis_exceptions.LockError:
                # Expired while held; another writer may already own it.
                pass
