"""
In-process key-value substrate.

Thread-safe buckets held in memory. Used by the test suite and for scratch
stores (``backend = "memory"``); nothing survives the process.
"""

import threading
from typing import Optional

from .errors import AlreadyExistsError, ConflictError, NotFoundError
from .protocol import Entry


class MemoryBucket:
    """A dict of key -> (value, revision) behind a lock."""

    def __init__(self, name: str, lock: threading.Lock, counter: list[int]):
        self.name = name
        self._lock = lock
        self._counter = counter  # shared across buckets of one substrate
        self._data: dict[str, tuple[bytes, int]] = {}

    def _next_revision(self) -> int:
        self._counter[0] += 1
        return self._counter[0]

    def get(self, key: str) -> Entry:
        with self._lock:
            if key not in self._data:
                raise NotFoundError(f"{self.name}: key not found: {key}")
            value, rev = self._data[key]
            return Entry(key, value, rev)

    def create(self, key: str, value: bytes) -> int:
        with self._lock:
            if key in self._data:
                raise AlreadyExistsError(f"{self.name}: key exists: {key}")
            rev = self._next_revision()
            self._data[key] = (bytes(value), rev)
            return rev

    def update(self, key: str, value: bytes, revision: int) -> int:
        with self._lock:
            if key not in self._data:
                raise NotFoundError(f"{self.name}: key not found: {key}")
            current = self._data[key][1]
            if current != revision:
                raise ConflictError(
                    f"{self.name}: wrong revision for {key}: "
                    f"expected {revision}, current {current}"
                )
            rev = self._next_revision()
            self._data[key] = (bytes(value), rev)
            return rev

    def put(self, key: str, value: bytes) -> int:
        with self._lock:
            rev = self._next_revision()
            self._data[key] = (bytes(value), rev)
            return rev

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class MemorySubstrate:
    """Substrate whose buckets live in this process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = [0]
        self._buckets: dict[str, MemoryBucket] = {}
        self.closed = False

    def bucket(self, name: str) -> MemoryBucket:
        with self._lock:
            b: Optional[MemoryBucket] = self._buckets.get(name)
            if b is None:
                b = MemoryBucket(name, self._lock, self._counter)
                self._buckets[name] = b
            return b

    def bucket_names(self) -> list[str]:
        with self._lock:
            return sorted(self._buckets)

    def close(self) -> None:
        self.closed = True
