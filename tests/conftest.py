"""
Shared pytest fixtures for utask tests.

Stores run on the in-memory substrate unless a test needs a file. The
conflict-injecting wrappers make compare-and-swap races deterministic.
"""

import itertools

import pytest

from utask.errors import ConflictError, SubstrateUnavailableError
from utask.memory_kv import MemorySubstrate
from utask.store import TaskStore


class FixedClock:
    """Deterministic creation timestamps, one second apart."""

    def __init__(self, start: int = 0):
        self._seconds = itertools.count(start)

    def __call__(self) -> str:
        s = next(self._seconds)
        return f"2026-01-01T00:{s // 60:02d}:{s % 60:02d}Z"


class ConflictingBucket:
    """
    Bucket wrapper that rejects the next N conditional updates.

    Before rejecting, optionally runs ``interloper(key)`` to simulate a
    concurrent client writing in between our read and our write.
    """

    def __init__(self, real):
        self._real = real
        self.fail_updates = 0
        self.fail_creates = 0
        self.update_calls = 0
        self.interloper = None

    def __getattr__(self, name):
        return getattr(self._real, name)

    def update(self, key, value, revision):
        self.update_calls += 1
        if self.fail_updates > 0:
            self.fail_updates -= 1
            if self.interloper is not None:
                self.interloper(key)
            raise ConflictError(f"{self._real.name}: injected conflict on {key}")
        return self._real.update(key, value, revision)


class FailingBucket:
    """Bucket wrapper whose writes fail once ``fail_writes`` is set."""

    def __init__(self, real):
        self._real = real
        self.fail_writes = False

    def __getattr__(self, name):
        return getattr(self._real, name)

    def _check(self):
        if self.fail_writes:
            raise SubstrateUnavailableError(f"{self._real.name}: simulated outage")

    def create(self, key, value):
        self._check()
        return self._real.create(key, value)

    def update(self, key, value, revision):
        self._check()
        return self._real.update(key, value, revision)

    def put(self, key, value):
        self._check()
        return self._real.put(key, value)


class WrappingSubstrate:
    """Substrate that wraps each bucket it hands out with ``wrapper``."""

    def __init__(self, real, wrapper):
        self._real = real
        self._wrapper = wrapper
        self.buckets = {}

    def bucket(self, name):
        if name not in self.buckets:
            self.buckets[name] = self._wrapper(self._real.bucket(name))
        return self.buckets[name]

    def close(self):
        self._real.close()


@pytest.fixture
def substrate():
    return MemorySubstrate()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store(substrate, clock):
    """TaskStore on a fresh in-memory substrate with no retry sleeps."""
    return TaskStore(substrate, retry_backoff=0, clock=clock)


@pytest.fixture
def conflict_substrate():
    return WrappingSubstrate(MemorySubstrate(), ConflictingBucket)


@pytest.fixture
def conflict_store(conflict_substrate, clock):
    return TaskStore(conflict_substrate, max_retries=4, retry_backoff=0, clock=clock)


@pytest.fixture
def failing_substrate():
    return WrappingSubstrate(MemorySubstrate(), FailingBucket)


@pytest.fixture
def failing_store(failing_substrate, clock):
    return TaskStore(failing_substrate, retry_backoff=0, clock=clock)
