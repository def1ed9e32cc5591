"""
Protocol definitions for the key-value substrate.

utask has no server of its own. Every client talks straight to a shared,
strongly-consistent key-value substrate and coordinates through per-key
compare-and-swap. A substrate provides named buckets; each bucket maps
string keys to byte values with a revision that changes on every write.

Implemented by:
- MemorySubstrate (in-process, tests and scratch use)
- SqliteSubstrate (one database file shared by local processes)
- EtcdSubstrate (etcd v3 over its JSON gateway)
- third-party substrates registered under the ``utask.backends`` entry
  point group
"""

import re
from typing import NamedTuple, Protocol, runtime_checkable

from .errors import InvalidInputError

DEFAULT_NAMESPACE = "default"

_NAMESPACE_RE = re.compile(r'^[A-Za-z0-9_-]+$')


class Entry(NamedTuple):
    """A value read from a bucket, with the revision it was read at."""
    key: str
    value: bytes
    revision: int


@runtime_checkable
class KeyValueBucket(Protocol):
    """
    One named key space with per-key revisions.

    Error contract (all from ``utask.errors``):
    - ``get`` raises NotFoundError for absent keys
    - ``create`` raises AlreadyExistsError if the key is present
    - ``update`` raises ConflictError if the key's revision is not the
      expected one, NotFoundError if the key is gone
    - any backend failure raises SubstrateUnavailableError
    """

    def get(self, key: str) -> Entry: ...

    def create(self, key: str, value: bytes) -> int: ...

    def update(self, key: str, value: bytes, revision: int) -> int: ...

    def put(self, key: str, value: bytes) -> int: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


@runtime_checkable
class Substrate(Protocol):
    """A connection to the key-value substrate."""

    def bucket(self, name: str) -> KeyValueBucket:
        """Open the named bucket, creating it if needed."""
        ...

    def close(self) -> None: ...


def validate_namespace(namespace: str | None) -> str:
    """Return the namespace to use; empty means the default profile."""
    ns = (namespace or "").strip() or DEFAULT_NAMESPACE
    if not _NAMESPACE_RE.match(ns):
        raise InvalidInputError(
            f"invalid profile {ns!r} (allowed: letters, digits, '_' and '-')"
        )
    return ns


def bucket_names(namespace: str | None) -> tuple[str, str]:
    """Entity and tag index bucket names for a namespace.

    Examples: utask_tasks_default, utask_tags_default
    """
    ns = validate_namespace(namespace)
    return f"utask_tasks_{ns}", f"utask_tags_{ns}"
