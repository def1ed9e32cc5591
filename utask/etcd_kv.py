"""
Key-value substrate on etcd v3, through its JSON/HTTP gateway.

etcd has no buckets, so each bucket is a key prefix (``<bucket>/``).
Revisions are etcd ``mod_revision`` values; conditional writes are
single-key transactions comparing ``create_revision`` (insert-if-absent)
or ``mod_revision`` (compare-and-swap).

Keys and values travel base64-encoded, and the gateway renders int64
fields as JSON strings.

Transient failures are retried. A retried conditional write whose first
attempt may have committed reads the key back in the same transaction and
accepts a value identical to its own as success.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Optional

import httpx

from .errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    SubstrateUnavailableError,
)
from .protocol import Entry

logger = logging.getLogger(__name__)

# Retry config for transport failures and 5xx responses
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 0.2  # seconds

DEFAULT_TIMEOUT = 10.0


def _b64(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str | None) -> bytes:
    return base64.b64decode(data or "")


def _prefix_end(prefix: bytes) -> bytes:
    """Smallest key greater than every key starting with prefix."""
    end = bytearray(prefix)
    for i in range(len(end) - 1, -1, -1):
        if end[i] < 0xFF:
            end[i] += 1
            return bytes(end[: i + 1])
    return b"\x00"  # whole keyspace


class EtcdBucket:
    """Keys under ``<name>/`` in etcd."""

    def __init__(self, substrate: "EtcdSubstrate", name: str):
        self._sub = substrate
        self.name = name
        self._prefix = f"{name}/"

    def _full(self, key: str) -> str:
        return self._prefix + key

    def get(self, key: str) -> Entry:
        data = self._sub._call("/v3/kv/range", {"key": _b64(self._full(key))})
        kvs = data.get("kvs") or []
        if not kvs:
            raise NotFoundError(f"{self.name}: key not found: {key}")
        kv = kvs[0]
        return Entry(key, _unb64(kv.get("value")), int(kv["mod_revision"]))

    def create(self, key: str, value: bytes) -> int:
        full = _b64(self._full(key))
        data, maybe_applied = self._sub._post("/v3/kv/txn", {
            "compare": [{
                "key": full,
                "target": "CREATE",
                "result": "EQUAL",
                "create_revision": "0",
            }],
            "success": [{"request_put": {"key": full, "value": _b64(value)}}],
            "failure": [{"request_range": {"key": full}}],
        })
        if data.get("succeeded"):
            return _header_revision(data)
        current = _failure_range(data)
        if maybe_applied and current:
            own = self._own_write(key, current[0], value)
            if own is not None:
                return own
        raise AlreadyExistsError(f"{self.name}: key exists: {key}")

    def update(self, key: str, value: bytes, revision: int) -> int:
        full = _b64(self._full(key))
        data, maybe_applied = self._sub._post("/v3/kv/txn", {
            "compare": [{
                "key": full,
                "target": "MOD",
                "result": "EQUAL",
                "mod_revision": str(revision),
            }],
            "success": [{"request_put": {"key": full, "value": _b64(value)}}],
            "failure": [{"request_range": {"key": full}}],
        })
        if data.get("succeeded"):
            return _header_revision(data)
        current = _failure_range(data)
        if not current:
            raise NotFoundError(f"{self.name}: key not found: {key}")
        if maybe_applied:
            own = self._own_write(key, current[0], value)
            if own is not None:
                return own
        raise ConflictError(
            f"{self.name}: wrong revision for {key}: expected {revision}, "
            f"current {current[0].get('mod_revision')}"
        )

    def _own_write(self, key: str, kv: dict[str, Any], value: bytes) -> Optional[int]:
        """Revision of kv if it holds exactly the value an earlier attempt sent."""
        if _unb64(kv.get("value")) != value:
            return None
        logger.info("%s: txn on %s committed before its response was lost", self.name, key)
        return int(kv["mod_revision"])

    def put(self, key: str, value: bytes) -> int:
        data = self._sub._call("/v3/kv/put", {
            "key": _b64(self._full(key)),
            "value": _b64(value),
        })
        return _header_revision(data)

    def delete(self, key: str) -> None:
        self._sub._call("/v3/kv/deleterange", {"key": _b64(self._full(key))})

    def keys(self) -> list[str]:
        prefix = self._prefix.encode("utf-8")
        data = self._sub._call("/v3/kv/range", {
            "key": _b64(prefix),
            "range_end": _b64(_prefix_end(prefix)),
            "keys_only": True,
        })
        n = len(self._prefix)
        return [
            _unb64(kv["key"]).decode("utf-8")[n:]
            for kv in data.get("kvs") or []
        ]


def _header_revision(data: dict[str, Any]) -> int:
    return int((data.get("header") or {}).get("revision", 0))


def _failure_range(data: dict[str, Any]) -> list[dict[str, Any]]:
    for resp in data.get("responses") or []:
        rng = resp.get("response_range")
        if rng is not None:
            return rng.get("kvs") or []
    return []


class EtcdSubstrate:
    """HTTP client for an etcd v3 cluster's JSON gateway."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            url: Gateway base URL, e.g. http://localhost:2379
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (tests use MockTransport)
        """
        self._url = url.rstrip("/")
        self._client = httpx.Client(
            base_url=self._url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._url

    def _call(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST to the gateway and return the decoded response."""
        return self._post(path, payload)[0]

    def _post(self, path: str, payload: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        """POST to the gateway.

        Retries up to MAX_RETRIES times with exponential backoff on
        transient errors (5xx, timeouts, connection errors).

        Returns:
            (response, maybe_applied): maybe_applied is True when a failed
            earlier attempt may still have been executed by etcd (5xx, or
            an error after the request was sent). Conditional writes use it
            to recognise their own committed write on the retry.
        """
        last_error: Exception | None = None
        maybe_applied = False
        for attempt in range(MAX_RETRIES):
            try:
                resp = self._client.post(path, json=payload)
                resp.raise_for_status()
                return resp.json(), maybe_applied
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise SubstrateUnavailableError(
                        f"etcd rejected {path}: {e.response.status_code} {e.response.text}"
                    ) from e
                last_error = e
                maybe_applied = True
            except httpx.TransportError as e:
                last_error = e
                if not isinstance(e, (httpx.ConnectError, httpx.ConnectTimeout)):
                    maybe_applied = True
            except ValueError as e:
                raise SubstrateUnavailableError(f"etcd {path}: invalid response: {e}") from e

            if attempt < MAX_RETRIES - 1:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.info(
                    "etcd %s attempt %d failed, retrying in %.1fs: %s",
                    path, attempt + 1, delay, last_error,
                )
                time.sleep(delay)

        raise SubstrateUnavailableError(
            f"etcd {self._url}{path} failed after {MAX_RETRIES} attempts: {last_error}"
        ) from last_error

    def bucket(self, name: str) -> EtcdBucket:
        return EtcdBucket(self, name)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()
