"""Delivery-level dedupe for bus consumers.

A delivery key names one message body as seen by one consumer group, so the
registry and the confirmation handler never suppress each other's copies.
Domain-level dedup (unique original event id, conditional processed update)
still applies underneath; a hit here only saves the handler call on
redelivery of an identical body.
"""

from __future__ import annotations

import hashlib
import threading
import time
from typing import Callable, Protocol


def delivery_key(*, group: str, channel: str, body: str) -> str:
    digest = hashlib.sha256(body.encode("utf-8")).hexdigest()
    return f"{group}:{channel}:{digest}"


class IdempotencyStore(Protocol):
    """Contract: if `seen(key)` is True the delivery is acked without calling the handler."""

    def seen(self, key: str) -> bool:
        ...

    def mark(self, key: str, *, ttl_seconds: int) -> None:
        ...


class InMemoryIdempotencyStore:
    """Expiring key set; `clock` returns seconds and is injectable for tests."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._expiry: dict[str, float] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def seen(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            exp = self._expiry.get(key)
            if exp is not None and exp <= now:
                del self._expiry[key]
                return False
            return exp is not None

    def mark(self, key: str, *, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        now = self._clock()
        with self._lock:
            # An unexpired mark is kept, like SET NX.
            if self._expiry.get(key, now) <= now:
                self._expiry[key] = now + ttl_seconds

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for exp in self._expiry.values() if exp > now)


class RedisIdempotencyStore:
    def __init__(self, redis_client, *, key_prefix: str = "processed"):
        self._client = redis_client
        self._prefix = key_prefix.rstrip(":")

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def seen(self, key: str) -> bool:
        return bool(self._client.exists(self._key(key)))

    def mark(self, key: str, *, ttl_seconds: int) -> None:
        # SET NX keeps the first writer's expiry.
        self._client.set(self._key(key), "1", ex=ttl_seconds, nx=True)
