"""Key-value storage shared across invocations.

Execution logs, status pointers, cached execution results and session records
all live in a key-value store. Writes are whole-value replacements with a TTL;
there is no compare-and-set, so each key must have a single writer.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "RedisStore",
    "build_store",
    "get_json",
    "put_json",
]

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Minimal async key-value interface used by the engine."""

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, *, ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process store for ``memory://`` URLs, local runs and tests.

    Values expire lazily on read once their TTL has elapsed.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def put(self, key: str, value: str, *, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        """Return stored keys (including not-yet-collected expired ones)."""
        return sorted(self._data)


class RedisStore:
    """Redis-backed store using ``redis.asyncio``."""

    def __init__(self, url: str, *, client: Any | None = None) -> None:
        self.url = url
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            import redis.asyncio as redis_asyncio

            self._client = redis_asyncio.Redis.from_url(
                self.url,
                decode_responses=True,
            )
        return self._client

    async def get(self, key: str) -> str | None:
        value = await self.client.get(key)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    async def put(self, key: str, value: str, *, ttl: int | None = None) -> None:
        await self.client.set(key, value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def build_store(url: str) -> KeyValueStore:
    """Build a store from a URL (``memory://`` or a Redis URL)."""
    if url.startswith("memory://"):
        return MemoryStore()
    logger.debug("Using Redis store at %s", url.split("@")[-1])
    return RedisStore(url)


async def get_json(store: KeyValueStore, key: str, default: Any = None) -> Any:
    """Read and decode a JSON value, returning ``default`` when missing."""
    raw = await store.get(key)
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding undecodable value at key %s", key)
        return default


async def put_json(
    store: KeyValueStore,
    key: str,
    value: Any,
    *,
    ttl: int | None = None,
) -> None:
    """Encode ``value`` as JSON and store it, replacing any prior value."""
    await store.put(key, json.dumps(value), ttl=ttl)
