# =============================================================================
# Keyed State Store — Per-Key Atomic Read-Modify-Write
# =============================================================================
#
# Every piece of shared mutable state in the pipeline (dedup set, rate
# windows, budget ledgers, response cache, thread memory) lives behind this
# interface. Components never touch a raw dict: they call `update(key, fn)`
# and `fn` runs with exclusive access to that one key.
#
# ARCHITECTURE:
#   KeyedStore (Protocol)
#   ├── InMemoryStore  — dict + one asyncio.Lock per in-flight key (default)
#   ├── RedisStore     — JSON values, WATCH/MULTI optimistic transactions
#   └── create_store() — factory reading `state_backend` from settings
#
# No cross-key transactions exist anywhere in the pipeline, so per-key
# atomicity is the whole contract. Neither backend is a source of truth:
# on the memory backend everything is lost on restart, and Redis entries
# carry an expiry.
#
# `fn(current) -> (new_value, result)`: return new_value=None to delete
# the key. `fn` must be synchronous; no awaiting while holding a key.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any, Generic, Protocol, TypeVar

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import WatchError

from fundbot.config import settings

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

Updater = Callable[[Any], tuple[Any, Any]]


class KeyedStore(Protocol[M]):
    """Protocol for a namespaced map with per-key atomic updates."""

    async def get(self, key: str) -> M | None: ...

    async def update(self, key: str, fn: Updater) -> Any: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...

    async def items(self) -> list[tuple[str, M]]: ...

    async def size(self) -> int: ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


class InMemoryStore(Generic[M]):
    """
    Process-local store with one lock per key.

    A key's lock exists only while some caller is using or waiting on it,
    so the lock map never outgrows the number of in-flight operations.
    Creating and releasing entries needs no guard: nothing awaits between
    the dict lookup and the insert or removal.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._data: dict[str, M] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[key] - 1
            if remaining:
                self._holders[key] = remaining
            else:
                del self._holders[key]
                del self._locks[key]

    async def get(self, key: str) -> M | None:
        return self._data.get(key)

    async def update(self, key: str, fn: Updater) -> Any:
        async with self._locked(key):
            new_value, result = fn(self._data.get(key))
            if new_value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = new_value
            return result

    async def delete(self, key: str) -> None:
        async with self._locked(key):
            self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    async def items(self) -> list[tuple[str, M]]:
        return list(self._data.items())

    async def size(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# Implementation 2: Redis
# ---------------------------------------------------------------------------


class RedisStore(Generic[M]):
    """
    Redis-backed store shared across replicas.

    Values are stored as JSON under `{prefix}:{name}:{key}` and decoded with
    `model`. Updates use WATCH/MULTI and are retried when another writer
    touched the same key between read and commit.
    """

    _MAX_CONFLICT_RETRIES = 10

    def __init__(
        self,
        client,
        name: str,
        model: type[M],
        prefix: str = "fundbot",
        expire_seconds: int | None = None,
    ) -> None:
        self.name = name
        self._client = client
        self._model = model
        self._namespace = f"{prefix}:{name}:"
        self._expire = expire_seconds

    def _k(self, key: str) -> str:
        return self._namespace + key

    def _decode(self, raw: str | bytes | None) -> M | None:
        if raw is None:
            return None
        return self._model.model_validate_json(raw)

    async def get(self, key: str) -> M | None:
        return self._decode(await self._client.get(self._k(key)))

    async def update(self, key: str, fn: Updater) -> Any:
        redis_key = self._k(key)
        for _ in range(self._MAX_CONFLICT_RETRIES):
            async with self._client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(redis_key)
                    current = self._decode(await pipe.get(redis_key))
                    new_value, result = fn(current)
                    pipe.multi()
                    if new_value is None:
                        pipe.delete(redis_key)
                    else:
                        pipe.set(
                            redis_key,
                            new_value.model_dump_json(),
                            ex=self._expire,
                        )
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.debug("Write conflict on %s, retrying", redis_key)
                    continue
        raise RuntimeError(f"Too many write conflicts on {redis_key}")

    async def delete(self, key: str) -> None:
        await self._client.delete(self._k(key))

    async def _keys(self) -> list[str]:
        return [
            key async for key in self._client.scan_iter(
                match=self._namespace + "*",
            )
        ]

    async def clear(self) -> None:
        keys = await self._keys()
        if keys:
            await self._client.delete(*keys)

    async def items(self) -> list[tuple[str, M]]:
        keys = await self._keys()
        if not keys:
            return []
        values = await self._client.mget(keys)
        result = []
        for full_key, raw in zip(keys, values, strict=True):
            value = self._decode(raw)
            if value is not None:
                key = full_key.decode() if isinstance(full_key, bytes) else full_key
                result.append((key[len(self._namespace):], value))
        return result

    async def size(self) -> int:
        return len(await self._keys())


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_redis_client = None


def _get_redis():
    """Lazily create and cache the async Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
        )
    return _redis_client


def create_store(
    name: str,
    model: type[M],
    expire_seconds: float | None = None,
    backend: str | None = None,
) -> InMemoryStore[M] | RedisStore[M]:
    """
    Build the store for one kind of shared state.

    `expire_seconds` only applies to Redis, where it bounds how long an
    abandoned key can linger. Memory stores are swept by their owners.
    """
    backend = backend or settings.state_backend
    if backend == "redis":
        logger.info("Using Redis state store for %s", name)
        return RedisStore(
            _get_redis(),
            name,
            model,
            prefix=settings.redis_key_prefix,
            expire_seconds=int(expire_seconds) if expire_seconds else None,
        )
    if backend != "memory":
        raise ValueError(
            f"Unknown state backend '{backend}'. "
            "Supported backends: ['memory', 'redis']"
        )
    return InMemoryStore(name)
