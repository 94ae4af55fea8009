"""Key-value store backends.

``RedisKVStore`` is the durable backend; ``InMemoryKVStore`` backs dry runs and
tests.  Both expose the same small async surface: JSON get/set with TTL, delete,
counters and the list operations used by the journal.  There are no
transactions; every write is an idempotent upsert.
"""

import asyncio
import json
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from fxengine.core.errors import StoreError
from fxengine.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    async def get_json(self, key: str) -> Any | None: ...

    async def set_json(self, key: str, value: Any, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int: ...

    async def list_push(self, key: str, value: str) -> None: ...

    async def list_range(self, key: str, start: int, stop: int) -> list[str]: ...

    async def list_trim(self, key: str, start: int, stop: int) -> None: ...

    async def close(self) -> None: ...


class RedisKVStore:
    """JSON key-value store on ``redis.asyncio``."""

    def __init__(self, redis_url: str, connect_retries: int = 3) -> None:
        self._redis_url = redis_url
        self._connect_retries = max(1, connect_retries)
        self._client: aioredis.Redis | None = None

    async def connect(self) -> None:
        """Connect with exponential backoff; raises ``StoreError`` when unreachable."""
        if self._client:
            return

        retry_delay = 0.5
        for attempt in range(self._connect_retries):
            try:
                client = aioredis.from_url(
                    self._redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5.0,
                    socket_timeout=5.0,
                    retry_on_timeout=True,
                )
                await client.ping()
                self._client = client
                logger.info(f"Connected to Redis at {self._redis_url}")
                return
            except (RedisError, OSError) as e:
                if attempt < self._connect_retries - 1:
                    logger.warning(
                        f"Redis connection attempt {attempt + 1}/{self._connect_retries} failed: {e}. "
                        f"Retrying in {retry_delay}s..."
                    )
                    await asyncio.sleep(retry_delay)
                    retry_delay *= 2
                else:
                    logger.error(
                        f"Failed to connect to Redis after {self._connect_retries} attempts: {e}"
                    )
                    raise StoreError(f"Redis unreachable at {self._redis_url}: {e}") from e

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from Redis")

    async def _redis(self) -> aioredis.Redis:
        if self._client is None:
            await self.connect()
        return self._client

    async def get_json(self, key: str) -> Any | None:
        client = await self._redis()
        try:
            raw = await client.get(key)
        except RedisError as e:
            raise StoreError(f"GET {key} failed: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding non-JSON value stored at {key}")
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        client = await self._redis()
        payload = json.dumps(value, default=str)
        try:
            if ttl_seconds and ttl_seconds > 0:
                await client.set(key, payload, ex=int(ttl_seconds))
            else:
                await client.set(key, payload)
        except RedisError as e:
            raise StoreError(f"SET {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        client = await self._redis()
        try:
            await client.delete(key)
        except RedisError as e:
            raise StoreError(f"DEL {key} failed: {e}") from e

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        client = await self._redis()
        try:
            value = await client.incr(key)
            if ttl_seconds and ttl_seconds > 0:
                await client.expire(key, int(ttl_seconds))
        except RedisError as e:
            raise StoreError(f"INCR {key} failed: {e}") from e
        return int(value)

    async def list_push(self, key: str, value: str) -> None:
        client = await self._redis()
        try:
            await client.lpush(key, value)
        except RedisError as e:
            raise StoreError(f"LPUSH {key} failed: {e}") from e

    async def list_range(self, key: str, start: int, stop: int) -> list[str]:
        client = await self._redis()
        try:
            return list(await client.lrange(key, start, stop))
        except RedisError as e:
            raise StoreError(f"LRANGE {key} failed: {e}") from e

    async def list_trim(self, key: str, start: int, stop: int) -> None:
        client = await self._redis()
        try:
            await client.ltrim(key, start, stop)
        except RedisError as e:
            raise StoreError(f"LTRIM {key} failed: {e}") from e


class InMemoryKVStore:
    """Process-local store with the same semantics as ``RedisKVStore``.

    TTLs are accepted but not enforced; values are round-tripped through JSON so
    callers see exactly what Redis would return.
    """

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._lists: dict[str, list[str]] = {}
        self.ttls: dict[str, int] = {}

    async def get_json(self, key: str) -> Any | None:
        raw = self._values.get(key)
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        self._values[key] = json.dumps(value, default=str)
        if ttl_seconds:
            self.ttls[key] = int(ttl_seconds)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._lists.pop(key, None)
        self.ttls.pop(key, None)

    async def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        current = int(json.loads(self._values.get(key, "0")) or 0) + 1
        self._values[key] = json.dumps(current)
        if ttl_seconds:
            self.ttls[key] = int(ttl_seconds)
        return current

    async def list_push(self, key: str, value: str) -> None:
        self._lists.setdefault(key, []).insert(0, value)

    async def list_range(self, key: str, start: int, stop: int) -> list[str]:
        items = self._lists.get(key, [])
        end = None if stop == -1 else stop + 1
        return list(items[start:end])

    async def list_trim(self, key: str, start: int, stop: int) -> None:
        items = self._lists.get(key, [])
        end = None if stop == -1 else stop + 1
        self._lists[key] = items[start:end]

    async def close(self) -> None:
        return None
