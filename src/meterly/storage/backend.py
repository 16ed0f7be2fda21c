"""
Storage backends for meterly.

All persistent state (ledger, catalogs, taxes, overrides, job queue) is
expressed in a small set of hash and sorted-set primitives. RedisStorage
runs them against Redis; MemoryStorage is the in-process fallback used when
Redis is not configured and in tests.
"""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from typing import Any, Sequence

import structlog

logger = structlog.get_logger()


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode()
    return value


class StorageBackend(ABC):
    """Hash and sorted-set primitives used by every store."""

    # Hashes

    @abstractmethod
    async def hsetnx(self, key: str, field: str, value: str) -> bool:
        """Set a hash field only if it does not exist. Returns True if set."""

    @abstractmethod
    async def hset(self, key: str, field: str, value: str) -> None:
        ...

    @abstractmethod
    async def hget(self, key: str, field: str) -> str | None:
        ...

    @abstractmethod
    async def hmget(self, key: str, fields: list[str]) -> list[str | None]:
        ...

    @abstractmethod
    async def hdel(self, key: str, *fields: str) -> int:
        ...

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        ...

    # Sorted sets

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float, nx: bool = False) -> int:
        """Add a member. With nx, existing members are left untouched."""

    @abstractmethod
    async def zrem(self, key: str, member: str) -> int:
        ...

    @abstractmethod
    async def zscore(self, key: str, member: str) -> float | None:
        ...

    @abstractmethod
    async def zrange_by_score(
        self,
        key: str,
        min_score: float = -math.inf,
        max_score: float = math.inf,
        *,
        max_exclusive: bool = False,
        reverse: bool = False,
        offset: int | None = None,
        count: int | None = None,
    ) -> list[str]:
        """Members with min_score <= score <= max_score (or < when max_exclusive)."""

    @abstractmethod
    async def zcount(self, key: str, min_score: float = -math.inf, max_score: float = math.inf) -> int:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        ...

    # Compound writes, each applied as one atomic step

    @abstractmethod
    async def hsetnx_with_writes(
        self,
        key: str,
        field: str,
        value: str,
        *,
        hset: Sequence[tuple[str, str, str]] = (),
        zadd: Sequence[tuple[str, str, float]] = (),
    ) -> bool:
        """
        Set a hash field only if it does not exist and, in the same step,
        apply the extra writes.

        Args:
            key: Hash holding the guarded field
            field: Guarded field
            value: Value for the guarded field
            hset: (key, field, value) writes applied when the field was set
            zadd: (key, member, score) writes applied when the field was set

        Returns:
            True if the field was set and the writes applied.
        """

    @abstractmethod
    async def move_entry(
        self,
        src_zset: str,
        src_hash: str,
        member: str,
        dst_zset: str,
        dst_hash: str,
        dst_member: str,
        score: float,
    ) -> str | None:
        """
        Move a sorted-set member and its hash body to another pair of keys.

        The member is removed from `src_zset` and its body from `src_hash`.
        The body is stored under `dst_member` unless that field already
        exists in `dst_hash`, in which case the moved body is discarded.

        Returns:
            The moved body, or None when `member` was not in `src_zset` or
            had no body.
        """


# Lua bodies for RedisStorage's compound writes. Redis runs a script
# without interleaving other commands.

HSETNX_WITH_WRITES_SCRIPT = """
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
    return 0
end
local n_hset = tonumber(ARGV[3])
for i = 1, #KEYS - 1 do
    if i <= n_hset then
        redis.call('HSET', KEYS[1 + i], ARGV[2 + 2 * i], ARGV[3 + 2 * i])
    else
        redis.call('ZADD', KEYS[1 + i], ARGV[2 + 2 * i], ARGV[3 + 2 * i])
    end
end
return 1
"""

MOVE_ENTRY_SCRIPT = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
    return false
end
local body = redis.call('HGET', KEYS[2], ARGV[1])
if not body then
    return false
end
redis.call('HDEL', KEYS[2], ARGV[1])
if redis.call('HSETNX', KEYS[4], ARGV[2], body) == 1 then
    redis.call('ZADD', KEYS[3], ARGV[3], ARGV[2])
end
return body
"""


class MemoryStorage(StorageBackend):
    """
    In-process storage.

    Every primitive completes without awaiting, so a check-then-write inside
    one primitive is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._hashes: dict[str, dict[str, str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}

    async def hsetnx(self, key: str, field: str, value: str) -> bool:
        bucket = self._hashes.setdefault(key, {})
        if field in bucket:
            return False
        bucket[field] = value
        return True

    async def hset(self, key: str, field: str, value: str) -> None:
        self._hashes.setdefault(key, {})[field] = value

    async def hget(self, key: str, field: str) -> str | None:
        return self._hashes.get(key, {}).get(field)

    async def hmget(self, key: str, fields: list[str]) -> list[str | None]:
        bucket = self._hashes.get(key, {})
        return [bucket.get(f) for f in fields]

    async def hdel(self, key: str, *fields: str) -> int:
        bucket = self._hashes.get(key, {})
        removed = 0
        for f in fields:
            if bucket.pop(f, None) is not None:
                removed += 1
        return removed

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def zadd(self, key: str, member: str, score: float, nx: bool = False) -> int:
        zset = self._zsets.setdefault(key, {})
        if member in zset:
            if not nx:
                zset[member] = score
            return 0
        zset[member] = score
        return 1

    async def zrem(self, key: str, member: str) -> int:
        zset = self._zsets.get(key, {})
        return 1 if zset.pop(member, None) is not None else 0

    async def zscore(self, key: str, member: str) -> float | None:
        return self._zsets.get(key, {}).get(member)

    async def zrange_by_score(
        self,
        key: str,
        min_score: float = -math.inf,
        max_score: float = math.inf,
        *,
        max_exclusive: bool = False,
        reverse: bool = False,
        offset: int | None = None,
        count: int | None = None,
    ) -> list[str]:
        zset = self._zsets.get(key, {})
        members = [
            (score, member)
            for member, score in zset.items()
            if score >= min_score and (score < max_score if max_exclusive else score <= max_score)
        ]
        members.sort(reverse=reverse)
        result = [member for _, member in members]
        start = offset or 0
        if count is None:
            return result[start:]
        return result[start:start + count]

    async def zcount(self, key: str, min_score: float = -math.inf, max_score: float = math.inf) -> int:
        zset = self._zsets.get(key, {})
        return sum(1 for score in zset.values() if min_score <= score <= max_score)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._hashes.pop(key, None)
            self._zsets.pop(key, None)

    async def hsetnx_with_writes(
        self,
        key: str,
        field: str,
        value: str,
        *,
        hset: Sequence[tuple[str, str, str]] = (),
        zadd: Sequence[tuple[str, str, float]] = (),
    ) -> bool:
        bucket = self._hashes.setdefault(key, {})
        if field in bucket:
            return False
        bucket[field] = value
        for hkey, hfield, hvalue in hset:
            self._hashes.setdefault(hkey, {})[hfield] = hvalue
        for zkey, member, score in zadd:
            self._zsets.setdefault(zkey, {})[member] = score
        return True

    async def move_entry(
        self,
        src_zset: str,
        src_hash: str,
        member: str,
        dst_zset: str,
        dst_hash: str,
        dst_member: str,
        score: float,
    ) -> str | None:
        if self._zsets.get(src_zset, {}).pop(member, None) is None:
            return None
        body = self._hashes.get(src_hash, {}).pop(member, None)
        if body is None:
            return None
        target = self._hashes.setdefault(dst_hash, {})
        if dst_member not in target:
            target[dst_member] = body
            self._zsets.setdefault(dst_zset, {})[dst_member] = score
        return body


class RedisStorage(StorageBackend):
    """
    Redis-backed storage.

    Uses the synchronous redis client in the default executor to avoid
    blocking the event loop.
    """

    def __init__(self, redis_client: Any):
        """
        Initialize Redis storage.

        Args:
            redis_client: redis.Redis instance
        """
        self._redis = redis_client

    async def _run(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    @staticmethod
    def _bound(score: float, exclusive: bool = False) -> str:
        if score == math.inf:
            text = "+inf"
        elif score == -math.inf:
            text = "-inf"
        else:
            text = repr(float(score))
        return f"({text}" if exclusive else text

    async def hsetnx(self, key: str, field: str, value: str) -> bool:
        return bool(await self._run(self._redis.hsetnx, key, field, value))

    async def hset(self, key: str, field: str, value: str) -> None:
        await self._run(self._redis.hset, key, field, value)

    async def hget(self, key: str, field: str) -> str | None:
        return _decode(await self._run(self._redis.hget, key, field))

    async def hmget(self, key: str, fields: list[str]) -> list[str | None]:
        if not fields:
            return []
        values = await self._run(self._redis.hmget, key, fields)
        return [_decode(v) for v in values]

    async def hdel(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        return int(await self._run(self._redis.hdel, key, *fields))

    async def hgetall(self, key: str) -> dict[str, str]:
        data = await self._run(self._redis.hgetall, key)
        return {_decode(k): _decode(v) for k, v in data.items()}

    async def zadd(self, key: str, member: str, score: float, nx: bool = False) -> int:
        return int(await self._run(self._redis.zadd, key, {member: score}, nx=nx))

    async def zrem(self, key: str, member: str) -> int:
        return int(await self._run(self._redis.zrem, key, member))

    async def zscore(self, key: str, member: str) -> float | None:
        return await self._run(self._redis.zscore, key, member)

    async def zrange_by_score(
        self,
        key: str,
        min_score: float = -math.inf,
        max_score: float = math.inf,
        *,
        max_exclusive: bool = False,
        reverse: bool = False,
        offset: int | None = None,
        count: int | None = None,
    ) -> list[str]:
        low = self._bound(min_score)
        high = self._bound(max_score, exclusive=max_exclusive)
        # redis-py takes start and num together or not at all
        start = (offset or 0) if count is not None else None
        num = count
        if reverse:
            data = await self._run(
                self._redis.zrevrangebyscore, key, high, low, start=start, num=num
            )
        else:
            data = await self._run(
                self._redis.zrangebyscore, key, low, high, start=start, num=num
            )
        return [_decode(m) for m in data]

    async def zcount(self, key: str, min_score: float = -math.inf, max_score: float = math.inf) -> int:
        return int(await self._run(
            self._redis.zcount, key, self._bound(min_score), self._bound(max_score)
        ))

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._run(self._redis.delete, *keys)

    async def hsetnx_with_writes(
        self,
        key: str,
        field: str,
        value: str,
        *,
        hset: Sequence[tuple[str, str, str]] = (),
        zadd: Sequence[tuple[str, str, float]] = (),
    ) -> bool:
        keys = [key, *(h[0] for h in hset), *(z[0] for z in zadd)]
        args: list[Any] = [field, value, len(hset)]
        for _, hfield, hvalue in hset:
            args.extend([hfield, hvalue])
        for _, member, score in zadd:
            args.extend([repr(float(score)), member])
        result = await self._run(
            self._redis.eval, HSETNX_WITH_WRITES_SCRIPT, len(keys), *keys, *args
        )
        return bool(result)

    async def move_entry(
        self,
        src_zset: str,
        src_hash: str,
        member: str,
        dst_zset: str,
        dst_hash: str,
        dst_member: str,
        score: float,
    ) -> str | None:
        body = await self._run(
            self._redis.eval,
            MOVE_ENTRY_SCRIPT,
            4,
            src_zset,
            src_hash,
            dst_zset,
            dst_hash,
            member,
            dst_member,
            repr(float(score)),
        )
        return _decode(body)


def get_redis_client(settings: Any) -> Any:
    """
    Create a Redis client from RedisSettings.

    Returns:
        Connected redis.Redis instance, or None when Redis is not configured
        or unreachable.
    """
    if not settings.is_configured:
        return None

    try:
        import redis

        if settings.url:
            client = redis.from_url(settings.url, decode_responses=True)
        else:
            client = redis.Redis(
                host=settings.host,
                port=settings.port,
                password=settings.password.get_secret_value() if settings.password else None,
                db=settings.db,
                ssl=settings.ssl,
                socket_timeout=settings.socket_timeout,
                max_connections=settings.max_connections,
                decode_responses=True,
            )

        client.ping()
        logger.info("Redis connected successfully")
        return client

    except Exception as e:
        logger.warning("Redis connection failed, using in-memory fallback", error=str(e))
        return None


def create_storage(settings: Any) -> StorageBackend:
    """Build the storage backend for the configured Redis settings."""
    client = get_redis_client(settings)
    if client is None:
        return MemoryStorage()
    return RedisStorage(client)
