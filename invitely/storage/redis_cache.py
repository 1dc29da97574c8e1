from __future__ import annotations

from typing import Any, AsyncIterator, Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from invitely.logging import get_logger
from invitely.service.deadline import Deadline, within
from invitely.service.errors import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

_GLOB_SPECIAL = set("*?[]\\")


def _glob_escape(prefix: str) -> str:
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIAL else ch for ch in prefix)


async def _next_or_none(iterator: AsyncIterator[str]) -> Optional[str]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class RedisSessionStore:
    """Session store over Redis.

    Every command is bounded by the caller's deadline. Connection and
    protocol failures surface as StoreUnavailableError so flows can fail
    closed with a retriable 5xx.
    """

    SCAN_BATCH = 200

    # Rotation only proceeds while the old session record exists, so of two
    # racing refreshes with the same credential exactly one mints a successor.
    _ROTATE_SCRIPT = """
    if redis.call('DEL', KEYS[1]) == 0 then
        return 0
    end
    redis.call('SADD', KEYS[2], ARGV[1])
    redis.call('EXPIRE', KEYS[2], ARGV[2])
    redis.call('SET', KEYS[3], ARGV[3], 'EX', ARGV[4])
    return 1
    """

    def __init__(self, client: Any, *, redis_url: Optional[str] = None) -> None:
        self.client = client
        self.redis_url = redis_url

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0) -> "RedisSessionStore":
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, redis_url=redis_url)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is put into service."""
        if not self.redis_url:
            return
        # Short-lived sync client so the async pool is not bound to a
        # throwaway event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(
        self, op: str, awaitable: Awaitable[T], deadline: Optional[Deadline]
    ) -> T:
        try:
            return await within(awaitable, deadline)
        except (RedisError, OSError) as exc:
            logger.error(
                "session_store_error",
                op=op,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError("session store unavailable") from exc

    async def put(
        self, key: str, value: str, ttl: int, *, deadline: Optional[Deadline] = None
    ) -> None:
        await self._call("put", self.client.set(key, value, ex=max(1, int(ttl))), deadline)

    async def get(self, key: str, *, deadline: Optional[Deadline] = None) -> Optional[str]:
        return await self._call("get", self.client.get(key), deadline)

    async def delete(self, *keys: str, deadline: Optional[Deadline] = None) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self.client.delete(*keys), deadline))

    async def set_add(
        self, set_key: str, member: str, *, deadline: Optional[Deadline] = None
    ) -> None:
        await self._call("set_add", self.client.sadd(set_key, member), deadline)

    async def set_has(
        self, set_key: str, member: str, *, deadline: Optional[Deadline] = None
    ) -> bool:
        return bool(
            await self._call("set_has", self.client.sismember(set_key, member), deadline)
        )

    async def expire(
        self, key: str, ttl: int, *, deadline: Optional[Deadline] = None
    ) -> None:
        await self._call("expire", self.client.expire(key, max(1, int(ttl))), deadline)

    async def ttl(self, key: str, *, deadline: Optional[Deadline] = None) -> Optional[int]:
        remaining = await self._call("ttl", self.client.ttl(key), deadline)
        # -2: missing key, -1: no expiry
        if remaining is None or int(remaining) < 0:
            return None
        return int(remaining)

    async def incr(self, key: str, ttl: int, *, deadline: Optional[Deadline] = None) -> int:
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, max(1, int(ttl)))
        count, _ = await self._call("incr", pipe.execute(), deadline)
        return int(count)

    async def scan(
        self, prefix: str, *, deadline: Optional[Deadline] = None
    ) -> AsyncIterator[str]:
        iterator = self.client.scan_iter(
            match=f"{_glob_escape(prefix)}*", count=self.SCAN_BATCH
        )
        while True:
            key = await self._call("scan", _next_or_none(iterator), deadline)
            if key is None:
                return
            yield key

    async def rotate(
        self,
        *,
        denylist_key: str,
        old_member: str,
        denylist_ttl: int,
        old_key: str,
        new_key: str,
        new_value: str,
        ttl: int,
        deadline: Optional[Deadline] = None,
    ) -> bool:
        rotated = await self._call(
            "rotate",
            self.client.eval(
                self._ROTATE_SCRIPT,
                3,
                old_key,
                denylist_key,
                new_key,
                old_member,
                max(1, int(denylist_ttl)),
                new_value,
                max(1, int(ttl)),
            ),
            deadline,
        )
        return bool(rotated)

    async def ping(self, *, deadline: Optional[Deadline] = None) -> bool:
        return bool(await self._call("ping", self.client.ping(), deadline))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        pool = getattr(self.client, "connection_pool", None)
        if pool is not None:
            await pool.disconnect()


class _SyncPipelineAdapter:
    """Buffers commands on a sync pipeline and exposes an awaitable execute."""

    def __init__(self, pipeline: Any) -> None:
        self._pipeline = pipeline

    def __getattr__(self, name: str):
        command = getattr(self._pipeline, name)

        def _buffer(*args, **kwargs):
            command(*args, **kwargs)
            return self

        return _buffer

    async def execute(self) -> list:
        return self._pipeline.execute()


class _SyncClientAdapter:
    """Wraps a sync Redis client with the async method signatures the store uses.

    Test runs drive each request through a fresh event loop; a sync client
    avoids pooled connections bound to a loop that no longer exists.
    """

    def __init__(self, sync_client: Redis) -> None:
        self._sync = sync_client
        self.connection_pool = None

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, *keys: str) -> int:
        return self._sync.delete(*keys)

    async def sadd(self, key: str, member: str) -> int:
        return self._sync.sadd(key, member)

    async def sismember(self, key: str, member: str) -> bool:
        return bool(self._sync.sismember(key, member))

    async def expire(self, key: str, ttl: int) -> bool:
        return self._sync.expire(key, ttl)

    async def ttl(self, key: str) -> int:
        return self._sync.ttl(key)

    async def ping(self) -> bool:
        return self._sync.ping()

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any:
        return self._sync.eval(script, numkeys, *keys_and_args)

    async def scan_iter(self, match: str, count: int) -> AsyncIterator[str]:
        for key in self._sync.scan_iter(match=match, count=count):
            yield key

    def pipeline(self, transaction: bool = True) -> _SyncPipelineAdapter:
        return _SyncPipelineAdapter(self._sync.pipeline(transaction=transaction))

    async def aclose(self) -> None:
        self._sync.close()


class SyncRedisSessionStore(RedisSessionStore):
    """RedisSessionStore backed by a synchronous client, for TEST_MODE."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0) -> None:
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        super().__init__(_SyncClientAdapter(self._sync_client), redis_url=redis_url)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    def close_sync(self) -> None:
        self._sync_client.close()
