"""Redis sorted-set implementation of the ordered event store."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Final

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from ..domain.errors import AtomicAdmitUnsupported, StoreUnavailableError

logger = logging.getLogger(__name__)


class RedisEventStore:
    """Ordered event store backed by Redis sorted sets."""

    _ADMIT_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local window_start = tonumber(ARGV[1])
    local now_ms = tonumber(ARGV[2])
    local budget = tonumber(ARGV[3])
    local ttl_seconds = tonumber(ARGV[4])
    local token = ARGV[5]

    redis.call('ZREMRANGEBYSCORE', key, 0, window_start)
    local current = redis.call('ZCARD', key)
    if current >= budget then
        return {0, current}
    end
    redis.call('ZADD', key, now_ms, token)
    redis.call('EXPIRE', key, ttl_seconds)
    return {1, current}
    """

    def __init__(self, client: Redis) -> None:
        """Wrap an asyncio Redis client and register the admission script."""
        self._client = client
        self._script = client.register_script(self._ADMIT_SCRIPT)
        self._connected = False

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisEventStore":
        """Create a store for ``url`` with short socket timeouts."""
        options: dict[str, Any] = {"socket_connect_timeout": 5, "socket_timeout": 5}
        options.update(kwargs)
        return cls(Redis.from_url(url, **options))

    async def ping(self) -> bool:
        """Return ``True`` when Redis answers ``PING``."""
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._client.aclose()

    async def remove_range(self, key: str, min_score: float, max_score: float) -> int:
        async with self._guard("zremrangebyscore"):
            return int(await self._client.zremrangebyscore(key, min_score, max_score))

    async def count(self, key: str) -> int:
        async with self._guard("zcard"):
            return int(await self._client.zcard(key))

    async def insert(self, key: str, score: float, token: str) -> None:
        async with self._guard("zadd"):
            await self._client.zadd(key, {token: score})

    async def set_expiry(self, key: str, seconds: int) -> None:
        async with self._guard("expire"):
            await self._client.expire(key, seconds)

    async def admit(
        self,
        key: str,
        *,
        window_start: float,
        now: float,
        budget: int,
        ttl_seconds: int,
        token: str,
    ) -> tuple[bool, int]:
        """Run the expire/count/insert sequence atomically as a Lua script."""
        async with self._guard("admit"):
            try:
                admitted, current = await self._script(
                    keys=[key], args=[window_start, now, budget, ttl_seconds, token]
                )
            except ResponseError as exc:
                message = str(exc).lower()
                if "unknown command `evalsha`" in message or "unknown command `eval`" in message:
                    raise AtomicAdmitUnsupported(str(exc)) from exc
                raise
        return int(admitted) == 1, int(current)

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Check connectivity on first use and translate client errors."""
        try:
            if not self._connected:
                await self._client.ping()
                self._connected = True
                logger.info("connected to redis event store")
            yield
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(operation, exc) from exc
