"""Redis-backed challenge store.

Pending ceremonies live under ``{prefix}{key}`` with a native Redis TTL.
Consumption uses GETDEL, so two replays of the same response can never both
observe the entry.
"""

from __future__ import annotations

import contextlib
import math
from collections.abc import Iterator

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from passgate.core.exceptions import StorageError
from passgate.storage.challenges import ChallengeStore

logger = structlog.get_logger()


@contextlib.contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        logger.error("Challenge store operation failed", operation=operation, error=str(e))
        raise StorageError() from e


def _decode(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisChallengeStore(ChallengeStore):
    """Challenge store on a shared Redis instance."""

    def __init__(self, client: Redis, prefix: str = "passgate:ceremony:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "passgate:ceremony:") -> RedisChallengeStore:
        return cls(Redis.from_url(url), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def put(self, key: str, value: str, ttl: float) -> None:
        # Redis expiry has one-second granularity; never round a live entry down to zero.
        with _storage_errors("put"):
            await self._client.set(self._key(key), value, ex=max(1, math.ceil(ttl)))

    async def get(self, key: str) -> str | None:
        with _storage_errors("get"):
            return _decode(await self._client.get(self._key(key)))

    async def delete(self, key: str) -> None:
        with _storage_errors("delete"):
            await self._client.delete(self._key(key))

    async def pop(self, key: str) -> str | None:
        with _storage_errors("pop"):
            return _decode(await self._client.getdel(self._key(key)))

    async def stop(self) -> None:
        await self._client.aclose()
