"""RedisBlobStore — redis.asyncio implementation of the BlobStore protocol.

Architecture:
  - Single redis.asyncio client with its own connection pool, created in
    __init__ (connections are opened lazily on first command)
  - decode_responses=True: every value crosses the protocol as str
  - compare_and_set_many uses WATCH / MULTI / MSET / EXEC, so an append commits
    its content, count and generation together or not at all
  - redis.RedisError propagates; BlobDocumentRepository wraps it

Environment:
  THREATMERGE_REDIS_URL — overrides blob.url from the config file (factory.py)
"""

from __future__ import annotations

from typing import Mapping, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from threatmerge.utils.logger import get_logger

logger = get_logger(__name__)


class RedisBlobStore:
    """Async Redis blob backend.

    Usage:
        store = RedisBlobStore(url="redis://localhost:6379/0")
        text = await store.get("subject:42:response")
        await store.close()
    """

    def __init__(self, url: str = "redis://localhost:6379/0") -> None:
        self._url = url
        self._client: aioredis.Redis = aioredis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self._client.set(key, value)

    async def compare_and_set_many(
        self, guard_key: str, expected: Optional[str], values: Mapping[str, str]
    ) -> bool:
        async with self._client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(guard_key)
                current = await pipe.get(guard_key)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.mset(dict(values))
                await pipe.execute()
                return True
            except WatchError:
                logger.info("redis_compare_and_set_conflict", key=guard_key)
                return False

    async def health_check(self) -> bool:
        """Returns True if Redis answers PING."""
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.debug("redis_blob_store_closed", url=_redact_url(self._url))


def _redact_url(url: str) -> str:
    """Drop credentials from a redis URL before logging it."""
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
