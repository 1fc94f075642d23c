# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import json
import logging
from typing import Any, Dict, Iterable, Optional, Set

import redis.asyncio as redis

from docrepo.cache.base import CacheClient

logger = logging.getLogger(__name__)


class RedisCacheClient(CacheClient):
    """
    Redis-backed cache client.

    Values are stored as JSON strings, sets as native Redis sets. Every key is
    prefixed with ``key_prefix`` so that ``remove_all`` never touches keys
    owned by other applications sharing the database.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = "docrepo:"):
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._redis_client = None

    async def _get_client(self):
        if self._redis_client is None:
            self._redis_client = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis_client

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        client = await self._get_client()
        raw = await client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        client = await self._get_client()
        values = await client.mget([self._key(key) for key in keys])
        return {key: json.loads(raw) for key, raw in zip(keys, values) if raw is not None}

    async def set(self, key: str, value: Any, expires_in: Optional[int] = None) -> None:
        if value is None:
            return
        client = await self._get_client()
        if expires_in is not None and expires_in <= 0:
            await client.delete(self._key(key))
            return
        await client.set(self._key(key), json.dumps(value, default=str), ex=expires_in)

    async def remove(self, key: str) -> bool:
        client = await self._get_client()
        return bool(await client.delete(self._key(key)))

    async def remove_many(self, keys: Iterable[str]) -> int:
        keys = [self._key(key) for key in keys]
        if not keys:
            return 0
        client = await self._get_client()
        return int(await client.delete(*keys))

    async def remove_by_prefix(self, prefix: str) -> int:
        client = await self._get_client()
        keys = [key async for key in client.scan_iter(match=f"{self._key(prefix)}*", count=500)]
        if not keys:
            return 0
        logger.debug(f"Removing {len(keys)} cache keys with prefix {prefix!r}")
        return int(await client.delete(*keys))

    async def set_add(self, key: str, values: Iterable[str], expires_in: Optional[int] = None) -> None:
        values = list(values)
        if not values:
            return
        client = await self._get_client()
        await client.sadd(self._key(key), *values)
        if expires_in is not None:
            await client.expire(self._key(key), expires_in)

    async def set_remove(self, key: str, values: Iterable[str]) -> None:
        values = list(values)
        if not values:
            return
        client = await self._get_client()
        await client.srem(self._key(key), *values)

    async def get_set(self, key: str) -> Set[str]:
        client = await self._get_client()
        return set(await client.smembers(self._key(key)))

    async def close(self) -> None:
        if self._redis_client is not None:
            await self._redis_client.aclose()
            self._redis_client = None
