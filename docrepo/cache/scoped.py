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

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from docrepo.cache.base import CacheClient

logger = logging.getLogger(__name__)


class ScopedCacheClient:
    """
    Cache facade used by repositories.

    All keys are namespaced by the entity scope (``"{scope}:{key}"``) so a
    whole entity type can be cleared at once, and every lookup is counted as
    a hit or a miss.
    """

    def __init__(self, cache: CacheClient, scope: str):
        self._cache = cache
        self._scope = scope
        self.hits = 0
        self.misses = 0

    @property
    def scope(self) -> str:
        return self._scope

    def _key(self, key: str) -> str:
        return f"{self._scope}:{key}"

    def reset_stats(self) -> None:
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[Any]:
        value = await self._cache.get(self._key(key))
        if value is None:
            self.misses += 1
            logger.debug(f"Cache miss: {self._key(key)}")
        else:
            self.hits += 1
            logger.debug(f"Cache hit: {self._key(key)}")
        return value

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        found = await self._cache.get_many([self._key(key) for key in keys])
        prefix_length = len(self._scope) + 1
        result = {key[prefix_length:]: value for key, value in found.items()}
        self.hits += len(result)
        self.misses += len(keys) - len(result)
        return result

    async def set(self, key: str, value: Any, expires_in: Optional[int] = None) -> None:
        await self._cache.set(self._key(key), value, expires_in)

    async def set_many(self, items: Dict[str, Any], expires_in: Optional[int] = None) -> None:
        if not items:
            return
        await self._cache.set_many({self._key(key): value for key, value in items.items()}, expires_in)

    async def remove(self, key: str) -> bool:
        return await self._cache.remove(self._key(key))

    async def remove_many(self, keys: Iterable[str]) -> int:
        keys: List[str] = [self._key(key) for key in keys if key]
        if not keys:
            return 0
        return await self._cache.remove_many(keys)

    async def remove_by_prefix(self, prefix: str) -> int:
        return await self._cache.remove_by_prefix(self._key(prefix))

    async def remove_all(self) -> int:
        removed = await self._cache.remove_by_prefix(f"{self._scope}:")
        logger.debug(f"Cleared {removed} cache entries for scope {self._scope}")
        return removed

    async def set_add(self, key: str, values: Iterable[str], expires_in: Optional[int] = None) -> None:
        await self._cache.set_add(self._key(key), values, expires_in)

    async def set_remove(self, key: str, values: Iterable[str]) -> None:
        await self._cache.set_remove(self._key(key), values)

    async def get_set(self, key: str) -> Set[str]:
        return await self._cache.get_set(self._key(key))
