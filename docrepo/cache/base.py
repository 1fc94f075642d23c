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

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional, Set


class CacheClient(ABC):
    """
    Abstract cache client.

    Values are JSON-compatible structures. ``None`` is never stored, so a
    ``None`` result from ``get`` always means a miss.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the entries that exist, keyed by cache key"""
        found = {}
        for key in keys:
            value = await self.get(key)
            if value is not None:
                found[key] = value
        return found

    @abstractmethod
    async def set(self, key: str, value: Any, expires_in: Optional[int] = None) -> None:
        pass

    async def set_many(self, items: Dict[str, Any], expires_in: Optional[int] = None) -> None:
        for key, value in items.items():
            await self.set(key, value, expires_in)

    @abstractmethod
    async def remove(self, key: str) -> bool:
        pass

    async def remove_many(self, keys: Iterable[str]) -> int:
        removed = 0
        for key in keys:
            if await self.remove(key):
                removed += 1
        return removed

    @abstractmethod
    async def remove_by_prefix(self, prefix: str) -> int:
        pass

    async def remove_all(self) -> int:
        return await self.remove_by_prefix("")

    @abstractmethod
    async def set_add(self, key: str, values: Iterable[str], expires_in: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def set_remove(self, key: str, values: Iterable[str]) -> None:
        pass

    @abstractmethod
    async def get_set(self, key: str) -> Set[str]:
        pass
