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

import copy
import time
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from docrepo.cache.base import CacheClient


class InMemoryCacheClient(CacheClient):
    """Process-local cache for testing or single-process deployments"""

    def __init__(self):
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _expiry(self, expires_in: Optional[int]) -> Optional[float]:
        if expires_in is None:
            return None
        return time.monotonic() + expires_in

    def _live(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return value

    @property
    def count(self) -> int:
        return sum(1 for key in list(self._entries) if self._live(key) is not None)

    async def get(self, key: str) -> Optional[Any]:
        value = self._live(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any, expires_in: Optional[int] = None) -> None:
        if value is None:
            return
        if expires_in is not None and expires_in <= 0:
            self._entries.pop(key, None)
            return
        self._entries[key] = (copy.deepcopy(value), self._expiry(expires_in))

    async def remove(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def remove_by_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def set_add(self, key: str, values: Iterable[str], expires_in: Optional[int] = None) -> None:
        members = self._live(key) or set()
        members = set(members) | set(values)
        self._entries[key] = (members, self._expiry(expires_in))

    async def set_remove(self, key: str, values: Iterable[str]) -> None:
        members = self._live(key)
        if members is None:
            return
        _, expires_at = self._entries[key]
        remaining = set(members) - set(values)
        if remaining:
            self._entries[key] = (remaining, expires_at)
        else:
            del self._entries[key]

    async def get_set(self, key: str) -> Set[str]:
        return set(self._live(key) or set())
