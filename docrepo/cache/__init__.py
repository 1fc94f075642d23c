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

from typing import Optional

from docrepo.cache.base import CacheClient
from docrepo.cache.memory import InMemoryCacheClient
from docrepo.cache.redis_client import RedisCacheClient
from docrepo.cache.scoped import ScopedCacheClient


def create_cache_client(cache_type: str = None) -> Optional[CacheClient]:
    """
    Factory function to create a cache client

    Args:
        cache_type: "redis", "memory" or "none". Defaults to settings.cache_type

    Returns:
        CacheClient instance, or None when caching is disabled
    """
    from docrepo.config import settings

    cache_type = cache_type or settings.cache_type
    if cache_type == "redis":
        return RedisCacheClient(redis_url=settings.redis_url)
    elif cache_type == "memory":
        return InMemoryCacheClient()
    elif cache_type == "none":
        return None
    else:
        raise ValueError(f"Unknown cache type: {cache_type}")


__all__ = [
    "CacheClient",
    "InMemoryCacheClient",
    "RedisCacheClient",
    "ScopedCacheClient",
    "create_cache_client",
]
