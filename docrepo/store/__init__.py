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

from docrepo.store.base import (
    BulkItemResult,
    BulkOperation,
    ReindexTaskStatus,
    SearchResponse,
    SearchStore,
    StoreDocument,
    StoreRequestError,
    WriteResult,
)
from docrepo.store.elasticsearch import ElasticsearchStore
from docrepo.store.memory import InMemoryStore


def create_store(store_type: str = None) -> SearchStore:
    """
    Factory function to create a search store

    Args:
        store_type: "elasticsearch" or "memory". Defaults to settings.store_type

    Returns:
        SearchStore instance
    """
    from docrepo.config import settings

    store_type = store_type or settings.store_type
    if store_type == "elasticsearch":
        return ElasticsearchStore(
            url=settings.elasticsearch_url, request_timeout=settings.elasticsearch_request_timeout
        )
    elif store_type == "memory":
        return InMemoryStore()
    else:
        raise ValueError(f"Unknown store type: {store_type}")


__all__ = [
    "BulkItemResult",
    "BulkOperation",
    "ElasticsearchStore",
    "InMemoryStore",
    "ReindexTaskStatus",
    "SearchResponse",
    "SearchStore",
    "StoreDocument",
    "StoreRequestError",
    "WriteResult",
    "create_store",
]
