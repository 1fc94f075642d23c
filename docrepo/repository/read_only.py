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
from typing import Any, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel

from docrepo.cache.base import CacheClient
from docrepo.cache.scoped import ScopedCacheClient
from docrepo.config import settings
from docrepo.exceptions import DocumentError
from docrepo.index.configuration import Index
from docrepo.models.document import (
    EntityCapabilities,
    ModifiedDocument,
    from_source,
    get_id,
    get_version,
)
from docrepo.models.events import AsyncEvent, BeforeQueryEventArgs
from docrepo.models.options import CommandOptions, Consistency, SoftDeleteMode, resolve_options
from docrepo.models.results import ContinuationToken, FindHit, FindResults
from docrepo.queries import RepositoryQuery
from docrepo.store.base import SearchResponse, StoreDocument, StoreRequestError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

DELETED_IDS_KEY = "deleted"
QUERY_CACHE_PREFIX = "query:"


class ReadOnlyRepository(Generic[T]):
    """
    Typed reads over one index: point lookups, multi-gets and paged queries.

    Reads go through an optional cache scoped to the entity type. Soft-deleted
    documents are filtered according to ``CommandOptions.soft_delete_mode``
    and documents deleted moments ago are masked until the store catches up.
    """

    def __init__(
        self,
        document_type: Type[T],
        index: Index,
        cache: Optional[CacheClient] = None,
        system_filter: Optional[RepositoryQuery] = None,
    ):
        self.document_type = document_type
        self.index = index
        self.capabilities = EntityCapabilities.for_type(document_type)
        self.entity_type_name = document_type.__name__
        self.system_filter = system_filter
        self.default_cache_expiration = settings.cache_expiration
        self.cache: Optional[ScopedCacheClient] = None
        if cache is not None:
            self.cache = ScopedCacheClient(cache, document_type.__name__.lower())

        self.before_query = AsyncEvent()

    @property
    def store(self):
        return self.index.store

    @property
    def is_cache_enabled(self) -> bool:
        return self.cache is not None

    # Point reads

    async def get_by_id(self, id: Optional[str], options: Optional[CommandOptions] = None) -> Optional[T]:
        """
        Fetch one document by id.

        A cached entry (document or "not found" marker) answers without a
        store call. On a miss the result is cached when ``use_cache`` is set.

        Returns:
            The document, or None when it is missing or filtered by soft-delete mode
        """
        if not id:
            return None
        options = resolve_options(options)
        cache_key = options.cache_key or id

        if self.is_cache_enabled and options.use_cache:
            cached = await self.cache.get(cache_key)
            if cached:
                hit = FindHit.from_dict(cached[0], self.document_type)
                return self._returnable(hit.document, options)

        if self.index.has_parent or self.index.has_multiple_indexes:
            # Routing is unknown without the parent, so look the document up by query
            hit = await self._find_hit_by_id(id, options)
        else:
            try:
                stored = await self.store.get(self.index.get_read_index(), id)
            except StoreRequestError as e:
                raise DocumentError(f"Error getting {self.entity_type_name} {id}: {e.reason}", e.request) from e
            hit = self._to_hit(stored) if stored is not None else None

        if self.is_cache_enabled and options.use_cache:
            await self.cache.set(
                cache_key,
                [(hit or FindHit(id=id)).to_dict()],
                self._expires_in(options),
            )

        return self._returnable(hit.document if hit else None, options)

    async def get_by_ids(self, ids: Iterable[str], options: Optional[CommandOptions] = None) -> List[T]:
        """Fetch several documents; missing ids are simply absent from the result"""
        ids = list(dict.fromkeys(id for id in ids if id))
        if not ids:
            return []
        options = resolve_options(options)
        use_cache = self.is_cache_enabled and options.use_cache

        hits: Dict[str, FindHit[T]] = {}
        if use_cache:
            cached = await self.cache.get_many(ids)
            for id, value in cached.items():
                if value:
                    hits[id] = FindHit.from_dict(value[0], self.document_type)

        remaining = [id for id in ids if id not in hits]
        if remaining:
            found = await self._lookup_hits(remaining, options)
            if use_cache:
                await self.cache.set_many(
                    {id: [(found.get(id) or FindHit(id=id)).to_dict()] for id in remaining},
                    self._expires_in(options),
                )
            hits.update(found)

        documents = []
        for id in ids:
            hit = hits.get(id)
            document = self._returnable(hit.document if hit else None, options)
            if document is not None:
                documents.append(document)
        return documents

    async def _lookup_hits(self, ids: List[str], options: CommandOptions) -> Dict[str, FindHit[T]]:
        if self.index.has_parent or self.index.has_multiple_indexes:
            # Pages are capped at max_page_limit, so larger id lists are looked up in chunks
            hits: Dict[str, FindHit[T]] = {}
            chunk_size = settings.max_page_limit
            for start in range(0, len(ids), chunk_size):
                chunk = ids[start : start + chunk_size]
                results = await self._find(
                    RepositoryQuery().id(*chunk),
                    options.clone(
                        use_cache=False,
                        page=None,
                        limit=len(chunk),
                        snapshot_paging=False,
                        soft_delete_mode=SoftDeleteMode.ALL,
                    ),
                )
                hits.update((hit.id, hit) for hit in results.hits)
            return hits

        try:
            stored = await self.store.multi_get(self.index.get_read_index(), ids)
        except StoreRequestError as e:
            if e.is_index_missing:
                return {}
            raise DocumentError(f"Error getting {self.entity_type_name} documents: {e.reason}", e.request) from e
        return {doc.id: self._to_hit(doc) for doc in stored if doc.found}

    async def _find_hit_by_id(self, id: str, options: CommandOptions) -> Optional[FindHit[T]]:
        hits = await self._lookup_hits([id], options)
        return hits.get(id)

    async def exists(self, id: Optional[str], options: Optional[CommandOptions] = None) -> bool:
        if not id:
            return False
        return await self.count(RepositoryQuery().id(id), options) > 0

    # Queries

    async def get_all(self, options: Optional[CommandOptions] = None) -> FindResults[T]:
        return await self.find(None, options)

    async def find_one(
        self, query: Optional[RepositoryQuery] = None, options: Optional[CommandOptions] = None
    ) -> Optional[T]:
        options = resolve_options(options).clone(limit=1, page=None, snapshot_paging=False)
        results = await self.find(query, options)
        documents = results.documents
        return documents[0] if documents else None

    async def search(
        self,
        system_filter: Optional[RepositoryQuery] = None,
        filter: Optional[RepositoryQuery] = None,
        criteria: Optional[str] = None,
        sort: Optional[List[str]] = None,
        options: Optional[CommandOptions] = None,
    ) -> FindResults[T]:
        """
        Combine a caller filter, an app-level system filter, free text criteria
        and sort fields (``"-field"`` sorts descending) into one query.
        """
        query = filter.clone() if filter else RepositoryQuery()
        query.merge(system_filter)
        if criteria:
            query.search_text(criteria)
        for field in sort or []:
            if field.startswith("-"):
                query.sort_by_descending(field[1:])
            else:
                query.sort_by(field.lstrip("+"))
        return await self.find(query, options)

    async def count(self, query: Optional[RepositoryQuery] = None, options: Optional[CommandOptions] = None) -> int:
        options = resolve_options(options)
        prepared = await self._prepare_query(query.clone() if query else RepositoryQuery(), options)
        read_index = self.index.get_read_index()
        try:
            if options.consistency is Consistency.IMMEDIATE:
                await self.store.refresh(read_index)
            return await self.store.count(read_index, prepared)
        except StoreRequestError as e:
            if e.is_index_missing:
                return 0
            raise DocumentError(f"Error counting {self.entity_type_name} documents: {e.reason}", e.request) from e

    async def find(
        self, query: Optional[RepositoryQuery] = None, options: Optional[CommandOptions] = None
    ) -> FindResults[T]:
        """
        Run a query and return the first requested page.

        Args:
            query: Conditions to match; None matches every document
            options: Paging, caching, soft-delete mode and snapshot settings

        Returns:
            A page of results bound to fetch the following pages via ``next_page``
        """
        options = resolve_options(options)
        return await self._find(query.clone() if query else RepositoryQuery(), options)

    def _page_size(self, options: CommandOptions) -> int:
        limit = options.limit or settings.default_page_limit
        return max(1, min(limit, settings.max_page_limit))

    def _query_cache_key(self, query: RepositoryQuery, options: CommandOptions, page: int, limit: int) -> str:
        fingerprint = options.cache_key or f"{query.fingerprint()}-{options.get_soft_delete_mode().value}"
        return f"{QUERY_CACHE_PREFIX}{fingerprint}:{page}:{limit}"

    async def _find(self, query: RepositoryQuery, options: CommandOptions) -> FindResults[T]:
        page = options.page or 1
        limit = self._page_size(options)
        use_snapshot = options.snapshot_paging
        # Snapshot pages depend on server-side cursor state, so they are never cached
        allow_caching = self.is_cache_enabled and options.use_cache and not use_snapshot

        cache_key = None
        if allow_caching:
            cache_key = self._query_cache_key(query, options, page, limit)
            cached = await self.cache.get(cache_key)
            if cached:
                results = FindResults.from_cache(cached, self.document_type)
                return self._bind_next_page(results, query, options)

        caller_query = query.clone()
        prepared = await self._prepare_query(query, options)
        read_index = self.index.get_read_index()
        lifetime = options.snapshot_lifetime or settings.snapshot_lifetime
        try:
            if options.consistency is Consistency.IMMEDIATE:
                await self.store.refresh(read_index)
            if use_snapshot:
                response = await self.store.search(read_index, prepared, size=limit, scroll=lifetime)
            else:
                response = await self.store.search(read_index, prepared, size=limit, from_=(page - 1) * limit)
        except StoreRequestError as e:
            if not e.is_index_missing:
                raise DocumentError(f"Error querying {self.entity_type_name} documents: {e.reason}", e.request) from e
            logger.debug(f"Index {read_index} does not exist yet, returning no results")
            response = SearchResponse()

        results = self._to_results(response, page, limit)
        if use_snapshot and not results.has_more:
            await self.clear_continuation(results)

        if allow_caching:
            await self.cache.set(cache_key, results.to_cache(), self._expires_in(options))

        return self._bind_next_page(results, caller_query, options)

    def _bind_next_page(self, results: FindResults[T], query: RepositoryQuery, options: CommandOptions):
        async def fetch_next(current: FindResults[T]) -> FindResults[T]:
            if current.token.scroll_id:
                return await self._next_snapshot_page(current, options)
            return await self._find(query.clone(), options.clone(page=current.page + 1))

        return results.bind(fetch_next)

    async def _next_snapshot_page(self, current: FindResults[T], options: CommandOptions) -> FindResults[T]:
        lifetime = options.snapshot_lifetime or settings.snapshot_lifetime
        try:
            response = await self.store.scroll(current.token.scroll_id, lifetime)
        except StoreRequestError as e:
            raise DocumentError(f"Error fetching next {self.entity_type_name} page: {e.reason}", e.request) from e

        if not response.scroll_id:
            response.scroll_id = current.token.scroll_id
        results = self._to_results(response, current.page + 1, self._page_size(options))
        if not results.has_more:
            await self.clear_continuation(results)
        return results.bind(current._fetch_next)

    async def clear_continuation(self, results: FindResults[T]) -> None:
        """Release the server-side cursor behind a snapshot page, if one is still open"""
        scroll_id = results.token.scroll_id
        if not scroll_id:
            return
        results.token.scroll_id = None
        try:
            await self.store.clear_scroll(scroll_id)
        except StoreRequestError as e:
            logger.warning(f"Failed to clear scroll {scroll_id}: {e}")

    async def _prepare_query(self, query: RepositoryQuery, options: CommandOptions) -> RepositoryQuery:
        if self.before_query.has_handlers:
            await self.before_query.invoke(
                self, BeforeQueryEventArgs(query=query, options=options, repository=self, document_type=self.document_type)
            )
        query.merge(self.system_filter)

        if self.capabilities.supports_soft_deletes:
            mode = options.get_soft_delete_mode()
            if mode is SoftDeleteMode.ACTIVE_ONLY:
                query.field_not_equals("is_deleted", True)
                # The store may still show documents soft-deleted moments ago
                if self.capabilities.has_identity and self.is_cache_enabled:
                    deleted_ids = await self.cache.get_set(DELETED_IDS_KEY)
                    if deleted_ids:
                        query.exclude_id(*sorted(deleted_ids))
            elif mode is SoftDeleteMode.DELETED_ONLY:
                query.field_equals("is_deleted", True)
        return query

    # Cache

    def _expires_in(self, options: CommandOptions) -> int:
        if options.expires_in is not None:
            return options.expires_in
        return self.default_cache_expiration

    async def invalidate_cache(self, documents: Iterable[Any], options: Optional[CommandOptions] = None) -> None:
        """
        Drop cached entries for documents (or ids) along with every cached query page.

        Args:
            documents: Documents, ModifiedDocument wrappers or plain ids
            options: A custom ``cache_key`` in here is removed as well
        """
        if not self.is_cache_enabled:
            return
        keys = []
        for document in documents:
            if isinstance(document, str):
                keys.append(document)
            elif isinstance(document, ModifiedDocument):
                keys.append(get_id(document.value))
            else:
                keys.append(get_id(document))
        if options is not None and options.cache_key:
            keys.append(options.cache_key)
        await self.cache.remove_many(keys)
        await self.cache.remove_by_prefix(QUERY_CACHE_PREFIX)

    async def _add_to_cache(self, documents: List[T], options: CommandOptions) -> None:
        if not self.is_cache_enabled or not self.capabilities.has_identity:
            return
        items = {}
        for document in documents:
            hit = FindHit(
                id=get_id(document),
                document=document,
                version=get_version(document),
                index=self.index.get_index(document),
            )
            items[hit.id] = [hit.to_dict()]
        await self.cache.set_many(items, self._expires_in(options))

    # Conversion

    def _to_hit(self, stored: StoreDocument) -> FindHit[T]:
        version = stored.version
        return FindHit(
            id=stored.id,
            document=from_source(self.document_type, stored.source or {}, stored.id, version),
            version=version,
            index=stored.index,
            routing=stored.routing,
            score=stored.score,
        )

    def _to_results(self, response: SearchResponse, page: int, limit: int) -> FindResults[T]:
        hits = [self._to_hit(hit) for hit in response.hits]
        return FindResults(
            hits=hits,
            total=response.total,
            page=page,
            has_more=len(hits) >= limit,
            token=ContinuationToken(scroll_id=response.scroll_id, page=page),
            aggregations=response.aggregations,
        )

    def _returnable(self, document: Optional[T], options: CommandOptions) -> Optional[T]:
        if document is None:
            return None
        if not self.capabilities.supports_soft_deletes:
            return document
        mode = options.get_soft_delete_mode()
        if mode is SoftDeleteMode.ACTIVE_ONLY and document.is_deleted:
            return None
        if mode is SoftDeleteMode.DELETED_ONLY and not document.is_deleted:
            return None
        return document
