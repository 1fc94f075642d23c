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
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from elasticsearch import ApiError, AsyncElasticsearch

from docrepo.queries import Operator, RepositoryQuery
from docrepo.store.base import (
    INDEX_NOT_FOUND,
    BulkItemResult,
    BulkOperation,
    ReindexTaskStatus,
    SearchResponse,
    SearchStore,
    StoreDocument,
    StoreRequestError,
    WriteResult,
)

logger = logging.getLogger(__name__)


def _date_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def build_query(query: Optional[RepositoryQuery]) -> Dict[str, Any]:
    """Compile a repository query into an Elasticsearch bool query"""
    if query is None:
        return {"match_all": {}}

    filters: List[Dict[str, Any]] = []
    must_not: List[Dict[str, Any]] = []
    must: List[Dict[str, Any]] = []

    if query.ids:
        filters.append({"ids": {"values": list(query.ids)}})
    if query.excluded_ids:
        must_not.append({"ids": {"values": list(query.excluded_ids)}})

    for condition in query.conditions:
        if condition.operator == Operator.EQUALS:
            filters.append({"term": {condition.field: condition.value}})
        elif condition.operator == Operator.NOT_EQUALS:
            must_not.append({"term": {condition.field: condition.value}})
        elif condition.operator == Operator.IN:
            filters.append({"terms": {condition.field: list(condition.value)}})
        elif condition.operator == Operator.EXISTS:
            filters.append({"exists": {"field": condition.field}})

    for date_range in query.date_ranges:
        bounds = {}
        if date_range.start is not None:
            bounds["gte"] = _date_value(date_range.start)
        if date_range.end is not None:
            bounds["lte"] = _date_value(date_range.end)
        filters.append({"range": {date_range.field: bounds}})

    if query.search:
        must.append({"simple_query_string": {"query": query.search}})

    if not (filters or must_not or must):
        return {"match_all": {}}

    bool_query: Dict[str, Any] = {}
    if filters:
        bool_query["filter"] = filters
    if must_not:
        bool_query["must_not"] = must_not
    if must:
        bool_query["must"] = must
    return {"bool": bool_query}


def build_sort(query: Optional[RepositoryQuery]) -> Optional[List[Dict[str, Any]]]:
    if query is None or not query.sort:
        return None
    return [{s.field: {"order": "desc" if s.descending else "asc"}} for s in query.sort]


def _body(response) -> Dict[str, Any]:
    return getattr(response, "body", response)


def _error_type(error: ApiError) -> str:
    body = error.body if isinstance(error.body, dict) else {}
    cause = body.get("error")
    if isinstance(cause, dict) and cause.get("type"):
        return cause["type"]
    return str(error.message)


def _hit(hit: Dict[str, Any]) -> StoreDocument:
    return StoreDocument(
        id=hit["_id"],
        index=hit["_index"],
        source=hit.get("_source"),
        seq_no=hit.get("_seq_no", 0),
        primary_term=hit.get("_primary_term", 0),
        found=hit.get("found", True),
        routing=hit.get("_routing"),
        score=hit.get("_score"),
    )


def _search_response(body: Dict[str, Any]) -> SearchResponse:
    hits = body.get("hits", {})
    total = hits.get("total", 0)
    if isinstance(total, dict):
        total = total.get("value", 0)
    return SearchResponse(
        hits=[_hit(h) for h in hits.get("hits", [])],
        total=total,
        scroll_id=body.get("_scroll_id"),
        aggregations=body.get("aggregations") or {},
    )


class ElasticsearchStore(SearchStore):
    """SearchStore backed by the official async Elasticsearch client"""

    def __init__(self, client: Optional[AsyncElasticsearch] = None, url: str = None, request_timeout: float = 30.0):
        if client is None:
            client = AsyncElasticsearch(url or "http://localhost:9200", request_timeout=request_timeout)
        self._client = client

    @property
    def client(self) -> AsyncElasticsearch:
        return self._client

    @asynccontextmanager
    async def _request(self, method: str, **request):
        request = {"method": method, **request}
        logger.debug(f"Elasticsearch request: {request}")
        try:
            yield request
        except ApiError as e:
            raise StoreRequestError(e.meta.status, _error_type(e), str(e.body), request) from e

    # Documents

    async def get(self, index: str, id: str, routing: Optional[str] = None) -> Optional[StoreDocument]:
        try:
            async with self._request("get", index=index, id=id):
                response = await self._client.get(index=index, id=id, routing=routing)
        except StoreRequestError as e:
            if e.is_not_found:
                return None
            raise
        return _hit(_body(response))

    async def multi_get(self, index: str, ids: List[str]) -> List[StoreDocument]:
        async with self._request("mget", index=index, ids=ids) as request:
            response = await self._client.mget(index=index, ids=ids)

        documents = []
        for doc in _body(response)["docs"]:
            error = doc.get("error")
            if error is None:
                documents.append(_hit(doc))
                continue
            # Per-document failures come back inside a successful response
            error_type = error.get("type", "") if isinstance(error, dict) else str(error)
            if error_type == INDEX_NOT_FOUND:
                documents.append(StoreDocument(id=doc["_id"], index=doc.get("_index", index), found=False))
                continue
            reason = error.get("reason", "") if isinstance(error, dict) else ""
            raise StoreRequestError(500, error_type, reason, request)
        return documents

    async def index(
        self,
        index: str,
        id: str,
        source: Dict[str, Any],
        op_type: str = "index",
        if_seq_no: Optional[int] = None,
        if_primary_term: Optional[int] = None,
        routing: Optional[str] = None,
        refresh: Optional[str] = None,
    ) -> WriteResult:
        async with self._request("index", index=index, id=id, op_type=op_type, if_seq_no=if_seq_no):
            response = await self._client.index(
                index=index,
                id=id,
                document=source,
                op_type=op_type,
                if_seq_no=if_seq_no,
                if_primary_term=if_primary_term,
                routing=routing,
                refresh=refresh,
            )
        return WriteResult(
            response["_id"], response["_index"], response["_seq_no"], response["_primary_term"], response["result"]
        )

    async def update(
        self,
        index: str,
        id: str,
        doc: Optional[Dict[str, Any]] = None,
        script: Optional[Dict[str, Any]] = None,
        retry_on_conflict: Optional[int] = None,
        routing: Optional[str] = None,
        refresh: Optional[str] = None,
    ) -> WriteResult:
        async with self._request("update", index=index, id=id, doc=doc, script=script):
            response = await self._client.update(
                index=index,
                id=id,
                doc=doc,
                script=script,
                retry_on_conflict=retry_on_conflict,
                routing=routing,
                refresh=refresh,
            )
        return WriteResult(
            response["_id"],
            response["_index"],
            response.get("_seq_no", 0),
            response.get("_primary_term", 0),
            response["result"],
        )

    async def delete(
        self, index: str, id: str, routing: Optional[str] = None, refresh: Optional[str] = None
    ) -> bool:
        try:
            async with self._request("delete", index=index, id=id):
                await self._client.delete(index=index, id=id, routing=routing, refresh=refresh)
        except StoreRequestError as e:
            if e.is_not_found:
                return False
            raise
        return True

    async def bulk(self, operations: List[BulkOperation], refresh: Optional[str] = None) -> List[BulkItemResult]:
        if not operations:
            return []

        lines: List[Dict[str, Any]] = []
        for op in operations:
            meta: Dict[str, Any] = {"_index": op.index, "_id": op.id}
            if op.routing is not None:
                meta["routing"] = op.routing
            if op.if_seq_no is not None:
                meta["if_seq_no"] = op.if_seq_no
                meta["if_primary_term"] = op.if_primary_term
            if op.retry_on_conflict is not None:
                meta["retry_on_conflict"] = op.retry_on_conflict
            lines.append({op.action: meta})
            if op.action in ("index", "create"):
                lines.append(op.source or {})
            elif op.action == "update":
                lines.append({"doc": op.doc} if op.doc is not None else {"script": op.script})

        async with self._request("bulk", operations=len(operations)):
            response = await self._client.bulk(operations=lines, refresh=refresh)

        results = []
        for item in _body(response)["items"]:
            body = next(iter(item.values()))
            error = body.get("error") or {}
            results.append(
                BulkItemResult(
                    id=body.get("_id"),
                    index=body.get("_index"),
                    status=body.get("status", 500),
                    seq_no=body.get("_seq_no", 0),
                    primary_term=body.get("_primary_term", 0),
                    error_type=error.get("type") if isinstance(error, dict) else str(error) or None,
                    reason=error.get("reason") if isinstance(error, dict) else None,
                )
            )
        return results

    # Queries

    async def search(
        self,
        index: str,
        query: RepositoryQuery,
        size: int = 10,
        from_: int = 0,
        scroll: Optional[int] = None,
    ) -> SearchResponse:
        body_query = build_query(query)
        sort = build_sort(query)
        async with self._request("search", index=index, query=body_query, sort=sort, size=size, from_=from_):
            response = await self._client.search(
                index=index,
                query=body_query,
                sort=sort,
                size=size,
                from_=None if scroll else from_,
                scroll=f"{scroll}s" if scroll else None,
                seq_no_primary_term=True,
            )
        return _search_response(_body(response))

    async def scroll(self, scroll_id: str, scroll: int) -> SearchResponse:
        async with self._request("scroll", scroll_id=scroll_id):
            response = await self._client.scroll(scroll_id=scroll_id, scroll=f"{scroll}s")
        return _search_response(_body(response))

    async def clear_scroll(self, scroll_id: str) -> None:
        try:
            async with self._request("clear_scroll", scroll_id=scroll_id):
                await self._client.clear_scroll(scroll_id=scroll_id)
        except StoreRequestError as e:
            if not e.is_not_found:
                raise

    async def count(self, index: str, query: Optional[RepositoryQuery] = None) -> int:
        body_query = build_query(query)
        async with self._request("count", index=index, query=body_query):
            response = await self._client.count(index=index, query=body_query)
        return _body(response)["count"]

    async def delete_by_query(self, index: str, query: RepositoryQuery, refresh: Optional[str] = None) -> int:
        body_query = build_query(query)
        async with self._request("delete_by_query", index=index, query=body_query):
            response = await self._client.delete_by_query(
                index=index, query=body_query, conflicts="proceed", refresh=refresh is not None
            )
        return _body(response)["deleted"]

    # Indices and aliases

    async def get_aliases(self, index: str) -> List[str]:
        try:
            async with self._request("get_alias", index=index):
                response = await self._client.indices.get_alias(index=index)
        except StoreRequestError as e:
            if e.is_not_found:
                return []
            raise
        aliases = set()
        for details in _body(response).values():
            aliases.update(details.get("aliases", {}).keys())
        return sorted(aliases)

    async def get_alias_indices(self, alias: str) -> List[str]:
        try:
            async with self._request("get_alias", name=alias):
                response = await self._client.indices.get_alias(name=alias)
        except StoreRequestError as e:
            if e.is_not_found:
                return []
            raise
        return sorted(_body(response).keys())

    async def update_aliases(self, actions: List[Dict[str, Any]]) -> None:
        async with self._request("update_aliases", actions=actions):
            await self._client.indices.update_aliases(actions=actions)

    async def index_exists(self, index: str) -> bool:
        async with self._request("exists", index=index):
            response = await self._client.indices.exists(index=index)
        return bool(response)

    async def create_index(self, index: str, body: Optional[Dict[str, Any]] = None) -> None:
        body = body or {}
        async with self._request("create_index", index=index):
            await self._client.indices.create(
                index=index,
                mappings=body.get("mappings"),
                settings=body.get("settings"),
                aliases=body.get("aliases"),
            )

    async def delete_index(self, index: str) -> None:
        async with self._request("delete_index", index=index):
            await self._client.indices.delete(index=index)

    async def refresh(self, index: Optional[str] = None) -> None:
        async with self._request("refresh", index=index):
            await self._client.indices.refresh(index=index)

    # Reindex

    async def start_reindex(
        self,
        source_index: str,
        dest_index: str,
        query: Optional[RepositoryQuery] = None,
        script: Optional[str] = None,
    ) -> str:
        source: Dict[str, Any] = {"index": source_index, "query": build_query(query)}
        sort = build_sort(query)
        if sort:
            source["sort"] = sort
        dest = {"index": dest_index, "op_type": "index"}
        async with self._request("reindex", source=source, dest=dest, script=script):
            response = await self._client.reindex(
                source=source,
                dest=dest,
                script={"source": script, "lang": "painless"} if script else None,
                conflicts="proceed",
                wait_for_completion=False,
            )
        return _body(response)["task"]

    async def get_reindex_task(self, task_id: str) -> ReindexTaskStatus:
        async with self._request("get_task", task_id=task_id):
            response = await self._client.tasks.get(task_id=task_id)
        status = response["task"].get("status", {})
        error = response.get("error")
        return ReindexTaskStatus(
            completed=response.get("completed", False),
            total=status.get("total", 0),
            created=status.get("created", 0),
            updated=status.get("updated", 0),
            noops=status.get("noops", 0),
            version_conflicts=status.get("version_conflicts", 0),
            failures=(response.get("response") or {}).get("failures", []),
            error=error.get("reason") if isinstance(error, dict) else error,
        )

    async def close(self) -> None:
        await self._client.close()
