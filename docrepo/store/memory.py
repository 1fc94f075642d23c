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
import fnmatch
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from docrepo.queries import Operator, RepositoryQuery
from docrepo.store.base import (
    DOCUMENT_MISSING,
    INDEX_NOT_FOUND,
    SEARCH_CONTEXT_MISSING,
    VERSION_CONFLICT,
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

ScriptFunc = Callable[[Dict[str, Any], Dict[str, Any]], None]


@dataclass
class _StoredDocument:
    source: Dict[str, Any]
    seq_no: int
    primary_term: int
    routing: Optional[str] = None


def _get_field(id: str, source: Dict[str, Any], path: str) -> Any:
    if path in ("id", "_id"):
        return id
    value: Any = source
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _contains_text(value: Any, text: str) -> bool:
    if isinstance(value, str):
        return text in value.lower()
    if isinstance(value, dict):
        return any(_contains_text(v, text) for v in value.values())
    if isinstance(value, list):
        return any(_contains_text(v, text) for v in value)
    return False


def matches(query: Optional[RepositoryQuery], id: str, source: Dict[str, Any]) -> bool:
    """Evaluate a repository query against one stored document"""
    if query is None:
        return True
    if query.ids and id not in query.ids:
        return False
    if id in query.excluded_ids:
        return False

    for condition in query.conditions:
        value = _get_field(id, source, condition.field)
        if condition.operator == Operator.EQUALS and value != condition.value:
            return False
        if condition.operator == Operator.NOT_EQUALS and value == condition.value:
            return False
        if condition.operator == Operator.IN and value not in condition.value:
            return False
        if condition.operator == Operator.EXISTS and value is None:
            return False

    for date_range in query.date_ranges:
        value = _as_datetime(_get_field(id, source, date_range.field))
        if value is None:
            return False
        if date_range.start is not None and value < _as_datetime(date_range.start):
            return False
        if date_range.end is not None and value > _as_datetime(date_range.end):
            return False

    if query.search and not _contains_text(source, query.search.lower()):
        return False
    return True


class InMemoryStore(SearchStore):
    """
    Process-local store for testing or single-process deployments.

    Mirrors the store behaviours the repositories rely on: per-index sequence
    numbers with compare-and-swap writes, create conflicts, aliases, scroll
    cursors that pin the result set at search time, and reindex tasks.
    Scripts are python callables registered by source text.
    """

    def __init__(self, scripts: Optional[Dict[str, ScriptFunc]] = None, auto_create_index: bool = True):
        self._indices: Dict[str, Dict[str, _StoredDocument]] = {}
        self._sequences: Dict[str, int] = {}
        self._aliases: Dict[str, Set[str]] = {}
        self._scrolls: Dict[str, tuple] = {}
        self._tasks: Dict[str, ReindexTaskStatus] = {}
        self._scripts: Dict[str, ScriptFunc] = dict(scripts or {})
        self._auto_create_index = auto_create_index
        self.requests: List[str] = []
        self.primary_term = 1

    def register_script(self, source: str, func: ScriptFunc) -> None:
        self._scripts[source] = func

    # Index resolution

    def _resolve(self, name: str) -> List[str]:
        resolved: List[str] = []
        for part in name.split(","):
            part = part.strip()
            if not part:
                continue
            if any(c in part for c in "*?"):
                resolved.extend(i for i in sorted(self._indices) if fnmatch.fnmatch(i, part))
                for alias, indices in self._aliases.items():
                    if fnmatch.fnmatch(alias, part):
                        resolved.extend(sorted(indices))
            elif part in self._indices:
                resolved.append(part)
            elif part in self._aliases:
                resolved.extend(sorted(self._aliases[part]))
            else:
                raise StoreRequestError(404, INDEX_NOT_FOUND, f"no such index [{part}]")
        return list(dict.fromkeys(resolved))

    def _resolve_write(self, name: str) -> str:
        if name in self._indices:
            return name
        if name in self._aliases:
            indices = self._aliases[name]
            if len(indices) != 1:
                raise StoreRequestError(400, "illegal_argument_exception", f"alias [{name}] has more than one index")
            return next(iter(indices))
        if not self._auto_create_index:
            raise StoreRequestError(404, INDEX_NOT_FOUND, f"no such index [{name}]")
        self._indices[name] = {}
        return name

    def _next_seq(self, index: str) -> int:
        self._sequences[index] = self._sequences.get(index, 0) + 1
        return self._sequences[index]

    def _run_script(self, script: Dict[str, Any], source: Dict[str, Any]) -> None:
        func = self._scripts.get(script.get("source"))
        if func is None:
            raise StoreRequestError(400, "script_exception", f"unknown script [{script.get('source')}]")
        func(source, script.get("params") or {})

    def _hit(self, index: str, id: str, stored: _StoredDocument) -> StoreDocument:
        return StoreDocument(
            id=id,
            index=index,
            source=copy.deepcopy(stored.source),
            seq_no=stored.seq_no,
            primary_term=stored.primary_term,
            routing=stored.routing,
            score=1.0,
        )

    # Documents

    async def get(self, index: str, id: str, routing: Optional[str] = None) -> Optional[StoreDocument]:
        self.requests.append("get")
        try:
            indices = self._resolve(index)
        except StoreRequestError as e:
            if e.is_index_missing:
                return None
            raise
        for name in indices:
            stored = self._indices[name].get(id)
            if stored is not None:
                return self._hit(name, id, stored)
        return None

    async def multi_get(self, index: str, ids: List[str]) -> List[StoreDocument]:
        self.requests.append("mget")
        indices = self._resolve(index)
        results = []
        for id in ids:
            hit = None
            for name in indices:
                stored = self._indices[name].get(id)
                if stored is not None:
                    hit = self._hit(name, id, stored)
                    break
            results.append(hit or StoreDocument(id=id, index=index, found=False))
        return results

    def _write(
        self,
        index: str,
        id: str,
        source: Dict[str, Any],
        op_type: str,
        if_seq_no: Optional[int],
        if_primary_term: Optional[int],
        routing: Optional[str],
    ) -> WriteResult:
        name = self._resolve_write(index)
        existing = self._indices[name].get(id)
        if op_type == "create" and existing is not None:
            raise StoreRequestError(409, VERSION_CONFLICT, f"[{id}]: document already exists")
        if if_seq_no is not None or if_primary_term is not None:
            if existing is None:
                raise StoreRequestError(409, VERSION_CONFLICT, f"[{id}]: document does not exist")
            if existing.seq_no != if_seq_no or existing.primary_term != if_primary_term:
                raise StoreRequestError(
                    409,
                    VERSION_CONFLICT,
                    f"[{id}]: required seqNo [{if_seq_no}], primary term [{if_primary_term}]. "
                    f"current document has seqNo [{existing.seq_no}] and primary term [{existing.primary_term}]",
                )
        seq_no = self._next_seq(name)
        self._indices[name][id] = _StoredDocument(copy.deepcopy(source), seq_no, self.primary_term, routing)
        return WriteResult(id, name, seq_no, self.primary_term, "updated" if existing else "created")

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
        self.requests.append("index")
        return self._write(index, id, source, op_type, if_seq_no, if_primary_term, routing)

    def _update(self, index: str, id: str, doc: Optional[Dict[str, Any]], script: Optional[Dict[str, Any]]) -> WriteResult:
        name = self._resolve_write(index)
        existing = self._indices[name].get(id)
        if existing is None:
            raise StoreRequestError(404, DOCUMENT_MISSING, f"[{id}]: document missing")
        source = copy.deepcopy(existing.source)
        if doc is not None:
            _deep_merge(source, doc)
        if script is not None:
            self._run_script(script, source)
        if source == existing.source:
            return WriteResult(id, name, existing.seq_no, existing.primary_term, "noop")
        seq_no = self._next_seq(name)
        self._indices[name][id] = _StoredDocument(source, seq_no, self.primary_term, existing.routing)
        return WriteResult(id, name, seq_no, self.primary_term, "updated")

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
        self.requests.append("update")
        return self._update(index, id, doc, script)

    def _delete(self, index: str, id: str) -> bool:
        try:
            indices = self._resolve(index)
        except StoreRequestError as e:
            if e.is_index_missing:
                return False
            raise
        for name in indices:
            if self._indices[name].pop(id, None) is not None:
                self._next_seq(name)
                return True
        return False

    async def delete(
        self, index: str, id: str, routing: Optional[str] = None, refresh: Optional[str] = None
    ) -> bool:
        self.requests.append("delete")
        return self._delete(index, id)

    async def bulk(self, operations: List[BulkOperation], refresh: Optional[str] = None) -> List[BulkItemResult]:
        self.requests.append("bulk")
        results = []
        for op in operations:
            try:
                if op.action in ("index", "create"):
                    written = self._write(
                        op.index, op.id, op.source or {}, op.action, op.if_seq_no, op.if_primary_term, op.routing
                    )
                    status = 201 if written.result == "created" else 200
                elif op.action == "update":
                    written = self._update(op.index, op.id, op.doc, op.script)
                    status = 200
                elif op.action == "delete":
                    found = self._delete(op.index, op.id)
                    results.append(BulkItemResult(op.id, op.index, 200 if found else 404))
                    continue
                else:
                    raise StoreRequestError(400, "illegal_argument_exception", f"unknown bulk action [{op.action}]")
                results.append(BulkItemResult(op.id, written.index, status, written.seq_no, written.primary_term))
            except StoreRequestError as e:
                results.append(BulkItemResult(op.id, op.index, e.status, error_type=e.error_type, reason=e.reason))
        return results

    # Queries

    def _matching(self, index: str, query: Optional[RepositoryQuery]) -> List[StoreDocument]:
        hits = []
        for name in self._resolve(index):
            for id, stored in self._indices[name].items():
                if matches(query, id, stored.source):
                    hits.append(self._hit(name, id, stored))

        sort = list(query.sort) if query else []
        hits.sort(key=lambda h: h.id)
        for sort_field in reversed(sort):
            hits.sort(
                key=lambda h: _sort_key(_get_field(h.id, h.source, sort_field.field)),
                reverse=sort_field.descending,
            )
        return hits

    async def search(
        self,
        index: str,
        query: RepositoryQuery,
        size: int = 10,
        from_: int = 0,
        scroll: Optional[int] = None,
    ) -> SearchResponse:
        self.requests.append("search")
        hits = self._matching(index, query)
        if scroll is None:
            return SearchResponse(hits=hits[from_ : from_ + size], total=len(hits))

        scroll_id = uuid.uuid4().hex
        self._scrolls[scroll_id] = (hits[size:], size, len(hits))
        return SearchResponse(hits=hits[:size], total=len(hits), scroll_id=scroll_id)

    async def scroll(self, scroll_id: str, scroll: int) -> SearchResponse:
        self.requests.append("scroll")
        if scroll_id not in self._scrolls:
            raise StoreRequestError(404, SEARCH_CONTEXT_MISSING, f"No search context found for id [{scroll_id}]")
        remaining, size, total = self._scrolls[scroll_id]
        self._scrolls[scroll_id] = (remaining[size:], size, total)
        return SearchResponse(hits=remaining[:size], total=total, scroll_id=scroll_id)

    async def clear_scroll(self, scroll_id: str) -> None:
        self.requests.append("clear_scroll")
        self._scrolls.pop(scroll_id, None)

    @property
    def open_scrolls(self) -> int:
        return len(self._scrolls)

    async def count(self, index: str, query: Optional[RepositoryQuery] = None) -> int:
        self.requests.append("count")
        return len(self._matching(index, query))

    async def delete_by_query(self, index: str, query: RepositoryQuery, refresh: Optional[str] = None) -> int:
        self.requests.append("delete_by_query")
        hits = self._matching(index, query)
        for hit in hits:
            self._indices[hit.index].pop(hit.id, None)
        return len(hits)

    # Indices and aliases

    async def get_aliases(self, index: str) -> List[str]:
        return sorted(alias for alias, indices in self._aliases.items() if index in indices)

    async def get_alias_indices(self, alias: str) -> List[str]:
        return sorted(self._aliases.get(alias, set()))

    async def update_aliases(self, actions: List[Dict[str, Any]]) -> None:
        self.requests.append("update_aliases")
        for action in actions:
            kind, target = next(iter(action.items()))
            if target["index"] not in self._indices:
                raise StoreRequestError(404, INDEX_NOT_FOUND, f"no such index [{target['index']}]")
        for action in actions:
            kind, target = next(iter(action.items()))
            indices = self._aliases.setdefault(target["alias"], set())
            if kind == "add":
                indices.add(target["index"])
            elif kind == "remove":
                indices.discard(target["index"])
            if not indices:
                del self._aliases[target["alias"]]

    async def index_exists(self, index: str) -> bool:
        return index in self._indices or index in self._aliases

    async def create_index(self, index: str, body: Optional[Dict[str, Any]] = None) -> None:
        self.requests.append("create_index")
        if index in self._indices:
            raise StoreRequestError(400, "resource_already_exists_exception", f"index [{index}] already exists")
        self._indices[index] = {}
        for alias in (body or {}).get("aliases", {}):
            self._aliases.setdefault(alias, set()).add(index)

    async def delete_index(self, index: str) -> None:
        self.requests.append("delete_index")
        for name in self._resolve(index):
            del self._indices[name]
            for alias in list(self._aliases):
                self._aliases[alias].discard(name)
                if not self._aliases[alias]:
                    del self._aliases[alias]

    async def refresh(self, index: Optional[str] = None) -> None:
        self.requests.append("refresh")

    # Reindex

    async def start_reindex(
        self,
        source_index: str,
        dest_index: str,
        query: Optional[RepositoryQuery] = None,
        script: Optional[str] = None,
    ) -> str:
        self.requests.append("reindex")
        hits = self._matching(source_index, query)
        status = ReindexTaskStatus(completed=True, total=len(hits))
        for hit in hits:
            source = copy.deepcopy(hit.source)
            try:
                if script:
                    self._run_script({"source": script}, source)
                written = self._write(dest_index, hit.id, source, "index", None, None, hit.routing)
            except StoreRequestError as e:
                status.failures.append(
                    {"index": dest_index, "id": hit.id, "status": e.status, "cause": {"type": e.error_type, "reason": e.reason}}
                )
                continue
            if written.result == "created":
                status.created += 1
            else:
                status.updated += 1

        task_id = f"memory:{len(self._tasks) + 1}"
        self._tasks[task_id] = status
        logger.debug(f"Reindexed {status.total} documents from {source_index} to {dest_index} ({task_id})")
        return task_id

    async def get_reindex_task(self, task_id: str) -> ReindexTaskStatus:
        if task_id not in self._tasks:
            raise StoreRequestError(404, "resource_not_found_exception", f"task [{task_id}] isn't running")
        return self._tasks[task_id]

    # Inspection helpers for tests

    def documents(self, index: str) -> Dict[str, Dict[str, Any]]:
        documents = {}
        for name in self._resolve(index):
            for id, stored in self._indices[name].items():
                documents[id] = copy.deepcopy(stored.source)
        return documents


def _deep_merge(target: Dict[str, Any], patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def _sort_key(value: Any):
    moment = _as_datetime(value) if isinstance(value, str) else None
    if moment is not None:
        return (0, moment.timestamp())
    if value is None:
        return (1, 0)
    if isinstance(value, (int, float)):
        return (0, value)
    return (0, str(value))
