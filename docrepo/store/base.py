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
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from docrepo.models.version import EMPTY, VersionStamp
from docrepo.queries import RepositoryQuery

INDEX_NOT_FOUND = "index_not_found_exception"
VERSION_CONFLICT = "version_conflict_engine_exception"
DOCUMENT_MISSING = "document_missing_exception"
SEARCH_CONTEXT_MISSING = "search_context_missing_exception"


class StoreRequestError(Exception):
    """A failed store response, with the HTTP-like status and the store's error type"""

    def __init__(self, status: int, error_type: str, reason: str = "", request: Optional[dict] = None):
        super().__init__(f"[{status}] {error_type}: {reason}" if reason else f"[{status}] {error_type}")
        self.status = status
        self.error_type = error_type
        self.reason = reason
        self.request = request or {}

    @property
    def is_index_missing(self) -> bool:
        return self.status == 404 and self.error_type == INDEX_NOT_FOUND

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


@dataclass
class StoreDocument:
    id: str
    index: str
    source: Optional[Dict[str, Any]] = None
    seq_no: int = 0
    primary_term: int = 0
    found: bool = True
    routing: Optional[str] = None
    score: Optional[float] = None

    @property
    def version(self) -> VersionStamp:
        if not self.found:
            return EMPTY
        return VersionStamp(self.seq_no, self.primary_term)


@dataclass
class WriteResult:
    id: str
    index: str
    seq_no: int
    primary_term: int
    result: str = "updated"

    @property
    def version(self) -> VersionStamp:
        return VersionStamp(self.seq_no, self.primary_term)


@dataclass
class SearchResponse:
    hits: List[StoreDocument] = field(default_factory=list)
    total: int = 0
    scroll_id: Optional[str] = None
    aggregations: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BulkOperation:
    """
    One line of a bulk request.

    ``action`` is one of "index", "create", "update" or "delete". Updates carry
    either ``doc`` (partial merge) or ``script``.
    """

    action: str
    index: str
    id: str
    source: Optional[Dict[str, Any]] = None
    if_seq_no: Optional[int] = None
    if_primary_term: Optional[int] = None
    routing: Optional[str] = None
    doc: Optional[Dict[str, Any]] = None
    script: Optional[Dict[str, Any]] = None
    retry_on_conflict: Optional[int] = None


@dataclass
class BulkItemResult:
    id: str
    index: str
    status: int
    seq_no: int = 0
    primary_term: int = 0
    error_type: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def version(self) -> VersionStamp:
        return VersionStamp(self.seq_no, self.primary_term)


@dataclass
class ReindexTaskStatus:
    completed: bool
    total: int = 0
    created: int = 0
    updated: int = 0
    noops: int = 0
    version_conflicts: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


class SearchStore(ABC):
    """
    Boundary to the search/index store.

    Adapters raise ``StoreRequestError`` for failed responses, except where a
    method documents a normalized result (missing documents on get/delete).
    """

    # Documents

    @abstractmethod
    async def get(self, index: str, id: str, routing: Optional[str] = None) -> Optional[StoreDocument]:
        """Return the document, or None if it (or its index) does not exist"""

    @abstractmethod
    async def multi_get(self, index: str, ids: List[str]) -> List[StoreDocument]:
        """Return one entry per id; missing documents come back with found=False"""

    @abstractmethod
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
        pass

    @abstractmethod
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
        pass

    @abstractmethod
    async def delete(
        self, index: str, id: str, routing: Optional[str] = None, refresh: Optional[str] = None
    ) -> bool:
        """Delete a document. Returns False if it did not exist."""

    @abstractmethod
    async def bulk(self, operations: List[BulkOperation], refresh: Optional[str] = None) -> List[BulkItemResult]:
        pass

    # Queries

    @abstractmethod
    async def search(
        self,
        index: str,
        query: RepositoryQuery,
        size: int = 10,
        from_: int = 0,
        scroll: Optional[int] = None,
    ) -> SearchResponse:
        """Run a query. ``scroll`` opens a cursor kept alive for that many seconds."""

    @abstractmethod
    async def scroll(self, scroll_id: str, scroll: int) -> SearchResponse:
        pass

    @abstractmethod
    async def clear_scroll(self, scroll_id: str) -> None:
        pass

    @abstractmethod
    async def count(self, index: str, query: Optional[RepositoryQuery] = None) -> int:
        pass

    @abstractmethod
    async def delete_by_query(self, index: str, query: RepositoryQuery, refresh: Optional[str] = None) -> int:
        """Delete every match and return the number of deleted documents"""

    # Indices and aliases

    @abstractmethod
    async def get_aliases(self, index: str) -> List[str]:
        """Aliases currently pointing at ``index``"""

    @abstractmethod
    async def get_alias_indices(self, alias: str) -> List[str]:
        """Physical indices behind ``alias``; empty if the alias does not exist"""

    @abstractmethod
    async def update_aliases(self, actions: List[Dict[str, Any]]) -> None:
        """Apply alias add/remove actions atomically"""

    @abstractmethod
    async def index_exists(self, index: str) -> bool:
        pass

    @abstractmethod
    async def create_index(self, index: str, body: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abstractmethod
    async def delete_index(self, index: str) -> None:
        pass

    @abstractmethod
    async def refresh(self, index: Optional[str] = None) -> None:
        pass

    # Reindex

    @abstractmethod
    async def start_reindex(
        self,
        source_index: str,
        dest_index: str,
        query: Optional[RepositoryQuery] = None,
        script: Optional[str] = None,
    ) -> str:
        """Start a server-side copy (conflicts proceed, destination overwritten). Returns a task id."""

    @abstractmethod
    async def get_reindex_task(self, task_id: str) -> ReindexTaskStatus:
        pass
