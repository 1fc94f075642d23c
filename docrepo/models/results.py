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

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel

from docrepo.models.document import from_source, to_source
from docrepo.models.version import EMPTY, VersionStamp

T = TypeVar("T", bound=BaseModel)


@dataclass
class FindHit(Generic[T]):
    """A single search hit. A hit without a document is a cached "not found" marker."""

    id: Optional[str]
    document: Optional[T] = None
    version: VersionStamp = EMPTY
    index: Optional[str] = None
    routing: Optional[str] = None
    score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": to_source(self.document) if self.document is not None else None,
            "version": str(self.version),
            "index": self.index,
            "routing": self.routing,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], document_type: Type[T]) -> "FindHit[T]":
        version = VersionStamp.parse(data.get("version"))
        document = None
        if data.get("source") is not None:
            document = from_source(document_type, data["source"], data.get("id"), version)
        return cls(
            id=data.get("id"),
            document=document,
            version=version,
            index=data.get("index"),
            routing=data.get("routing"),
            score=data.get("score"),
        )


@dataclass
class ContinuationToken:
    """Where the next page comes from: an open server-side cursor or the next page number"""

    scroll_id: Optional[str] = None
    page: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {"scroll_id": self.scroll_id, "page": self.page}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ContinuationToken":
        if not data:
            return cls()
        return cls(scroll_id=data.get("scroll_id"), page=data.get("page", 1))


@dataclass
class CountResult:
    total: int = 0
    aggregations: Dict[str, Any] = field(default_factory=dict)


class FindResults(Generic[T]):
    """
    A page of hits plus the token needed to fetch the following page.

    ``has_more`` is true whenever the page came back full, so the final page
    may report more results once before ``next_page`` returns False.
    """

    def __init__(
        self,
        hits: Optional[List[FindHit[T]]] = None,
        total: int = 0,
        page: int = 1,
        has_more: bool = False,
        token: Optional[ContinuationToken] = None,
        aggregations: Optional[Dict[str, Any]] = None,
    ):
        self.hits = hits or []
        self.total = total
        self.page = page
        self.has_more = has_more
        self.token = token or ContinuationToken(page=page)
        self.aggregations = aggregations or {}
        self._fetch_next: Optional[Callable[["FindResults[T]"], Awaitable["FindResults[T]"]]] = None

    @property
    def documents(self) -> List[T]:
        return [hit.document for hit in self.hits if hit.document is not None]

    def bind(self, fetch_next: Callable[["FindResults[T]"], Awaitable["FindResults[T]"]]) -> "FindResults[T]":
        self._fetch_next = fetch_next
        return self

    def _clear(self) -> None:
        self.hits = []
        self.has_more = False

    async def next_page(self) -> bool:
        """Replace this page with the next one. Returns False once there is nothing left."""
        if not self.has_more or self._fetch_next is None:
            self._clear()
            return False

        results = await self._fetch_next(self)
        self.hits = results.hits
        self.total = results.total
        self.page = results.page
        self.has_more = results.has_more
        self.token = results.token
        self.aggregations = results.aggregations
        if not self.hits:
            self.has_more = False
            return False
        return True

    def to_cache(self) -> Dict[str, Any]:
        # The bound fetch callable never crosses the cache boundary, only the token does
        return {
            "hits": [hit.to_dict() for hit in self.hits],
            "total": self.total,
            "page": self.page,
            "has_more": self.has_more,
            "token": self.token.to_dict(),
            "aggregations": self.aggregations,
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any], document_type: Type[T]) -> "FindResults[T]":
        return cls(
            hits=[FindHit.from_dict(hit, document_type) for hit in data.get("hits", [])],
            total=data.get("total", 0),
            page=data.get("page", 1),
            has_more=data.get("has_more", False),
            token=ContinuationToken.from_dict(data.get("token")),
            aggregations=data.get("aggregations"),
        )
