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
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from docrepo.models.document import new_document_id
from docrepo.reindex.reindexer import ProgressCallback, Reindexer
from docrepo.reindex.work_item import ReindexWorkItem
from docrepo.store.base import SearchStore, StoreRequestError

logger = logging.getLogger(__name__)


class Index:
    """
    Where documents of one entity type live.

    The plain index stores everything in a single physical index named
    ``name``. Subclasses map documents to versioned or date-sharded
    physical indices.
    """

    def __init__(
        self,
        store: SearchStore,
        name: str,
        body: Optional[Dict[str, Any]] = None,
        parent_field: Optional[str] = None,
        timestamp_field: str = "updated_utc",
    ):
        if not name:
            raise ValueError("Index name is required")
        self.store = store
        self.name = name
        self.body = body or {}
        self.parent_field = parent_field
        self.timestamp_field = timestamp_field
        self._ensured: Set[str] = set()

    @property
    def has_parent(self) -> bool:
        """Child documents are routed by their parent id, so reads by id need a query"""
        return self.parent_field is not None

    @property
    def has_multiple_indexes(self) -> bool:
        return False

    def get_index(self, document: Any = None) -> str:
        """Physical (or alias) name a document is written to"""
        return self.name

    def get_read_index(self) -> str:
        return self.name

    def get_parent_id(self, document: Any) -> Optional[str]:
        if self.parent_field is None or document is None:
            return None
        return getattr(document, self.parent_field, None)

    def create_document_id(self, document: Any) -> str:
        return new_document_id()

    async def ensure_index(self, document: Any = None) -> None:
        """Create the physical index a document targets, once per process"""
        name = self.get_index(document)
        if name in self._ensured:
            return
        await self._create_if_missing(name, self.body)
        self._ensured.add(name)

    async def _create_if_missing(self, name: str, body: Dict[str, Any]) -> None:
        if await self.store.index_exists(name):
            return
        try:
            await self.store.create_index(name, body)
            logger.info(f"Created index {name}")
        except StoreRequestError as e:
            # Another process created it first
            if e.error_type != "resource_already_exists_exception":
                raise

    async def configure(self) -> None:
        await self.ensure_index()

    async def delete(self) -> None:
        if await self.store.index_exists(self.name):
            await self.store.delete_index(self.name)
        self._ensured.clear()

    async def reindex(self, reindexer: Optional[Reindexer] = None, progress_callback: ProgressCallback = None) -> None:
        """Plain indices have a single generation, so there is nothing to migrate"""


class VersionedIndex(Index):
    """
    Documents live in ``{name}-v{version}`` and are addressed through the
    ``name`` alias. Bumping the version creates a new physical index which
    ``reindex`` fills and then swaps the alias to.
    """

    def __init__(self, store: SearchStore, name: str, version: int = 1, discard_on_reindex: bool = True, **kwargs):
        super().__init__(store, name, **kwargs)
        self.version = version
        self.versioned_name = f"{name}-v{version}"
        self.discard_on_reindex = discard_on_reindex
        self._reindex_scripts: List[tuple] = []

    def add_reindex_script(self, version: int, script: str) -> None:
        self._reindex_scripts.append((version, script))

    async def ensure_index(self, document: Any = None) -> None:
        if self.versioned_name in self._ensured:
            return
        await self.configure()
        self._ensured.add(self.versioned_name)

    async def configure(self) -> None:
        if await self.store.index_exists(self.versioned_name):
            return
        body = dict(self.body)
        if not await self.store.get_alias_indices(self.name):
            body["aliases"] = {self.name: {}}
        # A new version of an existing index gets its alias during reindex
        await self._create_if_missing(self.versioned_name, body)

    def get_index_version(self, index_name: str) -> int:
        prefix = f"{self.name}-v"
        if not index_name.startswith(prefix) or len(index_name) <= len(prefix):
            return -1
        version = index_name[len(prefix):].split("-", 1)[0]
        return int(version) if version.isdigit() else -1

    async def get_current_version(self) -> int:
        """Oldest version behind the alias, or the configured version if there is none"""
        versions = [self.get_index_version(i) for i in await self.store.get_alias_indices(self.name)]
        versions = [v for v in versions if v >= 0]
        if versions:
            return min(versions)
        return self.version

    def _reindex_script(self, current_version: int) -> Optional[str]:
        scripts = sorted(
            (s for s in self._reindex_scripts if current_version < s[0] <= self.version), key=lambda s: s[0]
        )
        if not scripts:
            return None
        return " ".join(script for _, script in scripts)

    def create_reindex_work_item(self, current_version: int) -> ReindexWorkItem:
        old_index = f"{self.name}-v{current_version}"
        return ReindexWorkItem(
            old_index=old_index,
            new_index=self.versioned_name,
            alias=self.name,
            script=self._reindex_script(current_version),
            timestamp_field=self.timestamp_field,
            delete_old=self.discard_on_reindex and old_index != self.versioned_name,
        )

    async def reindex(self, reindexer: Optional[Reindexer] = None, progress_callback: ProgressCallback = None) -> None:
        current_version = await self.get_current_version()
        if current_version < 0 or current_version >= self.version:
            return
        await self.configure()
        work_item = self.create_reindex_work_item(current_version)
        await (reindexer or Reindexer(self.store)).reindex(work_item, progress_callback)

    async def delete(self) -> None:
        current_version = await self.get_current_version()
        names = [self.versioned_name, f"{self.versioned_name}-error"]
        if current_version != self.version:
            names += [f"{self.name}-v{current_version}", f"{self.name}-v{current_version}-error"]
        for name in names:
            if await self.store.index_exists(name):
                await self.store.delete_index(name)
        self._ensured.clear()


class DailyIndex(VersionedIndex):
    """
    Date-sharded index: one physical index per day, named
    ``{name}-v{version}-YYYY.MM.DD``, all joined under the ``name`` alias.
    Document ids do not determine the physical index, so id reads use a query.
    """

    def __init__(self, store: SearchStore, name: str, version: int = 1, date_field: str = "created_utc", **kwargs):
        super().__init__(store, name, version=version, **kwargs)
        self.date_field = date_field

    @property
    def has_multiple_indexes(self) -> bool:
        return True

    def get_document_date(self, document: Any) -> datetime:
        value = getattr(document, self.date_field, None) if document is not None else None
        if value is None:
            return datetime.now(timezone.utc)
        return value

    def get_index_by_date(self, date: datetime) -> str:
        return f"{self.versioned_name}-{date:%Y.%m.%d}"

    def get_index(self, document: Any = None) -> str:
        return self.get_index_by_date(self.get_document_date(document))

    def get_read_index(self) -> str:
        return self.name

    async def configure(self) -> None:
        """Daily indices are created on first write"""

    async def ensure_index(self, document: Any = None) -> None:
        name = self.get_index(document)
        if name in self._ensured:
            return
        body = dict(self.body)
        body["aliases"] = {self.name: {}}
        await self._create_if_missing(name, body)
        self._ensured.add(name)

    async def reindex(self, reindexer: Optional[Reindexer] = None, progress_callback: ProgressCallback = None) -> None:
        """Old daily generations age out instead of being migrated"""

    async def delete(self) -> None:
        for name in await self.store.get_alias_indices(self.name):
            await self.store.delete_index(name)
        self._ensured.clear()
