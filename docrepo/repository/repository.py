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

import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type, Union

import jsonpatch
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from docrepo.cache.base import CacheClient
from docrepo.config import settings
from docrepo.exceptions import (
    DocumentError,
    DocumentNotFoundError,
    DocumentValidationError,
    DuplicateDocumentError,
    InputError,
    VersionConflictError,
)
from docrepo.index.configuration import Index
from docrepo.messaging import MessagePublisher
from docrepo.models.document import ModifiedDocument, get_id, to_source, utc_now
from docrepo.models.events import (
    AsyncEvent,
    BeforePublishEntityChangedEventArgs,
    ChangeType,
    DocumentsChangeEventArgs,
    DocumentsEventArgs,
    EntityChanged,
    ModifiedDocumentsEventArgs,
)
from docrepo.models.options import CommandOptions, SoftDeleteMode, resolve_options
from docrepo.models.patch import JsonPatch, PatchOperation, ScriptPatch, check_patch
from docrepo.models.results import FindResults
from docrepo.models.version import EMPTY, VersionStamp
from docrepo.queries import RepositoryQuery
from docrepo.repository.batch import BatchHandler, BatchProcessor
from docrepo.repository.read_only import DELETED_IDS_KEY, ReadOnlyRepository, T
from docrepo.store.base import BulkItemResult, BulkOperation, StoreRequestError

logger = logging.getLogger(__name__)

# Bulk item statuses worth sending again
RETRYABLE_STATUSES = (429, 503)

Validator = Callable[[Any], Any]


class _RetryableBulkItems(Exception):
    def __init__(self, documents: List[Any], results: List[BulkItemResult]):
        super().__init__(f"{len(documents)} bulk items were rejected")
        self.documents = documents
        self.results = results


class Repository(ReadOnlyRepository[T]):
    """
    Read/write repository for one entity type.

    Every write runs the same pipeline: input checks, pre-write events,
    validation, the store write, post-write events and finally change
    notifications. Pre-write handler errors abort the write, post-write
    handler errors are logged.
    """

    def __init__(
        self,
        document_type: Type[T],
        index: Index,
        cache: Optional[CacheClient] = None,
        publisher: Optional[MessagePublisher] = None,
        validator: Optional[Validator] = None,
        system_filter: Optional[RepositoryQuery] = None,
    ):
        super().__init__(document_type, index, cache=cache, system_filter=system_filter)
        self.publisher = publisher
        self.validator = validator
        self.notification_delay = settings.notification_delay

        self.documents_adding = AsyncEvent()
        self.documents_added = AsyncEvent()
        self.documents_saving = AsyncEvent()
        self.documents_saved = AsyncEvent()
        self.documents_removing = AsyncEvent()
        self.documents_removed = AsyncEvent()
        self.documents_changing = AsyncEvent()
        self.documents_changed = AsyncEvent()
        self.before_publish_entity_changed = AsyncEvent()

    # Add

    async def add(
        self, documents: Union[T, Iterable[T]], options: Optional[CommandOptions] = None
    ) -> Union[T, List[T]]:
        """
        Create new documents.

        Ids are assigned when missing and every versioned document comes back
        with the version the store assigned.

        Raises:
            InputError: No documents, or a None document
            DocumentValidationError: The validator rejected a document
            DuplicateDocumentError: A document with the same id already exists
        """
        single = isinstance(documents, BaseModel)
        documents = self._as_list(documents)
        options = resolve_options(options)

        await self._on_documents_adding(documents, options)
        if options.validation:
            await self._validate(documents)

        succeeded, error = await self._index_documents(documents, is_create=True, options=options)
        if succeeded:
            await self.invalidate_cache(succeeded)
            if options.use_cache:
                await self._add_to_cache(succeeded, options)
            await self._on_documents_added(succeeded, options)

        if error is not None and not options.tolerate_partial_failure:
            raise error
        return documents[0] if single else documents

    async def _on_documents_adding(self, documents: List[T], options: CommandOptions) -> None:
        now = utc_now()
        for document in documents:
            if self.capabilities.has_identity and not get_id(document):
                document.id = self.index.create_document_id(document)
            if self.capabilities.has_dates:
                if document.created_utc is None or document.created_utc > now:
                    document.created_utc = now
                document.updated_utc = now
            if self.capabilities.is_versioned:
                document.version = EMPTY

        if self.documents_adding.has_handlers:
            await self.documents_adding.invoke(self, DocumentsEventArgs(documents, self, options))
        if self.documents_changing.has_handlers:
            await self.documents_changing.invoke(
                self,
                DocumentsChangeEventArgs(ChangeType.ADDED, [ModifiedDocument(d) for d in documents], self, options),
            )

    async def _on_documents_added(self, documents: List[T], options: CommandOptions) -> None:
        await self._invoke_post_event(self.documents_added, DocumentsEventArgs(documents, self, options))
        await self._invoke_post_event(
            self.documents_changed,
            DocumentsChangeEventArgs(ChangeType.ADDED, [ModifiedDocument(d) for d in documents], self, options),
        )
        await self._send_notifications(ChangeType.ADDED, [ModifiedDocument(d) for d in documents], options)

    # Save

    async def save(
        self, documents: Union[T, Iterable[T]], options: Optional[CommandOptions] = None
    ) -> Union[T, List[T]]:
        """
        Write changes to existing documents, guarded by each document's version.

        Documents that do not exist yet are added. When some documents in a
        bulk conflict, the others are still committed and post-processed
        before the collected error is raised.

        Args:
            documents: Documents with ids already assigned
            options: ``tolerate_partial_failure`` suppresses the collected error

        Raises:
            InputError: No documents, or a document without an id
            VersionConflictError: A document's version is stale
        """
        single = isinstance(documents, BaseModel)
        documents = self._as_list(documents)
        if any(not get_id(document) for document in documents):
            raise InputError("Id must be set when calling save")
        options = resolve_options(options)

        originals = await self._get_originals([get_id(d) for d in documents], options)
        to_add = [d for d in documents if get_id(d) not in originals]
        if to_add:
            await self.add(to_add, options)

        modified = [ModifiedDocument(d, originals[get_id(d)]) for d in documents if get_id(d) in originals]
        if not modified:
            return documents[0] if single else documents

        await self.invalidate_cache(modified, options)
        await self._on_documents_saving(modified, options)
        values = [m.value for m in modified]
        if options.validation:
            await self._validate(values)

        succeeded, error = await self._index_documents(values, is_create=False, options=options)
        succeeded_ids = {get_id(d) for d in succeeded}
        committed = [m for m in modified if get_id(m.value) in succeeded_ids]
        if committed:
            if options.use_cache:
                await self._add_to_cache([m.value for m in committed], options)
            await self._on_documents_saved(committed, options)

        if error is not None and not options.tolerate_partial_failure:
            raise error
        return documents[0] if single else documents

    async def _get_originals(self, ids: List[str], options: CommandOptions) -> Dict[str, T]:
        originals = await self.get_by_ids(
            ids,
            options.clone(use_cache=self.is_cache_enabled, soft_delete_mode=SoftDeleteMode.ALL, cache_key=None),
        )
        return {get_id(d): d for d in originals}

    async def _on_documents_saving(self, documents: List[ModifiedDocument], options: CommandOptions) -> None:
        now = utc_now()
        if self.capabilities.has_dates:
            for m in documents:
                if m.value.created_utc is None and m.original is not None:
                    m.value.created_utc = m.original.created_utc
                if m.value.created_utc is None or m.value.created_utc > now:
                    m.value.created_utc = now
                m.value.updated_utc = now

        if self.documents_saving.has_handlers:
            await self.documents_saving.invoke(self, ModifiedDocumentsEventArgs(documents, self, options))
        if self.documents_changing.has_handlers:
            await self.documents_changing.invoke(
                self, DocumentsChangeEventArgs(ChangeType.SAVED, documents, self, options)
            )

    async def _on_documents_saved(self, documents: List[ModifiedDocument], options: CommandOptions) -> None:
        if self.capabilities.supports_soft_deletes and self.is_cache_enabled:
            deleted_ids = [get_id(m.value) for m in documents if self._is_soft_delete(m)]
            restored_ids = [get_id(m.value) for m in documents if self._is_restore(m)]
            if deleted_ids:
                await self.cache.set_add(DELETED_IDS_KEY, deleted_ids, settings.deleted_ids_expiration)
            if restored_ids:
                await self.cache.set_remove(DELETED_IDS_KEY, restored_ids)

        await self._invoke_post_event(self.documents_saved, ModifiedDocumentsEventArgs(documents, self, options))
        await self._invoke_post_event(
            self.documents_changed, DocumentsChangeEventArgs(ChangeType.SAVED, documents, self, options)
        )
        await self._send_notifications(ChangeType.SAVED, documents, options)

    def _is_soft_delete(self, document: ModifiedDocument) -> bool:
        if not self.capabilities.supports_soft_deletes or not document.value.is_deleted:
            return False
        return document.original is None or not document.original.is_deleted

    def _is_restore(self, document: ModifiedDocument) -> bool:
        if not self.capabilities.supports_soft_deletes or document.value.is_deleted:
            return False
        return document.original is not None and document.original.is_deleted

    # Physical writes

    async def _ensure_indexes(self, documents: List[T]) -> None:
        if not self.index.has_multiple_indexes:
            await self.index.ensure_index()
            return
        ensured = set()
        for document in documents:
            name = self.index.get_index(document)
            if name not in ensured:
                await self.index.ensure_index(document)
                ensured.add(name)

    def _write_precondition(self, document: T, is_create: bool, options: CommandOptions) -> Dict[str, int]:
        if is_create or not self.capabilities.is_versioned or options.skip_version_check:
            return {}
        version: VersionStamp = document.version
        if version.is_empty:
            return {}
        return {"if_seq_no": version.sequence_number, "if_primary_term": version.primary_term}

    async def _index_documents(
        self, documents: List[T], is_create: bool, options: CommandOptions
    ) -> Tuple[List[T], Optional[DocumentError]]:
        """
        Write documents to their physical indices.

        Returns:
            The documents that were written, and the error describing the ones
            that were not (None when everything succeeded)
        """
        await self._ensure_indexes(documents)
        action = "create" if is_create else "index"
        refresh = options.consistency.refresh

        if len(documents) == 1:
            document = documents[0]
            id = get_id(document)
            try:
                result = await self.store.index(
                    self.index.get_index(document),
                    id,
                    to_source(document),
                    op_type=action,
                    routing=self.index.get_parent_id(document),
                    refresh=refresh,
                    **self._write_precondition(document, is_create, options),
                )
            except StoreRequestError as e:
                if e.is_conflict and is_create:
                    raise DuplicateDocumentError([id], e.request) from e
                if e.is_conflict:
                    raise VersionConflictError([id], e.request) from e
                raise DocumentError(f"Error writing {self.entity_type_name} {id}: {e.reason}", e.request) from e
            if self.capabilities.is_versioned:
                document.version = result.version
            return documents, None

        succeeded: List[T] = []
        failures: Dict[str, BulkItemResult] = {}
        pending = list(documents)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(settings.bulk_retry_attempts),
                wait=wait_exponential(multiplier=0.1, max=settings.bulk_retry_max_wait),
                retry=retry_if_exception_type(_RetryableBulkItems),
                reraise=True,
            ):
                with attempt:
                    await self._bulk_write(pending, action, is_create, options, refresh, succeeded, failures)
        except _RetryableBulkItems as e:
            logger.warning(f"Giving up on {len(e.documents)} rejected {self.entity_type_name} bulk items")
            for document, item in zip(e.documents, e.results):
                failures[get_id(document)] = item

        if not failures:
            return succeeded, None
        return succeeded, self._bulk_error(failures, is_create)

    async def _bulk_write(
        self,
        documents: List[T],
        action: str,
        is_create: bool,
        options: CommandOptions,
        refresh: Optional[str],
        succeeded: List[T],
        failures: Dict[str, BulkItemResult],
    ) -> None:
        """Write one bulk. Rejected documents are left in ``documents`` for the next attempt."""
        operations = []
        for document in documents:
            precondition = self._write_precondition(document, is_create, options)
            operations.append(
                BulkOperation(
                    action=action,
                    index=self.index.get_index(document),
                    id=get_id(document),
                    source=to_source(document),
                    routing=self.index.get_parent_id(document),
                    if_seq_no=precondition.get("if_seq_no"),
                    if_primary_term=precondition.get("if_primary_term"),
                )
            )
        try:
            results = await self.store.bulk(operations, refresh=refresh)
        except StoreRequestError as e:
            raise DocumentError(f"Error writing {self.entity_type_name} documents: {e.reason}", e.request) from e

        rejected, rejected_results = [], []
        for document, item in zip(documents, results):
            if item.ok:
                if self.capabilities.is_versioned:
                    document.version = item.version
                succeeded.append(document)
            elif item.status in RETRYABLE_STATUSES:
                rejected.append(document)
                rejected_results.append(item)
            else:
                failures[get_id(document)] = item
        documents[:] = rejected
        if rejected:
            raise _RetryableBulkItems(list(rejected), rejected_results)

    def _bulk_error(self, failures: Dict[str, BulkItemResult], is_create: bool) -> DocumentError:
        conflicts = [id for id, item in failures.items() if item.status == 409]
        request = {"method": "bulk", "failures": {id: f"[{item.status}] {item.reason}" for id, item in failures.items()}}
        if conflicts and len(conflicts) == len(failures):
            if is_create:
                return DuplicateDocumentError(conflicts, request)
            return VersionConflictError(conflicts, request)
        details = ", ".join(f"{id} [{item.status}] {item.error_type}: {item.reason}" for id, item in failures.items())
        return DocumentError(f"Error writing {self.entity_type_name} documents: {details}", request)

    # Patch

    async def patch(
        self, ids: Union[str, Iterable[str]], operation: PatchOperation, options: Optional[CommandOptions] = None
    ) -> None:
        """
        Apply a partial change to one or more documents without loading them first.

        Args:
            ids: A single id or several ids
            operation: ScriptPatch, JsonPatch or MergePatch

        Raises:
            DocumentNotFoundError: A single patched document does not exist
        """
        ids = [ids] if isinstance(ids, str) else list(ids or [])
        ids = list(dict.fromkeys(id for id in ids if id))
        if not ids:
            raise InputError("At least one id is required")
        check_patch(operation)
        options = resolve_options(options)

        if len(ids) == 1:
            await self._patch_one(ids[0], operation, options)
        elif isinstance(operation, JsonPatch):
            await self.patch_all(RepositoryQuery().id(*ids), operation, options.clone(soft_delete_mode=SoftDeleteMode.ALL))
            return
        else:
            try:
                await self._patch_many(ids, operation, options)
            except DocumentError:
                # Part of the bulk may have been applied
                await self.invalidate_cache(ids, options)
                raise

        await self._invoke_post_event(
            self.documents_changed, DocumentsChangeEventArgs(ChangeType.SAVED, [], self, options)
        )
        await self.invalidate_cache(ids, options)
        await self._send_notifications(ChangeType.SAVED, ids, options)

    async def _locate(self, id: str, options: CommandOptions) -> Tuple[str, Optional[str]]:
        """Physical index and routing of a stored document"""
        if not self.index.has_parent and not self.index.has_multiple_indexes:
            return self.index.get_index(), None
        hit = await self._find_hit_by_id(id, options)
        if hit is None:
            raise DocumentNotFoundError(id)
        return hit.index, hit.routing

    def _update_body(self, operation: PatchOperation) -> Dict[str, Any]:
        if isinstance(operation, ScriptPatch):
            return {"script": {"source": operation.script, "params": dict(operation.params)}}
        return {"doc": dict(operation.fields)}

    async def _patch_one(self, id: str, operation: PatchOperation, options: CommandOptions) -> None:
        if not self.index.has_multiple_indexes:
            await self.index.ensure_index()

        if isinstance(operation, JsonPatch):
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(options.retry_count or settings.patch_retry_attempts),
                wait=wait_exponential(multiplier=0.05, max=1),
                retry=retry_if_exception_type(VersionConflictError),
                reraise=True,
            ):
                with attempt:
                    await self._json_patch_one(id, operation, options)
            return

        index, routing = await self._locate(id, options)
        try:
            await self.store.update(
                index,
                id,
                retry_on_conflict=options.retry_count or settings.patch_retry_attempts,
                routing=routing,
                refresh=options.consistency.refresh,
                **self._update_body(operation),
            )
        except StoreRequestError as e:
            if e.is_not_found:
                raise DocumentNotFoundError(id, e.request) from e
            raise DocumentError(f"Error patching {self.entity_type_name} {id}: {e.reason}", e.request) from e

    async def _json_patch_one(self, id: str, operation: JsonPatch, options: CommandOptions) -> None:
        index, routing = await self._locate(id, options)
        try:
            stored = await self.store.get(index, id, routing=routing)
        except StoreRequestError as e:
            raise DocumentError(f"Error getting {self.entity_type_name} {id}: {e.reason}", e.request) from e
        if stored is None:
            raise DocumentNotFoundError(id)

        patched = self._apply_json_patch(id, stored.source or {}, operation)
        try:
            await self.store.index(
                stored.index,
                id,
                patched,
                if_seq_no=stored.seq_no,
                if_primary_term=stored.primary_term,
                routing=routing,
                refresh=options.consistency.refresh,
            )
        except StoreRequestError as e:
            if e.is_conflict:
                logger.debug(f"Version conflict patching {self.entity_type_name} {id}, retrying")
                raise VersionConflictError([id], e.request) from e
            raise DocumentError(f"Error patching {self.entity_type_name} {id}: {e.reason}", e.request) from e

    def _apply_json_patch(self, id: str, source: Dict[str, Any], operation: JsonPatch) -> Dict[str, Any]:
        try:
            return jsonpatch.apply_patch(source, operation.operations)
        except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as e:
            raise DocumentError(f"Unable to apply patch to {self.entity_type_name} {id}: {e}") from e

    async def _patch_many(self, ids: List[str], operation: PatchOperation, options: CommandOptions) -> None:
        if not self.index.has_multiple_indexes:
            await self.index.ensure_index()
        body = self._update_body(operation)
        retry_on_conflict = options.retry_count or settings.patch_retry_attempts

        operations = []
        if self.index.has_parent or self.index.has_multiple_indexes:
            hits = await self._lookup_hits(ids, options)
            missing = [id for id in ids if id not in hits]
            if missing:
                raise DocumentError(f"Unable to patch {self.entity_type_name} documents, not found: {', '.join(missing)}")
            for id in ids:
                operations.append(
                    BulkOperation(
                        "update", hits[id].index, id, routing=hits[id].routing, retry_on_conflict=retry_on_conflict, **body
                    )
                )
        else:
            for id in ids:
                operations.append(
                    BulkOperation("update", self.index.get_index(), id, retry_on_conflict=retry_on_conflict, **body)
                )

        results = await self._bulk(operations, options)
        errors = [item for item in results if not item.ok]
        if errors:
            details = ", ".join(f"{item.id} [{item.status}] {item.reason}" for item in errors)
            raise DocumentError(f"Error patching {self.entity_type_name} documents: {details}", {"method": "bulk"})

    async def _bulk(self, operations: List[BulkOperation], options: CommandOptions) -> List[BulkItemResult]:
        try:
            return await self.store.bulk(operations, refresh=options.consistency.refresh)
        except StoreRequestError as e:
            raise DocumentError(f"Bulk request for {self.entity_type_name} failed: {e.reason}", e.request) from e

    async def patch_all(
        self, query: Optional[RepositoryQuery], operation: PatchOperation, options: Optional[CommandOptions] = None
    ) -> int:
        """
        Patch every document matching ``query``, one page at a time.

        Args:
            query: Documents to patch; None patches everything
            operation: ScriptPatch, JsonPatch or MergePatch
            options: ``updated_ids_callback`` is called with the ids of each patched page

        Returns:
            Number of documents patched
        """
        check_patch(operation)
        options = resolve_options(options)
        if not self.index.has_multiple_indexes:
            await self.index.ensure_index()

        patched = 0

        async def patch_page(results: FindResults[T]) -> bool:
            nonlocal patched
            operations = [self._page_operation(hit, operation, options) for hit in results.hits]
            items = await self._bulk(operations, options)
            updated_ids = [item.id for item in items if item.ok]
            errors = [item for item in items if not item.ok]
            completed = True
            try:
                if errors:
                    if isinstance(operation, JsonPatch) and all(item.status == 409 for item in errors):
                        # Re-read and retry the documents changed since this page was fetched
                        for item in errors:
                            await self._patch_one(item.id, operation, options)
                            updated_ids.append(item.id)
                    else:
                        for item in errors:
                            logger.error(
                                f"Error patching {self.entity_type_name} {item.id}: [{item.status}] "
                                f"{item.error_type}: {item.reason}"
                            )
                        completed = False
            finally:
                # Committed items are evicted even when the page fails
                await self.invalidate_cache(updated_ids)

            patched += len(updated_ids)
            if updated_ids and options.updated_ids_callback is not None:
                try:
                    result = options.updated_ids_callback(updated_ids)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.error("Error calling updated ids callback", exc_info=True)
            return completed

        await self.batch_process(query, patch_page, options)
        if patched > 0:
            await self._invoke_post_event(
                self.documents_changed, DocumentsChangeEventArgs(ChangeType.SAVED, [], self, options)
            )
            if self._notifications_enabled(options):
                await self._publish(ChangeType.SAVED, None)
        return patched

    def _page_operation(self, hit, operation: PatchOperation, options: CommandOptions) -> BulkOperation:
        if isinstance(operation, JsonPatch):
            source = self._apply_json_patch(hit.id, to_source(hit.document), operation)
            version = hit.version
            return BulkOperation(
                "index",
                hit.index,
                hit.id,
                source=source,
                routing=hit.routing,
                if_seq_no=None if version.is_empty else version.sequence_number,
                if_primary_term=None if version.is_empty else version.primary_term,
            )
        return BulkOperation(
            "update",
            hit.index,
            hit.id,
            routing=hit.routing,
            retry_on_conflict=options.retry_count or settings.patch_retry_attempts,
            **self._update_body(operation),
        )

    # Remove

    async def remove(
        self, documents: Union[str, T, Iterable[Union[str, T]]], options: Optional[CommandOptions] = None
    ) -> None:
        """
        Hard-delete documents, given either as documents or as ids.

        Ids are resolved to documents first so events and notifications can
        see what was removed. Documents that are already gone are ignored.
        """
        if documents is None:
            raise InputError("documents is required")
        items = [documents] if isinstance(documents, (str, BaseModel)) else list(documents)
        if not items:
            raise InputError("documents is required")
        options = resolve_options(options)

        ids = [item for item in items if isinstance(item, str)]
        resolved = [item for item in items if not isinstance(item, str)]
        if ids:
            resolved.extend(
                await self.get_by_ids(ids, options.clone(soft_delete_mode=SoftDeleteMode.ALL, cache_key=None))
            )
        if not resolved:
            return
        await self._remove_documents(self._as_list(resolved), options)

    async def _remove_documents(self, documents: List[T], options: CommandOptions) -> None:
        if self.capabilities.has_identity and any(not get_id(d) for d in documents):
            raise InputError("Id must be set when removing documents")

        if self.documents_removing.has_handlers:
            await self.documents_removing.invoke(self, DocumentsEventArgs(documents, self, options))
        if self.documents_changing.has_handlers:
            await self.documents_changing.invoke(
                self,
                DocumentsChangeEventArgs(ChangeType.REMOVED, [ModifiedDocument(d) for d in documents], self, options),
            )

        await self.invalidate_cache(documents, options)

        refresh = options.consistency.refresh
        if len(documents) == 1:
            document = documents[0]
            try:
                await self.store.delete(
                    self.index.get_index(document),
                    get_id(document),
                    routing=self.index.get_parent_id(document),
                    refresh=refresh,
                )
            except StoreRequestError as e:
                raise DocumentError(
                    f"Error removing {self.entity_type_name} {get_id(document)}: {e.reason}", e.request
                ) from e
        else:
            operations = [
                BulkOperation(
                    "delete",
                    self.index.get_index(document),
                    get_id(document),
                    routing=self.index.get_parent_id(document),
                )
                for document in documents
            ]
            results = await self._bulk(operations, options)
            errors = [item for item in results if not item.ok and item.status != 404]
            if errors:
                details = ", ".join(f"{item.id} [{item.status}] {item.reason}" for item in errors)
                raise DocumentError(f"Error removing {self.entity_type_name} documents: {details}", {"method": "bulk"})

        await self._invoke_post_event(self.documents_removed, DocumentsEventArgs(documents, self, options))
        await self._invoke_post_event(
            self.documents_changed,
            DocumentsChangeEventArgs(ChangeType.REMOVED, [ModifiedDocument(d) for d in documents], self, options),
        )
        await self._send_notifications(ChangeType.REMOVED, [ModifiedDocument(d) for d in documents], options)

    async def remove_all(
        self, query: Optional[RepositoryQuery] = None, options: Optional[CommandOptions] = None
    ) -> int:
        """
        Hard-delete every document matching ``query`` (all documents when None).

        Soft-deleted documents are included unless ``options`` says otherwise.

        Returns:
            Number of documents removed
        """
        options = resolve_options(options)
        options.soft_delete_mode = options.get_soft_delete_mode(SoftDeleteMode.ALL)

        if self.is_cache_enabled:
            await self.cache.remove_all()

        if self.is_cache_enabled or self._has_remove_listeners():
            page_options = options.clone(
                limit=options.limit or settings.remove_all_page_limit,
                notifications=options.notifications and not options.batch_notifications,
            )

            async def remove_page(results: FindResults[T]) -> bool:
                await self._remove_documents(results.documents, page_options)
                return True

            removed = await self.batch_process(query, remove_page, page_options)
            if removed > 0 and options.batch_notifications and self._notifications_enabled(options):
                await self._publish(ChangeType.REMOVED, None)
            return removed

        prepared = await self._prepare_query(query.clone() if query else RepositoryQuery(), options)
        try:
            removed = await self.store.delete_by_query(
                self.index.get_read_index(), prepared, refresh=options.consistency.refresh
            )
        except StoreRequestError as e:
            if e.is_index_missing:
                return 0
            raise DocumentError(f"Error removing {self.entity_type_name} documents: {e.reason}", e.request) from e

        logger.info(f"Removed {removed} {self.entity_type_name} documents by query")
        if removed > 0 and self._notifications_enabled(options):
            await self._publish(ChangeType.REMOVED, None)
        return removed

    def _has_remove_listeners(self) -> bool:
        return (
            self.documents_removing.has_handlers
            or self.documents_removed.has_handlers
            or self.documents_changing.has_handlers
            or self.documents_changed.has_handlers
        )

    # Batch

    async def batch_process(
        self, query: Optional[RepositoryQuery], handler: BatchHandler, options: Optional[CommandOptions] = None
    ) -> int:
        return await BatchProcessor(self).process(query, handler, options)

    # Helpers

    def _as_list(self, documents: Union[T, Iterable[T]]) -> List[T]:
        if documents is None:
            raise InputError("documents is required")
        documents = [documents] if isinstance(documents, BaseModel) else list(documents)
        if not documents:
            raise InputError("documents is required")
        if any(document is None for document in documents):
            raise InputError("documents can't contain None")
        return documents

    async def _validate(self, documents: List[T]) -> None:
        if self.validator is None:
            return
        for document in documents:
            error = self.validator(document)
            if inspect.isawaitable(error):
                error = await error
            if error:
                raise DocumentValidationError(
                    f"{self.entity_type_name} {get_id(document)} is invalid: {error}", document
                )

    async def _invoke_post_event(self, event: AsyncEvent, args: Any) -> None:
        if not event.has_handlers:
            return
        try:
            await event.invoke(self, args)
        except Exception:
            logger.error(f"Error in {self.entity_type_name} post-write event handler", exc_info=True)

    # Notifications

    def _notifications_enabled(self, options: CommandOptions) -> bool:
        return self.publisher is not None and options.notifications

    async def _send_notifications(
        self, change_type: ChangeType, documents: List[Union[str, ModifiedDocument]], options: CommandOptions
    ) -> None:
        if not self._notifications_enabled(options) or not documents:
            return

        def effective(document) -> ChangeType:
            if change_type is ChangeType.SAVED and isinstance(document, ModifiedDocument):
                if self._is_soft_delete(document):
                    return ChangeType.REMOVED
            return change_type

        if options.batch_notifications and len(documents) > 1:
            change_types = {effective(d) for d in documents}
            if change_type is ChangeType.SAVED and change_types == {ChangeType.REMOVED}:
                await self._publish(ChangeType.REMOVED, None)
            else:
                await self._publish(change_type, None)
            return

        for document in documents:
            id = document if isinstance(document, str) else get_id(document.value)
            await self._publish(effective(document), id)

    async def _publish(self, change_type: ChangeType, id: Optional[str]) -> None:
        message = EntityChanged(type=self.entity_type_name, id=id, change_type=change_type)
        try:
            if self.before_publish_entity_changed.has_handlers:
                args = BeforePublishEntityChangedEventArgs(message, self)
                await self.before_publish_entity_changed.invoke(self, args)
                if args.cancel:
                    logger.debug(f"Notification for {self.entity_type_name} {id} was cancelled")
                    return
            await self.publisher.publish(message, self.notification_delay)
        except Exception:
            logger.error(f"Error publishing {change_type.value} notification for {self.entity_type_name} {id}", exc_info=True)
