"""
Unit tests for the Repository write pipeline.

Test Coverage:
=============

1. Add: id/date/version stamping, input checks, duplicates, bulk adds
2. Save: optimistic concurrency, partial bulk failures, soft-delete tracking
3. Patch: script, merge and JSON patches, by id, ids and query
4. Remove: by id, by document, remove_all strategies
5. Events, validation and change notifications
6. Bulk retries for rejected items

All tests run against the in-memory store, cache and publisher.
"""

import logging

import pytest

from docrepo.exceptions import (
    DocumentError,
    DocumentNotFoundError,
    DocumentValidationError,
    DuplicateDocumentError,
    InputError,
    VersionConflictError,
)
from docrepo.index import Index
from docrepo.models import ChangeType, CommandOptions, JsonPatch, MergePatch, ScriptPatch, SoftDeleteMode
from docrepo.queries import RepositoryQuery
from docrepo.repository import Repository
from docrepo.store import BulkItemResult, InMemoryStore
from entities import INCREMENT_AGE, Employee, LogEvent


def messages(publisher):
    return [message for message, _ in publisher.messages]


class RacingStore(InMemoryStore):
    """Lets another writer change the document right before the first conditional write"""

    def __init__(self, races: int = 1):
        super().__init__()
        self.races = races

    async def index(self, index, id, source, op_type="index", if_seq_no=None, if_primary_term=None, routing=None, refresh=None):
        if if_seq_no is not None and self.races > 0:
            self.races -= 1
            current = self.documents(index)[id]
            current["age"] = current.get("age", 0) + 100
            await super().index(index, id, current)
        return await super().index(index, id, source, op_type, if_seq_no, if_primary_term, routing, refresh)


class ThrottlingStore(InMemoryStore):
    """Rejects the first item of a bulk with 429 a given number of times"""

    def __init__(self, rejections: int = 1):
        super().__init__()
        self.rejections = rejections

    async def bulk(self, operations, refresh=None):
        if self.rejections <= 0:
            return await super().bulk(operations, refresh)
        self.rejections -= 1
        first = operations[0]
        rejected = BulkItemResult(first.id, first.index, 429, error_type="es_rejected_execution_exception", reason="queue full")
        return [rejected] + await super().bulk(operations[1:], refresh)


class ItemFailureStore(InMemoryStore):
    """Fails the bulk items for the given ids and applies the rest"""

    def __init__(self):
        super().__init__()
        self.failing_ids = set()

    async def bulk(self, operations, refresh=None):
        failed = [
            BulkItemResult(op.id, op.index, 500, error_type="exception", reason="shard failure")
            for op in operations
            if op.id in self.failing_ids
        ]
        applied = await super().bulk([op for op in operations if op.id not in self.failing_ids], refresh)
        return applied + failed


class TestAdd:
    """Test suite for adding documents."""

    @pytest.mark.asyncio
    async def test_add_assigns_id_dates_and_version(self, repository, store, publisher):
        """Test that add stamps an id, dates and a store-assigned version."""
        employee = await repository.add(Employee(name="Ann", age=30))

        assert employee.id
        assert employee.created_utc is not None
        assert employee.updated_utc is not None
        assert not employee.version.is_empty
        assert str(employee.version) == "1:1"

        stored = store.documents("employees")[employee.id]
        assert stored["name"] == "Ann"
        assert "id" not in stored
        assert "version" not in stored

        sent = messages(publisher)
        assert len(sent) == 1
        assert sent[0].type == "Employee"
        assert sent[0].id == employee.id
        assert sent[0].change_type == ChangeType.ADDED

    @pytest.mark.asyncio
    async def test_add_resets_caller_version(self, repository):
        """Test that a version passed into add is replaced by the store's."""
        employee = Employee(name="Ann")
        employee.version = employee.version.parse("99:9")

        await repository.add(employee)

        assert str(employee.version) == "1:1"

    @pytest.mark.asyncio
    async def test_add_many_uses_one_bulk(self, repository, store, publisher):
        """Test that several documents are written with a single bulk request."""
        employees = await repository.add([Employee(name="Ann"), Employee(name="Bob"), Employee(name="Cid")])

        assert len(employees) == 3
        assert store.requests.count("bulk") == 1
        assert len({str(e.version) for e in employees}) == 3
        assert all(not e.version.is_empty for e in employees)
        assert len(messages(publisher)) == 3

    @pytest.mark.asyncio
    async def test_add_rejects_missing_documents_without_io(self, repository, store):
        """Test that None, empty input and None elements fail before any store call."""
        with pytest.raises(InputError):
            await repository.add(None)
        with pytest.raises(InputError):
            await repository.add([])
        with pytest.raises(InputError):
            await repository.add([Employee(name="Ann"), None])

        assert store.requests == []

    @pytest.mark.asyncio
    async def test_duplicate_add_raises_and_keeps_first(self, repository, store):
        """Test that adding an existing id raises and leaves the stored document alone."""
        await repository.add(Employee(id="emp-1", name="Ann"))

        with pytest.raises(DuplicateDocumentError) as exc_info:
            await repository.add(Employee(id="emp-1", name="Bob"))

        assert exc_info.value.ids == ["emp-1"]
        documents = store.documents("employees")
        assert len(documents) == 1
        assert documents["emp-1"]["name"] == "Ann"

    @pytest.mark.asyncio
    async def test_duplicate_in_bulk_commits_the_rest(self, repository, store, publisher):
        """Test that one duplicate in a bulk add does not stop the other documents."""
        await repository.add(Employee(id="emp-1", name="Ann"))
        publisher.clear()

        with pytest.raises(DuplicateDocumentError) as exc_info:
            await repository.add([Employee(id="emp-1", name="Bob"), Employee(id="emp-2", name="Cid")])

        assert exc_info.value.ids == ["emp-1"]
        assert store.documents("employees")["emp-2"]["name"] == "Cid"
        assert [m.id for m in messages(publisher)] == ["emp-2"]

    @pytest.mark.asyncio
    async def test_add_with_cache_populates_cache(self, repository, store):
        """Test that use_cache on add makes the next cached read skip the store."""
        employee = await repository.add(Employee(name="Ann"), CommandOptions(use_cache=True))
        store.requests.clear()

        found = await repository.get_by_id(employee.id, CommandOptions(use_cache=True))

        assert found.name == "Ann"
        assert found.version == employee.version
        assert store.requests == []

    @pytest.mark.asyncio
    async def test_add_entity_without_versions(self, log_repository, store):
        """Test that entities without version support are still stored and dated."""
        event = await log_repository.add(LogEvent(message="started"))

        assert event.id
        assert event.created_utc is not None
        assert store.documents("events")[event.id]["message"] == "started"


class TestSave:
    """Test suite for saving existing documents."""

    @pytest.mark.asyncio
    async def test_save_advances_version(self, repository, store):
        """Test that a save writes the change and assigns a newer version."""
        employee = await repository.add(Employee(name="Ann"))
        first_version = employee.version

        employee.name = "Ann Lee"
        await repository.save(employee)

        assert employee.version > first_version
        assert store.documents("employees")[employee.id]["name"] == "Ann Lee"

    @pytest.mark.asyncio
    async def test_save_preserves_created_date(self, repository):
        """Test that save keeps the stored creation date when the caller drops it."""
        employee = await repository.add(Employee(name="Ann"))
        created = employee.created_utc

        employee.created_utc = None
        await repository.save(employee)

        assert employee.created_utc == created
        assert employee.updated_utc >= created

    @pytest.mark.asyncio
    async def test_stale_save_raises_version_conflict(self, repository, store):
        """Test that saving with an outdated version fails and keeps the stale version."""
        employee = await repository.add(Employee(name="Ann"))
        stale = employee.model_copy()
        stale_version = stale.version

        employee.name = "First writer"
        await repository.save(employee)

        stale.name = "Second writer"
        with pytest.raises(VersionConflictError) as exc_info:
            await repository.save(stale)

        assert exc_info.value.ids == [employee.id]
        assert stale.version == stale_version
        assert store.documents("employees")[employee.id]["name"] == "First writer"

    @pytest.mark.asyncio
    async def test_skip_version_check_overwrites(self, repository, store):
        """Test that skip_version_check writes regardless of the stored version."""
        employee = await repository.add(Employee(name="Ann"))
        stale = employee.model_copy()
        employee.name = "First writer"
        await repository.save(employee)

        stale.name = "Last writer"
        await repository.save(stale, CommandOptions(skip_version_check=True))

        assert store.documents("employees")[employee.id]["name"] == "Last writer"

    @pytest.mark.asyncio
    async def test_partial_conflict_commits_other_documents(self, repository, store):
        """Test that one conflict in a bulk save fails only that document."""
        ann, bob, cid = await repository.add([Employee(name="Ann"), Employee(name="Bob"), Employee(name="Cid")])
        stale_bob = bob.model_copy()
        bob.age = 40
        await repository.save(bob)

        saved = []
        repository.documents_saved += lambda sender, args: saved.extend(args.documents)

        ann_version = ann.version
        stale_version = stale_bob.version
        ann.age = 1
        stale_bob.age = 2
        cid.age = 3
        with pytest.raises(VersionConflictError) as exc_info:
            await repository.save([ann, stale_bob, cid])

        assert exc_info.value.ids == [bob.id]
        assert ann.version > ann_version
        assert stale_bob.version == stale_version
        documents = store.documents("employees")
        assert documents[ann.id]["age"] == 1
        assert documents[bob.id]["age"] == 40
        assert documents[cid.id]["age"] == 3
        assert sorted(m.value.id for m in saved) == sorted([ann.id, cid.id])

    @pytest.mark.asyncio
    async def test_tolerate_partial_failure_suppresses_error(self, repository, store):
        """Test that tolerate_partial_failure returns normally after a partial failure."""
        ann, bob = await repository.add([Employee(name="Ann"), Employee(name="Bob")])
        stale_bob = bob.model_copy()
        await repository.save(bob)

        ann.age = 5
        await repository.save([ann, stale_bob], CommandOptions(tolerate_partial_failure=True))

        assert store.documents("employees")[ann.id]["age"] == 5

    @pytest.mark.asyncio
    async def test_save_without_id_fails_before_io(self, repository, store):
        """Test that every saved document needs an id."""
        with pytest.raises(InputError, match="Id must be set"):
            await repository.save([Employee(id="emp-1"), Employee(name="no id")])

        assert store.requests == []

    @pytest.mark.asyncio
    async def test_save_of_unknown_id_adds(self, repository, store, publisher):
        """Test that saving a document that does not exist yet creates it."""
        employee = await repository.save(Employee(id="emp-9", name="New"))

        assert not employee.version.is_empty
        assert store.documents("employees")["emp-9"]["name"] == "New"
        assert messages(publisher)[0].change_type == ChangeType.ADDED

    @pytest.mark.asyncio
    async def test_save_entity_without_versions(self, log_repository, store):
        """Test that saves of unversioned entities overwrite the stored document."""
        event = await log_repository.add(LogEvent(message="started"))
        event.message = "finished"

        await log_repository.save(event)

        assert store.documents("events")[event.id]["message"] == "finished"


class TestSoftDeletes:
    """Test suite for soft-delete tracking on save."""

    @pytest.mark.asyncio
    async def test_soft_delete_is_reported_as_removed(self, repository, publisher):
        """Test that flipping is_deleted on is notified as a removal."""
        employee = await repository.add(Employee(name="Ann"))
        publisher.clear()

        employee.is_deleted = True
        await repository.save(employee)

        sent = messages(publisher)
        assert len(sent) == 1
        assert sent[0].change_type == ChangeType.REMOVED
        assert sent[0].id == employee.id

    @pytest.mark.asyncio
    async def test_recently_deleted_ids_are_masked(self, repository, store, cache):
        """Test that a soft delete the store has not reflected yet is hidden from queries."""
        employee = await repository.add(Employee(name="Ann"))
        stale_source = store.documents("employees")[employee.id]

        employee.is_deleted = True
        await repository.save(employee)
        assert await cache.get_set("employee:deleted") == {employee.id}

        # The store still serves the document as active
        await store.index("employees", employee.id, stale_source)

        results = await repository.find()
        assert results.documents == []
        assert await repository.count() == 0

        everything = await repository.find(options=CommandOptions(soft_delete_mode=SoftDeleteMode.ALL))
        assert [e.id for e in everything.documents] == [employee.id]

    @pytest.mark.asyncio
    async def test_restore_clears_recently_deleted(self, repository, cache, publisher):
        """Test that undeleting removes the id from the recently-deleted set."""
        employee = await repository.add(Employee(name="Ann"))
        employee.is_deleted = True
        await repository.save(employee)
        publisher.clear()

        employee.is_deleted = False
        await repository.save(employee)

        assert await cache.get_set("employee:deleted") == set()
        assert messages(publisher)[0].change_type == ChangeType.SAVED
        assert (await repository.get_by_id(employee.id)).name == "Ann"

    @pytest.mark.asyncio
    async def test_batch_of_soft_deletes_is_one_removal(self, repository, publisher):
        """Test that batch notifications report an all-deleted batch as one removal."""
        employees = await repository.add([Employee(name="Ann"), Employee(name="Bob")])
        publisher.clear()

        for employee in employees:
            employee.is_deleted = True
        await repository.save(employees, CommandOptions(batch_notifications=True))

        sent = messages(publisher)
        assert len(sent) == 1
        assert sent[0].change_type == ChangeType.REMOVED
        assert sent[0].id is None

    @pytest.mark.asyncio
    async def test_mixed_batch_is_one_save(self, repository, publisher):
        """Test that a batch with any live document is reported as saved."""
        ann, bob = await repository.add([Employee(name="Ann"), Employee(name="Bob")])
        publisher.clear()

        ann.is_deleted = True
        bob.age = 50
        await repository.save([ann, bob], CommandOptions(batch_notifications=True))

        sent = messages(publisher)
        assert len(sent) == 1
        assert sent[0].change_type == ChangeType.SAVED


class TestPatch:
    """Test suite for patch and patch_all."""

    @pytest.mark.asyncio
    async def test_script_patch(self, repository, store, publisher):
        """Test that a script patch runs against the stored document."""
        employee = await repository.add(Employee(name="Ann", age=30))
        publisher.clear()

        await repository.patch(employee.id, ScriptPatch(INCREMENT_AGE, {"by": 2}))

        assert store.documents("employees")[employee.id]["age"] == 32
        sent = messages(publisher)
        assert [(m.id, m.change_type) for m in sent] == [(employee.id, ChangeType.SAVED)]

    @pytest.mark.asyncio
    async def test_patch_invalidates_cached_document(self, repository):
        """Test that a patched document is not served stale from cache."""
        employee = await repository.add(Employee(name="Ann", age=30))
        await repository.get_by_id(employee.id, CommandOptions(use_cache=True))

        await repository.patch(employee.id, MergePatch({"name": "Ann Lee"}))

        found = await repository.get_by_id(employee.id, CommandOptions(use_cache=True))
        assert found.name == "Ann Lee"

    @pytest.mark.asyncio
    async def test_json_patch(self, repository, store):
        """Test that RFC 6902 operations are applied to the stored source."""
        employee = await repository.add(Employee(name="Ann", tags=["a"]))

        await repository.patch(
            employee.id,
            JsonPatch(
                [
                    {"op": "replace", "path": "/name", "value": "Ann Lee"},
                    {"op": "add", "path": "/tags/-", "value": "b"},
                ]
            ),
        )

        stored = store.documents("employees")[employee.id]
        assert stored["name"] == "Ann Lee"
        assert stored["tags"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_json_patch_retries_on_conflict(self, publisher):
        """Test that a concurrent write makes the JSON patch re-read and try again."""
        store = RacingStore(races=1)
        repository = Repository(Employee, Index(store, "employees"), publisher=publisher)
        employee = await repository.add(Employee(name="Ann", age=1))

        await repository.patch(employee.id, JsonPatch([{"op": "replace", "path": "/name", "value": "Patched"}]))

        stored = store.documents("employees")[employee.id]
        assert stored["name"] == "Patched"
        assert stored["age"] == 101

    @pytest.mark.asyncio
    async def test_json_patch_gives_up_after_retries(self, publisher):
        """Test that persistent conflicts surface as a version conflict."""
        store = RacingStore(races=100)
        repository = Repository(Employee, Index(store, "employees"), publisher=publisher)
        employee = await repository.add(Employee(name="Ann"))

        with pytest.raises(VersionConflictError):
            await repository.patch(
                employee.id,
                JsonPatch([{"op": "replace", "path": "/name", "value": "Patched"}]),
                CommandOptions(retry_count=2),
            )

    @pytest.mark.asyncio
    async def test_patch_missing_document(self, repository):
        """Test that patching an unknown id raises DocumentNotFoundError."""
        with pytest.raises(DocumentNotFoundError):
            await repository.patch("missing", MergePatch({"name": "x"}))
        with pytest.raises(DocumentNotFoundError):
            await repository.patch("missing", JsonPatch([{"op": "replace", "path": "/name", "value": "x"}]))

    @pytest.mark.asyncio
    async def test_patch_requires_ids_and_operation(self, repository, store):
        """Test that empty ids or an empty operation fail before any store call."""
        with pytest.raises(InputError):
            await repository.patch([], MergePatch({"name": "x"}))
        with pytest.raises(InputError):
            await repository.patch("emp-1", MergePatch({}))
        with pytest.raises(InputError):
            await repository.patch("emp-1", None)

        assert store.requests == []

    @pytest.mark.asyncio
    async def test_patch_many_ids(self, repository, store, publisher):
        """Test that several ids are patched in one bulk and notified individually."""
        ann, bob = await repository.add([Employee(name="Ann"), Employee(name="Bob")])
        publisher.clear()
        store.requests.clear()

        await repository.patch([ann.id, bob.id], MergePatch({"company_id": "acme"}))

        documents = store.documents("employees")
        assert documents[ann.id]["company_id"] == "acme"
        assert documents[bob.id]["company_id"] == "acme"
        assert store.requests.count("bulk") == 1
        assert sorted(m.id for m in messages(publisher)) == sorted([ann.id, bob.id])

    @pytest.mark.asyncio
    async def test_json_patch_many_ids(self, repository, store, publisher):
        """Test that a JSON patch over several ids goes through patch_all."""
        ann, bob = await repository.add([Employee(name="Ann"), Employee(name="Bob")])
        publisher.clear()

        await repository.patch([ann.id, bob.id], JsonPatch([{"op": "replace", "path": "/age", "value": 7}]))

        documents = store.documents("employees")
        assert documents[ann.id]["age"] == 7
        assert documents[bob.id]["age"] == 7
        sent = messages(publisher)
        assert len(sent) == 1
        assert sent[0].id is None

    @pytest.mark.asyncio
    async def test_patch_all_counts_and_notifies_once(self, repository, store, publisher):
        """Test that patch_all returns the number patched with one aggregate notification."""
        acme = await repository.add([Employee(name=f"a{i}", company_id="acme", age=i) for i in range(3)])
        await repository.add([Employee(name="other", company_id="globex")])
        publisher.clear()

        changed = []
        repository.documents_changed += lambda sender, args: changed.append(args.change_type)
        updated = []

        count = await repository.patch_all(
            RepositoryQuery().field_equals("company_id", "acme"),
            ScriptPatch(INCREMENT_AGE, {"by": 10}),
            CommandOptions(updated_ids_callback=updated.extend),
        )

        assert count == 3
        documents = store.documents("employees")
        assert sorted(documents[e.id]["age"] for e in acme) == [10, 11, 12]
        assert sorted(updated) == sorted(e.id for e in acme)
        assert changed == [ChangeType.SAVED]
        sent = messages(publisher)
        assert len(sent) == 1
        assert sent[0].id is None
        assert sent[0].change_type == ChangeType.SAVED

    @pytest.mark.asyncio
    async def test_patch_all_pages_through_every_match(self, repository, store):
        """Test that patch_all walks all pages and releases its cursor."""
        await repository.add([Employee(name=f"e{i}") for i in range(5)])

        count = await repository.patch_all(None, MergePatch({"company_id": "acme"}), CommandOptions(limit=2))

        assert count == 5
        assert all(d["company_id"] == "acme" for d in store.documents("employees").values())
        assert store.open_scrolls == 0

    @pytest.mark.asyncio
    async def test_patch_all_without_matches(self, repository, publisher):
        """Test that nothing is notified when no document matches."""
        await repository.add(Employee(name="Ann"))
        publisher.clear()

        count = await repository.patch_all(RepositoryQuery().field_equals("company_id", "none"), MergePatch({"age": 1}))

        assert count == 0
        assert publisher.messages == []

    @pytest.mark.asyncio
    async def test_failed_patch_many_evicts_applied_documents(self, repository):
        """Test that documents patched before a bulk failure are not served stale from cache."""
        employee = await repository.add(Employee(name="old"))
        await repository.get_by_id(employee.id, CommandOptions(use_cache=True))

        with pytest.raises(DocumentError):
            await repository.patch([employee.id, "missing"], MergePatch({"name": "new"}))

        found = await repository.get_by_id(employee.id, CommandOptions(use_cache=True))
        assert found.name == "new"

    @pytest.mark.asyncio
    async def test_patch_all_failed_page_keeps_applied_documents(self, cache, publisher):
        """Test that a failed page still evicts, counts and reports the documents it patched."""
        employees = [Employee(id=f"emp-{i}", name="old") for i in range(3)]
        store = ItemFailureStore()
        repository = Repository(Employee, Index(store, "employees"), cache=cache, publisher=publisher)
        await repository.add(employees)
        for employee in employees:
            await repository.get_by_id(employee.id, CommandOptions(use_cache=True))
        store.failing_ids.add("emp-1")
        publisher.clear()
        updated = []

        count = await repository.patch_all(
            None, MergePatch({"name": "new"}), CommandOptions(updated_ids_callback=updated.extend)
        )

        assert count == 2
        assert sorted(updated) == ["emp-0", "emp-2"]
        for id in ("emp-0", "emp-2"):
            found = await repository.get_by_id(id, CommandOptions(use_cache=True))
            assert found.name == "new"
        assert store.open_scrolls == 0
        sent = messages(publisher)
        assert len(sent) == 1
        assert sent[0].change_type == ChangeType.SAVED


class TestRemove:
    """Test suite for remove and remove_all."""

    @pytest.mark.asyncio
    async def test_remove_by_id(self, repository, publisher):
        """Test that removing by id deletes the document and notifies."""
        employee = await repository.add(Employee(name="Ann"))
        publisher.clear()

        await repository.remove(employee.id)

        assert await repository.get_by_id(employee.id) is None
        sent = messages(publisher)
        assert [(m.id, m.change_type) for m in sent] == [(employee.id, ChangeType.REMOVED)]

    @pytest.mark.asyncio
    async def test_remove_unknown_id_is_a_noop(self, repository, publisher):
        """Test that removing an id that does not exist does nothing."""
        await repository.add(Employee(name="Ann"))
        publisher.clear()

        await repository.remove("missing")

        assert publisher.messages == []

    @pytest.mark.asyncio
    async def test_remove_documents(self, repository, store):
        """Test that several documents are removed in one bulk."""
        employees = await repository.add([Employee(name="Ann"), Employee(name="Bob"), Employee(name="Cid")])

        removed = []
        repository.documents_removed += lambda sender, args: removed.extend(args.documents)
        await repository.remove(employees[:2])

        assert list(store.documents("employees")) == [employees[2].id]
        assert [e.id for e in removed] == [e.id for e in employees[:2]]

    @pytest.mark.asyncio
    async def test_remove_requires_documents(self, repository):
        with pytest.raises(InputError):
            await repository.remove(None)
        with pytest.raises(InputError):
            await repository.remove([])

    @pytest.mark.asyncio
    async def test_remove_all_with_cache_pages_and_clears_scope(self, repository, cache, publisher):
        """Test that remove_all with caching clears the scope and removes page by page."""
        employees = await repository.add([Employee(name=f"e{i}") for i in range(3)])
        await repository.get_by_id(employees[0].id, CommandOptions(use_cache=True))
        assert cache.count > 0
        publisher.clear()

        removed = await repository.remove_all()

        assert removed == 3
        assert cache.count == 0
        assert await repository.count() == 0
        sent = messages(publisher)
        assert sorted(m.id for m in sent) == sorted(e.id for e in employees)
        assert all(m.change_type == ChangeType.REMOVED for m in sent)

    @pytest.mark.asyncio
    async def test_remove_all_batch_notification(self, repository, publisher):
        """Test that batch notifications collapse remove_all into one message."""
        await repository.add([Employee(name=f"e{i}") for i in range(3)])
        publisher.clear()

        removed = await repository.remove_all(options=CommandOptions(batch_notifications=True, soft_delete_mode=SoftDeleteMode.ALL))

        assert removed == 3
        sent = messages(publisher)
        assert len(sent) == 1
        assert sent[0].id is None
        assert sent[0].change_type == ChangeType.REMOVED

    @pytest.mark.asyncio
    async def test_remove_all_includes_soft_deleted(self, repository):
        """Test that remove_all without options also removes soft-deleted documents."""
        employee = await repository.add(Employee(name="Ann"))
        employee.is_deleted = True
        await repository.save(employee)

        removed = await repository.remove_all()

        assert removed == 1

    @pytest.mark.asyncio
    async def test_remove_all_with_options_includes_soft_deleted(self, repository):
        """Test that options without a soft-delete mode still remove soft-deleted documents."""
        await repository.add([Employee(name="Ann"), Employee(name="Bob", is_deleted=True)])

        removed = await repository.remove_all(options=CommandOptions(batch_notifications=True))

        assert removed == 2
        assert await repository.count(options=CommandOptions(soft_delete_mode=SoftDeleteMode.ALL)) == 0

    @pytest.mark.asyncio
    async def test_remove_all_by_query_without_cache(self, uncached_repository, store, publisher):
        """Test that without cache or listeners remove_all issues one delete-by-query."""
        await uncached_repository.add([Employee(name=f"e{i}") for i in range(3)])
        publisher.clear()

        removed = await uncached_repository.remove_all()

        assert removed == 3
        assert "delete_by_query" in store.requests
        sent = messages(publisher)
        assert len(sent) == 1
        assert sent[0].id is None
        assert sent[0].change_type == ChangeType.REMOVED

        publisher.clear()
        assert await uncached_repository.remove_all() == 0
        assert publisher.messages == []

    @pytest.mark.asyncio
    async def test_remove_all_with_listeners_pages(self, uncached_repository, store):
        """Test that remove listeners force page-by-page removal so they see each document."""
        await uncached_repository.add([Employee(name=f"e{i}") for i in range(3)])
        removed_documents = []
        uncached_repository.documents_removed += lambda sender, args: removed_documents.extend(args.documents)

        removed = await uncached_repository.remove_all(RepositoryQuery())

        assert removed == 3
        assert len(removed_documents) == 3
        assert "delete_by_query" not in store.requests

    @pytest.mark.asyncio
    async def test_remove_all_on_missing_index(self, uncached_repository):
        """Test that removing from an index that was never created removes nothing."""
        assert await uncached_repository.remove_all() == 0


class TestEventsAndValidation:
    """Test suite for events, validators and notifications."""

    @pytest.mark.asyncio
    async def test_event_order_on_add(self, repository):
        """Test that add fires its events in pipeline order."""
        order = []
        repository.documents_adding += lambda sender, args: order.append("adding")
        repository.documents_changing += lambda sender, args: order.append(f"changing:{args.change_type.value}")
        repository.documents_added += lambda sender, args: order.append("added")
        repository.documents_changed += lambda sender, args: order.append(f"changed:{args.change_type.value}")

        await repository.add(Employee(name="Ann"))

        assert order == ["adding", "changing:added", "added", "changed:added"]

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self, repository):
        """Test that coroutine handlers run to completion before the write."""
        seen = []

        async def rename(sender, args):
            for document in args.documents:
                document.name = document.name.upper()
            seen.append(True)

        repository.documents_adding += rename
        employee = await repository.add(Employee(name="ann"))

        assert seen == [True]
        assert (await repository.get_by_id(employee.id)).name == "ANN"

    @pytest.mark.asyncio
    async def test_pre_write_handler_error_aborts(self, repository, store):
        """Test that a failing pre-write handler stops the write."""

        def reject(sender, args):
            raise RuntimeError("rejected")

        repository.documents_adding += reject

        with pytest.raises(RuntimeError, match="rejected"):
            await repository.add(Employee(name="Ann"))
        assert not await store.index_exists("employees")

    @pytest.mark.asyncio
    async def test_post_write_handler_error_is_logged(self, repository, publisher, caplog):
        """Test that a failing post-write handler does not fail the committed write."""

        def explode(sender, args):
            raise RuntimeError("boom")

        repository.documents_added += explode

        with caplog.at_level(logging.ERROR):
            employee = await repository.add(Employee(name="Ann"))

        assert employee.id
        assert "post-write event handler" in caplog.text
        assert len(publisher.messages) == 1

    @pytest.mark.asyncio
    async def test_validator_rejects_document(self, employee_index, store):
        """Test that a validator message aborts the write with the offending document."""
        repository = Repository(Employee, employee_index, validator=lambda e: None if e.name else "name is required")
        nameless = Employee()

        with pytest.raises(DocumentValidationError, match="name is required") as exc_info:
            await repository.add([Employee(name="Ann"), nameless])

        assert exc_info.value.document is nameless
        assert not await store.index_exists("employees")

    @pytest.mark.asyncio
    async def test_async_validator_and_skip_validation(self, employee_index):
        """Test async validators and that validation can be turned off per call."""

        async def validate(employee):
            return "too young" if employee.age < 18 else None

        repository = Repository(Employee, employee_index, validator=validate)

        with pytest.raises(DocumentValidationError):
            await repository.add(Employee(name="Kid", age=10))
        employee = await repository.add(Employee(name="Kid", age=10), CommandOptions(validation=False))
        assert employee.id

    @pytest.mark.asyncio
    async def test_notification_can_be_cancelled(self, repository, publisher):
        """Test that before_publish_entity_changed handlers can drop a message."""

        def cancel(sender, args):
            args.cancel = True

        repository.before_publish_entity_changed += cancel
        await repository.add(Employee(name="Ann"))

        assert publisher.messages == []

    @pytest.mark.asyncio
    async def test_notifications_can_be_disabled(self, repository, publisher):
        await repository.add(Employee(name="Ann"), CommandOptions(notifications=False))
        assert publisher.messages == []

    @pytest.mark.asyncio
    async def test_notification_delay(self, repository, publisher):
        """Test that messages are published with the configured delay."""
        repository.notification_delay = 1.5
        await repository.add(Employee(name="Ann"))

        assert publisher.messages[0][1] == 1.5


class TestBulkRetries:
    """Test suite for retrying rejected bulk items."""

    @pytest.mark.asyncio
    async def test_rejected_items_are_retried(self, publisher):
        """Test that a 429 item is sent again and ends up stored."""
        store = ThrottlingStore(rejections=1)
        repository = Repository(Employee, Index(store, "employees"), publisher=publisher)

        employees = await repository.add([Employee(name="Ann"), Employee(name="Bob"), Employee(name="Cid")])

        assert store.requests.count("bulk") == 2
        assert len(store.documents("employees")) == 3
        assert all(not e.version.is_empty for e in employees)

    @pytest.mark.asyncio
    async def test_persistent_rejection_fails(self, publisher):
        """Test that items still rejected after all attempts are reported."""
        store = ThrottlingStore(rejections=100)
        repository = Repository(Employee, Index(store, "employees"), publisher=publisher)
        ann = Employee(name="Ann")

        with pytest.raises(DocumentError, match="429") as exc_info:
            await repository.add([ann, Employee(name="Bob")])

        assert not isinstance(exc_info.value, DuplicateDocumentError)
        assert len(store.documents("employees")) == 1
