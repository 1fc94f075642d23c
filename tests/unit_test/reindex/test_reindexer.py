"""
Unit tests for the Reindexer.

Reindex tasks run against the in-memory store, which completes them
immediately, so the poll interval is zero throughout.
"""

import pytest

from docrepo.exceptions import InputError, MigrationError
from docrepo.reindex import Reindexer, ReindexWorkItem, calculate_progress
from docrepo.store import InMemoryStore, ReindexTaskStatus, StoreRequestError

REJECT_BAD = "reject bad documents"


def reject_bad(source, params):
    if source.get("name") == "bad":
        raise StoreRequestError(400, "mapper_parsing_exception", "failed to parse field [name]")


def timestamp(day):
    return f"2024-01-{day:02d}T00:00:00+00:00"


async def setup_old_index(store, count=5, alias="people"):
    await store.create_index("people-v1", {"aliases": {alias: {}}} if alias else None)
    for i in range(1, count + 1):
        await store.index("people-v1", str(i), {"name": f"p{i}", "updated_utc": timestamp(i)})


def work_item(**changes):
    values = dict(
        old_index="people-v1",
        new_index="people-v2",
        alias="people",
        timestamp_field="updated_utc",
        delete_old=True,
    )
    values.update(changes)
    return ReindexWorkItem(**values)


class StalledStore(InMemoryStore):
    async def get_reindex_task(self, task_id):
        return ReindexTaskStatus(completed=False, total=10)


class FailedTaskStore(InMemoryStore):
    async def get_reindex_task(self, task_id):
        return ReindexTaskStatus(completed=True, error="node left the cluster")


class ShortCountStore(InMemoryStore):
    """Reports one document fewer in the new index than was copied."""

    async def count(self, index, query=None):
        count = await super().count(index, query)
        return count - 1 if index == "people-v2" else count


class TestCalculateProgress:
    """Test suite for progress rescaling."""

    def test_rescales_into_band(self):
        assert calculate_progress(0, 0, 10, 20) == 10
        assert calculate_progress(100, 50) == 50
        assert calculate_progress(100, 50, 0, 90) == 45
        assert calculate_progress(10, 10, 92, 96) == 96


class TestReindexer:
    """Test suite for Reindexer migrations."""

    @pytest.mark.asyncio
    async def test_migrates_and_cuts_over(self):
        """Test the full migration: copy, alias swap and old index removal."""
        store = InMemoryStore()
        await setup_old_index(store)
        await store.create_index("people-v2")

        await Reindexer(store, poll_interval=0).reindex(work_item())

        assert sorted(store.documents("people-v2")) == ["1", "2", "3", "4", "5"]
        assert await store.get_alias_indices("people") == ["people-v2"]
        assert not await store.index_exists("people-v1")

    @pytest.mark.asyncio
    async def test_applies_script(self):
        store = InMemoryStore()
        store.register_script("upper", lambda source, params: source.update(name=source["name"].upper()))
        await setup_old_index(store, count=2)

        await Reindexer(store, poll_interval=0).reindex(work_item(script="upper"))

        assert store.documents("people-v2")["1"]["name"] == "P1"

    @pytest.mark.asyncio
    async def test_moves_every_alias_of_the_old_index(self):
        store = InMemoryStore()
        await setup_old_index(store, count=1, alias="people")
        await store.update_aliases([{"add": {"index": "people-v1", "alias": "people-read"}}])

        await Reindexer(store, poll_interval=0).reindex(work_item(delete_old=False))

        assert await store.get_aliases("people-v2") == ["people", "people-read"]
        assert await store.get_aliases("people-v1") == []
        assert await store.index_exists("people-v1")

    @pytest.mark.asyncio
    async def test_adds_work_item_alias_when_old_index_has_none(self):
        store = InMemoryStore()
        await setup_old_index(store, count=1, alias=None)

        await Reindexer(store, poll_interval=0).reindex(work_item())

        assert await store.get_alias_indices("people") == ["people-v2"]

    @pytest.mark.asyncio
    async def test_resumes_from_newest_copied_timestamp(self):
        """Test that a rerun only copies documents at or after the newest copied timestamp."""
        store = InMemoryStore()
        await setup_old_index(store)
        await store.index("people-v2", "3", {"name": "p3", "updated_utc": timestamp(3)})

        await Reindexer(store, poll_interval=0).reindex(work_item(delete_old=False))

        first_pass = await store.get_reindex_task("memory:1")
        assert first_pass.total == 3
        assert sorted(store.documents("people-v2")) == ["3", "4", "5"]

    @pytest.mark.asyncio
    async def test_start_utc_overrides_resume_point(self):
        store = InMemoryStore()
        await setup_old_index(store)
        item = work_item(delete_old=False, start_utc=timestamp(4))

        await Reindexer(store, poll_interval=0).reindex(item)

        assert sorted(store.documents("people-v2")) == ["4", "5"]

    @pytest.mark.asyncio
    async def test_keeps_old_index_when_new_has_fewer_documents(self):
        store = ShortCountStore()
        await setup_old_index(store)

        with pytest.raises(MigrationError, match="Keeping people-v1"):
            await Reindexer(store, poll_interval=0).reindex(work_item())

        assert await store.index_exists("people-v1")
        assert await store.get_alias_indices("people") == ["people-v2"]

    @pytest.mark.asyncio
    async def test_failed_documents_go_to_error_index(self):
        """Test that per-document failures are recorded and abort the migration."""
        store = InMemoryStore()
        store.register_script(REJECT_BAD, reject_bad)
        await setup_old_index(store, count=2)
        await store.index("people-v1", "9", {"name": "bad", "updated_utc": timestamp(9)})

        with pytest.raises(MigrationError, match="people-v2-error"):
            await Reindexer(store, poll_interval=0).reindex(work_item(script=REJECT_BAD))

        errors = list(store.documents("people-v2-error").values())
        assert len(errors) == 1
        assert errors[0]["id"] == "9"
        assert errors[0]["found"] is True
        assert errors[0]["source"]["name"] == "bad"
        assert errors[0]["status"] == 400
        assert errors[0]["cause"]["type"] == "mapper_parsing_exception"
        assert await store.get_alias_indices("people") == ["people-v1"]
        assert await store.index_exists("people-v1")

    @pytest.mark.asyncio
    async def test_rerun_after_failure_converges(self):
        """Test that re-running the same work item after fixing the cause completes the migration."""
        store = InMemoryStore()
        store.register_script(REJECT_BAD, reject_bad)
        await setup_old_index(store, count=2)
        await store.index("people-v1", "9", {"name": "bad", "updated_utc": timestamp(9)})
        item = work_item(script=REJECT_BAD)
        with pytest.raises(MigrationError):
            await Reindexer(store, poll_interval=0).reindex(item)

        store.register_script(REJECT_BAD, lambda source, params: None)
        await Reindexer(store, poll_interval=0).reindex(item)

        assert sorted(store.documents("people-v2")) == ["1", "2", "9"]
        assert await store.get_alias_indices("people") == ["people-v2"]

    @pytest.mark.asyncio
    async def test_task_error_raises(self):
        store = FailedTaskStore()
        await setup_old_index(store, count=1)

        with pytest.raises(MigrationError, match="node left the cluster"):
            await Reindexer(store, poll_interval=0).reindex(work_item())

    @pytest.mark.asyncio
    async def test_stalled_task_times_out(self):
        store = StalledStore()
        await setup_old_index(store, count=1)

        with pytest.raises(MigrationError, match="Timed out"):
            await Reindexer(store, poll_interval=0, stall_timeout=-1).reindex(work_item())

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self):
        store = InMemoryStore()
        await setup_old_index(store)
        reported = []

        async def on_progress(progress, message):
            reported.append((progress, message))

        await Reindexer(store, poll_interval=0).reindex(work_item(), on_progress)

        percentages = [p for p, _ in reported]
        assert percentages == sorted(percentages)
        assert percentages[0] == 0
        assert reported[-1] == (100, None)
        assert any(m and m.startswith("Deleted index: people-v1") for _, m in reported)

    @pytest.mark.asyncio
    async def test_required_fields(self):
        reindexer = Reindexer(InMemoryStore(), poll_interval=0)

        with pytest.raises(InputError):
            await reindexer.reindex(work_item(old_index=""))
        with pytest.raises(InputError):
            await reindexer.reindex(work_item(new_index=""))
        with pytest.raises(InputError):
            await reindexer.reindex(work_item(timestamp_field=None))
