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

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from docrepo.exceptions import InputError, MigrationError
from docrepo.models.document import new_document_id
from docrepo.queries import RepositoryQuery
from docrepo.reindex.work_item import ReindexWorkItem
from docrepo.store.base import ReindexTaskStatus, SearchStore, StoreRequestError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[str]], Any]


@dataclass
class ReindexPassResult:
    total: int = 0
    completed: int = 0
    failures: int = 0


def calculate_progress(total: int, completed: int, start: int = 0, end: int = 100) -> int:
    """Rescale completed/total into the [start, end] progress band"""
    if total == 0:
        return start
    return start + int((100 * completed / total) * ((end - start) / 100))


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class Reindexer:
    """
    Migrates documents between two physical indices behind an alias.

    Pass 1 copies everything (resuming from the newest timestamp already in
    the new index), the aliases are then moved to the new index in a single
    call, and pass 2 copies whatever was written to the old index while the
    cutover happened. The old index is only deleted when the new one holds at
    least as many documents.

    Store errors propagate unchanged and nothing is retried here. Re-running
    the same work item is safe and converges.
    """

    def __init__(
        self,
        store: SearchStore,
        poll_interval: Optional[float] = None,
        stall_timeout: Optional[float] = None,
    ):
        from docrepo.config import settings

        self._store = store
        self._poll_interval = settings.reindex_poll_interval if poll_interval is None else poll_interval
        self._stall_timeout = settings.reindex_stall_timeout if stall_timeout is None else stall_timeout

    async def reindex(self, work_item: ReindexWorkItem, progress_callback: Optional[ProgressCallback] = None) -> None:
        """
        Run the full migration described by ``work_item``

        Args:
            work_item: Source, destination, alias and resume settings
            progress_callback: Called with (percentage, message); sync or async

        Raises:
            InputError: A required work item field is missing
            MigrationError: A reindex task failed, stalled or could not copy every document
        """
        if not work_item.old_index:
            raise InputError("old_index is required")
        if not work_item.new_index:
            raise InputError("new_index is required")
        if not work_item.timestamp_field:
            raise InputError("timestamp_field is required")

        report = self._progress_reporter(progress_callback)

        logger.info(f"Received reindex work item for new index: {work_item.new_index}")
        start_time = datetime.now(timezone.utc) - timedelta(seconds=1)
        await report(0, "Starting reindex...")

        first_pass = await self._reindex_pass(work_item, report, 0, 90, work_item.start_utc)
        await report(91, f"Total: {first_pass.total:,} Completed: {first_pass.completed:,}")

        if work_item.old_index != work_item.new_index:
            current_aliases = await self._store.get_aliases(work_item.old_index)
            aliases = list(current_aliases)
            if work_item.alias and work_item.alias not in aliases:
                aliases.append(work_item.alias)

            if aliases:
                actions = []
                for alias in aliases:
                    if alias in current_aliases:
                        actions.append({"remove": {"index": work_item.old_index, "alias": alias}})
                    actions.append({"add": {"index": work_item.new_index, "alias": alias}})
                await self._store.update_aliases(actions)
                await report(
                    92,
                    f"Updated aliases: {', '.join(aliases)} Remove: {work_item.old_index} Add: {work_item.new_index}",
                )

        await self._store.refresh()
        second_pass = await self._reindex_pass(work_item, report, 92, 96, start_time)
        await report(97, f"Total: {second_pass.total:,} Completed: {second_pass.completed:,}")

        if work_item.delete_old and work_item.old_index != work_item.new_index:
            await self._store.refresh()
            new_count = await self._store.count(work_item.new_index)
            old_count = await self._store.count(work_item.old_index)
            await report(98, f"Old Docs: {old_count} New Docs: {new_count}")
            if new_count >= old_count:
                await self._store.delete_index(work_item.old_index)
                await report(99, f"Deleted index: {work_item.old_index}")
            else:
                raise MigrationError(
                    f"Keeping {work_item.old_index}: it has {old_count} documents, {work_item.new_index} has {new_count}"
                )

        await report(100, None)

    def _progress_reporter(self, progress_callback: Optional[ProgressCallback]):
        last = {"progress": 0}

        async def report(progress: int, message: Optional[str]) -> None:
            # Never report a lower percentage than one already reported
            progress = max(progress, last["progress"])
            last["progress"] = progress
            if progress_callback is None:
                logger.info(f"Reindex Progress {progress}%: {message}")
                return
            result = progress_callback(progress, message)
            if inspect.isawaitable(result):
                await result

        return report

    async def _reindex_pass(
        self,
        work_item: ReindexWorkItem,
        report,
        start_progress: int,
        end_progress: int,
        start_time: Optional[datetime],
    ) -> ReindexPassResult:
        query = await self._resume_query(work_item, start_time)
        task_id = await self._store.start_reindex(
            work_item.old_index, work_item.new_index, query=query, script=work_item.script
        )
        logger.info(f"Reindex Task Id: {task_id}")

        status = await self._wait_for_task(work_item, task_id, report, start_progress, end_progress)

        completed = status.created + status.updated + status.noops
        failures = 0
        if status.failures:
            logger.error(f"{len(status.failures)} documents failed to reindex into {work_item.new_index}")
            if not await self._store.index_exists(work_item.error_index):
                await self._store.create_index(work_item.error_index, {"mappings": {"dynamic": False}})
            for failure in status.failures:
                await self._handle_failure(work_item, failure)
                failures += 1

        await report(
            calculate_progress(status.total, completed, start_progress, end_progress),
            f"Total: {status.total:,} Completed: {completed:,} VersionConflicts: {status.version_conflicts:,}",
        )

        if failures:
            raise MigrationError(
                f"{failures} documents failed to reindex from {work_item.old_index} to {work_item.new_index}, "
                f"see {work_item.error_index}"
            )
        return ReindexPassResult(total=status.total, completed=completed, failures=failures)

    async def _wait_for_task(
        self, work_item: ReindexWorkItem, task_id: str, report, start_progress: int, end_progress: int
    ) -> ReindexTaskStatus:
        last_completed = 0
        last_progress_at = time.monotonic()
        while True:
            await asyncio.sleep(self._poll_interval)

            status = await self._store.get_reindex_task(task_id)
            if status.error:
                raise MigrationError(
                    f"Reindex task {task_id} failed ({work_item.old_index} -> {work_item.new_index}): {status.error}"
                )

            completed = status.created + status.updated + status.noops
            if completed > last_completed:
                last_progress_at = time.monotonic()
            last_completed = completed

            await report(
                calculate_progress(status.total, completed, start_progress, end_progress),
                f"Total: {status.total:,} Completed: {completed:,} VersionConflicts: {status.version_conflicts:,}",
            )

            if status.completed:
                return status

            if time.monotonic() - last_progress_at > self._stall_timeout:
                raise MigrationError(
                    f"Timed out waiting for reindex {work_item.old_index} -> {work_item.new_index} ({task_id})"
                )

    async def _resume_query(self, work_item: ReindexWorkItem, start_time: Optional[datetime]) -> RepositoryQuery:
        query = RepositoryQuery().sort_by(work_item.timestamp_field)
        if start_time is None:
            start_time = await self._resume_starting_point(work_item.new_index, work_item.timestamp_field)
        if start_time is not None:
            query.date_range(work_item.timestamp_field, start=start_time)
        return query

    async def _resume_starting_point(self, new_index: str, timestamp_field: str) -> Optional[datetime]:
        """Newest timestamp already copied into the new index"""
        newest_query = RepositoryQuery().field_exists(timestamp_field).sort_by_descending(timestamp_field)
        try:
            response = await self._store.search(new_index, newest_query, size=1)
        except StoreRequestError as e:
            if e.is_index_missing:
                return None
            raise
        if not response.hits:
            return None
        value = (response.hits[0].source or {}).get(timestamp_field)
        return _parse_timestamp(value)

    async def _handle_failure(self, work_item: ReindexWorkItem, failure: Dict[str, Any]) -> None:
        cause = failure.get("cause") or {}
        failed_id = failure.get("id")
        logger.error(
            f"Error reindexing document {failure.get('index')}/{failed_id}: "
            f"[{failure.get('status')}] {cause.get('reason')}"
        )
        original = await self._store.get(work_item.old_index, failed_id) if failed_id else None
        await self._store.index(
            work_item.error_index,
            new_document_id(),
            {
                "index": failure.get("index"),
                "id": failed_id,
                "version": str(original.version) if original else None,
                "source": original.source if original else None,
                "cause": cause,
                "status": failure.get("status"),
                "found": original is not None,
            },
        )
