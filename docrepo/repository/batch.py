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
from typing import Any, Awaitable, Callable, Optional, Union

from docrepo.config import settings
from docrepo.models.options import CommandOptions, resolve_options
from docrepo.models.results import FindResults
from docrepo.queries import RepositoryQuery

logger = logging.getLogger(__name__)

BatchHandler = Callable[[FindResults], Union[bool, Awaitable[bool]]]


class BatchProcessor:
    """
    Walks every document matching a query, one page at a time.

    Pages come from a snapshot (server-side scroll) so each document is
    visited exactly once even if documents are written while the walk is in
    progress. The cursor is released when the walk finishes or stops early.
    """

    def __init__(self, repository):
        self._repository = repository

    async def process(
        self,
        query: Optional[RepositoryQuery],
        handler: BatchHandler,
        options: Optional[CommandOptions] = None,
    ) -> int:
        """
        Call ``handler`` with each page until the matches are exhausted.

        Args:
            query: Documents to visit; None visits everything
            handler: Receives the page; returning False stops the walk
            options: Page size (``limit``) and snapshot lifetime are honoured

        Returns:
            Number of documents on the pages the handler accepted
        """
        options = resolve_options(options)
        options = options.clone(
            snapshot_paging=True,
            page=None,
            use_cache=False,
            limit=options.limit or settings.batch_page_limit,
            snapshot_lifetime=options.snapshot_lifetime or settings.snapshot_lifetime,
        )

        results = await self._repository.find(query, options)
        processed = 0
        try:
            while results.hits:
                page_size = len(results.hits)
                handled = handler(results)
                if inspect.isawaitable(handled):
                    handled = await handled
                if not handled:
                    logger.info(
                        f"Batch handler stopped on page {results.page}, {processed} documents processed so far"
                    )
                    break
                processed += page_size
                if not await results.next_page():
                    break
        finally:
            await self._repository.clear_continuation(results)

        return processed
