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

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional


class SoftDeleteMode(str, Enum):
    ACTIVE_ONLY = "active_only"
    ALL = "all"
    DELETED_ONLY = "deleted_only"


class Consistency(str, Enum):
    EVENTUAL = "eventual"
    WAIT = "wait"
    IMMEDIATE = "immediate"

    @property
    def refresh(self) -> Optional[str]:
        if self is Consistency.IMMEDIATE:
            return "true"
        if self is Consistency.WAIT:
            return "wait_for"
        return None


@dataclass
class CommandOptions:
    """Per-call options shared by reads and writes"""

    # Cache
    use_cache: bool = False
    cache_key: Optional[str] = None
    expires_in: Optional[int] = None

    # Paging
    page: Optional[int] = None
    limit: Optional[int] = None
    snapshot_paging: bool = False
    snapshot_lifetime: Optional[int] = None

    # None leaves the choice to the operation: reads use ACTIVE_ONLY, remove_all uses ALL
    soft_delete_mode: Optional[SoftDeleteMode] = None
    consistency: Consistency = Consistency.EVENTUAL

    # Writes
    notifications: bool = True
    batch_notifications: bool = False
    validation: bool = True
    skip_version_check: bool = False
    tolerate_partial_failure: bool = False
    retry_count: Optional[int] = None
    updated_ids_callback: Optional[Callable[[List[str]], Any]] = None

    def clone(self, **changes) -> "CommandOptions":
        return dataclasses.replace(self, **changes)

    def get_soft_delete_mode(self, default: SoftDeleteMode = SoftDeleteMode.ACTIVE_ONLY) -> SoftDeleteMode:
        return self.soft_delete_mode or default

    @property
    def is_paged(self) -> bool:
        return self.page is not None


def resolve_options(options: Optional[CommandOptions]) -> CommandOptions:
    """Copy the caller's options (or a fresh set) so the pipeline can adjust them freely"""
    if options is None:
        return CommandOptions()
    return options.clone()
