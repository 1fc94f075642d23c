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

from docrepo.models.document import (
    Dated,
    EntityCapabilities,
    Identity,
    ModifiedDocument,
    SoftDeletable,
    Versioned,
)
from docrepo.models.events import AsyncEvent, ChangeType, EntityChanged
from docrepo.models.options import CommandOptions, Consistency, SoftDeleteMode
from docrepo.models.patch import JsonPatch, MergePatch, PatchOperation, ScriptPatch
from docrepo.models.results import ContinuationToken, CountResult, FindHit, FindResults
from docrepo.models.version import EMPTY, VersionStamp

__all__ = [
    "AsyncEvent",
    "ChangeType",
    "CommandOptions",
    "Consistency",
    "ContinuationToken",
    "CountResult",
    "Dated",
    "EMPTY",
    "EntityCapabilities",
    "EntityChanged",
    "FindHit",
    "FindResults",
    "Identity",
    "JsonPatch",
    "MergePatch",
    "ModifiedDocument",
    "PatchOperation",
    "ScriptPatch",
    "SoftDeletable",
    "SoftDeleteMode",
    "Versioned",
    "VersionStamp",
]
