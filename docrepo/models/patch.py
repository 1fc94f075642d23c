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
from typing import Any, Dict, List, Union

from docrepo.exceptions import InputError


@dataclass(frozen=True)
class MergePatch:
    """Partial document merged into the stored source"""

    fields: Dict[str, Any]


@dataclass(frozen=True)
class JsonPatch:
    """Ordered RFC 6902 operations, e.g. {"op": "replace", "path": "/name", "value": "x"}"""

    operations: List[Dict[str, Any]]


@dataclass(frozen=True)
class ScriptPatch:
    """Store-side script, executed with ``params``"""

    script: str
    params: Dict[str, Any] = field(default_factory=dict)


PatchOperation = Union[MergePatch, JsonPatch, ScriptPatch]


def check_patch(operation: PatchOperation) -> PatchOperation:
    if operation is None:
        raise InputError("operation is required")
    if isinstance(operation, ScriptPatch):
        if not operation.script:
            raise InputError("script patch requires a script")
    elif isinstance(operation, JsonPatch):
        if not operation.operations:
            raise InputError("json patch requires at least one operation")
    elif isinstance(operation, MergePatch):
        if not operation.fields:
            raise InputError("merge patch requires at least one field")
    else:
        raise InputError(f"Unknown patch operation: {type(operation).__name__}")
    return operation
