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
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from docrepo.models.document import ModifiedDocument


class ChangeType(str, Enum):
    ADDED = "added"
    SAVED = "saved"
    REMOVED = "removed"


class EntityChanged(BaseModel):
    """Outbound change notification. ``id`` is None for query-wide changes."""

    type: str
    id: Optional[str] = None
    change_type: ChangeType
    data: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class DocumentsEventArgs:
    documents: List[Any]
    repository: Any
    options: Any = None


@dataclass
class ModifiedDocumentsEventArgs:
    documents: List[ModifiedDocument]
    repository: Any
    options: Any = None


@dataclass
class DocumentsChangeEventArgs:
    change_type: ChangeType
    documents: List[ModifiedDocument]
    repository: Any
    options: Any = None


@dataclass
class BeforeQueryEventArgs:
    query: Any
    options: Any
    repository: Any
    document_type: Any = None


@dataclass
class BeforePublishEntityChangedEventArgs:
    message: EntityChanged
    repository: Any
    cancel: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


class AsyncEvent:
    """Ordered list of handlers, invoked one after another. Handlers may be sync or async."""

    def __init__(self):
        self._handlers: List[Callable] = []

    @property
    def has_handlers(self) -> bool:
        return len(self._handlers) > 0

    def add_handler(self, handler: Callable) -> Callable:
        self._handlers.append(handler)
        return handler

    def remove_handler(self, handler: Callable) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def __iadd__(self, handler: Callable) -> "AsyncEvent":
        self.add_handler(handler)
        return self

    def __isub__(self, handler: Callable) -> "AsyncEvent":
        self.remove_handler(handler)
        return self

    async def invoke(self, sender: Any, args: Any) -> None:
        for handler in list(self._handlers):
            result = handler(sender, args)
            if inspect.isawaitable(result):
                await result
