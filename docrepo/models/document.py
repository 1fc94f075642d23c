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

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Generic, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from docrepo.models.version import EMPTY, VersionStamp


class Identity(BaseModel):
    id: Optional[str] = None


class Dated(BaseModel):
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None


class Versioned(BaseModel):
    """The version lives in store metadata, so it is never part of the source"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    version: VersionStamp = Field(default=EMPTY, exclude=True)


class SoftDeletable(BaseModel):
    is_deleted: bool = False


T = TypeVar("T", bound=BaseModel)


@dataclass(frozen=True)
class EntityCapabilities:
    has_identity: bool
    has_dates: bool
    is_versioned: bool
    supports_soft_deletes: bool

    @staticmethod
    @lru_cache(maxsize=None)
    def for_type(document_type: Type[BaseModel]) -> "EntityCapabilities":
        return EntityCapabilities(
            has_identity=issubclass(document_type, Identity),
            has_dates=issubclass(document_type, Dated),
            is_versioned=issubclass(document_type, Versioned),
            supports_soft_deletes=issubclass(document_type, SoftDeletable),
        )


@dataclass
class ModifiedDocument(Generic[T]):
    """A document being saved together with its stored state (None means create)"""

    value: T
    original: Optional[T] = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_document_id() -> str:
    return uuid.uuid4().hex


def get_id(document: Any) -> Optional[str]:
    return getattr(document, "id", None)


def get_version(document: Any) -> VersionStamp:
    return getattr(document, "version", EMPTY)


def to_source(document: BaseModel) -> Dict[str, Any]:
    """Serialize a document into the JSON source stored in the index"""
    return document.model_dump(mode="json", exclude={"id"})


def from_source(
    document_type: Type[T],
    source: Dict[str, Any],
    id: Optional[str] = None,
    version: VersionStamp = EMPTY,
) -> T:
    document = document_type.model_validate(source)
    capabilities = EntityCapabilities.for_type(document_type)
    if capabilities.has_identity and id is not None:
        document.id = id
    if capabilities.is_versioned:
        document.version = version
    return document
