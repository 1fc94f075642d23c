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

import copy
import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    EXISTS = "exists"


@dataclass
class FieldCondition:
    field: str
    operator: Operator
    value: Any = None


@dataclass
class DateRange:
    field: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class SortField:
    field: str
    descending: bool = False


@dataclass
class RepositoryQuery:
    """
    Structured query handed to the store adapters.

    Each adapter compiles it to its native form; the repository only ever
    adds conditions to a copy of the caller's query.
    """

    ids: List[str] = field(default_factory=list)
    excluded_ids: List[str] = field(default_factory=list)
    conditions: List[FieldCondition] = field(default_factory=list)
    date_ranges: List[DateRange] = field(default_factory=list)
    search: Optional[str] = None
    sort: List[SortField] = field(default_factory=list)

    def id(self, *ids: str) -> "RepositoryQuery":
        self.ids.extend(i for i in ids if i)
        return self

    def exclude_id(self, *ids: str) -> "RepositoryQuery":
        self.excluded_ids.extend(i for i in ids if i)
        return self

    def field_equals(self, name: str, value: Any) -> "RepositoryQuery":
        self.conditions.append(FieldCondition(name, Operator.EQUALS, value))
        return self

    def field_not_equals(self, name: str, value: Any) -> "RepositoryQuery":
        self.conditions.append(FieldCondition(name, Operator.NOT_EQUALS, value))
        return self

    def field_in(self, name: str, values: List[Any]) -> "RepositoryQuery":
        self.conditions.append(FieldCondition(name, Operator.IN, list(values)))
        return self

    def field_exists(self, name: str) -> "RepositoryQuery":
        self.conditions.append(FieldCondition(name, Operator.EXISTS))
        return self

    def date_range(
        self, name: str, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> "RepositoryQuery":
        self.date_ranges.append(DateRange(name, start, end))
        return self

    def search_text(self, text: str) -> "RepositoryQuery":
        self.search = text
        return self

    def sort_by(self, name: str) -> "RepositoryQuery":
        self.sort.append(SortField(name))
        return self

    def sort_by_descending(self, name: str) -> "RepositoryQuery":
        self.sort.append(SortField(name, descending=True))
        return self

    def merge(self, other: Optional["RepositoryQuery"]) -> "RepositoryQuery":
        """Add another query's conditions (for example a system filter) to this one"""
        if other is None:
            return self
        self.ids.extend(other.ids)
        self.excluded_ids.extend(other.excluded_ids)
        self.conditions.extend(copy.deepcopy(other.conditions))
        self.date_ranges.extend(copy.deepcopy(other.date_ranges))
        if other.search:
            self.search = f"({self.search}) {other.search}" if self.search else other.search
        if not self.sort:
            self.sort = copy.deepcopy(other.sort)
        return self

    def clone(self) -> "RepositoryQuery":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def fingerprint(self) -> str:
        payload = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()
