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

from typing import Optional, Tuple, Union


class VersionStamp:
    """
    Optimistic concurrency token assigned by the store on every write.

    Stamps are ordered by (sequence_number, primary_term). The EMPTY stamp
    means "never written" and compares unequal to everything, itself included,
    so use ``is_empty`` to test for it.
    """

    __slots__ = ("_sequence_number", "_primary_term")

    def __init__(self, sequence_number: int = 0, primary_term: int = 0):
        self._sequence_number = int(sequence_number)
        self._primary_term = int(primary_term)

    @property
    def sequence_number(self) -> int:
        return self._sequence_number

    @property
    def primary_term(self) -> int:
        return self._primary_term

    @property
    def is_empty(self) -> bool:
        return self._sequence_number <= 0 and self._primary_term <= 0

    @classmethod
    def parse(cls, value: Optional[str]) -> "VersionStamp":
        """Parse "seq:term". Blank or malformed input yields EMPTY."""
        if not value or not value.strip():
            return EMPTY

        parts = value.strip().split(":")
        if len(parts) != 2:
            return EMPTY

        try:
            return cls(int(parts[0]), int(parts[1]))
        except ValueError:
            return EMPTY

    @classmethod
    def coerce(cls, value: Union["VersionStamp", str, None]) -> "VersionStamp":
        if isinstance(value, VersionStamp):
            return value
        return cls.parse(value)

    def _key(self) -> Tuple[int, int]:
        return (self._sequence_number, self._primary_term)

    def _other(self, other) -> Optional["VersionStamp"]:
        if isinstance(other, VersionStamp):
            return other
        if isinstance(other, str):
            return VersionStamp.parse(other)
        return None

    def __eq__(self, other) -> bool:
        other = self._other(other)
        if other is None:
            return NotImplemented
        if self.is_empty or other.is_empty:
            return False
        return self._key() == other._key()

    def __ne__(self, other) -> bool:
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __lt__(self, other) -> bool:
        other = self._other(other)
        if other is None:
            return NotImplemented
        return self._key() < other._key()

    def __le__(self, other) -> bool:
        other = self._other(other)
        if other is None:
            return NotImplemented
        return self._key() <= other._key()

    def __gt__(self, other) -> bool:
        other = self._other(other)
        if other is None:
            return NotImplemented
        return self._key() > other._key()

    def __ge__(self, other) -> bool:
        other = self._other(other)
        if other is None:
            return NotImplemented
        return self._key() >= other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        return f"{self._sequence_number}:{self._primary_term}"

    def __repr__(self) -> str:
        return f"VersionStamp({self._sequence_number}, {self._primary_term})"


EMPTY = VersionStamp(0, 0)
