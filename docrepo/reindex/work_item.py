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

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ReindexWorkItem(BaseModel):
    """
    One migration from ``old_index`` to ``new_index``.

    The engine does not persist work items. Re-running the same item after a
    crash resumes from the newest timestamp already copied.
    """

    old_index: str
    new_index: str
    alias: Optional[str] = None
    timestamp_field: Optional[str] = None
    start_utc: Optional[datetime] = None
    delete_old: bool = False
    script: Optional[str] = None

    @property
    def error_index(self) -> str:
        return f"{self.new_index}-error"
