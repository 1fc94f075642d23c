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

from docrepo.exceptions import (
    DocumentError,
    DocumentNotFoundError,
    DocumentValidationError,
    DuplicateDocumentError,
    InputError,
    MigrationError,
    RepositoryError,
    VersionConflictError,
)
from docrepo.index import DailyIndex, Index, VersionedIndex
from docrepo.queries import RepositoryQuery
from docrepo.repository import BatchProcessor, ReadOnlyRepository, Repository

__version__ = "0.1.0"

__all__ = [
    "BatchProcessor",
    "DailyIndex",
    "DocumentError",
    "DocumentNotFoundError",
    "DocumentValidationError",
    "DuplicateDocumentError",
    "Index",
    "InputError",
    "MigrationError",
    "ReadOnlyRepository",
    "Repository",
    "RepositoryError",
    "RepositoryQuery",
    "VersionConflictError",
    "VersionedIndex",
]
