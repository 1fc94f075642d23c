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

from typing import Any, List, Optional


class InputError(ValueError):
    """Raised for missing or empty required arguments, before any I/O happens"""


class RepositoryError(Exception):
    """Base class for all repository failures"""


class DocumentValidationError(RepositoryError):
    """A document failed its entity validator"""

    def __init__(self, message: str, document: Any = None):
        super().__init__(message)
        self.document = document


class DocumentError(RepositoryError):
    """
    A store request failed.

    The outgoing request (method, index, body) is kept for diagnostics and the
    underlying store error is chained as ``__cause__``.
    """

    def __init__(self, message: str, request: Optional[dict] = None):
        super().__init__(message)
        self.request = request or {}

    def __str__(self) -> str:
        message = super().__str__()
        if self.request:
            return f"{message} (request: {self.request})"
        return message


class DocumentNotFoundError(DocumentError):
    def __init__(self, id: str, request: Optional[dict] = None):
        super().__init__(f"Document {id} not found", request)
        self.id = id


class DuplicateDocumentError(DocumentError):
    def __init__(self, ids: List[str], request: Optional[dict] = None):
        super().__init__(f"Documents already exist: {', '.join(ids)}", request)
        self.ids = ids


class VersionConflictError(DocumentError):
    """The supplied version stamp is stale for one or more documents"""

    def __init__(self, ids: List[str], request: Optional[dict] = None):
        super().__init__(f"Version conflict for documents: {', '.join(ids)}", request)
        self.ids = ids


class MigrationError(RepositoryError):
    """A reindex pass failed or stalled"""
