"""
Shared fixtures for repository tests.

Repositories run against the in-memory store, cache and publisher so the
full write pipeline (events, cache, notifications) can be observed.
"""

import pytest

from docrepo.cache import InMemoryCacheClient
from docrepo.index import Index
from docrepo.messaging import InMemoryMessagePublisher
from docrepo.repository import Repository
from docrepo.store import InMemoryStore
from entities import INCREMENT_AGE, Employee, LogEvent, increment_age


@pytest.fixture
def store():
    store = InMemoryStore()
    store.register_script(INCREMENT_AGE, increment_age)
    return store


@pytest.fixture
def cache():
    return InMemoryCacheClient()


@pytest.fixture
def publisher():
    return InMemoryMessagePublisher()


@pytest.fixture
def employee_index(store):
    return Index(store, "employees")


@pytest.fixture
def repository(employee_index, cache, publisher):
    return Repository(Employee, employee_index, cache=cache, publisher=publisher)


@pytest.fixture
def uncached_repository(employee_index, publisher):
    return Repository(Employee, employee_index, publisher=publisher)


@pytest.fixture
def log_repository(store, publisher):
    return Repository(LogEvent, Index(store, "events"), publisher=publisher)
