"""Fixtures shared by the service, engine and API tests."""
from __future__ import annotations

import pytest

from fakes import InMemoryRepository
from models.region import Region


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def region(repository: InMemoryRepository) -> Region:
    return repository.add_region("JP", "Japan", "JPY")
