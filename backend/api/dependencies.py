"""Shared FastAPI dependencies."""
from __future__ import annotations

from db.repository import Repository, SqlRepository

_repository: Repository | None = None


def get_repository() -> Repository:
    """Process-wide SQL repository; overridden in tests."""
    global _repository
    if _repository is None:
        _repository = SqlRepository()
    return _repository
