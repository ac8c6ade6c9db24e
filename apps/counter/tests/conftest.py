"""
Pytest fixtures for the counter service.

Endpoint tests run against an in-memory record store injected into the app;
SQL store tests point SQLAlchemy at a throwaway SQLite file.
"""

from __future__ import annotations

from typing import Generator

import pytest
from fastapi.testclient import TestClient

from counter_app.main import create_app
from counter_app.storage import InMemoryRecordStore


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def client(memory_store: InMemoryRecordStore) -> Generator[TestClient, None, None]:
    # Context manager runs the lifespan, so the store is initialised
    with TestClient(create_app(store=memory_store)) as c:
        yield c


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'counter.db'}"
