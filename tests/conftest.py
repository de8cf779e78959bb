from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app

from .fakes import FakeDatabase


@pytest.fixture()
def db() -> FakeDatabase:
    """Fresh in-memory database per test."""
    return FakeDatabase()


@pytest.fixture()
def client(db: FakeDatabase):
    """
    TestClient wired to the fake database.

    Not used as a context manager, so the lifespan hook (which talks to
    a real MongoDB) never runs.
    """
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()
