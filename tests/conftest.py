"""Shared fixtures: an in-memory SQLite store wired into the app's session factory."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from studyplan import google_helpers  # noqa: E402
from studyplan.entities import Base, User  # noqa: E402
from studyplan.llm_client import reset_global_backoff  # noqa: E402


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = google_helpers.create_session_factory(engine)
    google_helpers.set_session_factory(factory)
    yield factory
    google_helpers.set_session_factory(None)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(session_factory):
    counter = {"n": 0}

    def _make(**fields) -> int:
        counter["n"] += 1
        fields.setdefault("name", f"Student {counter['n']}")
        fields.setdefault("email", f"student{counter['n']}@example.com")
        session = session_factory()
        try:
            user = User(**fields)
            session.add(user)
            session.commit()
            return user.id
        finally:
            session.close()

    return _make


@pytest.fixture
def client(session_factory):
    from fastapi.testclient import TestClient

    from server import app

    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def _no_llm_backoff():
    reset_global_backoff()
    yield
    reset_global_backoff()
