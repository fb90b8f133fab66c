"""Pytest configuration and shared fixtures."""

import pytest

from mocflow.core.config import Settings
from mocflow.core.workflow.service import ChangeRequestService
from mocflow.db.session import create_db_engine, create_session_factory, init_db


@pytest.fixture
def engine(tmp_path):
    """SQLite database file per test, so threads can open their own connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'mocflow-test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None, notification_dispatch="inline")


@pytest.fixture
def service(db_session, settings):
    return ChangeRequestService(db_session, settings=settings)


@pytest.fixture
def client(session_factory):
    """FastAPI test client bound to the per-test database."""
    from fastapi.testclient import TestClient

    from mocflow.api.deps import get_db
    from mocflow.api.main import app

    def _get_test_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_test_db
    yield TestClient(app)
    app.dependency_overrides.clear()
