"""
Shared fixtures.

DATABASE_URL must be set before regulation_engine.config is imported:
regulation_engine.database builds its engine from it at import time.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from regulation_engine.auth import create_access_token
from regulation_engine.database import Base
from regulation_engine.models import db_models  # noqa: F401
from regulation_engine.services.behavior import BehaviorEventLog
from regulation_engine.services.consent import ConsentRegistry
from regulation_engine.services.surfacing import SignalDefinitionRegistry


USER_ID = "user-123"
OTHER_USER_ID = "user-456"


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def session_factory():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite for tests that use several threads or sessions."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'regulation.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def mock_dispatcher():
    """Records invalidation dispatches without running them."""
    return MagicMock()


@pytest.fixture
def event_log(db, mock_dispatcher):
    return BehaviorEventLog(db, dispatcher=mock_dispatcher)


@pytest.fixture
def grant(db):
    """grant("session_structures", user_id=...) -> commits an active consent."""
    def _grant(*categories, user_id=USER_ID):
        registry = ConsentRegistry(db)
        for category in categories:
            registry.set_consent(user_id, category, True)
        db.commit()
    return _grant


@pytest.fixture
def definitions(db):
    SignalDefinitionRegistry(db).seed_defaults()
    db.commit()


@pytest.fixture
def now():
    return datetime.utcnow().replace(microsecond=0)


@pytest.fixture
def add_events(event_log, db):
    """add_events("context_switch", count=3, start=t, step=timedelta(minutes=1)) -> rows."""
    def _add(event_type, count=1, start=None, step=timedelta(minutes=1), user_id=USER_ID, **kwargs):
        start = start or datetime.utcnow() - timedelta(minutes=count)
        rows = [
            event_log.append(user_id, event_type, occurred_at=start + i * step, **kwargs)
            for i in range(count)
        ]
        db.commit()
        return rows
    return _add


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token(USER_ID)}"}


@pytest.fixture
def client(session_factory, mock_dispatcher):
    from fastapi.testclient import TestClient

    from regulation_engine.database import get_db
    from regulation_engine.main import app
    from regulation_engine.routers.dependencies import get_invalidation_dispatcher, get_session_factory

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_invalidation_dispatcher] = lambda: mock_dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()
