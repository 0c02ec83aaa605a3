"""
Pytest fixtures shared across the unit suites.

Environment is pinned before the app modules are imported: a fixed
SECRET_KEY (stable Fernet and state keys), an in-memory database and a
throwaway log directory. Every test gets its own in-memory SQLite engine.
"""
from __future__ import annotations

import os
import tempfile
import uuid

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-32-chars")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="listsync-logs-"))
os.environ.setdefault("SKIP_DB_INIT", "true")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import app.models  # noqa: F401  (registers every table)
from app.core.encryption import reset_key_cache
from app.integrations.location_store import LocationDataStore
from app.integrations.persistence import IntegrationPersistence
from app.integrations.token_store import InMemoryTokenStore
from app.models.user import User
from tests.lib import Routes


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def user(session) -> User:
    user = User(
        email="ada@example.com",
        phone_number="+15550100",
        first_name="Ada",
        last_name="Lovelace",
        username="ada",
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def user_id(user) -> uuid.UUID:
    return user.id


@pytest.fixture
def persistence(session) -> IntegrationPersistence:
    return IntegrationPersistence(session)


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def location_store(session, persistence) -> LocationDataStore:
    return LocationDataStore(session, persistence)


@pytest.fixture
def routes() -> Routes:
    return Routes()


@pytest.fixture(autouse=True)
def _fresh_fernet_key():
    reset_key_cache()
    yield
    reset_key_cache()
