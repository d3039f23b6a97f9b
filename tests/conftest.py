"""
Pytest configuration and fixtures.
"""
import pytest
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from unittest.mock import patch

from app.core.database import Base, build_engine, get_db
from app.main import app
from app.models import ApiKey
from app.services.change_feed import ChangeFeed, change_feed
from app.services.key_store import ApiKeyStore

# File-based SQLite for testing (more reliable than in-memory across threads)
TEST_DATABASE_URL = "sqlite:///./test_rot_keys.db"

OWNER = "owner-alice"
OTHER_OWNER = "owner-bob"

test_engine = build_engine(TEST_DATABASE_URL)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create all tables once per test session and drop them afterwards."""
    Base.metadata.drop_all(bind=test_engine)
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def clean_state():
    """Every test starts with an empty api_keys table and no feed subscribers."""
    yield
    with TestingSessionLocal() as db:
        db.query(ApiKey).delete()
        db.commit()
    change_feed.clear()


@pytest.fixture(scope="function", autouse=True)
def no_default_owner():
    """Require an explicit X-User-ID unless a test opts in."""
    with patch("app.core.config.settings.DEFAULT_OWNER_ID", None):
        yield


def override_get_db():
    """Override get_db dependency to use test database session."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client():
    """Test client bound to the test database, without an owner header."""
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def owner_client():
    """Test client acting as OWNER."""
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app, headers={"X-User-ID": OWNER})
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def other_client():
    """Test client acting as OTHER_OWNER."""
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app, headers={"X-User-ID": OTHER_OWNER})
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def db_session():
    """Database session for tests that need direct DB access."""
    db = TestingSessionLocal()
    try:
        yield db
        db.rollback()
    finally:
        db.close()


@pytest.fixture(scope="function")
def feed():
    """A private change feed so tests do not see each other's events."""
    return ChangeFeed()


@pytest.fixture(scope="function")
def store(db_session, feed):
    return ApiKeyStore(db_session, feed)


@pytest.fixture(scope="function")
def make_key(db_session):
    """Insert an API key row directly, bypassing the service layer."""
    def _make_key(
        key: str = "rot-abc123",
        name: str = "Default",
        user_id: str = OWNER,
        usage: int = 0,
        monthly_limit: int = 1000,
        is_active: bool = True,
    ) -> ApiKey:
        record = ApiKey(
            key=key,
            name=name,
            user_id=user_id,
            usage=usage,
            monthly_limit=monthly_limit,
            is_active=is_active,
        )
        db_session.add(record)
        db_session.commit()
        db_session.refresh(record)
        return record

    return _make_key


@pytest.fixture(scope="function")
def session_factory():
    """Session factory for components that open their own sessions."""
    return TestingSessionLocal
