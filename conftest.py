"""
PyTest Configuration for the message pipeline
Provides fixtures for testing with a throwaway SQLite database and mock services.
"""
import os

# ── Environment for the app under test; must be set before main is imported ──
TEST_DATABASE_URL = os.getenv('TEST_DATABASE_URL', 'sqlite:///./test.db')
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["JOB_WORKER_ENABLED"] = "false"
os.environ.setdefault("WHATSAPP_APP_SECRET", "test_app_secret")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "test_verify_token")
os.environ.setdefault("JWT_SECRET_KEY", "test_jwt_secret_that_is_long_enough_for_hs256")
os.environ.pop("REDIS_URL", None)

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from config.cache import TTLCache
from config.database import Base, get_db
from config.settings import Settings
from main import app

# SQLite needs check_same_thread=False for FastAPI's threaded test client
connect_args = {"check_same_thread": False} if "sqlite" in TEST_DATABASE_URL else {}
test_engine = create_engine(TEST_DATABASE_URL, connect_args=connect_args)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


# Enable foreign keys for SQLite
@event.listens_for(test_engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    if "sqlite" in TEST_DATABASE_URL:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test with automatic rollback.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def session_cache():
    """Fresh in-process cache, also installed on the app for API tests."""
    cache = TTLCache()
    app.state.session_cache = cache
    return cache


@pytest.fixture
def settings():
    """Settings built without touching os.environ; override per test as needed."""
    return Settings(
        webhook_app_secret="test_app_secret",
        webhook_verify_token="test_verify_token",
        test_numbers=["+15556485637"],
        test_tenant_id=None,
        llm_base_url="https://llm.test/api/v1",
        llm_api_key="test-llm-key",
        provider_base_url="https://provider.test/api/v5",
        provider_auth_key="test-auth-key",
        provider_sender="15550001111",
        redis_url=None,
    )


@pytest.fixture(scope="function")
def client(db_session, session_cache):
    """
    FastAPI TestClient with overridden database dependency.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """
    Mock authentication headers for testing protected endpoints.
    """
    import jwt
    from main import JWT_SECRET, JWT_ALGORITHM

    token = jwt.encode(
        {
            "sub": "test_user_id",
            "tenant_id": "test_tenant_id",
        },
        JWT_SECRET,
        algorithm=JWT_ALGORITHM
    )

    return {
        "Authorization": f"Bearer {token}",
        "X-Tenant-Id": "test_tenant_id"
    }


@pytest.fixture
def sample_tenant(db_session):
    """Create a verified tenant for testing."""
    from models import Tenant

    tenant = Tenant(
        id="test_tenant_id",
        organization="Test Org",
        routing_phone="+15550001111",
        business_context="We sell handmade candles. Shipping takes 3-5 business days.",
        ai_enabled_default=True,
        verified=True,
    )
    db_session.add(tenant)
    db_session.commit()
    db_session.refresh(tenant)
    return tenant


@pytest.fixture
def sample_conversation(db_session, sample_tenant):
    """Create an open conversation for the sample tenant."""
    from conversations.models import Conversation

    conversation = Conversation(
        tenant_id=sample_tenant.id,
        customer_phone="+14155550100",
        customer_name="Ada",
        status="active",
        ai_enabled=True,
    )
    db_session.add(conversation)
    db_session.commit()
    db_session.refresh(conversation)
    return conversation


@pytest.fixture
def no_sleep():
    """Async sleep replacement that records requested delays."""
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    fake_sleep.delays = delays
    return fake_sleep


@pytest.fixture
def mock_provider(mocker):
    """Patch the outbound provider so nothing leaves the process."""
    from delivery.provider import ProviderResult

    mock = mocker.patch('delivery.provider.ProviderClient.send')
    mock.return_value = ProviderResult(message_id='wamid.test123', status='sent')
    return mock


# Pytest configuration
def pytest_configure(config):
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "unit: mark test as unit test")
