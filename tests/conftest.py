# ABOUTME: Pytest fixtures and configuration
# ABOUTME: Provides test database, client, services, and API key fixtures

import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient

from cn_api.config import Settings
from cn_api.database import Database
from cn_api.main import create_app
from cn_api.models.database import APIKey, CNProduct, MonthlyUsageSummary
from cn_api.services.key_manager import hash_api_key
from cn_api.utils.billing_period import billing_month

ADMIN_API_KEY = "test_admin_bootstrap_key"


class FixedClock:
    """Callable clock for services; tests move it by assigning .now."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def database(tmp_path):
    """File-backed SQLite database so background threads get their own connections."""
    db = Database(f"sqlite:///{tmp_path / 'test.db'}")
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def broken_database():
    """A database with no tables: every query fails."""
    db = Database("sqlite://")
    yield db
    db.dispose()


@pytest.fixture
def db_session(database):
    """Provides a database session for tests."""
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 11, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        admin_api_key=ADMIN_API_KEY,
        create_tables_on_startup=False,
    )


@pytest.fixture
def test_app(settings, database):
    return create_app(settings, database)


@pytest.fixture
def client(test_app):
    """Provides a FastAPI test client with test database."""
    with TestClient(test_app) as test_client:
        yield test_client


@pytest.fixture
def gateway(test_app):
    return test_app.state.gateway


@pytest.fixture
def make_api_key(db_session):
    """Factory that stores an API key directly and returns its row."""
    def _make(key="test_key_12345", tier="basic", is_active=True, expires_at=None, is_admin=False):
        api_key = APIKey(
            key_hash=hash_api_key(key),
            client_name="Test Client",
            tier=tier,
            is_active=is_active,
            is_admin=is_admin,
            expires_at=expires_at,
        )
        db_session.add(api_key)
        db_session.commit()
        db_session.refresh(api_key)
        return api_key
    return _make


@pytest.fixture
def set_usage(db_session):
    """Factory that sets a key's call counter for a billing month (default: current)."""
    def _set(api_key_id, total_calls, period=None):
        period = period or billing_month()
        summary = db_session.get(MonthlyUsageSummary, (api_key_id, period))
        if summary is None:
            summary = MonthlyUsageSummary(api_key_id=api_key_id, billing_month=period)
            db_session.add(summary)
        summary.total_calls = total_calls
        summary.last_updated = datetime.now(timezone.utc)
        db_session.commit()
    return _set


@pytest.fixture
def make_product(db_session):
    def _make(cn_number="000001", product_name="Chicken Nuggets", **fields):
        product = CNProduct(cn_number=cn_number, product_name=product_name, **fields)
        db_session.add(product)
        db_session.commit()
        return product
    return _make
