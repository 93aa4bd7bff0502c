"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: SQLite in-memory database (PostgreSQL if DATABASE_URL is set)
- clock / now: FixedClock pinned to a known instant
- billing_config: Config with a known beta code table
- make_account: Factory for Account snapshots with unique ids
- memory_store / dispatcher: In-memory collaborators
- temp_config_dir / make_yaml_config: Temporary YAML config files
"""

import os
import tempfile
import uuid
import pytest
import yaml
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from billing_core.config.billing_config import (
    BetaCodeLookup,
    BillingConfig,
    reset_billing_config_loader,
)
from billing_core.models.account import Account, SubscriptionStatus
from billing_core.platform.clock import FixedClock
from billing_core.repositories.account_repository import InMemoryAccountStore
from billing_core.services.notifications import RecordingDispatcher

# Set test environment
os.environ.setdefault("ENV", "test")
os.environ.setdefault("NOTIFICATION_EMAIL_PROVIDER", "mock")

NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        # Handle Render's postgres:// URL format
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    return _get_test_database_url().startswith("postgresql")


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        # SQLite in-memory for fast unit tests
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    from billing_core.db_base import Base
    from billing_core.models import account_record  # noqa: F401

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Repository commits join the outer connection transaction, which is
    rolled back after the test.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=connection)
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def _reset_config_loader():
    """Each test starts with a fresh billing config singleton."""
    reset_billing_config_loader()
    yield
    reset_billing_config_loader()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        beta_codes=BetaCodeLookup({
            "LEB BETA": datetime(2025, 12, 9, tzinfo=timezone.utc),
            "BETA2023": datetime(2024, 12, 31, tzinfo=timezone.utc),
        }),
    )


@pytest.fixture
def make_account():
    """
    Factory fixture for Account snapshots.

    Usage:
        account = make_account(subscription_status=SubscriptionStatus.ACTIVE)
    """
    def _make(**overrides) -> Account:
        suffix = uuid.uuid4().hex[:8]
        fields = {
            "account_id": f"acct_{suffix}",
            "email": f"user_{suffix}@example.com",
            "subscription_status": SubscriptionStatus.NONE,
        }
        fields.update(overrides)
        return Account(**fields)
    return _make


@pytest.fixture
def memory_store() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")
    config.addinivalue_line("markers", "db: mark test as requiring the database")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("billing.yml", {"entitlements": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
