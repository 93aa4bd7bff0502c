"""Tests for engine and session management."""

import pytest
from sqlalchemy import text

from billing_core.database import session as db_session_module


@pytest.fixture(autouse=True)
def _fresh_engine():
    db_session_module.reset_engine()
    yield
    db_session_module.reset_engine()


def test_postgres_scheme_is_normalized(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://user:pw@db:5432/billing")

    assert db_session_module._get_database_url() == "postgresql://user:pw@db:5432/billing"


def test_missing_url_raises_runtime_error(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="Database not configured"):
        next(db_session_module.get_db_session_sync())


def test_session_is_usable_and_engine_is_shared(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'billing.db'}")
    monkeypatch.setenv("DATABASE_POOL_SIZE", "2")

    for session in db_session_module.get_db_session_sync():
        assert session.execute(text("SELECT 1")).scalar() == 1

    assert db_session_module.get_engine() is db_session_module.get_engine()
    assert db_session_module.get_engine().pool.size() == 2
