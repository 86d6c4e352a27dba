"""Pytest configuration and fixtures for ledger tests."""

import os
import pytest

from certledger.audit import AuditLogWriter
from certledger.config import Settings
from certledger.database import StockStore
from certledger.ledger import LedgerOperations
from certledger.recovery import RecoveryService


# File-backed SQLite by default so worker threads share one database;
# point TEST_DATABASE_URL at PostgreSQL to run against real row locks.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL or f"sqlite:///{tmp_path / 'ledger.db'}",
        FALLBACK_LOG_DIR=str(tmp_path / "logs"),
        LOCK_TIMEOUT_SECONDS=10.0,
        _env_file=None,
    )


@pytest.fixture
def store(settings: Settings):
    """Fresh Stock Store for every test."""
    store = StockStore(settings)
    store.drop_all()
    store.create_all()
    try:
        yield store
    finally:
        store.drop_all()
        store.dispose()


@pytest.fixture
def audit(store: StockStore, settings: Settings) -> AuditLogWriter:
    return AuditLogWriter(store, settings)


@pytest.fixture
def ledger(store: StockStore, audit: AuditLogWriter, settings: Settings) -> LedgerOperations:
    return LedgerOperations(store, audit, settings)


@pytest.fixture
def recovery(store: StockStore, audit: AuditLogWriter, settings: Settings) -> RecoveryService:
    return RecoveryService(store, audit, settings)


@pytest.fixture
def batch(ledger: LedgerOperations):
    """Batch B-001: JKT holds 50 certificates and 20 medals, SBY 10 certificates."""
    result = ledger.create_batch("B-001", {
        "JKT": {"certificates": 50, "medals": 20},
        "SBY": {"certificates": 10, "medals": 0},
    }, performed_by="tester")
    assert result.is_ok, result
    return result.value


@pytest.fixture
def impatient_store(store: StockStore, settings: Settings):
    """Second handle on the same database that gives up on a lock after half a second."""
    impatient = StockStore(settings.model_copy(update={"LOCK_TIMEOUT_SECONDS": 0.5}))
    try:
        yield impatient
    finally:
        impatient.dispose()
