"""
Pytest fixtures for the billing kernel test suite.

Provides:
- A session-scoped engine and schema (SQLite in memory by default)
- Per-test sessions isolated by an outer transaction that is rolled back
- Deterministic clock, services and captured structured logs

Environment Variables:
- DATABASE_URL: database URL.  Defaults to in-memory SQLite; point it at
  PostgreSQL (postgresql+psycopg://...) to run against the production
  backend.
"""

import json
import logging
import os
from datetime import UTC, date, datetime
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from billing_engines.milestones import MilestoneScheduler
from billing_engines.sequencer import OrderKeySequencer
from billing_kernel.db.engine import (
    create_tables,
    drop_tables,
    init_engine_from_url,
    reset_engine,
)
from billing_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_kernel.models.quote import EventQuote
from billing_services.change_audit_service import ChangeAuditService
from billing_services.line_item_service import LineItemService
from billing_services.schedule_service import ScheduleService

DEFAULT_DATABASE_URL = "sqlite://"

# Fixed "now" for every deterministic test: 2024-03-01 09:00 UTC
TEST_NOW = datetime(2024, 3, 1, 9, 0, 0, tzinfo=UTC)
TEST_TODAY = date(2024, 3, 1)


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            ...
            logs = captured_logs()
            assert any(r["message"] == "schedule_generated" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Session-scoped DB infrastructure
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    eng = init_engine_from_url(get_database_url(), echo=False)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    """Create all tables once per session; immutability listeners stay active."""
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()
    drop_tables()


@pytest.fixture(scope="function")
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Provide a database session for testing.

    The session joins an outer transaction on a dedicated connection.
    Service SAVEPOINTs nest inside it, and teardown rolls everything back.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(TEST_NOW)


@pytest.fixture
def sequencer() -> OrderKeySequencer:
    return OrderKeySequencer(gap=10)


@pytest.fixture
def scheduler() -> MilestoneScheduler:
    return MilestoneScheduler()


@pytest.fixture
def line_item_service(session, deterministic_clock) -> LineItemService:
    return LineItemService(session, clock=deterministic_clock)


@pytest.fixture
def schedule_service(session, deterministic_clock) -> ScheduleService:
    return ScheduleService(session, clock=deterministic_clock)


@pytest.fixture
def change_audit_service(session, deterministic_clock) -> ChangeAuditService:
    return ChangeAuditService(session, clock=deterministic_clock)


@pytest.fixture
def quote(session) -> EventQuote:
    """A persisted event quote with typical tracked values."""
    q = EventQuote(
        event_name="Harper Wedding Reception",
        event_date=date(2024, 6, 15),
        start_time="17:30",
        guest_count=120,
        location="Riverside Hall",
        service_type="plated",
        dietary_restrictions=["vegetarian", "gluten_free"],
        appetizers=["Bruschetta", "Crab Cakes"],
        desserts=["Tiramisu"],
        special_requests=None,
        contact_phone="555-0100",
        email="harper@example.com",
    )
    session.add(q)
    session.flush()
    return q
