"""
Pytest fixtures for the budget test suite.

Provides:
- An in-memory SQLite engine per test (savepoint hooks enabled)
- Sessions, a deterministic clock and a recording observability sink
- BudgetServices wired in NATIVE and COMPENSATING transaction modes
- Small builders for the structure every service test needs

Environment Variables:
- BUDGET_TEST_DATABASE_URL: run the suite against another database
  (e.g. postgresql+psycopg2://...).  Defaults to in-memory SQLite.
"""

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy.orm import sessionmaker

from budget_kernel.config import BudgetSettings
from budget_kernel.db.engine import build_engine, create_tables, drop_tables
from budget_kernel.domain.clock import DeterministicClock
from budget_kernel.domain.values import ResourceType
from budget_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from budget_kernel.observability import LoggingObservability, RecordingObservability
from budget_kernel.services.transactions import TransactionMode
from budget_services import BudgetServices, ResourceInput

TEST_ACTOR_ID = "USR-TEST-01"
TEST_APPROVER_ID = "USR-APPROVER-01"
TEST_PROJECT_ID = "PRY0000000001"

DEFAULT_TEST_URL = "sqlite://"


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
    Capture budget_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, services):
            services.lifecycle.create_parent(...)
            logs = captured_logs()
            assert any(r["event"] == "budget_group_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("budget_kernel")
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
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    url = os.environ.get("BUDGET_TEST_DATABASE_URL", DEFAULT_TEST_URL)
    engine = build_engine(url)
    create_tables(engine)
    yield engine
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    session = factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def recorder():
    """Recording sink that still forwards every event to the JSON logger."""
    return RecordingObservability(forward_to=LoggingObservability("services"))


@pytest.fixture
def settings():
    return BudgetSettings(database_url=DEFAULT_TEST_URL)


@pytest.fixture
def services(session, settings, clock, recorder):
    return BudgetServices.build(
        session,
        settings,
        clock=clock,
        observability=recorder,
        mode=TransactionMode.NATIVE,
    )


@pytest.fixture
def compensating_services(session, settings, clock, recorder):
    return BudgetServices.build(
        session,
        settings,
        clock=clock,
        observability=recorder,
        mode=TransactionMode.COMPENSATING,
    )


@pytest.fixture(params=[TransactionMode.NATIVE, TransactionMode.COMPENSATING], ids=lambda m: m.value)
def any_mode_services(request, session, settings, clock, recorder):
    """BudgetServices in each transaction mode."""
    return BudgetServices.build(
        session,
        settings,
        clock=clock,
        observability=recorder,
        mode=request.param,
    )


# =============================================================================
# Builders
# =============================================================================


@pytest.fixture
def draft_budget(services):
    """v1 of a fresh version group with 18% tax and no profit."""
    return services.lifecycle.create_parent(
        TEST_PROJECT_ID, "Warehouse", tax_percentage=Decimal("18")
    )


@pytest.fixture
def priced_budget(services, draft_budget):
    """
    A version with one title, one line item and one analysis.

    The analysis holds a MATERIAL line (10 units, 5% waste, price 20) so the
    line item is priced at 210.00 x 10 = 2100.00.
    """
    title = services.titles.create(draft_budget.budget_id, "01", "Structures")
    item = services.line_items.create(
        title.title_id, "01.01", "Concrete", unit="m3", quantity=Decimal("10")
    )
    cement = services.prices.create_price(
        draft_budget.budget_id,
        "RES-MAT-01",
        "MAT-01",
        "Cement",
        "bag",
        ResourceType.MATERIAL,
        Decimal("20"),
    )
    analysis = services.analyses.create_analysis(
        item.line_item_id,
        resources=[
            ResourceInput(
                resource_type=ResourceType.MATERIAL,
                quantity=Decimal("10"),
                unit="bag",
                description="Cement",
                resource_id=cement.resource_id,
                price_id=cement.price_id,
                waste_percentage=Decimal("5"),
            )
        ],
    )
    return {
        "budget": draft_budget,
        "title": title,
        "line_item": item,
        "price": cement,
        "analysis": analysis,
    }
