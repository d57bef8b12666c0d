"""Pytest configuration and shared fixtures"""

import pytest
import os
import sys
from typing import AsyncGenerator, List
from datetime import date
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Keep the application's default engine off the working directory
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from src.models.database import Base
from src.models import db_models, line_item_db_models  # noqa: F401
from src.models.estimate import Estimate, LineItem
from src.approval.auto_approval import ApprovalPolicy
from src.services.db_service import DatabaseService
from src.services.version_service import VersionStore


# Test database setup (SQLite in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False
)

TestingSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False
)


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test

    Yields:
        Async database session
    """
    # Create tables
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Create session
    async with TestingSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

    # Drop tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def sample_estimate() -> Estimate:
    """Sample estimate Pydantic model for testing"""
    return Estimate(
        id="test-estimate-123",
        customer_name="Jordan Rivera",
        customer_email="jordan@example.com",
        event_name="Spring Gala",
        event_date=date(2026, 4, 18),
        guest_count=50,
    )


@pytest.fixture
def government_estimate() -> Estimate:
    """Estimate flagged as a government contract (tax exempt)"""
    return Estimate(
        id="test-estimate-gov",
        customer_name="City Parks Department",
        event_name="Volunteer Lunch",
        guest_count=40,
        compliance_level="government",
        requires_po_number=True,
    )


@pytest.fixture
def sample_line_items() -> List[LineItem]:
    """Two items totalling 5,000 cents"""
    return [
        LineItem(
            id="item-entree",
            title="Entree",
            description="Herb roasted chicken",
            category="food",
            quantity=2,
            unit_price=1500,
            total_price=3000,
        ),
        LineItem(
            id="item-dessert",
            title="Dessert",
            description="Lemon tart",
            category="food",
            quantity=4,
            unit_price=500,
            total_price=2000,
        ),
    ]


@pytest.fixture
def extra_line_item() -> LineItem:
    """Unsaved item worth 2,500 cents"""
    return LineItem(
        title="Service",
        description="Bartender, four hours",
        category="service",
        quantity=1,
        unit_price=2500,
        total_price=2500,
    )


@pytest.fixture
def approval_policy() -> ApprovalPolicy:
    """Policy with a $10.00 bound and the default safe types"""
    return ApprovalPolicy(
        max_cost_delta_cents=1000,
        safe_request_types=frozenset({"quantity_change", "reschedule", "note_only"}),
    )


@pytest.fixture
async def estimate_with_version(db_session, sample_estimate, sample_line_items):
    """Persisted estimate whose version 1 holds the sample line items"""
    estimate = await DatabaseService.create_estimate(sample_estimate, db=db_session)
    version = await VersionStore(db=db_session).create_version(
        estimate.id, sample_line_items, notes="Initial estimate", created_by="tester"
    )
    return estimate, version
