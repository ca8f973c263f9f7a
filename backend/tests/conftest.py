"""Pytest configuration and fixtures for the ledger tests.

Each test gets its own SQLite database file (through aiosqlite) with the
ledger tables created from the models, a frozen clock, and a coordinator
bound to both.  API tests talk to the FastAPI app over httpx's ASGI
transport with the coordinator dependency overridden.
"""

import os

# Must be set before app modules build the engine and settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ENABLE_OVERDUE_SCHEDULER", "false")
os.environ.setdefault("RETRY_BACKOFF_SECONDS", "0")

import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.database import Base
from app.deps import get_coordinator
from app.main import app
from app.models import (
    BillType,
    DocumentKind,
    LedgerDocument,
    ServiceChargeType,
    TaxMode,
    Tenant,
)
from app.services.payments import derive_status
from app.services.reconciliation import LedgerCoordinator

NOW = datetime(2025, 5, 15, 12, 0, 0)


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _enable_savepoints(engine) -> None:
    """Let SQLAlchemy, not the driver, emit BEGIN so SAVEPOINT works on SQLite.

    BEGIN IMMEDIATE takes the write lock up front, so concurrent writers queue
    on the busy timeout the way row locks make them queue on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# ── Database ─────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"timeout": 30},
    )
    _enable_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Plain session for seeding and reading back committed state."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def coordinator(session_factory, clock) -> LedgerCoordinator:
    return LedgerCoordinator(session_factory, clock=clock, backoff_seconds=0)


@pytest_asyncio.fixture
async def client(coordinator) -> AsyncGenerator[AsyncClient, None]:
    """Test client with the coordinator dependency pointed at the test database."""
    app.dependency_overrides[get_coordinator] = lambda: coordinator

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def tenant(db_session: AsyncSession) -> Tenant:
    """Tenant paying 50,000 rent, VAT exclusive at the default rate, 10% service charge."""
    tenant = Tenant(
        full_name="Wanjiru Kamau",
        rent=Decimal("50000.00"),
        vat_type=TaxMode.EXCLUSIVE,
        vat_rate=None,
        service_charge_type=ServiceChargeType.PERCENTAGE,
        service_charge_percentage=10.0,
    )
    db_session.add(tenant)
    await db_session.commit()
    return tenant


_refs = itertools.count(1)


@pytest.fixture
def make_document(session_factory, tenant):
    """Insert a ledger document with explicit amounts and return it."""

    async def _make(
        grand_total,
        amount_paid="0",
        *,
        kind: DocumentKind = DocumentKind.BILL,
        parent: LedgerDocument | None = None,
        due_date: datetime | None = NOW + timedelta(days=14),
        created_at: datetime = NOW,
        reference_number: str | None = None,
        **fields,
    ) -> LedgerDocument:
        grand_total = Decimal(str(grand_total))
        amount_paid = Decimal(str(amount_paid))
        doc = LedgerDocument(
            reference_number=reference_number or f"TEST-{next(_refs):06d}",
            kind=kind,
            tenant_id=tenant.id,
            parent_bill_id=parent.id if parent is not None else None,
            bill_type=fields.pop("bill_type", BillType.WATER),
            subtotal=grand_total,
            tax_amount=Decimal("0"),
            grand_total=grand_total,
            amount_paid=amount_paid,
            balance=grand_total - amount_paid,
            status=fields.pop(
                "status", derive_status(amount_paid, grand_total, due_date, NOW)
            ),
            issue_date=created_at,
            due_date=due_date,
            created_at=created_at,
            **fields,
        )
        async with session_factory() as session:
            session.add(doc)
            await session.commit()
        return doc

    return _make


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: HTTP API tests")
