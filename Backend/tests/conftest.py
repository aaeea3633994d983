"""
Pytest configuration and fixtures for async database testing.

Tests run against an in-memory SQLite database (aiosqlite) that is created
fresh for every test, so no external database is required.
"""
import os

# Must be set before agenda.core.config caches its settings.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AGENDA_API_KEY"] = "test-agenda-key"

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from agenda.core.db import Base
from agenda.models import Booking, BookingStatus, Service, Staff, Unit
from agenda.tenancy.context import UnitContext
from agenda.timezones import OffsetTable, normalize_timestamp

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
API_KEY = "test-agenda-key"


def enable_sqlite_transactions(engine) -> None:
    """
    Let SQLite run real BEGIN/SAVEPOINT transactions.

    The sqlite3 driver otherwise defers BEGIN until the first write and
    commits SAVEPOINTs early, which hides rollback behaviour.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
async def async_engine():
    """
    Create an in-memory engine with the full schema.

    StaticPool keeps a single connection so every session sees the same
    in-memory database.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_transactions(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine):
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_maker() as session:
        yield session


@pytest.fixture
def offset_table() -> OffsetTable:
    return OffsetTable()


@pytest.fixture
async def unit(async_session: AsyncSession) -> Unit:
    """A Sao Paulo unit open 07:00-21:00."""
    unit = Unit(
        name="Barbearia Centro",
        timezone="America/Sao_Paulo",
        opening_hour=7,
        closing_hour=21,
        instance_name="barbearia-centro",
    )
    async_session.add(unit)
    await async_session.commit()
    return unit


@pytest.fixture
async def other_unit(async_session: AsyncSession) -> Unit:
    unit = Unit(name="Barbearia Norte", timezone="America/Manaus", opening_hour=9, closing_hour=18)
    async_session.add(unit)
    await async_session.commit()
    return unit


@pytest.fixture
async def ctx(unit: Unit) -> UnitContext:
    return UnitContext.from_unit(unit)


@pytest.fixture
async def joao(async_session: AsyncSession, unit: Unit) -> Staff:
    staff = Staff(unit_id=unit.id, name="Joao Silva", is_active=True)
    async_session.add(staff)
    await async_session.commit()
    return staff


@pytest.fixture
async def pedro(async_session: AsyncSession, unit: Unit, joao: Staff) -> Staff:
    staff = Staff(unit_id=unit.id, name="Pedro Santos", is_active=True)
    async_session.add(staff)
    await async_session.commit()
    return staff


@pytest.fixture
async def corte(async_session: AsyncSession, unit: Unit) -> Service:
    service = Service(
        unit_id=unit.id,
        name="Corte Masculino",
        price=Decimal("45.00"),
        duration_minutes=30,
        is_active=True,
    )
    async_session.add(service)
    await async_session.commit()
    return service


@pytest.fixture
async def combo(async_session: AsyncSession, unit: Unit, corte: Service) -> Service:
    service = Service(
        unit_id=unit.id,
        name="Corte + Barba",
        price=Decimal("70.00"),
        duration_minutes=60,
        is_active=True,
    )
    async_session.add(service)
    await async_session.commit()
    return service


@pytest.fixture
def local_instant(unit: Unit, offset_table: OffsetTable):
    """Convert a unit-local 'YYYY-MM-DDTHH:MM' string to a UTC datetime."""
    timezone_name = unit.timezone

    def convert(value: str) -> datetime:
        return normalize_timestamp(value, timezone_name, offset_table)

    return convert


@pytest.fixture
def make_booking(async_session: AsyncSession, unit: Unit, local_instant):
    """Insert a booking row directly, bypassing the conflict guard."""
    unit_id = unit.id

    async def create(
        staff: Staff,
        service: Service,
        start_local: str,
        status: BookingStatus = BookingStatus.CONFIRMED,
        client_phone: str | None = "11988887777",
        client_name: str = "Carlos",
    ) -> Booking:
        start = local_instant(start_local)
        booking = Booking(
            unit_id=unit_id,
            staff_id=staff.id,
            service_id=service.id,
            client_name=client_name,
            client_phone=client_phone,
            start_at_utc=start,
            end_at_utc=start + timedelta(minutes=service.duration_minutes),
            status=status,
            total_price=service.price,
        )
        async_session.add(booking)
        await async_session.commit()
        return booking

    return create


@pytest.fixture
async def client(async_session):
    """
    AsyncClient bound to the FastAPI app with the test session injected.
    """
    from agenda.core.db import get_session
    from agenda.main import app

    async def override_get_session():
        yield async_session

    app.dependency_overrides[get_session] = override_get_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-API-Key": API_KEY},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def file_session_maker(tmp_path):
    """
    Sessions on a file database, each with its own connection.

    Used where two sessions must interleave. The sqlite driver keeps its
    default transaction handling here so plain reads hold no locks.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'agenda.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def file_ctx(file_session_maker) -> UnitContext:
    """A unit with one staff member ("Joao Silva") and one 30 minute service."""
    async with file_session_maker() as session:
        unit = Unit(name="Barbearia Centro", timezone="America/Sao_Paulo", opening_hour=7, closing_hour=21)
        session.add(unit)
        await session.flush()
        session.add_all(
            [
                Staff(unit_id=unit.id, name="Joao Silva", is_active=True),
                Service(unit_id=unit.id, name="Corte", price=Decimal("45.00"), duration_minutes=30),
            ]
        )
        await session.commit()
        return UnitContext.from_unit(unit)
