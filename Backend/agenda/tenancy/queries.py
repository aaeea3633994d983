"""
Unit-scoped query helpers.

Every read of Staff, Service, Client or Booking goes through these helpers
or carries an explicit ``unit_id == ctx.unit_id`` filter.

Usage:
    from agenda.tenancy.queries import find_active_staff, scoped_select

    staff = await find_active_staff(session, ctx.unit_id, "joao")
    stmt = scoped_select(Booking, ctx.unit_id).where(Booking.staff_id == staff.id)
"""

import uuid
from typing import Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from ..models import Booking, Client, Service, Staff

T = TypeVar("T", bound=DeclarativeBase)


def scoped_select(model: Type[T], unit_id: int) -> Select:
    """Create a SELECT statement pre-filtered by unit_id."""
    return select(model).where(model.unit_id == unit_id)


# ────────────────────────────────────────────────────────────────
# Staff & services
# ────────────────────────────────────────────────────────────────

async def list_active_staff(
    session: AsyncSession,
    unit_id: int,
    name_filter: Optional[str] = None,
) -> Sequence[Staff]:
    """
    Active staff of a unit in listing order (by id).

    A non-blank ``name_filter`` narrows the list to names containing it,
    case-insensitively.
    """
    stmt = scoped_select(Staff, unit_id).where(Staff.is_active.is_(True))
    if name_filter and name_filter.strip():
        stmt = stmt.where(Staff.name.icontains(name_filter.strip(), autoescape=True))
    result = await session.execute(stmt.order_by(Staff.id))
    return result.scalars().all()


async def find_active_staff(session: AsyncSession, unit_id: int, name: str) -> Optional[Staff]:
    """First active staff member whose name contains ``name``."""
    matches = await list_active_staff(session, unit_id, name)
    return matches[0] if matches else None


async def list_active_services(
    session: AsyncSession,
    unit_id: int,
    name_filter: Optional[str] = None,
) -> Sequence[Service]:
    stmt = scoped_select(Service, unit_id).where(Service.is_active.is_(True))
    if name_filter and name_filter.strip():
        stmt = stmt.where(Service.name.icontains(name_filter.strip(), autoescape=True))
    result = await session.execute(stmt.order_by(Service.id))
    return result.scalars().all()


async def find_active_service(session: AsyncSession, unit_id: int, name: str) -> Optional[Service]:
    """First active service whose name contains ``name``."""
    matches = await list_active_services(session, unit_id, name)
    return matches[0] if matches else None


# ────────────────────────────────────────────────────────────────
# Clients
# ────────────────────────────────────────────────────────────────

async def get_client_by_phone(session: AsyncSession, unit_id: int, phone: str) -> Optional[Client]:
    result = await session.execute(scoped_select(Client, unit_id).where(Client.phone == phone))
    return result.scalar_one_or_none()


async def get_client_by_name(
    session: AsyncSession,
    unit_id: int,
    name: str,
    birth_date=None,
) -> Optional[Client]:
    stmt = scoped_select(Client, unit_id).where(func.lower(Client.name) == name.strip().lower())
    if birth_date is not None:
        stmt = stmt.where(Client.birth_date == birth_date)
    result = await session.execute(stmt.order_by(Client.id).limit(1))
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Bookings
# ────────────────────────────────────────────────────────────────

async def get_booking(
    session: AsyncSession,
    unit_id: int,
    booking_id: uuid.UUID,
    for_update: bool = False,
) -> Optional[Booking]:
    """
    Booking of the unit by id.

    ``for_update`` locks the row and reloads it over any stale copy in the
    session, for callers about to change its status.
    """
    stmt = scoped_select(Booking, unit_id).where(Booking.id == booking_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
