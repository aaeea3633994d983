"""
Booking creation and lifecycle.

This is the only module that writes Booking rows. A new booking is accepted
only if no live (non-cancelled) booking of the same staff member intersects
``[start, start + duration)``. The overlap read and the insert run as one
critical section per staff member:

1. an in-process ``asyncio.Lock`` per staff id (``StaffLocks``)
2. ``SELECT ... FOR UPDATE`` on the staff row, which serialises writers
   across worker processes on PostgreSQL

Any failure rolls the whole session back, so a rejected request leaves no
booking row and no half-merged client behind.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .clients import mask_phone, normalize_phone, record_visit, resolve_client
from .core.errors import (
    AgendaError,
    BookingNotFound,
    InvalidTransition,
    MissingField,
    ServiceNotFound,
    SlotUnavailable,
    StaffNotFound,
    StoreError,
)
from .models import Booking, BookingStatus, Client, Service, Staff
from .tenancy.context import UnitContext
from .tenancy.queries import (
    find_active_service,
    find_active_staff,
    get_booking,
    get_client_by_phone,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


class StaffLocks:
    """Registry of one asyncio.Lock per staff member."""

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}

    def for_staff(self, staff_id: int) -> asyncio.Lock:
        lock = self._locks.get(staff_id)
        if lock is None:
            lock = self._locks[staff_id] = asyncio.Lock()
        return lock


staff_locks = StaffLocks()


@dataclass
class ClientSnapshot:
    """Client data as sent with the booking request."""

    name: str
    phone: Optional[str] = None
    birth_date: Optional[date] = None
    notes: Optional[str] = None
    tags: list[str] = field(default_factory=list)


@dataclass
class BookingOutcome:
    booking: Booking
    staff: Staff
    service: Service
    client: Optional[Client] = None
    client_created: bool = False
    # Set when a phone-less client could not be stored; the booking still stands.
    client_error: Optional[str] = None

    def appointment_dict(self) -> dict:
        return {
            "id": self.booking.id,
            "client_name": self.booking.client_name,
            "barber": self.staff.name,
            "service": self.service.name,
            "start_time": self.booking.start_at_utc,
            "end_time": self.booking.end_at_utc,
            "total_price": self.booking.total_price,
            "status": self.booking.status.value,
        }


async def find_conflicts(
    session: AsyncSession,
    staff_id: int,
    start: datetime,
    end: datetime,
) -> Sequence[Booking]:
    """Live bookings of ``staff_id`` intersecting ``[start, end)``."""
    result = await session.execute(
        select(Booking)
        .where(
            Booking.staff_id == staff_id,
            Booking.status != BookingStatus.CANCELLED,
            Booking.start_at_utc < end,
            Booking.end_at_utc > start,
        )
        .order_by(Booking.start_at_utc)
    )
    return result.scalars().all()


async def lock_staff_row(session: AsyncSession, staff_id: int) -> None:
    await session.execute(select(Staff.id).where(Staff.id == staff_id).with_for_update())


async def book(
    session: AsyncSession,
    ctx: UnitContext,
    staff_name: str,
    service_name: str,
    client: ClientSnapshot,
    requested_start: datetime,
    locks: StaffLocks = staff_locks,
) -> BookingOutcome:
    """
    Create a pending booking or fail without side effects.

    Raises:
        StaffNotFound / ServiceNotFound: no active match for the name
        SlotUnavailable: the interval intersects a live booking of the staff member
        ClientCreateFailed: the client carries a phone and could not be stored
        StoreError: any other persistence failure
    """
    if requested_start.tzinfo is None:
        raise ValueError("requested_start must be timezone-aware")
    if not client.name or not client.name.strip():
        raise MissingField("Client name is required")

    staff = await find_active_staff(session, ctx.unit_id, staff_name)
    if not staff:
        raise StaffNotFound(f'Staff member "{staff_name}" not found')

    service = await find_active_service(session, ctx.unit_id, service_name)
    if not service:
        raise ServiceNotFound(f'Service "{service_name}" not found')

    start = requested_start
    end = start + timedelta(minutes=service.duration_minutes)
    phone = normalize_phone(client.phone)
    staff_id, staff_display = staff.id, staff.name
    unavailable = f"Time not available. {staff_display} already has an appointment at this time."

    async with locks.for_staff(staff_id):
        try:
            await lock_staff_row(session, staff_id)

            # With a phone, ClientCreateFailed propagates and aborts the booking.
            client_record, client_created = await resolve_client(
                session,
                ctx.unit_id,
                client.name,
                phone,
                client.birth_date,
                client.notes,
                client.tags,
            )
            client_error: Optional[str] = None
            if client_record is None:
                client_error = "Client record could not be created"

            conflicts = await find_conflicts(session, staff_id, start, end)
            if conflicts:
                logger.warning(
                    "Slot unavailable for staff %s at %s: %d conflicting booking(s)",
                    staff_id,
                    start.isoformat(),
                    len(conflicts),
                )
                raise SlotUnavailable(
                    unavailable,
                    details={"conflicting_ids": [str(b.id) for b in conflicts]},
                )

            booking = Booking(
                unit_id=ctx.unit_id,
                staff_id=staff_id,
                service_id=service.id,
                client_name=client.name.strip(),
                client_phone=phone,
                start_at_utc=start,
                end_at_utc=end,
                status=BookingStatus.PENDING,
                total_price=service.price,
            )
            session.add(booking)
            await session.flush()
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            logger.info("IntegrityError while creating booking (slot likely taken): %s", exc)
            raise SlotUnavailable(unavailable) from exc
        except AgendaError:
            await session.rollback()
            raise
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.exception("Failed to create booking for staff %s", staff_id)
            raise StoreError("Failed to create appointment") from exc

    logger.info(
        "Booking %s created: staff=%s service=%s client=%s start=%s",
        booking.id,
        staff_id,
        service.id,
        mask_phone(phone),
        start.isoformat(),
    )
    return BookingOutcome(
        booking=booking,
        staff=staff,
        service=service,
        client=client_record,
        client_created=client_created,
        client_error=client_error,
    )


def transition(booking: Booking, target: BookingStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[booking.status]:
        raise InvalidTransition(
            f"Cannot move appointment from {booking.status.value} to {target.value}",
            details={"appointment_id": str(booking.id), "status": booking.status.value},
        )
    booking.status = target


async def _load(session: AsyncSession, ctx: UnitContext, booking_id: uuid.UUID) -> Booking:
    booking = await get_booking(session, ctx.unit_id, booking_id, for_update=True)
    if not booking:
        raise BookingNotFound("Appointment not found")
    return booking


async def confirm_booking(session: AsyncSession, ctx: UnitContext, booking_id: uuid.UUID) -> Booking:
    booking = await _load(session, ctx, booking_id)
    transition(booking, BookingStatus.CONFIRMED)
    await session.commit()
    logger.info("Booking %s confirmed", booking.id)
    return booking


async def complete_booking(session: AsyncSession, ctx: UnitContext, booking_id: uuid.UUID) -> Booking:
    """Mark a confirmed booking as done and count the visit on its client."""
    booking = await _load(session, ctx, booking_id)
    transition(booking, BookingStatus.COMPLETED)
    if booking.client_phone:
        client = await get_client_by_phone(session, ctx.unit_id, booking.client_phone)
        if client:
            record_visit(client, booking.start_at_utc)
    await session.commit()
    logger.info("Booking %s completed", booking.id)
    return booking
