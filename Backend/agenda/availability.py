import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .models import Booking, BookingStatus, Staff
from .tenancy.context import UnitContext
from .tenancy.queries import list_active_services, list_active_staff
from .timezones import OffsetTable, get_offset_table, local_to_utc

logger = logging.getLogger(__name__)


@dataclass
class AvailableSlot:
    time: str
    datetime: datetime
    staff_id: int
    staff_name: str

    def to_dict(self) -> dict:
        return {
            "time": self.time,
            "datetime": self.datetime,
            "barber_id": self.staff_id,
            "barber_name": self.staff_name,
        }


@dataclass
class AvailabilityResult:
    date: date
    slots: list[AvailableSlot] = field(default_factory=list)
    services: list[dict] = field(default_factory=list)
    message: Optional[str] = None


def slot_grid(
    local_date: date,
    ctx: UnitContext,
    table: OffsetTable,
    granularity_minutes: int,
) -> list[tuple[str, datetime]]:
    """(local "HH:MM", UTC instant) for every offered start time of the day."""
    if granularity_minutes <= 0:
        raise ValueError("granularity_minutes must be positive")

    grid: list[tuple[str, datetime]] = []
    cursor = datetime.combine(local_date, time(ctx.opening_hour, 0))
    closing = datetime.combine(local_date, time(0, 0)) + timedelta(hours=ctx.closing_hour)
    step = timedelta(minutes=granularity_minutes)
    while cursor < closing:
        grid.append(
            (cursor.strftime("%H:%M"), local_to_utc(local_date, cursor.time(), ctx.timezone, table))
        )
        cursor += step
    return grid


def compute_open_slots(
    grid: Sequence[tuple[str, datetime]],
    staff: Sequence[Staff],
    bookings: Sequence[Booking],
) -> list[AvailableSlot]:
    """
    Offer every grid instant per staff member unless a live booking covers it.

    Output is ordered by time, then by the order of ``staff``.
    """
    busy: dict[int, list[Booking]] = {member.id: [] for member in staff}
    for booking in bookings:
        if booking.status == BookingStatus.CANCELLED:
            continue
        if booking.staff_id in busy:
            busy[booking.staff_id].append(booking)

    slots: list[AvailableSlot] = []
    for label, instant in grid:
        for member in staff:
            if any(b.covers(instant) for b in busy[member.id]):
                continue
            slots.append(
                AvailableSlot(time=label, datetime=instant, staff_id=member.id, staff_name=member.name)
            )
    return slots


async def get_availability(
    session: AsyncSession,
    ctx: UnitContext,
    local_date: date,
    staff_filter: Optional[str] = None,
    table: Optional[OffsetTable] = None,
    granularity_minutes: Optional[int] = None,
) -> AvailabilityResult:
    """
    Bookable slots of a unit-local day.

    Read-only. An empty staff universe is reported through ``message``
    rather than as an error.
    """
    table = table or get_offset_table()
    granularity_minutes = granularity_minutes or get_settings().slot_granularity_minutes

    staff = await list_active_staff(session, ctx.unit_id, staff_filter)
    if not staff:
        if staff_filter and staff_filter.strip():
            message = f'No staff member found matching "{staff_filter.strip()}"'
        else:
            message = "No active staff found"
        return AvailabilityResult(date=local_date, message=message)

    services = await list_active_services(session, ctx.unit_id)
    grid = slot_grid(local_date, ctx, table, granularity_minutes)

    bookings: Sequence[Booking] = []
    if grid:
        window_start = grid[0][1]
        window_end = grid[-1][1] + timedelta(minutes=granularity_minutes)
        result = await session.execute(
            select(Booking).where(
                Booking.unit_id == ctx.unit_id,
                Booking.staff_id.in_([member.id for member in staff]),
                Booking.status != BookingStatus.CANCELLED,
                Booking.end_at_utc > window_start,
                Booking.start_at_utc < window_end,
            )
        )
        bookings = result.scalars().all()

    slots = compute_open_slots(grid, staff, bookings)
    logger.info(
        "Availability for unit %s on %s: %d staff, %d bookings, %d slots",
        ctx.unit_id,
        local_date.isoformat(),
        len(staff),
        len(bookings),
        len(slots),
    )

    return AvailabilityResult(
        date=local_date,
        slots=slots,
        services=[
            {
                "id": service.id,
                "name": service.name,
                "price": service.price,
                "duration_minutes": service.duration_minutes,
            }
            for service in services
        ],
    )
