import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .booking import transition
from .clients import mask_phone, normalize_phone
from .core.errors import AmbiguousOrMissingIdentifier, BookingNotFound, StoreError
from .models import OPEN_STATUSES, Booking, BookingStatus
from .tenancy.context import UnitContext
from .tenancy.queries import get_booking
from .timezones import OffsetTable, get_offset_table, local_day_window

logger = logging.getLogger(__name__)


def _parse_booking_id(value: Union[str, uuid.UUID]) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except ValueError:
        return None


async def find_cancellable_by_phone(
    session: AsyncSession,
    ctx: UnitContext,
    phone: str,
    target_date: Optional[date] = None,
    now: Optional[datetime] = None,
    table: Optional[OffsetTable] = None,
) -> Optional[Booking]:
    """
    Soonest open booking for ``phone``.

    With ``target_date`` the search is limited to that unit-local day;
    otherwise only bookings starting at or after ``now`` are considered.
    """
    stmt = select(Booking).where(
        Booking.unit_id == ctx.unit_id,
        Booking.client_phone == phone,
        Booking.status.in_(OPEN_STATUSES),
    )
    if target_date is not None:
        day_start, day_end = local_day_window(target_date, ctx.timezone, table or get_offset_table())
        stmt = stmt.where(Booking.start_at_utc >= day_start, Booking.start_at_utc <= day_end)
    else:
        stmt = stmt.where(Booking.start_at_utc >= (now or datetime.now(timezone.utc)))

    stmt = (
        stmt.order_by(Booking.start_at_utc, Booking.created_at)
        .limit(1)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def cancel(
    session: AsyncSession,
    ctx: UnitContext,
    appointment_id: Optional[Union[str, uuid.UUID]] = None,
    phone: Optional[str] = None,
    target_date: Optional[date] = None,
    now: Optional[datetime] = None,
    table: Optional[OffsetTable] = None,
) -> Booking:
    """
    Cancel exactly one booking.

    An explicit ``appointment_id`` wins; otherwise the soonest open booking
    for ``phone`` is chosen.

    Raises:
        AmbiguousOrMissingIdentifier: neither an id nor a phone was given
        BookingNotFound: nothing open matches
    """
    phone = normalize_phone(phone)

    if appointment_id:
        booking_id = _parse_booking_id(appointment_id)
        booking = None
        if booking_id:
            booking = await get_booking(session, ctx.unit_id, booking_id, for_update=True)
        if not booking or not booking.is_open():
            raise BookingNotFound("Appointment not found or already cancelled")
    elif phone:
        booking = await find_cancellable_by_phone(session, ctx, phone, target_date, now, table)
        if not booking:
            if target_date is not None:
                message = f"No appointment found on {target_date.isoformat()} for this phone"
            else:
                message = "No upcoming appointment found for this phone"
            raise BookingNotFound(message)
    else:
        raise AmbiguousOrMissingIdentifier("Provide appointment_id or client phone")

    transition(booking, BookingStatus.CANCELLED)
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("Failed to cancel appointment")
        raise StoreError("Failed to cancel appointment") from exc

    logger.info(
        "Booking %s cancelled (unit=%s, phone=%s)", booking.id, ctx.unit_id, mask_phone(booking.client_phone)
    )
    return booking
