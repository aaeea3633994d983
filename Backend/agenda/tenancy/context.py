"""
Unit context resolution.

Every scheduling operation runs against exactly one unit. The unit is
addressed either by ``unit_id`` or by the messaging-channel
``instance_name`` it is connected to, and is read-only for the lifetime of
the request.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import MissingField, UnitMisconfigured, UnitNotFound
from ..models import Unit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitContext:
    """
    Immutable snapshot of the unit a request operates on.

    Attributes:
        unit_id: The database ID of the unit (units.id)
        name: Human-readable unit name
        timezone: IANA timezone name (e.g., "America/Sao_Paulo")
        opening_hour: First bookable hour of the day (local)
        closing_hour: Hour the day closes (local, exclusive)
    """

    unit_id: int
    name: Optional[str] = None
    timezone: str = "America/Sao_Paulo"
    opening_hour: int = 8
    closing_hour: int = 21

    def __post_init__(self):
        if self.unit_id <= 0:
            raise UnitMisconfigured(f"unit_id must be positive, got {self.unit_id}")
        if not 0 <= self.opening_hour < self.closing_hour <= 24:
            raise UnitMisconfigured(
                f"opening/closing hours out of range: {self.opening_hour}-{self.closing_hour}",
                details={"unit_id": self.unit_id},
            )

    @classmethod
    def from_unit(cls, unit: Unit) -> "UnitContext":
        return cls(
            unit_id=unit.id,
            name=unit.name,
            timezone=unit.timezone,
            opening_hour=unit.opening_hour,
            closing_hour=unit.closing_hour,
        )


async def resolve_unit(
    session: AsyncSession,
    unit_id: Optional[int] = None,
    instance_name: Optional[str] = None,
) -> UnitContext:
    """
    Resolve the unit for a request.

    ``unit_id`` wins when both are given. Raises MissingField when neither is
    present and UnitNotFound when the lookup comes back empty.
    """
    if unit_id is not None:
        result = await session.execute(select(Unit).where(Unit.id == unit_id))
        unit = result.scalar_one_or_none()
        if not unit:
            raise UnitNotFound(f"Unit {unit_id} not found")
        return UnitContext.from_unit(unit)

    if instance_name and instance_name.strip():
        logger.info("Looking up unit by instance_name: %s", instance_name)
        result = await session.execute(select(Unit).where(Unit.instance_name == instance_name.strip()))
        unit = result.scalar_one_or_none()
        if not unit:
            raise UnitNotFound(f'Unit not found for instance "{instance_name}"')
        return UnitContext.from_unit(unit)

    raise MissingField("unit_id is required")
