from decimal import Decimal

from sqlalchemy import select

from .core.config import get_settings
from .models import Service, Staff, Unit


settings = get_settings()

DEMO_UNIT_NAME = "Demo Barbershop"


async def seed_demo_data(session) -> Unit:
    result = await session.execute(select(Unit).where(Unit.name == DEMO_UNIT_NAME))
    unit = result.scalar_one_or_none()

    if not unit:
        unit = Unit(
            name=DEMO_UNIT_NAME,
            timezone=settings.default_timezone,
            opening_hour=settings.opening_hour,
            closing_hour=settings.closing_hour,
            instance_name="demo-barbershop",
        )
        session.add(unit)
        await session.flush()

    # Seed services if missing
    result = await session.execute(select(Service).where(Service.unit_id == unit.id))
    services = result.scalars().all()
    if not services:
        session.add_all(
            [
                Service(unit_id=unit.id, name="Corte", duration_minutes=30, price=Decimal("45.00")),
                Service(unit_id=unit.id, name="Barba", duration_minutes=30, price=Decimal("30.00")),
                Service(unit_id=unit.id, name="Corte + Barba", duration_minutes=60, price=Decimal("70.00")),
            ]
        )

    result = await session.execute(select(Staff).where(Staff.unit_id == unit.id))
    staff = result.scalars().all()
    if not staff:
        session.add_all(
            [
                Staff(unit_id=unit.id, name="Joao", is_active=True),
                Staff(unit_id=unit.id, name="Pedro", is_active=True),
            ]
        )

    await session.commit()
    return unit
