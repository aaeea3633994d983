"""
Unit (tenant) scoping for the scheduling core.

Usage:
    from agenda.tenancy import UnitContext, resolve_unit

    ctx = await resolve_unit(session, unit_id=payload.unit_id, instance_name=payload.instance_name)
"""
from .context import UnitContext, resolve_unit
from .queries import (
    find_active_service,
    find_active_staff,
    get_booking,
    get_client_by_name,
    get_client_by_phone,
    list_active_services,
    list_active_staff,
    scoped_select,
)

__all__ = [
    "UnitContext",
    "resolve_unit",
    "find_active_service",
    "find_active_staff",
    "get_booking",
    "get_client_by_name",
    "get_client_by_phone",
    "list_active_services",
    "list_active_staff",
    "scoped_select",
]
