"""
Agenda API for messaging-channel integrations.

A single authenticated endpoint, ``POST /agenda``, receives requests from an
external assistant (e.g. a WhatsApp bot) and dispatches them by ``action``:

    check / check_availability          -> available slots of a day
    create / schedule_appointment       -> book a slot (and reconcile the client)
    cancel / cancel_appointment         -> cancel one appointment
    check_client                        -> look a client up by phone
    register_client                     -> register a client without booking

Bodies are validated against a tagged union of one model per action before
anything touches the database. Field names are accepted in both the
Portuguese and English spellings the channel sends (``nome``/``client_name``,
``telefone``/``client_phone``, ...).

Every response is a ``{"success": bool, ...}`` envelope.
"""

import logging
import secrets
from datetime import date
from typing import Annotated, Literal, Optional, Union

from fastapi import APIRouter, Depends, Header, Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import get_availability
from .booking import ClientSnapshot, book
from .cancellation import cancel
from .clients import mask_phone, normalize_phone, register_client
from .core.config import Settings, get_settings
from .core.db import get_session
from .core.errors import AuthenticationError, MissingField, UnknownAction, ValidationError
from .core.responses import envelope, success_response
from .tenancy.context import UnitContext, resolve_unit
from .tenancy.queries import get_client_by_phone
from .timezones import OffsetTable, get_offset_table, normalize_timestamp, parse_local_date

logger = logging.getLogger(__name__)
router = APIRouter(tags=["agenda"])


# ────────────────────────────────────────────────────────────────
# API Key Authentication
# ────────────────────────────────────────────────────────────────

async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Reject the call unless X-API-Key matches the configured secret."""
    expected = settings.agenda_api_key
    if not x_api_key or not expected or not secrets.compare_digest(x_api_key, expected):
        logger.warning("Invalid or missing API key")
        raise AuthenticationError("Unauthorized")
    return True


# ────────────────────────────────────────────────────────────────
# Request models (one per action)
# ────────────────────────────────────────────────────────────────

PHONE_ALIASES = AliasChoices("telefone", "client_phone", "phone")
NAME_ALIASES = AliasChoices("nome", "client_name", "name")
BIRTH_DATE_ALIASES = AliasChoices("data_nascimento", "birth_date")
NOTES_ALIASES = AliasChoices("observacoes", "notes")


class AgendaRequestBase(BaseModel):
    """Fields every action may carry to address the unit."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    unit_id: Optional[int] = None
    instance_name: Optional[str] = None

    # Not "*": ``action`` is the union discriminator and takes no before-validator.
    @field_validator(
        "unit_id",
        "instance_name",
        "date",
        "datetime",
        "professional",
        "service",
        "client_name",
        "client_phone",
        "birth_date",
        "notes",
        "tags",
        "appointment_id",
        mode="before",
        check_fields=False,
    )
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def missing_fields(self) -> list[str]:
        return []


class CheckAvailabilityRequest(AgendaRequestBase):
    action: Literal["check", "check_availability"]
    date: Optional[str] = Field(None, validation_alias=AliasChoices("date", "data"))
    professional: Optional[str] = Field(
        None, validation_alias=AliasChoices("professional", "barbeiro_nome")
    )

    def missing_fields(self) -> list[str]:
        return ["date"] if not self.date else []


class CreateAppointmentRequest(AgendaRequestBase):
    action: Literal["create", "schedule_appointment"]
    client_name: Optional[str] = Field(None, validation_alias=NAME_ALIASES)
    client_phone: Optional[str] = Field(None, validation_alias=PHONE_ALIASES)
    datetime: Optional[str] = Field(None, validation_alias=AliasChoices("data", "datetime", "date"))
    professional: Optional[str] = Field(
        None, validation_alias=AliasChoices("barbeiro_nome", "professional")
    )
    service: Optional[str] = Field(None, validation_alias=AliasChoices("servico", "service"))
    birth_date: Optional[date] = Field(None, validation_alias=BIRTH_DATE_ALIASES)
    notes: Optional[str] = Field(None, validation_alias=NOTES_ALIASES)
    tags: Optional[list[str]] = None

    def missing_fields(self) -> list[str]:
        required = {
            "client_name": self.client_name,
            "professional": self.professional,
            "service": self.service,
            "datetime": self.datetime,
        }
        return [name for name, value in required.items() if not value]


class CancelAppointmentRequest(AgendaRequestBase):
    action: Literal["cancel", "cancel_appointment"]
    appointment_id: Optional[str] = None
    client_phone: Optional[str] = Field(None, validation_alias=PHONE_ALIASES)
    date: Optional[str] = Field(None, validation_alias=AliasChoices("data", "datetime", "date"))

    def missing_fields(self) -> list[str]:
        if not self.appointment_id and not normalize_phone(self.client_phone):
            return ["appointment_id or client_phone"]
        return []


class CheckClientRequest(AgendaRequestBase):
    action: Literal["check_client"]
    client_phone: Optional[str] = Field(None, validation_alias=PHONE_ALIASES)

    def missing_fields(self) -> list[str]:
        return ["client_phone"] if not normalize_phone(self.client_phone) else []


class RegisterClientRequest(AgendaRequestBase):
    action: Literal["register_client"]
    client_name: Optional[str] = Field(None, validation_alias=NAME_ALIASES)
    client_phone: Optional[str] = Field(None, validation_alias=PHONE_ALIASES)
    birth_date: Optional[date] = Field(None, validation_alias=BIRTH_DATE_ALIASES)
    notes: Optional[str] = Field(None, validation_alias=NOTES_ALIASES)
    tags: Optional[list[str]] = None

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.client_name:
            missing.append("client_name")
        if not normalize_phone(self.client_phone):
            missing.append("client_phone")
        return missing


AgendaRequest = Annotated[
    Union[
        CheckAvailabilityRequest,
        CreateAppointmentRequest,
        CancelAppointmentRequest,
        CheckClientRequest,
        RegisterClientRequest,
    ],
    Field(discriminator="action"),
]

_request_adapter = TypeAdapter(AgendaRequest)

VALID_ACTIONS = (
    "check",
    "check_availability",
    "create",
    "schedule_appointment",
    "cancel",
    "cancel_appointment",
    "check_client",
    "register_client",
)


def parse_agenda_request(body) -> AgendaRequestBase:
    """
    Validate a raw body into the model for its action.

    Raises UnknownAction for a missing or unsupported ``action`` and
    ValidationError for malformed fields.
    """
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    action = body.get("action")
    if action not in VALID_ACTIONS:
        raise UnknownAction(
            f"Invalid action. Valid actions: {', '.join(VALID_ACTIONS)}",
            details={"valid_actions": list(VALID_ACTIONS)},
        )

    try:
        request = _request_adapter.validate_python(body)
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"][1:]) or "body" for err in exc.errors()})
        raise ValidationError(f"Invalid fields: {', '.join(fields)}") from exc

    missing = request.missing_fields()
    if missing:
        raise MissingField(f"Required fields: {', '.join(missing)}", details={"missing": missing})
    return request


# ────────────────────────────────────────────────────────────────
# Action handlers
# ────────────────────────────────────────────────────────────────

async def handle_check(
    session: AsyncSession, ctx: UnitContext, request: CheckAvailabilityRequest, table: OffsetTable
) -> dict:
    local_date = parse_local_date(request.date)
    result = await get_availability(session, ctx, local_date, request.professional, table=table)
    payload = success_response(
        date=local_date.isoformat(),
        available_slots=[slot.to_dict() for slot in result.slots],
        services=result.services,
    )
    if result.message:
        payload["message"] = result.message
    return payload


async def handle_create(
    session: AsyncSession, ctx: UnitContext, request: CreateAppointmentRequest, table: OffsetTable
) -> dict:
    start = normalize_timestamp(request.datetime, ctx.timezone, table)
    logger.info(
        "Creating appointment: unit=%s professional=%s service=%s start=%s phone=%s",
        ctx.unit_id,
        request.professional,
        request.service,
        start.isoformat(),
        mask_phone(normalize_phone(request.client_phone)),
    )
    outcome = await book(
        session,
        ctx,
        staff_name=request.professional,
        service_name=request.service,
        client=ClientSnapshot(
            name=request.client_name,
            phone=request.client_phone,
            birth_date=request.birth_date,
            notes=request.notes,
            tags=request.tags or [],
        ),
        requested_start=start,
    )

    client_payload = None
    if outcome.client is not None:
        client_payload = {**outcome.client.to_dict(), "is_new": outcome.client_created}

    payload = success_response(
        message="Appointment created successfully!",
        client_created=outcome.client_created,
        client=client_payload,
        appointment=outcome.appointment_dict(),
    )
    if outcome.client_error:
        payload["client_warning"] = outcome.client_error
    return payload


async def handle_cancel(
    session: AsyncSession, ctx: UnitContext, request: CancelAppointmentRequest, table: OffsetTable
) -> dict:
    target_date = parse_local_date(request.date) if request.date else None
    booking = await cancel(
        session,
        ctx,
        appointment_id=request.appointment_id,
        phone=request.client_phone,
        target_date=target_date,
        table=table,
    )
    return success_response(
        message="Appointment cancelled successfully!",
        cancelled_appointment=booking.to_dict(),
    )


async def handle_check_client(
    session: AsyncSession, ctx: UnitContext, request: CheckClientRequest, table: OffsetTable
) -> dict:
    phone = normalize_phone(request.client_phone)
    client = await get_client_by_phone(session, ctx.unit_id, phone)
    if not client:
        logger.info("Client not found for phone %s", mask_phone(phone))
        return success_response(found=False, message="Client not found")
    return success_response(found=True, message="Client found", client=client.to_dict())


async def handle_register_client(
    session: AsyncSession, ctx: UnitContext, request: RegisterClientRequest, table: OffsetTable
) -> dict:
    client = await register_client(
        session,
        ctx.unit_id,
        request.client_name,
        request.client_phone,
        birth_date=request.birth_date,
        notes=request.notes,
        tags=request.tags,
    )
    return success_response(message="Client registered successfully!", client=client.to_dict())


ACTION_HANDLERS = {
    CheckAvailabilityRequest: handle_check,
    CreateAppointmentRequest: handle_create,
    CancelAppointmentRequest: handle_cancel,
    CheckClientRequest: handle_check_client,
    RegisterClientRequest: handle_register_client,
}


# ────────────────────────────────────────────────────────────────
# Endpoint
# ────────────────────────────────────────────────────────────────

@router.post("/agenda")
async def agenda_endpoint(
    request: Request,
    _: bool = Depends(verify_api_key),
    session: AsyncSession = Depends(get_session),
    table: OffsetTable = Depends(get_offset_table),
):
    """
    Dispatch one agenda action.

    Possible errors:
    - 400: Unknown action, missing or malformed fields
    - 401: Invalid API key
    - 404: Unit, staff, service or appointment not found
    - 409: Slot unavailable, client already registered
    - 500: Store failure
    """
    try:
        body = await request.json()
    except ValueError as exc:
        # JSONDecodeError and UnicodeDecodeError (non UTF-8 bodies) alike
        raise ValidationError("Request body must be valid JSON") from exc

    agenda_request = parse_agenda_request(body)
    logger.info("Agenda API called with action: %s", agenda_request.action)

    ctx = await resolve_unit(session, agenda_request.unit_id, agenda_request.instance_name)
    handler = ACTION_HANDLERS[type(agenda_request)]
    payload = await handler(session, ctx, agenda_request, table)
    return envelope(payload)
