"""
Client identity resolution.

Clients reach a unit through a channel that cannot be trusted to send the
same data twice, so identity is reconciled rather than overwritten:

- phone present: (unit, phone) is the identity. New non-empty attributes are
  merged in; stored attributes are never cleared; tags only ever grow.
- phone absent: fall back to a case-insensitive name match, narrowed by
  birth date when one is given. Creating a client on this path is best
  effort and never blocks the caller.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import ClientCreateFailed, DuplicateClient, MissingField
from .models import Client
from .tenancy.queries import get_client_by_name, get_client_by_phone

logger = logging.getLogger(__name__)

DEFAULT_TAGS = ("Novo",)


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Strip everything but digits; an empty result means no phone."""
    if not raw:
        return None
    digits = re.sub(r"\D", "", str(raw))
    return digits or None


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "-"
    return f"***{phone[-4:]}"


def merge_tags(existing: Iterable[str], incoming: Iterable[str]) -> list[str]:
    """Union of both tag sets, keeping stored order and appending new tags."""
    merged = list(dict.fromkeys(existing or []))
    for tag in incoming or []:
        if tag and tag not in merged:
            merged.append(tag)
    return merged


def compute_client_updates(
    client: Client,
    birth_date: Optional[date] = None,
    notes: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
) -> dict:
    """Attributes that would change on ``client``; empty when nothing is new."""
    updates: dict = {}
    if birth_date and not client.birth_date:
        updates["birth_date"] = birth_date
    if notes and notes != client.notes:
        updates["notes"] = notes
    if tags:
        current = list(client.tags or [])
        merged = merge_tags(current, tags)
        if set(merged) != set(current):
            updates["tags"] = merged
    return updates


async def _merge_into(session: AsyncSession, client: Client, updates: dict) -> Client:
    if not updates:
        return client
    client_id = client.id
    try:
        async with session.begin_nested():
            for key, value in updates.items():
                setattr(client, key, value)
    except SQLAlchemyError:
        # The savepoint rolled back and expired the client; reload what is stored.
        logger.exception("Failed to update client %s, keeping stored data", client_id)
        await session.refresh(client)
        return client
    logger.info("Updated client %s with %s", client_id, sorted(updates))
    return client


async def _insert_client(session: AsyncSession, client: Client) -> Client:
    async with session.begin_nested():
        session.add(client)
    return client


async def resolve_client(
    session: AsyncSession,
    unit_id: int,
    name: Optional[str],
    phone: Optional[str] = None,
    birth_date: Optional[date] = None,
    notes: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
) -> tuple[Optional[Client], bool]:
    """
    Find or create the client for an inbound request.

    Returns ``(client, was_created)``. ``client`` is None only when the
    name-only path failed to persist a new record.

    Raises:
        MissingField: neither a usable phone nor a name was given
        ClientCreateFailed: a client with a phone could not be stored
    """
    phone = normalize_phone(phone)
    name = (name or "").strip()
    tags = list(tags) if tags else list(DEFAULT_TAGS)

    if phone:
        existing = await get_client_by_phone(session, unit_id, phone)
        if existing:
            updates = compute_client_updates(existing, birth_date, notes, tags)
            return await _merge_into(session, existing, updates), False

        if not name:
            raise MissingField("Client name is required to register a new phone")

        client = Client(
            unit_id=unit_id,
            name=name,
            phone=phone,
            birth_date=birth_date,
            notes=notes,
            tags=tags,
            total_visits=0,
        )
        try:
            await _insert_client(session, client)
        except IntegrityError:
            # Concurrent first contact from the same phone won the insert.
            logger.info("Client %s registered concurrently, reloading", mask_phone(phone))
            existing = await get_client_by_phone(session, unit_id, phone)
            if not existing:
                raise ClientCreateFailed("Could not create client")
            updates = compute_client_updates(existing, birth_date, notes, tags)
            return await _merge_into(session, existing, updates), False
        except SQLAlchemyError as exc:
            logger.exception("Failed to create client %s", mask_phone(phone))
            raise ClientCreateFailed(f"Could not create client: {exc.__class__.__name__}") from exc

        logger.info("Created client %s (%s)", client.id, mask_phone(phone))
        return client, True

    if not name:
        raise MissingField("Client phone or name is required")

    existing = await get_client_by_name(session, unit_id, name, birth_date)
    if existing:
        return existing, False

    client = Client(
        unit_id=unit_id,
        name=name,
        phone=None,
        birth_date=birth_date,
        notes=notes,
        tags=tags,
        total_visits=0,
    )
    try:
        await _insert_client(session, client)
    except SQLAlchemyError:
        logger.warning("Could not create client without phone (%s), continuing", name, exc_info=True)
        return None, False

    logger.info("Created client %s without phone", client.id)
    return client, True


async def register_client(
    session: AsyncSession,
    unit_id: int,
    name: str,
    phone: str,
    birth_date: Optional[date] = None,
    notes: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
) -> Client:
    """
    Register a new client without booking anything.

    Raises DuplicateClient (carrying the stored record) when the phone is
    already registered in the unit.
    """
    phone = normalize_phone(phone)
    name = (name or "").strip()
    if not name or not phone:
        raise MissingField("Name and phone are required")

    existing = await get_client_by_phone(session, unit_id, phone)
    if existing:
        raise DuplicateClient(
            "Client already registered with this phone",
            details={"existing_client": existing.to_dict()},
        )

    client = Client(
        unit_id=unit_id,
        name=name,
        phone=phone,
        birth_date=birth_date,
        notes=notes,
        tags=list(tags) if tags else list(DEFAULT_TAGS),
        total_visits=0,
    )
    try:
        await _insert_client(session, client)
    except IntegrityError as exc:
        existing = await get_client_by_phone(session, unit_id, phone)
        raise DuplicateClient(
            "Client already registered with this phone",
            details={"existing_client": existing.to_dict() if existing else None},
        ) from exc
    await session.commit()
    logger.info("Registered client %s (%s)", client.id, mask_phone(phone))
    return client


def record_visit(client: Client, at: datetime) -> None:
    client.total_visits = (client.total_visits or 0) + 1
    if client.last_visit_at is None or at > client.last_visit_at:
        client.last_visit_at = at
