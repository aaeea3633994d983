"""
Core module - configuration, database, error kinds, and response formatting.
"""
from .config import Settings, get_settings
from .db import AsyncSessionLocal, Base, UTCDateTime, engine, get_session, utc_now
from .errors import (
    AgendaError,
    ConflictError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from .responses import ErrorCodes, envelope, error_response, success_response

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "AsyncSessionLocal",
    "Base",
    "UTCDateTime",
    "engine",
    "get_session",
    "utc_now",
    # Errors
    "AgendaError",
    "ConflictError",
    "NotFoundError",
    "StoreError",
    "ValidationError",
    # Responses
    "ErrorCodes",
    "envelope",
    "error_response",
    "success_response",
]
