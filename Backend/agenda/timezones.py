"""
Time normalization for unit-local timestamps.

Timestamps arrive from the messaging channel either zone-qualified
("2024-06-01T10:00:00Z", "2024-06-01T10:00:00-04:00") or as bare wall-clock
time in the unit's timezone. Bare values are resolved through an
``OffsetTable``: a fixed standard-time offset per zone name. The table is
not DST-aware; the zones it ships with do not observe daylight saving.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from types import MappingProxyType
from typing import Mapping, Optional

from .core.config import get_settings
from .core.errors import InvalidTimestamp

logger = logging.getLogger(__name__)

_OFFSET_RE = re.compile(r"^([+-])(\d{2}):(\d{2})$")
_EXPLICIT_ZONE_RE = re.compile(r"(Z|[+-]\d{2}:\d{2})$")

DEFAULT_OFFSETS: Mapping[str, str] = MappingProxyType(
    {
        "America/Sao_Paulo": "-03:00",
        "America/Cuiaba": "-04:00",
        "America/Manaus": "-04:00",
        "America/Fortaleza": "-03:00",
        "America/Recife": "-03:00",
        "America/Belem": "-03:00",
        "America/Rio_Branco": "-05:00",
        "America/Noronha": "-02:00",
        "America/Porto_Velho": "-04:00",
        "America/Boa_Vista": "-04:00",
    }
)


def parse_offset(offset: str) -> timezone:
    match = _OFFSET_RE.match(offset)
    if not match:
        raise ValueError(f"offset must look like -03:00, got {offset!r}")
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    return timezone(-delta if sign == "-" else delta)


@dataclass(frozen=True)
class OffsetTable:
    """
    Versioned zone-name -> UTC offset lookup.

    Unknown zone names resolve to ``default_offset``. Tables are immutable;
    use ``with_overrides`` to derive a corrected version.
    """

    version: str = "2024.1"
    offsets: Mapping[str, str] = field(default_factory=lambda: DEFAULT_OFFSETS)
    default_offset: str = "-03:00"

    def __post_init__(self):
        for value in (*self.offsets.values(), self.default_offset):
            parse_offset(value)

    def offset_for(self, timezone_name: Optional[str]) -> str:
        if timezone_name and timezone_name in self.offsets:
            return self.offsets[timezone_name]
        return self.default_offset

    def tzinfo_for(self, timezone_name: Optional[str]) -> timezone:
        return parse_offset(self.offset_for(timezone_name))

    def with_overrides(self, version: str, **offsets: str) -> "OffsetTable":
        merged = dict(self.offsets)
        merged.update(offsets)
        return OffsetTable(
            version=version,
            offsets=MappingProxyType(merged),
            default_offset=self.default_offset,
        )


def get_offset_table() -> OffsetTable:
    settings = get_settings()
    return OffsetTable(default_offset=settings.default_offset)


def _parse_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def normalize_timestamp(value: str, timezone_name: Optional[str], table: OffsetTable) -> datetime:
    """Resolve a timestamp string to an aware UTC datetime."""
    raw = (value or "").strip()
    if not raw:
        raise InvalidTimestamp("Timestamp is required")

    if _EXPLICIT_ZONE_RE.search(raw):
        candidate = raw
    else:
        candidate = f"{raw}{table.offset_for(timezone_name)}"
        logger.debug("Converting local time %s using %s -> %s", raw, timezone_name, candidate)

    try:
        parsed = _parse_iso(candidate)
    except ValueError as exc:
        raise InvalidTimestamp(f"Invalid date/time: {value!r}") from exc

    if parsed.tzinfo is None:
        raise InvalidTimestamp(f"Invalid date/time: {value!r}")
    return parsed.astimezone(timezone.utc)


def parse_local_date(value: str) -> date:
    """Calendar date of ``YYYY-MM-DD`` or of a datetime string's date part."""
    raw = (value or "").strip()
    date_part = re.split(r"[T ]", raw, maxsplit=1)[0]
    try:
        return date.fromisoformat(date_part)
    except ValueError as exc:
        raise InvalidTimestamp(f"Invalid date: {value!r}") from exc


def local_to_utc(local_date: date, local_time: time, timezone_name: Optional[str], table: OffsetTable) -> datetime:
    tz = table.tzinfo_for(timezone_name)
    return datetime.combine(local_date, local_time, tzinfo=tz).astimezone(timezone.utc)


def local_day_window(local_date: date, timezone_name: Optional[str], table: OffsetTable) -> tuple[datetime, datetime]:
    """UTC bounds of a unit-local day, 00:00:00 through 23:59:59 inclusive."""
    return (
        local_to_utc(local_date, time(0, 0, 0), timezone_name, table),
        local_to_utc(local_date, time(23, 59, 59), timezone_name, table),
    )
