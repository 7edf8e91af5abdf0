"""Scheduling rules shared by the booking tools and the stores.

These mirror the clinic's booking system: a 30-minute slot grid starting at
opening time, no bookings outside configured hours, and no overlapping
appointments.  Two appointments that merely touch (one ends exactly when the
next starts) do not conflict.

All helpers are pure; timezone conversion uses the clinic's IANA zone.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from dental_agent.models import AppointmentRecord, BusinessHours, ClinicConfig

SLOT_MINUTES = 30

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y")
_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


# ── Parsing & formatting ────────────────────────────────────────────


def parse_date(value: str) -> date | None:
    """Parse ``YYYY-MM-DD`` (or ``DD/MM/YYYY`` / ``DD-MM-YYYY``); ``None`` if invalid."""
    if not value:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).date()
        except ValueError:
            continue
    return None


def parse_time(value: str) -> time | None:
    """Parse a 24-hour ``H:MM`` / ``HH:MM`` string; ``None`` if invalid."""
    match = _TIME_RE.match(value or "")
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return time(hours, minutes)


def to_ampm(value: str | time) -> str:
    """``"14:30"`` -> ``"2:30 PM"``; ``"08:00"`` -> ``"8:00 AM"``."""
    if isinstance(value, str):
        hours, minutes = (int(part) for part in value.split(":")[:2])
    else:
        hours, minutes = value.hour, value.minute
    suffix = "PM" if hours >= 12 else "AM"
    return f"{hours % 12 or 12}:{minutes:02d} {suffix}"


def clinic_weekday(day: date) -> int:
    """Weekday in the clinic's convention (0 = Sunday … 6 = Saturday)."""
    return (day.weekday() + 1) % 7


def clinic_tz(config: ClinicConfig) -> ZoneInfo:
    return ZoneInfo(config.timezone)


def local_datetime(day: date, at: time, config: ClinicConfig) -> datetime:
    """Combine a clinic-local date and time into an aware datetime."""
    return datetime.combine(day, at, tzinfo=clinic_tz(config))


def to_local(moment: datetime, config: ClinicConfig) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(clinic_tz(config))


# ── Business rules ──────────────────────────────────────────────────


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Strict interval overlap; back-to-back intervals do not overlap."""
    return start_a < end_b and end_a > start_b


def business_hours_error(config: ClinicConfig, start: datetime, end: datetime) -> str | None:
    """Return a patient-facing error if ``start``–``end`` falls outside opening hours."""
    local_start = to_local(start, config)
    local_end = to_local(end, config)
    hours = config.hours_for(clinic_weekday(local_start.date()))

    if hours.is_closed:
        return "El consultorio está cerrado ese día."

    open_at = local_datetime(local_start.date(), _hhmm(hours.open_time), config)
    close_at = local_datetime(local_start.date(), _hhmm(hours.close_time), config)
    if local_start < open_at or local_end > close_at or local_end.date() != local_start.date():
        return (
            f"El horario de atención es de {to_ampm(hours.open_time)} "
            f"a {to_ampm(hours.close_time)}."
        )
    return None


def find_conflicts(
    appointments: Iterable[AppointmentRecord],
    start: datetime,
    end: datetime,
    *,
    exclude_id: str | None = None,
) -> list[AppointmentRecord]:
    """Return the non-cancelled appointments overlapping ``start``–``end``."""
    return [
        apt
        for apt in appointments
        if apt.status != "cancelled"
        and apt.id != exclude_id
        and overlaps(apt.start, apt.end, start, end)
    ]


def day_bounds(day: date, config: ClinicConfig) -> tuple[datetime, datetime]:
    """UTC start/end of a clinic-local calendar day."""
    start = local_datetime(day, time(0, 0), config)
    return start.astimezone(UTC), (start + timedelta(days=1)).astimezone(UTC)


def slot_grid(day: date, hours: BusinessHours, config: ClinicConfig) -> list[datetime]:
    """Every slot start from opening time whose 30-minute slot ends by closing time."""
    if hours.is_closed:
        return []
    current = local_datetime(day, _hhmm(hours.open_time), config)
    close_at = local_datetime(day, _hhmm(hours.close_time), config)
    step = timedelta(minutes=SLOT_MINUTES)
    slots: list[datetime] = []
    while current + step <= close_at:
        slots.append(current)
        current += step
    return slots


def available_slots(
    day: date,
    config: ClinicConfig,
    appointments: Iterable[AppointmentRecord],
    now: datetime,
) -> list[str]:
    """Free ``HH:MM`` slot starts for ``day``, skipping slots already begun if today."""
    busy = [apt for apt in appointments if apt.status != "cancelled"]
    step = timedelta(minutes=SLOT_MINUTES)
    local_now = to_local(now, config)

    free: list[str] = []
    for slot in slot_grid(day, config.hours_for(clinic_weekday(day)), config):
        if slot <= local_now:
            continue
        if any(overlaps(apt.start, apt.end, slot, slot + step) for apt in busy):
            continue
        free.append(slot.strftime("%H:%M"))
    return free


def _hhmm(value: str) -> time:
    hours, minutes = (int(part) for part in value.split(":"))
    return time(hours, minutes)
