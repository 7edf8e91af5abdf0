"""Domain types shared by the agent loop, the tools and the stores.

Everything here is a pydantic model so that data crossing a boundary (store
rows, LLM tool arguments, API payloads) is validated in one place.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

ContactType = Literal["patient", "lead"]
MessageRole = Literal["user", "assistant"]
AppointmentStatus = Literal["scheduled", "confirmed", "completed", "cancelled"]

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def normalize_phone(raw: str) -> str:
    """Keep digits and a single leading ``+`` (e.g. ``"+57 300-123"`` -> ``"+57300123"``)."""
    cleaned = re.sub(r"[^\d+]", "", raw or "")
    if not cleaned:
        return ""
    prefix = "+" if cleaned.startswith("+") else ""
    return prefix + cleaned.replace("+", "")


# ── Contact ─────────────────────────────────────────────────────────


class Contact(BaseModel):
    """The party on the other end of the conversation: a Patient or a Lead.

    ``name`` is ``None`` until the contact tells us who they are; that is a
    normal state (the agent must ask before booking), not an error.
    """

    type: ContactType
    id: str
    phone: str
    name: str | None = None
    tenant_id: str
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("phone")
    @classmethod
    def _canonical_phone(cls, value: str) -> str:
        return normalize_phone(value)

    @property
    def is_patient(self) -> bool:
        return self.type == "patient"


MAX_TAGS = 10


def merge_tags(existing: list[str], new_facts: list[str], limit: int = MAX_TAGS) -> list[str]:
    """Append ``new_facts`` to ``existing`` without duplicates, keeping the newest ``limit``."""
    merged = list(dict.fromkeys([*existing, *new_facts]))
    return merged[-limit:]


# ── Messages ────────────────────────────────────────────────────────


class Message(BaseModel):
    role: MessageRole
    content: str
    timestamp: datetime | None = None


class StoredMessage(Message):
    """A persisted message; the ``id`` is what the compactor deletes by."""

    id: str


# ── Appointments & catalog ──────────────────────────────────────────


class AppointmentInfo(BaseModel):
    """An upcoming appointment as shown to the model (clinic-local date/time)."""

    id: str
    date: str  # YYYY-MM-DD
    time: str  # HH:MM, 24-hour
    service_name: str
    status: str
    duration: int = 30


class AppointmentRecord(BaseModel):
    """An appointment row as held by the store (UTC datetimes)."""

    id: str
    tenant_id: str
    patient_id: str | None = None
    contact_phone: str
    service_id: str | None = None
    service_name: str | None = None
    start: datetime
    end: datetime
    status: AppointmentStatus = "scheduled"
    notes: str | None = None
    cancellation_reason: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("contact_phone")
    @classmethod
    def _canonical_phone(cls, value: str) -> str:
        return normalize_phone(value)


class ServiceInfo(BaseModel):
    id: str
    title: str
    price: float
    duration: int  # minutes
    description: str | None = None


class LastCancellation(BaseModel):
    date: str  # YYYY-MM-DD
    reason: str | None = None


# ── Clinic configuration ────────────────────────────────────────────


class BusinessHours(BaseModel):
    """Opening hours for one weekday.  ``day_of_week``: 0 = Sunday … 6 = Saturday."""

    day_of_week: int = Field(..., ge=0, le=6)
    open_time: str = "08:00"
    close_time: str = "18:00"
    is_closed: bool = False

    @field_validator("open_time", "close_time")
    @classmethod
    def _hhmm(cls, value: str) -> str:
        if not _HHMM_RE.match(value):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value


class ClinicConfig(BaseModel):
    """Tenant-level, read-only clinic settings.

    The hours table always holds exactly seven entries sorted by weekday.  A
    day missing from the input is stored as explicitly closed, so the prompt
    never has to guess between "closed" and "unknown".
    """

    name: str
    address: str
    phone: str
    business_hours: list[BusinessHours]
    timezone: str = "America/Bogota"

    @model_validator(mode="after")
    def _complete_week(self) -> ClinicConfig:
        by_day = {h.day_of_week: h for h in self.business_hours}
        self.business_hours = [
            by_day.get(day, BusinessHours(day_of_week=day, is_closed=True))
            for day in range(7)
        ]
        return self

    def hours_for(self, day_of_week: int) -> BusinessHours:
        return self.business_hours[day_of_week]


DEFAULT_BUSINESS_HOURS: list[BusinessHours] = [
    BusinessHours(day_of_week=0, open_time="00:00", close_time="00:00", is_closed=True),
    BusinessHours(day_of_week=1, open_time="08:00", close_time="18:00"),
    BusinessHours(day_of_week=2, open_time="08:00", close_time="18:00"),
    BusinessHours(day_of_week=3, open_time="08:00", close_time="18:00"),
    BusinessHours(day_of_week=4, open_time="08:00", close_time="18:00"),
    BusinessHours(day_of_week=5, open_time="08:00", close_time="18:00"),
    BusinessHours(day_of_week=6, open_time="08:00", close_time="14:00"),
]

DEFAULT_CLINIC_CONFIG = ClinicConfig(
    name="Luxury Dental",
    address="Carrera 7 #82-86, Bogotá, Colombia",
    phone="+57 601 555 0123",
    business_hours=DEFAULT_BUSINESS_HOURS,
    timezone="America/Bogota",
)


# ── Agent I/O ───────────────────────────────────────────────────────


class ConversationContext(BaseModel):
    """Everything one agent invocation needs, assembled fresh by the caller."""

    contact: Contact
    messages: list[Message] = Field(default_factory=list)
    appointments: list[AppointmentInfo] = Field(default_factory=list)
    services: list[ServiceInfo] = Field(default_factory=list)
    clinic_config: ClinicConfig = DEFAULT_CLINIC_CONFIG
    last_cancellation: LastCancellation | None = None


class ToolResult(BaseModel):
    success: bool
    message: str
    data: Any = None


class ToolCallRecord(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: ToolResult


class AgentReply(BaseModel):
    text: str
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)

    def called(self, tool_name: str) -> bool:
        return any(call.name == tool_name for call in self.tool_calls)


class ConversationSummary(BaseModel):
    summary: str
    key_facts: list[str] = Field(default_factory=list)
    message_count: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
