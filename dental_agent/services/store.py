"""Persistence interface consumed by the agent core, plus an in-memory store.

The agent never talks to a database directly.  Everything it reads or writes
goes through ``ClinicStore``; every call is already scoped to one tenant.

``InMemoryClinicStore`` backs the test-suite and the CLI.  Production uses
``SupabaseClinicStore`` (see ``supabase_store.py``).
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

from dental_agent.models import (
    DEFAULT_CLINIC_CONFIG,
    AppointmentInfo,
    AppointmentRecord,
    ClinicConfig,
    Contact,
    LastCancellation,
    MessageRole,
    ServiceInfo,
    StoredMessage,
    merge_tags,
    normalize_phone,
)
from dental_agent.services.scheduling import find_conflicts, to_local

logger = logging.getLogger(__name__)

UPCOMING_APPOINTMENTS_LIMIT = 5


class StoreError(Exception):
    """Raised when the store rejects a read or write."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ConflictError(StoreError):
    """Raised when a write would double-book a slot."""


class ClinicStore(ABC):
    """Tenant-scoped reads and writes the agent core depends on."""

    # ── Tenants & contacts ──────────────────────────────────────────

    @abstractmethod
    def resolve_tenant(self, channel_id: str | None) -> str | None:
        """Map a channel routing id (WhatsApp phone-number id) to a tenant."""

    @abstractmethod
    def get_or_create_contact(
        self, tenant_id: str, phone: str, profile_name: str | None = None,
    ) -> Contact:
        """Return the patient or lead for ``phone``, creating a lead if absent."""

    @abstractmethod
    def update_contact_name(self, contact: Contact, name: str) -> None: ...

    @abstractmethod
    def append_contact_memory(self, contact: Contact, notes_entry: str, key_facts: list[str]) -> None:
        """Append ``notes_entry`` to the stored notes and merge ``key_facts`` into the stored tags.

        The current values come from the store, never from ``contact``.
        """

    # ── Messages ────────────────────────────────────────────────────

    @abstractmethod
    def get_recent_messages(self, contact: Contact, limit: int = 20) -> list[StoredMessage]:
        """The ``limit`` most recent messages, oldest first."""

    @abstractmethod
    def list_messages(self, contact: Contact) -> list[StoredMessage]:
        """Every stored message for the contact, oldest first."""

    @abstractmethod
    def count_messages(self, contact: Contact) -> int: ...

    @abstractmethod
    def append_message(self, contact: Contact, role: MessageRole, content: str) -> StoredMessage: ...

    @abstractmethod
    def delete_messages(self, contact: Contact, message_ids: list[str]) -> int: ...

    # ── Clinic data ─────────────────────────────────────────────────

    @abstractmethod
    def get_active_services(self, tenant_id: str) -> list[ServiceInfo]: ...

    @abstractmethod
    def get_clinic_config(self, tenant_id: str) -> ClinicConfig: ...

    # ── Appointments ────────────────────────────────────────────────

    @abstractmethod
    def get_upcoming_appointments(
        self, contact: Contact, config: ClinicConfig, now: datetime | None = None,
    ) -> list[AppointmentInfo]: ...

    @abstractmethod
    def get_last_cancellation(
        self, contact: Contact, config: ClinicConfig,
    ) -> LastCancellation | None: ...

    @abstractmethod
    def list_appointments_between(
        self, tenant_id: str, start: datetime, end: datetime,
    ) -> list[AppointmentRecord]:
        """Non-cancelled appointments overlapping ``start``–``end``."""

    @abstractmethod
    def get_appointment(self, tenant_id: str, appointment_id: str) -> AppointmentRecord | None: ...

    @abstractmethod
    def create_appointment(
        self,
        tenant_id: str,
        contact: Contact,
        service: ServiceInfo,
        start: datetime,
        end: datetime,
        notes: str | None = None,
    ) -> AppointmentRecord:
        """Insert a scheduled appointment; raises ``ConflictError`` on overlap."""

    @abstractmethod
    def update_appointment(
        self, tenant_id: str, appointment_id: str, **fields: Any,
    ) -> AppointmentRecord: ...


def to_appointment_info(record: AppointmentRecord, config: ClinicConfig, duration: int) -> AppointmentInfo:
    local_start = to_local(record.start, config)
    return AppointmentInfo(
        id=record.id,
        date=local_start.strftime("%Y-%m-%d"),
        time=local_start.strftime("%H:%M"),
        service_name=record.service_name or "Consulta",
        status=record.status,
        duration=duration,
    )


class InMemoryClinicStore(ClinicStore):
    """Thread-safe dict-backed store.

    Appointment inserts and moves re-check conflicts under the store lock, so
    two racing bookings for the same slot cannot both succeed.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._configs: dict[str, ClinicConfig] = {}
        self._channels: dict[str, str] = {}
        self._services: dict[str, list[ServiceInfo]] = defaultdict(list)
        self._contacts: dict[tuple[str, str], Contact] = {}
        self._messages: dict[str, list[StoredMessage]] = defaultdict(list)
        self._appointments: dict[str, AppointmentRecord] = {}

    # ── Seeding helpers (tests / CLI) ───────────────────────────────

    def add_tenant(
        self,
        tenant_id: str,
        config: ClinicConfig | None = None,
        *,
        channel_id: str | None = None,
    ) -> None:
        with self._lock:
            self._configs[tenant_id] = config or DEFAULT_CLINIC_CONFIG
            if channel_id:
                self._channels[channel_id] = tenant_id

    def add_service(self, tenant_id: str, service: ServiceInfo) -> None:
        with self._lock:
            self._services[tenant_id].append(service)

    def add_contact(self, contact: Contact) -> Contact:
        with self._lock:
            self._contacts[(contact.tenant_id, contact.phone)] = contact.model_copy(deep=True)
        return contact

    def add_appointment(self, record: AppointmentRecord) -> AppointmentRecord:
        with self._lock:
            self._appointments[record.id] = record
        return record

    def get_contact(self, tenant_id: str, phone: str) -> Contact | None:
        with self._lock:
            stored = self._contacts.get((tenant_id, normalize_phone(phone)))
            return stored.model_copy(deep=True) if stored else None

    # ── Tenants & contacts ──────────────────────────────────────────

    def resolve_tenant(self, channel_id: str | None) -> str | None:
        with self._lock:
            if channel_id and channel_id in self._channels:
                return self._channels[channel_id]
            if self._configs:
                tenant_id = next(iter(self._configs))
                logger.warning("Using fallback tenant %s for channel %s", tenant_id, channel_id)
                return tenant_id
        return None

    def get_or_create_contact(
        self, tenant_id: str, phone: str, profile_name: str | None = None,
    ) -> Contact:
        clean_phone = normalize_phone(phone)
        if not clean_phone:
            raise StoreError(f"Invalid phone number: {phone!r}")
        with self._lock:
            existing = self._contacts.get((tenant_id, clean_phone))
            if existing:
                return existing.model_copy(deep=True)
            lead = Contact(
                type="lead",
                id=str(uuid.uuid4()),
                phone=clean_phone,
                name=profile_name or None,
                tenant_id=tenant_id,
            )
            self._contacts[(tenant_id, clean_phone)] = lead
            logger.info("Created lead %s for %s", lead.id, clean_phone)
            return lead.model_copy(deep=True)

    def update_contact_name(self, contact: Contact, name: str) -> None:
        with self._lock:
            self._stored(contact).name = name

    def append_contact_memory(self, contact: Contact, notes_entry: str, key_facts: list[str]) -> None:
        with self._lock:
            stored = self._stored(contact)
            stored.notes = f"{stored.notes or ''}\n\n{notes_entry}".strip()
            stored.tags = merge_tags(stored.tags, key_facts)

    def _stored(self, contact: Contact) -> Contact:
        stored = self._contacts.get((contact.tenant_id, contact.phone))
        if stored is None or stored.id != contact.id:
            raise StoreError(f"Contact {contact.id} not found")
        return stored

    # ── Messages ────────────────────────────────────────────────────

    def get_recent_messages(self, contact: Contact, limit: int = 20) -> list[StoredMessage]:
        with self._lock:
            return list(self._messages[contact.id][-limit:]) if limit > 0 else []

    def list_messages(self, contact: Contact) -> list[StoredMessage]:
        with self._lock:
            return list(self._messages[contact.id])

    def count_messages(self, contact: Contact) -> int:
        with self._lock:
            return len(self._messages[contact.id])

    def append_message(self, contact: Contact, role: MessageRole, content: str) -> StoredMessage:
        message = StoredMessage(
            id=str(uuid.uuid4()), role=role, content=content, timestamp=datetime.now(UTC),
        )
        with self._lock:
            self._messages[contact.id].append(message)
        return message

    def delete_messages(self, contact: Contact, message_ids: list[str]) -> int:
        doomed = set(message_ids)
        with self._lock:
            before = len(self._messages[contact.id])
            self._messages[contact.id] = [m for m in self._messages[contact.id] if m.id not in doomed]
            return before - len(self._messages[contact.id])

    # ── Clinic data ─────────────────────────────────────────────────

    def get_active_services(self, tenant_id: str) -> list[ServiceInfo]:
        with self._lock:
            return sorted(self._services[tenant_id], key=lambda s: s.title)

    def get_clinic_config(self, tenant_id: str) -> ClinicConfig:
        with self._lock:
            return self._configs.get(tenant_id, DEFAULT_CLINIC_CONFIG)

    # ── Appointments ────────────────────────────────────────────────

    def get_upcoming_appointments(
        self, contact: Contact, config: ClinicConfig, now: datetime | None = None,
    ) -> list[AppointmentInfo]:
        if not contact.is_patient:
            return []
        now = now or datetime.now(UTC)
        with self._lock:
            durations = {s.id: s.duration for s in self._services[contact.tenant_id]}
            upcoming = sorted(
                (
                    apt for apt in self._appointments.values()
                    if apt.tenant_id == contact.tenant_id
                    and apt.patient_id == contact.id
                    and apt.status != "cancelled"
                    and apt.start >= now
                ),
                key=lambda apt: apt.start,
            )[:UPCOMING_APPOINTMENTS_LIMIT]
        return [
            to_appointment_info(apt, config, durations.get(apt.service_id or "", 30))
            for apt in upcoming
        ]

    def get_last_cancellation(
        self, contact: Contact, config: ClinicConfig,
    ) -> LastCancellation | None:
        if not contact.is_patient:
            return None
        with self._lock:
            cancelled = [
                apt for apt in self._appointments.values()
                if apt.tenant_id == contact.tenant_id
                and apt.patient_id == contact.id
                and apt.status == "cancelled"
            ]
        if not cancelled:
            return None
        latest = max(cancelled, key=lambda apt: apt.updated_at)
        return LastCancellation(
            date=to_local(latest.start, config).strftime("%Y-%m-%d"),
            reason=latest.cancellation_reason,
        )

    def list_appointments_between(
        self, tenant_id: str, start: datetime, end: datetime,
    ) -> list[AppointmentRecord]:
        with self._lock:
            return find_conflicts(
                (apt for apt in self._appointments.values() if apt.tenant_id == tenant_id),
                start,
                end,
            )

    def get_appointment(self, tenant_id: str, appointment_id: str) -> AppointmentRecord | None:
        with self._lock:
            record = self._appointments.get(appointment_id)
            if record is None or record.tenant_id != tenant_id:
                return None
            return record.model_copy()

    def create_appointment(
        self,
        tenant_id: str,
        contact: Contact,
        service: ServiceInfo,
        start: datetime,
        end: datetime,
        notes: str | None = None,
    ) -> AppointmentRecord:
        with self._lock:
            if self.list_appointments_between(tenant_id, start, end):
                raise ConflictError("Slot already taken")
            patient_id = contact.id if contact.is_patient else self._promote(contact)
            record = AppointmentRecord(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                patient_id=patient_id,
                contact_phone=contact.phone,
                service_id=service.id,
                service_name=service.title,
                start=start,
                end=end,
                notes=notes,
            )
            self._appointments[record.id] = record
            return record.model_copy()

    def _promote(self, lead: Contact) -> str:
        # Booking system behaviour: a lead becomes a patient on first booking.
        stored = self._stored(lead)
        stored.type = "patient"
        logger.info("Promoted lead %s to patient", stored.id)
        return stored.id

    def update_appointment(
        self, tenant_id: str, appointment_id: str, **fields: Any,
    ) -> AppointmentRecord:
        with self._lock:
            record = self._appointments.get(appointment_id)
            if record is None or record.tenant_id != tenant_id:
                raise StoreError(f"Appointment {appointment_id} not found", status_code=404)
            updated = record.model_copy(update={**fields, "updated_at": datetime.now(UTC)})
            if updated.status != "cancelled" and find_conflicts(
                (a for a in self._appointments.values() if a.tenant_id == tenant_id),
                updated.start,
                updated.end,
                exclude_id=appointment_id,
            ):
                raise ConflictError("Slot already taken")
            self._appointments[appointment_id] = updated
            return updated.model_copy()


# ── Factory ─────────────────────────────────────────────────────────

DEMO_SERVICES: tuple[ServiceInfo, ...] = (
    ServiceInfo(id="svc-valoracion", title="Valoración inicial", price=50000, duration=30,
                description="Revisión general y plan de tratamiento"),
    ServiceInfo(id="svc-limpieza", title="Limpieza dental", price=80000, duration=30,
                description="Profilaxis y remoción de placa"),
    ServiceInfo(id="svc-blanqueamiento", title="Blanqueamiento", price=450000, duration=60),
    ServiceInfo(id="svc-ortodoncia", title="Control de ortodoncia", price=120000, duration=30),
    ServiceInfo(id="svc-diseno", title="Diseño de sonrisa", price=1800000, duration=90),
)


def seed_demo_clinic(store: InMemoryClinicStore, tenant_id: str, channel_id: str | None = None) -> None:
    """Register one clinic with the default hours and a small service catalogue."""
    store.add_tenant(tenant_id, DEFAULT_CLINIC_CONFIG, channel_id=channel_id)
    for service in DEMO_SERVICES:
        store.add_service(tenant_id, service)


def create_store(backend: str, tenant_id: str, channel_id: str | None = None) -> ClinicStore:
    """``"supabase"`` for production, anything else for a seeded in-memory clinic."""
    if backend == "supabase":
        from dental_agent.services.supabase_store import SupabaseClinicStore  # noqa: PLC0415

        return SupabaseClinicStore()
    if backend != "memory":
        logger.warning("Unknown STORE_BACKEND %r, using the in-memory store", backend)
    store = InMemoryClinicStore()
    seed_demo_clinic(store, tenant_id, channel_id)
    return store
