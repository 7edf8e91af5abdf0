"""``ClinicStore`` backed by Supabase through its PostgREST endpoint.

All calls use the service-role key and are filtered by ``organization_id``
explicitly; row-level security is not relied upon.

Tables used: ``organizations`` (settings JSON holds address, phone, timezone,
``business_hours`` and ``whatsapp_phone_number_id``), ``patients``, ``leads``,
``messages``, ``services`` and ``appointments``.

PostgREST docs: https://postgrest.org/en/stable/references/api.html
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any

import httpx

from dental_agent.config import SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL
from dental_agent.models import (
    DEFAULT_CLINIC_CONFIG,
    AppointmentInfo,
    AppointmentRecord,
    BusinessHours,
    ClinicConfig,
    Contact,
    LastCancellation,
    MessageRole,
    ServiceInfo,
    StoredMessage,
    merge_tags,
    normalize_phone,
)
from dental_agent.services.metrics import metrics
from dental_agent.services.scheduling import to_local
from dental_agent.services.store import (
    UPCOMING_APPOINTMENTS_LIMIT,
    ClinicStore,
    ConflictError,
    StoreError,
    to_appointment_info,
)

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10.0

_DAY_KEYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")
_APPOINTMENT_SELECT = "*,patient:patients(whatsapp_number),service:services(title,duration_minutes)"


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class SupabaseClinicStore(ClinicStore):
    """PostgREST-backed store.  Every failure surfaces as ``StoreError``."""

    def __init__(
        self,
        url: str | None = None,
        service_role_key: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ):
        url = url or SUPABASE_URL
        key = service_role_key or SUPABASE_SERVICE_ROLE_KEY
        if not url or not key:
            raise OSError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the supabase store")
        self._client = httpx.Client(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        returning: bool = False,
    ) -> list[dict[str, Any]]:
        """Execute a PostgREST request with exponential-backoff retries.

        Always returns a list of rows (empty for writes without
        ``returning``).  A 409 becomes ``ConflictError``.
        """
        headers = {"Prefer": "return=representation"} if returning else None
        last_error: Exception | None = None
        t0 = time.perf_counter()
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.request(
                    method, f"/{table}", params=params, json=json_body, headers=headers,
                )
                if response.status_code >= 500:
                    raise StoreError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code == 409:
                    raise ConflictError(response.text, status_code=409)
                if response.status_code >= 400:
                    raise StoreError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                body: Any = []
                if response.content:
                    try:
                        body = response.json()
                    except ValueError as exc:
                        raise StoreError(
                            f"Invalid JSON from {table}: {response.text[:200]}",
                            status_code=response.status_code,
                        ) from exc
                metrics.record_success(
                    "supabase", f"{method.lower()}_{table}",
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                return body if isinstance(body, list) else [body]

            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "Supabase %s %s attempt %d/%d failed (%s). Retrying…",
                    method, table, attempt, MAX_RETRIES, type(exc).__name__,
                )
            except StoreError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Supabase server error on attempt %d/%d. Retrying…", attempt, MAX_RETRIES,
                    )
                else:
                    metrics.record_failure(
                        "supabase", f"{method.lower()}_{table}",
                        error_type=type(exc).__name__,
                        latency_ms=(time.perf_counter() - t0) * 1000,
                    )
                    raise

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        metrics.record_failure(
            "supabase", f"{method.lower()}_{table}",
            error_type=type(last_error).__name__,
            latency_ms=(time.perf_counter() - t0) * 1000,
        )
        raise StoreError(f"Supabase request failed after {MAX_RETRIES} retries: {last_error}")

    def _select(self, table: str, **params: Any) -> list[dict[str, Any]]:
        return self._request("GET", table, params={"select": "*", **params})

    @staticmethod
    def _owner_filter(contact: Contact) -> dict[str, str]:
        column = "patient_id" if contact.is_patient else "lead_id"
        return {"organization_id": f"eq.{contact.tenant_id}", column: f"eq.{contact.id}"}

    @staticmethod
    def _contact_table(contact: Contact) -> str:
        return "patients" if contact.is_patient else "leads"

    # ── Tenants & contacts ──────────────────────────────────────────

    def resolve_tenant(self, channel_id: str | None) -> str | None:
        if channel_id:
            rows = self._request(
                "GET", "organizations",
                params={
                    "select": "id",
                    "settings->>whatsapp_phone_number_id": f"eq.{channel_id}",
                    "limit": "1",
                },
            )
            if rows:
                return rows[0]["id"]

        rows = self._request(
            "GET", "organizations", params={"select": "id", "order": "created_at.asc", "limit": "1"},
        )
        if rows:
            logger.warning(
                "Using fallback organization %s; set settings.whatsapp_phone_number_id for %s",
                rows[0]["id"], channel_id,
            )
            return rows[0]["id"]
        logger.error("No organization found")
        return None

    def get_or_create_contact(
        self, tenant_id: str, phone: str, profile_name: str | None = None,
    ) -> Contact:
        clean_phone = normalize_phone(phone)
        if not clean_phone:
            raise StoreError(f"Invalid phone number: {phone!r}")

        patients = self._select(
            "patients", organization_id=f"eq.{tenant_id}", whatsapp_number=f"eq.{clean_phone}", limit="1",
        )
        if patients:
            row = patients[0]
            return Contact(
                type="patient",
                id=row["id"],
                phone=clean_phone,
                name=row.get("full_name"),
                tenant_id=tenant_id,
                notes=row.get("ai_notes"),
                tags=row.get("ai_tags") or [],
            )

        now = _iso(datetime.now(UTC))
        leads = self._select("leads", organization_id=f"eq.{tenant_id}", phone=f"eq.{clean_phone}", limit="1")
        if leads:
            row = leads[0]
            self._request("PATCH", "leads", params={"id": f"eq.{row['id']}"}, json_body={"last_contact_at": now})
        else:
            row = self._request(
                "POST", "leads",
                json_body={
                    "organization_id": tenant_id,
                    "phone": clean_phone,
                    "name": profile_name or None,
                    "source": "whatsapp",
                    "status": "new",
                    "last_contact_at": now,
                },
                returning=True,
            )[0]
            logger.info("Created lead %s for %s", row["id"], clean_phone)

        return Contact(
            type="lead",
            id=row["id"],
            phone=clean_phone,
            name=row.get("name"),
            tenant_id=tenant_id,
            notes=row.get("ai_notes"),
            tags=row.get("ai_tags") or [],
        )

    def update_contact_name(self, contact: Contact, name: str) -> None:
        # By phone, so a lead promoted earlier in the same turn is still found.
        patients = self._request(
            "PATCH", "patients",
            params={"organization_id": f"eq.{contact.tenant_id}", "whatsapp_number": f"eq.{contact.phone}"},
            json_body={"full_name": name},
            returning=True,
        )
        if not patients:
            self._request(
                "PATCH", "leads",
                params={"organization_id": f"eq.{contact.tenant_id}", "phone": f"eq.{contact.phone}"},
                json_body={"name": name},
            )

    def append_contact_memory(self, contact: Contact, notes_entry: str, key_facts: list[str]) -> None:
        table = self._contact_table(contact)
        current = self._request(
            "GET", table, params={"select": "ai_notes,ai_tags", "id": f"eq.{contact.id}", "limit": "1"},
        )
        if not current:
            raise StoreError(f"Contact {contact.id} not found", status_code=404)

        notes = f"{current[0].get('ai_notes') or ''}\n\n{notes_entry}".strip()
        rows = self._request(
            "PATCH", table,
            params={"id": f"eq.{contact.id}"},
            json_body={"ai_notes": notes, "ai_tags": merge_tags(current[0].get("ai_tags") or [], key_facts)},
            returning=True,
        )
        if not rows:
            raise StoreError(f"Contact {contact.id} not found", status_code=404)

    # ── Messages ────────────────────────────────────────────────────

    @staticmethod
    def _to_message(row: dict[str, Any]) -> StoredMessage:
        return StoredMessage(
            id=row["id"], role=row["role"], content=row["content"], timestamp=_parse_ts(row.get("created_at")),
        )

    def get_recent_messages(self, contact: Contact, limit: int = 20) -> list[StoredMessage]:
        if limit <= 0:
            return []
        rows = self._select(
            "messages", **self._owner_filter(contact), order="created_at.desc", limit=str(limit),
        )
        return [self._to_message(row) for row in reversed(rows)]

    def list_messages(self, contact: Contact) -> list[StoredMessage]:
        rows = self._select("messages", **self._owner_filter(contact), order="created_at.asc")
        return [self._to_message(row) for row in rows]

    def count_messages(self, contact: Contact) -> int:
        rows = self._request("GET", "messages", params={"select": "id", **self._owner_filter(contact)})
        return len(rows)

    def append_message(self, contact: Contact, role: MessageRole, content: str) -> StoredMessage:
        row = self._request(
            "POST", "messages",
            json_body={
                "organization_id": contact.tenant_id,
                "role": role,
                "content": content,
                "patient_id": contact.id if contact.is_patient else None,
                "lead_id": None if contact.is_patient else contact.id,
            },
            returning=True,
        )[0]
        return self._to_message(row)

    def delete_messages(self, contact: Contact, message_ids: list[str]) -> int:
        if not message_ids:
            return 0
        rows = self._request(
            "DELETE", "messages",
            params={**self._owner_filter(contact), "id": f"in.({','.join(message_ids)})"},
            returning=True,
        )
        return len(rows)

    # ── Clinic data ─────────────────────────────────────────────────

    def get_active_services(self, tenant_id: str) -> list[ServiceInfo]:
        rows = self._select("services", organization_id=f"eq.{tenant_id}", is_active="eq.true", order="title")
        return [
            ServiceInfo(
                id=row["id"],
                title=row["title"],
                price=row.get("price") or 0,
                duration=row.get("duration_minutes") or 30,
                description=row.get("description"),
            )
            for row in rows
        ]

    def get_clinic_config(self, tenant_id: str) -> ClinicConfig:
        rows = self._request(
            "GET", "organizations", params={"select": "name,settings", "id": f"eq.{tenant_id}", "limit": "1"},
        )
        if not rows:
            return DEFAULT_CLINIC_CONFIG
        return clinic_config_from_row(rows[0])

    # ── Appointments ────────────────────────────────────────────────

    def _to_record(self, row: dict[str, Any]) -> AppointmentRecord:
        patient = row.get("patient") or {}
        service = row.get("service") or {}
        return AppointmentRecord(
            id=row["id"],
            tenant_id=row["organization_id"],
            patient_id=row.get("patient_id"),
            contact_phone=patient.get("whatsapp_number") or "",
            service_id=row.get("service_id"),
            service_name=service.get("title"),
            start=_parse_ts(row["start_time"]),
            end=_parse_ts(row["end_time"]),
            status=row.get("status") or "scheduled",
            notes=row.get("notes"),
            cancellation_reason=row.get("cancellation_reason"),
            updated_at=_parse_ts(row.get("updated_at")) or datetime.now(UTC),
        )

    def get_upcoming_appointments(
        self, contact: Contact, config: ClinicConfig, now: datetime | None = None,
    ) -> list[AppointmentInfo]:
        if not contact.is_patient:
            return []
        rows = self._request(
            "GET", "appointments",
            params={
                "select": _APPOINTMENT_SELECT,
                "organization_id": f"eq.{contact.tenant_id}",
                "patient_id": f"eq.{contact.id}",
                "start_time": f"gte.{_iso(now or datetime.now(UTC))}",
                "status": "neq.cancelled",
                "order": "start_time.asc",
                "limit": str(UPCOMING_APPOINTMENTS_LIMIT),
            },
        )
        return [
            to_appointment_info(self._to_record(row), config, (row.get("service") or {}).get("duration_minutes") or 30)
            for row in rows
        ]

    def get_last_cancellation(
        self, contact: Contact, config: ClinicConfig,
    ) -> LastCancellation | None:
        if not contact.is_patient:
            return None
        rows = self._request(
            "GET", "appointments",
            params={
                "select": "start_time,cancellation_reason",
                "organization_id": f"eq.{contact.tenant_id}",
                "patient_id": f"eq.{contact.id}",
                "status": "eq.cancelled",
                "order": "updated_at.desc",
                "limit": "1",
            },
        )
        if not rows:
            return None
        return LastCancellation(
            date=to_local(_parse_ts(rows[0]["start_time"]), config).strftime("%Y-%m-%d"),
            reason=rows[0].get("cancellation_reason"),
        )

    def list_appointments_between(
        self, tenant_id: str, start: datetime, end: datetime,
    ) -> list[AppointmentRecord]:
        rows = self._request(
            "GET", "appointments",
            params={
                "select": _APPOINTMENT_SELECT,
                "organization_id": f"eq.{tenant_id}",
                "status": "neq.cancelled",
                "start_time": f"lt.{_iso(end)}",
                "end_time": f"gt.{_iso(start)}",
                "order": "start_time.asc",
            },
        )
        return [self._to_record(row) for row in rows]

    def get_appointment(self, tenant_id: str, appointment_id: str) -> AppointmentRecord | None:
        rows = self._request(
            "GET", "appointments",
            params={
                "select": _APPOINTMENT_SELECT,
                "organization_id": f"eq.{tenant_id}",
                "id": f"eq.{appointment_id}",
                "limit": "1",
            },
        )
        return self._to_record(rows[0]) if rows else None

    def create_appointment(
        self,
        tenant_id: str,
        contact: Contact,
        service: ServiceInfo,
        start: datetime,
        end: datetime,
        notes: str | None = None,
    ) -> AppointmentRecord:
        # A database exclusion constraint turns a lost race into a 409.
        if self.list_appointments_between(tenant_id, start, end):
            raise ConflictError("Slot already taken", status_code=409)
        patient_id = contact.id if contact.is_patient else self._promote(contact)
        row = self._request(
            "POST", "appointments",
            params={"select": _APPOINTMENT_SELECT},
            json_body={
                "organization_id": tenant_id,
                "patient_id": patient_id,
                "service_id": service.id,
                "start_time": _iso(start),
                "end_time": _iso(end),
                "status": "scheduled",
                "notes": notes,
            },
            returning=True,
        )[0]
        record = self._to_record(row)
        if not record.contact_phone:
            record.contact_phone = contact.phone
        return record

    def _promote(self, lead: Contact) -> str:
        """Create the patient row for *lead*, move its messages over, drop the lead."""
        patient = self._request(
            "POST", "patients",
            json_body={
                "organization_id": lead.tenant_id,
                "full_name": lead.name,
                "whatsapp_number": lead.phone,
                "ai_notes": lead.notes,
                "ai_tags": lead.tags,
            },
            returning=True,
        )[0]
        self._request(
            "PATCH", "messages",
            params={"lead_id": f"eq.{lead.id}"},
            json_body={"patient_id": patient["id"], "lead_id": None},
        )
        self._request("DELETE", "leads", params={"id": f"eq.{lead.id}"})
        logger.info("Promoted lead %s to patient %s", lead.id, patient["id"])
        return patient["id"]

    def update_appointment(
        self, tenant_id: str, appointment_id: str, **fields: Any,
    ) -> AppointmentRecord:
        body: dict[str, Any] = {"updated_at": _iso(datetime.now(UTC))}
        for key, value in fields.items():
            if key == "start":
                body["start_time"] = _iso(value)
            elif key == "end":
                body["end_time"] = _iso(value)
            else:
                body[key] = value
        rows = self._request(
            "PATCH", "appointments",
            params={
                "select": _APPOINTMENT_SELECT,
                "organization_id": f"eq.{tenant_id}",
                "id": f"eq.{appointment_id}",
            },
            json_body=body,
            returning=True,
        )
        if not rows:
            raise StoreError(f"Appointment {appointment_id} not found", status_code=404)
        return self._to_record(rows[0])

    def close(self) -> None:
        self._client.close()


def clinic_config_from_row(row: dict[str, Any]) -> ClinicConfig:
    """Build a ``ClinicConfig`` from an ``organizations`` row.

    ``settings.business_hours`` maps ``"monday"`` … to ``{"open", "close"}``
    or ``null``; a missing or null day is closed.
    """
    settings = row.get("settings") or {}
    hours_data = settings.get("business_hours") or {}
    hours = []
    for day, key in enumerate(_DAY_KEYS):
        entry = hours_data.get(key)
        hours.append(
            BusinessHours(
                day_of_week=day,
                open_time=(entry or {}).get("open") or "08:00",
                close_time=(entry or {}).get("close") or "18:00",
                is_closed=not entry,
            )
        )
    return ClinicConfig(
        name=row.get("name") or DEFAULT_CLINIC_CONFIG.name,
        address=settings.get("address") or DEFAULT_CLINIC_CONFIG.address,
        phone=settings.get("phone") or DEFAULT_CLINIC_CONFIG.phone,
        timezone=settings.get("timezone") or DEFAULT_CLINIC_CONFIG.timezone,
        business_hours=hours,
    )
