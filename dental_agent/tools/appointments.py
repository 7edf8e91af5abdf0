"""Scheduling tools: list slots, book, cancel and reschedule appointments.

Each handler validates its (already schema-checked) arguments against the
clinic's rules and returns a ``ToolResult`` whose message is written for the
model to relay to the patient.  Policy violations are results, not
exceptions; store failures are turned into results by the executor.
"""

from __future__ import annotations

import logging
from datetime import UTC, timedelta

from pydantic import BaseModel, ConfigDict, Field

from dental_agent.models import ServiceInfo, ToolResult
from dental_agent.services.scheduling import (
    available_slots,
    business_hours_error,
    clinic_weekday,
    day_bounds,
    find_conflicts,
    local_datetime,
    parse_date,
    parse_time,
    to_ampm,
    to_local,
)
from dental_agent.services.store import ConflictError
from dental_agent.tools.context import ToolContext

logger = logging.getLogger(__name__)

_WEEKDAYS = ("domingo", "lunes", "martes", "miércoles", "jueves", "viernes", "sábado")
_MONTHS = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)


# ── Argument schemas ────────────────────────────────────────────────


class GetAvailableSlotsArgs(BaseModel):
    """Get available 30-minute appointment slots for a specific date."""

    model_config = ConfigDict(title="get_available_slots", extra="ignore")

    date: str = Field(..., min_length=1, description="Date to check in YYYY-MM-DD format")


class BookAppointmentArgs(BaseModel):
    """Book a new appointment. IMPORTANT: You must know the patient's name before calling this."""

    model_config = ConfigDict(title="book_appointment", extra="ignore")

    date: str = Field(..., min_length=1, description="Appointment date in YYYY-MM-DD format")
    time: str = Field(..., min_length=1, description="Appointment time in HH:MM format (24-hour)")
    service_name: str = Field(
        ..., min_length=1,
        description="Name of the service (e.g., 'Limpieza dental', 'Blanqueamiento')",
    )
    notes: str | None = Field(None, max_length=500, description="Optional notes about the appointment")


class CancelAppointmentArgs(BaseModel):
    """Cancel an existing appointment."""

    model_config = ConfigDict(title="cancel_appointment", extra="ignore")

    appointment_id: str = Field(..., min_length=1, description="The ID of the appointment to cancel")
    reason: str = Field(..., min_length=1, max_length=500, description="Reason for cancellation")


class RescheduleAppointmentArgs(BaseModel):
    """Reschedule an existing appointment to a new date/time."""

    model_config = ConfigDict(title="reschedule_appointment", extra="ignore")

    appointment_id: str = Field(..., min_length=1, description="The ID of the appointment to reschedule")
    new_date: str = Field(..., min_length=1, description="New date in YYYY-MM-DD format")
    new_time: str = Field(..., min_length=1, description="New time in HH:MM format (24-hour)")


# ── Helpers ─────────────────────────────────────────────────────────


def _friendly(moment, ctx: ToolContext) -> tuple[str, str]:
    """``("martes 21 de octubre", "3:30 PM")`` in the clinic's timezone."""
    local = to_local(moment, ctx.clinic_config)
    day = f"{_WEEKDAYS[clinic_weekday(local.date())]} {local.day} de {_MONTHS[local.month - 1]}"
    return day, to_ampm(local.time())


def _match_service(services: list[ServiceInfo], requested: str) -> ServiceInfo | None:
    wanted = requested.strip().lower()
    for service in services:
        title = service.title.lower()
        if title == wanted:
            return service
    for service in services:
        title = service.title.lower()
        if wanted in title or title in wanted:
            return service
    return None


# ── Tool 1: available slots ─────────────────────────────────────────


def get_available_slots(args: GetAvailableSlotsArgs, ctx: ToolContext) -> ToolResult:
    day = parse_date(args.date)
    if day is None:
        return ToolResult(success=False, message="No pude entender la fecha. Usa formato AAAA-MM-DD.")

    config = ctx.clinic_config
    now = ctx.current_time()
    if day < to_local(now, config).date():
        return ToolResult(success=False, message="No se pueden agendar citas en fechas pasadas.")

    if config.hours_for(clinic_weekday(day)).is_closed:
        return ToolResult(success=False, message="El consultorio está cerrado este día.")

    start, end = day_bounds(day, config)
    booked = ctx.store.list_appointments_between(ctx.tenant_id, start, end)
    slots = available_slots(day, config, booked, now)

    return ToolResult(
        success=True,
        message=f"Horarios disponibles para el {day.isoformat()}: "
        f"{', '.join(slots) or 'No hay horarios disponibles'}",
        data={"date": day.isoformat(), "slots": slots},
    )


# ── Tool 2: book ────────────────────────────────────────────────────


def book_appointment(args: BookAppointmentArgs, ctx: ToolContext) -> ToolResult:
    if not ctx.contact.name:
        return ToolResult(
            success=False,
            message="Antes de agendar, necesito saber tu nombre. ¿Cómo te llamas?",
        )

    day = parse_date(args.date)
    at = parse_time(args.time)
    if day is None or at is None:
        return ToolResult(success=False, message="No pude entender la fecha u hora.")

    services = ctx.store.get_active_services(ctx.tenant_id)
    if not services:
        return ToolResult(success=False, message="No hay servicios disponibles.")
    service = _match_service(services, args.service_name)
    if service is None:
        catalog = ", ".join(s.title for s in services)
        return ToolResult(
            success=False,
            message=f"No encontré el servicio '{args.service_name}'. Servicios disponibles: {catalog}.",
        )

    config = ctx.clinic_config
    start = local_datetime(day, at, config).astimezone(UTC)
    end = start + timedelta(minutes=service.duration)

    if start <= ctx.current_time():
        return ToolResult(success=False, message="No se pueden agendar citas en el pasado.")

    hours_error = business_hours_error(config, start, end)
    if hours_error:
        return ToolResult(success=False, message=hours_error)

    if find_conflicts(ctx.store.list_appointments_between(ctx.tenant_id, start, end), start, end):
        return ToolResult(success=False, message="Ese horario ya está ocupado. ¿Te busco otro?")

    try:
        record = ctx.store.create_appointment(
            ctx.tenant_id, ctx.contact, service, start, end, notes=args.notes,
        )
    except ConflictError:
        return ToolResult(success=False, message="Ese horario ya no está disponible. ¿Te busco otro?")

    day_text, hour_text = _friendly(record.start, ctx)
    logger.info(
        "Booked appointment %s (%s) for contact %s", record.id, service.title, ctx.contact.id,
    )
    return ToolResult(
        success=True,
        message=f"¡Listo! Tu cita para {service.title} está agendada para el {day_text} "
        f"a las {hour_text}. Te enviaremos un recordatorio. ✨",
        data={"appointment_id": record.id},
    )


# ── Tool 3: cancel ──────────────────────────────────────────────────


def cancel_appointment(args: CancelAppointmentArgs, ctx: ToolContext) -> ToolResult:
    record = ctx.store.get_appointment(ctx.tenant_id, args.appointment_id)
    if record is None:
        return ToolResult(success=False, message="No encontré esa cita.")

    if record.contact_phone != ctx.contact.phone:
        return ToolResult(success=False, message="No tienes permiso para cancelar esta cita.")

    if record.status == "cancelled":
        return ToolResult(success=False, message="Esta cita ya fue cancelada.")
    if record.status == "completed":
        return ToolResult(success=False, message="Esta cita ya fue completada y no se puede cancelar.")

    ctx.store.update_appointment(
        ctx.tenant_id, record.id, status="cancelled", cancellation_reason=args.reason,
    )
    logger.info("Cancelled appointment %s (reason: %s)", record.id, args.reason)
    return ToolResult(
        success=True,
        message="Tu cita ha sido cancelada. ¿Te gustaría reagendar para otra fecha?",
        data={"appointment_id": record.id},
    )


# ── Tool 4: reschedule ──────────────────────────────────────────────


def reschedule_appointment(args: RescheduleAppointmentArgs, ctx: ToolContext) -> ToolResult:
    record = ctx.store.get_appointment(ctx.tenant_id, args.appointment_id)
    if record is None:
        return ToolResult(success=False, message="No encontré esa cita.")

    if record.contact_phone != ctx.contact.phone:
        return ToolResult(success=False, message="No tienes permiso para modificar esta cita.")

    if record.status in ("cancelled", "completed"):
        return ToolResult(
            success=False, message="No se puede reagendar una cita cancelada o completada.",
        )

    day = parse_date(args.new_date)
    at = parse_time(args.new_time)
    if day is None or at is None:
        return ToolResult(success=False, message="No pude entender la nueva fecha u hora.")

    config = ctx.clinic_config
    new_start = local_datetime(day, at, config).astimezone(UTC)
    new_end = new_start + (record.end - record.start)

    if new_start <= ctx.current_time():
        return ToolResult(success=False, message="No se puede reagendar a una fecha pasada.")

    hours_error = business_hours_error(config, new_start, new_end)
    if hours_error:
        return ToolResult(success=False, message=hours_error)

    overlapping = ctx.store.list_appointments_between(ctx.tenant_id, new_start, new_end)
    if find_conflicts(overlapping, new_start, new_end, exclude_id=record.id):
        return ToolResult(success=False, message="El nuevo horario ya está ocupado.")

    try:
        updated = ctx.store.update_appointment(
            ctx.tenant_id, record.id, start=new_start, end=new_end,
        )
    except ConflictError:
        return ToolResult(success=False, message="El nuevo horario ya no está disponible.")

    day_text, hour_text = _friendly(updated.start, ctx)
    logger.info("Rescheduled appointment %s to %s", record.id, new_start.isoformat())
    return ToolResult(
        success=True,
        message=f"Tu cita ha sido reagendada para el {day_text} a las {hour_text}. ✨",
        data={"appointment_id": record.id},
    )
