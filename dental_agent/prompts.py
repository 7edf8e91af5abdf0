"""System prompts for the Luxe assistant and the conversation summariser."""

from __future__ import annotations

from datetime import datetime

from dental_agent.config import ASSISTANT_NAME
from dental_agent.models import ConversationContext, ServiceInfo
from dental_agent.services.scheduling import clinic_tz, to_ampm

# Monday-first display order; values are the clinic weekday index (0 = Sunday).
_DISPLAY_ORDER = (1, 2, 3, 4, 5, 6, 0)
_DAY_NAMES = ("Domingo", "Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado")
_MONTH_NAMES = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)

NAME_NOT_PROVIDED = "No proporcionado"
CLOSED_LABEL = "CERRADO"

IDENTITY_FIRST_RULE = (
    "**NUNCA** agendes sin conocer el nombre. Si no lo tienes, pregúntalo primero "
    "y guárdalo con update_name."
)

SYSTEM_PROMPT_TEMPLATE = """# Identidad
Eres **{assistant_name}**, asistente virtual de **{clinic_name}**, consultorio odontológico premium.

# Fecha actual
Hoy es {today}. Hora actual: {now_time} ({timezone}).
Usa esta fecha para resolver fechas relativas como "mañana" o "el próximo lunes".

# Consultorio
- Dirección: {clinic_address}
- Teléfono: {clinic_phone}

# Horarios
{hours_section}
{services_section}
# Paciente Actual
- Nombre: {contact_name}
- Teléfono: {contact_phone}
- Tipo: {contact_type}

{appointments_section}
{cancellation_section}{memory_section}
# Reglas

## Identidad Primero
{identity_rule}

## Herramientas
- get_available_slots: Ver horarios disponibles de una fecha (AAAA-MM-DD)
- book_appointment: Agendar cita
- cancel_appointment: Cancelar cita (usa el ID de la cita)
- reschedule_appointment: Reagendar cita (usa el ID de la cita)
- update_name: Guardar nombre del paciente
- request_human: Pedir ayuda humana

## Seguridad
- NUNCA des consejos médicos ni diagnósticos.
- Si hay emergencia → request_human
- Si hay frustración → ofrece hablar con un humano
- NUNCA inventes horarios ni citas; usa solo datos de las herramientas.

## Estilo
- Español colombiano natural
- Conciso pero amable
- Emojis moderados (✨🦷📅)
- Confirma los detalles antes de ejecutar una acción
"""


def format_cop(amount: float) -> str:
    """``80000`` -> ``"$80.000 COP"`` (Colombian thousands separator)."""
    return f"${amount:,.0f}".replace(",", ".") + " COP"


def _hours_section(context: ConversationContext) -> str:
    lines = []
    for day in _DISPLAY_ORDER:
        hours = context.clinic_config.hours_for(day)
        if hours.is_closed:
            value = CLOSED_LABEL
        else:
            value = f"{to_ampm(hours.open_time)} - {to_ampm(hours.close_time)}"
        lines.append(f"- {_DAY_NAMES[day]}: {value}")
    return "\n".join(lines)


def _services_section(services: list[ServiceInfo]) -> str:
    if not services:
        return ""
    lines = [f"- {s.title}: {format_cop(s.price)} ({s.duration} min)" for s in services]
    return "\n[SERVICIOS]\n" + "\n".join(lines) + "\n"


def _appointments_section(context: ConversationContext) -> str:
    if not context.appointments:
        return "[MIS CITAS CONFIRMADAS]\nNo tienes citas programadas."
    lines = [
        f"- {apt.date} a las {to_ampm(apt.time)}: {apt.service_name} ({apt.status}) [ID: {apt.id}]"
        for apt in context.appointments
    ]
    return "[MIS CITAS CONFIRMADAS]\n" + "\n".join(lines)


def _cancellation_section(context: ConversationContext) -> str:
    cancellation = context.last_cancellation
    if cancellation is None:
        return ""
    return (
        "\n[ÚLTIMA CANCELACIÓN]\n"
        f"Fecha: {cancellation.date}\n"
        f"Razón: {cancellation.reason or 'No especificada'}\n"
    )


def _memory_section(context: ConversationContext) -> str:
    notes = (context.contact.notes or "").strip()
    if not notes:
        return ""
    return f"\n[HISTORIAL RESUMIDO]\n{notes}\n"


def _spanish_date(moment: datetime) -> str:
    day_name = _DAY_NAMES[(moment.weekday() + 1) % 7].lower()
    return f"{day_name} {moment.day} de {_MONTH_NAMES[moment.month - 1]} de {moment.year}"


def build_system_prompt(context: ConversationContext, now: datetime | None = None) -> str:
    """Render the system prompt for one agent invocation.

    Deterministic for a given ``context`` and ``now``; ``now`` defaults to the
    current time in the clinic's timezone.
    """
    config = context.clinic_config
    tz = clinic_tz(config)
    now = now.astimezone(tz) if now else datetime.now(tz)
    contact = context.contact

    return SYSTEM_PROMPT_TEMPLATE.format(
        assistant_name=ASSISTANT_NAME,
        clinic_name=config.name,
        clinic_address=config.address,
        clinic_phone=config.phone,
        today=_spanish_date(now),
        now_time=to_ampm(now.strftime("%H:%M")),
        timezone=config.timezone,
        hours_section=_hours_section(context),
        services_section=_services_section(context.services),
        contact_name=contact.name or NAME_NOT_PROVIDED,
        contact_phone=contact.phone,
        contact_type="Registrado" if contact.is_patient else "Nuevo",
        appointments_section=_appointments_section(context),
        cancellation_section=_cancellation_section(context),
        memory_section=_memory_section(context),
        identity_rule=IDENTITY_FIRST_RULE,
    )


# ── Conversation summariser ─────────────────────────────────────────

SUMMARY_SYSTEM_PROMPT = """Eres un asistente que resume conversaciones de un consultorio dental.
Tu tarea es crear un resumen conciso y extraer hechos clave. Este resumen será
la ÚNICA memoria que quede de estos mensajes, así que prioriza hechos duraderos
sobre saludos o relleno conversacional.

Responde SOLO con JSON válido en este formato:
{
  "summary": "Resumen de 2-3 oraciones de la conversación",
  "keyFacts": ["Hecho 1", "Hecho 2", "..."]
}

Los hechos clave deben incluir:
- Nombre del paciente (si se menciona)
- Servicios de interés
- Preferencias de horario
- Problemas dentales mencionados
- Citas agendadas o canceladas
- Cualquier información relevante para futuras interacciones"""


def format_transcript(messages, assistant_name: str = ASSISTANT_NAME) -> str:
    """Render messages as ``Paciente: …`` / ``Luxe: …`` lines for the summariser."""
    return "\n".join(
        f"{'Paciente' if m.role == 'user' else assistant_name}: {m.content}" for m in messages
    )
