"""Tests for the system prompt builder."""

from __future__ import annotations

from datetime import UTC, datetime

from dental_agent.models import (
    DEFAULT_CLINIC_CONFIG,
    AppointmentInfo,
    BusinessHours,
    ClinicConfig,
    Contact,
    ConversationContext,
    LastCancellation,
    Message,
    ServiceInfo,
)
from dental_agent.prompts import (
    CLOSED_LABEL,
    IDENTITY_FIRST_RULE,
    NAME_NOT_PROVIDED,
    build_system_prompt,
    format_cop,
    format_transcript,
)

NOW = datetime(2026, 10, 19, 14, 0, tzinfo=UTC)


def _context(**overrides) -> ConversationContext:
    contact = overrides.pop(
        "contact",
        Contact(type="lead", id="lead-1", phone="+573001112233", tenant_id="clinic-1"),
    )
    return ConversationContext(contact=contact, **overrides)


class TestIdentitySection:
    def test_unknown_name_placeholder_and_rule(self):
        prompt = build_system_prompt(_context(), now=NOW)
        assert f"Nombre: {NAME_NOT_PROVIDED}" in prompt
        assert IDENTITY_FIRST_RULE in prompt
        assert "**NUNCA** agendes sin conocer el nombre" in prompt

    def test_known_patient(self):
        contact = Contact(type="patient", id="p1", phone="+573001112233", name="Ana", tenant_id="clinic-1")
        prompt = build_system_prompt(_context(contact=contact), now=NOW)
        assert "Nombre: Ana" in prompt
        assert "Tipo: Registrado" in prompt

    def test_lead_is_marked_new(self):
        assert "Tipo: Nuevo" in build_system_prompt(_context(), now=NOW)

    def test_includes_current_date(self):
        prompt = build_system_prompt(_context(), now=NOW)
        assert "lunes 19 de octubre de 2026" in prompt
        assert "9:00 AM" in prompt


class TestHoursSection:
    def test_lists_all_seven_days_monday_first(self):
        prompt = build_system_prompt(_context(), now=NOW)
        days = ["Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado", "Domingo"]
        positions = [prompt.index(f"- {day}:") for day in days]
        assert positions == sorted(positions)

    def test_twelve_hour_format_and_closed_label(self):
        prompt = build_system_prompt(_context(), now=NOW)
        assert "- Lunes: 8:00 AM - 6:00 PM" in prompt
        assert "- Sábado: 8:00 AM - 2:00 PM" in prompt
        assert f"- Domingo: {CLOSED_LABEL}" in prompt

    def test_missing_day_rendered_closed(self):
        config = ClinicConfig(
            name="Mini",
            address="Calle 1",
            phone="123",
            business_hours=[BusinessHours(day_of_week=3, open_time="09:00", close_time="12:00")],
        )
        prompt = build_system_prompt(_context(clinic_config=config), now=NOW)
        assert "- Miércoles: 9:00 AM - 12:00 PM" in prompt
        assert f"- Lunes: {CLOSED_LABEL}" in prompt
        assert prompt.count(CLOSED_LABEL) == 6


class TestDataSections:
    def test_services_with_cop_price(self):
        services = [ServiceInfo(id="s1", title="Limpieza dental", price=80000, duration=30)]
        prompt = build_system_prompt(_context(services=services), now=NOW)
        assert "[SERVICIOS]" in prompt
        assert "- Limpieza dental: $80.000 COP (30 min)" in prompt

    def test_services_section_omitted_when_empty(self):
        assert "[SERVICIOS]" not in build_system_prompt(_context(), now=NOW)

    def test_appointments_with_ids(self):
        appointments = [
            AppointmentInfo(id="apt-9", date="2026-10-21", time="15:30", service_name="Blanqueamiento", status="scheduled"),
        ]
        prompt = build_system_prompt(_context(appointments=appointments), now=NOW)
        assert "[MIS CITAS CONFIRMADAS]" in prompt
        assert "2026-10-21 a las 3:30 PM: Blanqueamiento" in prompt
        assert "[ID: apt-9]" in prompt

    def test_no_appointments_line(self):
        assert "No tienes citas programadas." in build_system_prompt(_context(), now=NOW)

    def test_last_cancellation(self):
        prompt = build_system_prompt(
            _context(last_cancellation=LastCancellation(date="2026-10-01", reason="viaje")), now=NOW,
        )
        assert "[ÚLTIMA CANCELACIÓN]" in prompt
        assert "Razón: viaje" in prompt

    def test_summary_notes_included(self):
        contact = Contact(
            type="patient", id="p1", phone="+573001112233", name="Ana", tenant_id="clinic-1",
            notes="[Resumen 2026-10-01]\nPrefiere citas en la mañana.",
        )
        prompt = build_system_prompt(_context(contact=contact), now=NOW)
        assert "[HISTORIAL RESUMIDO]" in prompt
        assert "Prefiere citas en la mañana." in prompt

    def test_all_six_tools_described(self):
        prompt = build_system_prompt(_context(), now=NOW)
        for tool in (
            "get_available_slots", "book_appointment", "cancel_appointment",
            "reschedule_appointment", "update_name", "request_human",
        ):
            assert f"- {tool}:" in prompt

    def test_deterministic(self):
        ctx = _context(clinic_config=DEFAULT_CLINIC_CONFIG)
        assert build_system_prompt(ctx, now=NOW) == build_system_prompt(ctx, now=NOW)


class TestHelpers:
    def test_format_cop(self):
        assert format_cop(1800000) == "$1.800.000 COP"
        assert format_cop(500) == "$500 COP"

    def test_format_transcript(self):
        messages = [Message(role="user", content="Hola"), Message(role="assistant", content="¡Hola!")]
        assert format_transcript(messages) == "Paciente: Hola\nLuxe: ¡Hola!"
