"""Shared test fixtures for the Luxe Dental test suite."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("DEEPSEEK_API_KEY", "test-deepseek-key-123")
    os.environ["METRICS_ENABLED"] = "false"
    os.environ["WHATSAPP_VERIFY_TOKEN"] = "test-verify-token"


TENANT_ID = "clinic-1"
PHONE = "+573001234567"

# Monday 2026-10-19, 09:00 in Bogotá (UTC-5).
FIXED_NOW = datetime(2026, 10, 19, 14, 0, tzinfo=UTC)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def store():
    """In-memory store with one clinic (default hours) and three services."""
    from dental_agent.models import DEFAULT_CLINIC_CONFIG, ServiceInfo
    from dental_agent.services.store import InMemoryClinicStore

    clinic = InMemoryClinicStore()
    clinic.add_tenant(TENANT_ID, DEFAULT_CLINIC_CONFIG, channel_id="wa-phone-1")
    clinic.add_service(TENANT_ID, ServiceInfo(id="svc-1", title="Limpieza dental", price=80000, duration=30))
    clinic.add_service(TENANT_ID, ServiceInfo(id="svc-2", title="Blanqueamiento", price=450000, duration=60))
    clinic.add_service(TENANT_ID, ServiceInfo(id="svc-3", title="Valoración inicial", price=50000, duration=30))
    return clinic


@pytest.fixture
def patient(store):
    from dental_agent.models import Contact

    return store.add_contact(
        Contact(type="patient", id="pat-1", phone=PHONE, name="Ana Gómez", tenant_id=TENANT_ID)
    )


@pytest.fixture
def lead(store):
    from dental_agent.models import Contact

    return store.add_contact(
        Contact(type="lead", id="lead-1", phone="+573009999999", name=None, tenant_id=TENANT_ID)
    )


@pytest.fixture
def mock_llm_response():
    """Factory fixture for DeepSeek chat-completion bodies."""

    def _make(content: str | None = None, tool_calls: list | None = None) -> dict:
        message: dict = {"role": "assistant", "content": content}
        if tool_calls:
            message["tool_calls"] = tool_calls
        return {"choices": [{"index": 0, "message": message}], "usage": {"total_tokens": 42}}

    return _make


@pytest.fixture
def mock_http_response():
    """Factory fixture for mock httpx responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        mock.content = b"" if data is None else b"x"
        return mock

    return _make
