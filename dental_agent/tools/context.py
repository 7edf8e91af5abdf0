"""Execution context handed to every tool handler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from dental_agent.models import ClinicConfig, Contact
from dental_agent.services.store import ClinicStore


@dataclass
class ToolContext:
    """What a tool may touch during one agent invocation.

    ``contact`` is the loop's working copy, not the durable record: tools
    write changes through ``store`` and the loop mirrors them in memory.
    ``now`` pins the clock for tests; production leaves it ``None``.
    """

    contact: Contact
    tenant_id: str
    clinic_config: ClinicConfig
    store: ClinicStore
    now: datetime | None = None

    def current_time(self) -> datetime:
        return self.now or datetime.now(UTC)
