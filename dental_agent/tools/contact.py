"""Identity and escalation tools: ``update_name`` and ``request_human``."""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, ConfigDict, Field

from dental_agent.models import ToolResult
from dental_agent.services.metrics import metrics
from dental_agent.tools.context import ToolContext

logger = logging.getLogger(__name__)

_HAS_LETTER_RE = re.compile(r"[^\W\d_]")


class UpdateNameArgs(BaseModel):
    """Save or update the patient's name. Use this when they provide their name."""

    model_config = ConfigDict(title="update_name", extra="ignore")

    name: str = Field(..., min_length=1, max_length=100, description="The patient's full name")


class RequestHumanArgs(BaseModel):
    """Request handoff to a human agent for emergencies or complex situations."""

    model_config = ConfigDict(title="request_human", extra="ignore")

    reason: str = Field(..., min_length=1, max_length=500, description="Why human assistance is needed")


def normalize_name(raw: str) -> str:
    """``"  maría  JOSÉ pérez"`` -> ``"María José Pérez"``."""
    return " ".join(word[:1].upper() + word[1:].lower() for word in raw.split())


def update_name(args: UpdateNameArgs, ctx: ToolContext) -> ToolResult:
    name = normalize_name(args.name)
    if len(name) < 2 or not _HAS_LETTER_RE.search(name):
        return ToolResult(success=False, message="Ese nombre no parece válido. ¿Me lo repites?")

    ctx.store.update_contact_name(ctx.contact, name)
    logger.info("Updated name for %s %s", ctx.contact.type, ctx.contact.id)
    return ToolResult(
        success=True,
        message=f"¡Mucho gusto, {name}! ¿En qué puedo ayudarte?",
        data={"new_name": name},
    )


def request_human(args: RequestHumanArgs, ctx: ToolContext) -> ToolResult:
    logger.warning(
        "Human handoff requested for %s (tenant %s): %s",
        ctx.contact.phone, ctx.tenant_id, args.reason,
    )
    metrics.record_event("Handoff", source="model")
    return ToolResult(
        success=True,
        message="Un miembro de nuestro equipo se pondrá en contacto contigo pronto. "
        "Si es una emergencia médica, llama al consultorio o acude a urgencias.",
    )
