"""Tool registry and executor.

Each tool is a pydantic argument model plus a handler.  The model doubles as
the JSON schema advertised to the LLM (``TOOL_DEFINITIONS``) and as the
validator applied to the LLM's untrusted arguments before dispatch.

The executor never raises for bad input: unknown tools, unparsable JSON,
schema mismatches and store rejections all come back as
``ToolResult(success=False, ...)`` so the model can read the problem and
recover.  Anything else (a bug, a dead network) propagates to the agent loop.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ValidationError

from dental_agent.models import ToolResult
from dental_agent.services.metrics import metrics
from dental_agent.services.store import StoreError
from dental_agent.tools.appointments import (
    BookAppointmentArgs,
    CancelAppointmentArgs,
    GetAvailableSlotsArgs,
    RescheduleAppointmentArgs,
    book_appointment,
    cancel_appointment,
    get_available_slots,
    reschedule_appointment,
)
from dental_agent.tools.contact import (
    RequestHumanArgs,
    UpdateNameArgs,
    request_human,
    update_name,
)
from dental_agent.tools.context import ToolContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    args_model: type[BaseModel]
    handler: Callable[[Any, ToolContext], ToolResult]

    def definition(self) -> dict[str, Any]:
        return convert_to_openai_tool(self.args_model)


ALL_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec("get_available_slots", GetAvailableSlotsArgs, get_available_slots),
    ToolSpec("book_appointment", BookAppointmentArgs, book_appointment),
    ToolSpec("cancel_appointment", CancelAppointmentArgs, cancel_appointment),
    ToolSpec("reschedule_appointment", RescheduleAppointmentArgs, reschedule_appointment),
    ToolSpec("update_name", UpdateNameArgs, update_name),
    ToolSpec("request_human", RequestHumanArgs, request_human),
)

TOOL_DEFINITIONS: list[dict[str, Any]] = [spec.definition() for spec in ALL_TOOLS]


def parse_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any] | None:
    """Decode the model's ``arguments`` field; ``None`` if it is not a JSON object."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


def _describe_errors(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"]) or "arguments"
        parts.append(f"{field}: {error['msg']}")
    return "; ".join(parts)


class ToolExecutor:
    """Validates and dispatches one tool call at a time.  Holds no per-call state."""

    def __init__(self, tools: tuple[ToolSpec, ...] = ALL_TOOLS):
        self._tools = {spec.name: spec for spec in tools}

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [spec.definition() for spec in self._tools.values()]

    def execute(
        self,
        tool_name: str,
        arguments: str | dict[str, Any] | None,
        context: ToolContext,
    ) -> ToolResult:
        spec = self._tools.get(tool_name)
        if spec is None:
            logger.warning("Model requested unknown tool %r", tool_name)
            return self._finish(tool_name, ToolResult(success=False, message=f"Unknown tool: {tool_name}"))

        parsed = parse_arguments(arguments)
        if parsed is None:
            logger.warning("Unparsable arguments for %s: %r", tool_name, arguments)
            return self._finish(
                tool_name,
                ToolResult(
                    success=False,
                    message="Los argumentos de la herramienta no son un objeto JSON válido.",
                ),
            )

        try:
            args = spec.args_model.model_validate(parsed)
        except ValidationError as exc:
            logger.warning("Invalid arguments for %s: %s", tool_name, exc)
            return self._finish(
                tool_name,
                ToolResult(success=False, message=f"Argumentos inválidos: {_describe_errors(exc)}"),
            )

        try:
            result = spec.handler(args, context)
        except StoreError as exc:
            logger.error("Store rejected %s: %s", tool_name, exc)
            result = ToolResult(
                success=False,
                message="No pude completar la acción en este momento. Intenta de nuevo.",
            )
        return self._finish(tool_name, result)

    @staticmethod
    def _finish(tool_name: str, result: ToolResult) -> ToolResult:
        metrics.record_event(
            "ToolCall", tool=tool_name, outcome="success" if result.success else "failure",
        )
        return result
