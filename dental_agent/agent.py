"""LangGraph agent loop for the Luxe dental assistant.

Architecture:
  One invocation handles one inbound patient message.  The graph has four
  nodes:

    1. **safety_gate** — keyword check on the raw message; a match ends the
                         run with a fixed handoff reply and never calls the LLM
    2. **prompt**      — renders the system prompt and the message window
    3. **chatbot**     — one DeepSeek chat-completion call with the tool list
    4. **tools**       — executes the requested tool calls, in order

  Routing:
    safety_gate → (handoff?) → END
                → prompt → chatbot → (tool calls?) → tools → chatbot (loop)
                                   → (text?)       → END

  The chatbot node counts model calls and stops the loop after
  ``MAX_TOOL_ITERATIONS`` with an apologetic reply, so a model that never
  stops asking for tools still terminates.

  State:
    The graph is compiled without a checkpointer: the caller assembles a fresh
    ``ConversationContext`` per message and persists the reply itself.  The
    contact inside the state is a working copy; ``update_name`` changes it for
    the rest of this invocation only.
"""

from __future__ import annotations

import json
import logging
import operator
import time
from collections.abc import Callable
from datetime import datetime
from typing import Annotated, Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from dental_agent.config import HISTORY_WINDOW, MAX_TOOL_ITERATIONS, MODEL_NAME
from dental_agent.models import AgentReply, Contact, ConversationContext, ToolCallRecord, ToolResult
from dental_agent.prompts import build_system_prompt
from dental_agent.safety import SafetyGate, default_gate
from dental_agent.services.metrics import metrics
from dental_agent.services.store import ClinicStore
from dental_agent.tools.context import ToolContext
from dental_agent.tools.registry import ToolExecutor, parse_arguments

logger = logging.getLogger(__name__)

# ── Fixed replies (patient-facing, Spanish) ──────────────────────────

HANDOFF_REPLY = (
    "Entiendo que esta situación requiere atención especial. Un miembro de nuestro "
    "equipo te contactará pronto. Si es emergencia médica, llama al consultorio o "
    "acude a urgencias. 🏥"
)
MAX_ITERATIONS_REPLY = (
    "Disculpa, tuve un problema procesando tu solicitud. ¿Podrías intentar de nuevo?"
)
TECHNICAL_ERROR_REPLY = (
    "Disculpa, estoy teniendo dificultades técnicas. ¿Podrías intentar de nuevo? "
    "Si el problema persiste, un humano te atenderá pronto."
)
EMPTY_REPLY = "¿En qué puedo ayudarte?"


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """The state that flows through the graph.

    ``messages`` and ``tool_log`` use ``operator.add`` so each node appends.
    ``messages`` holds the OpenAI-format transcript *without* the system
    prompt, which lives in ``system_prompt`` and is re-rendered only when the
    working ``contact`` changes.
    """

    user_message: str
    context: ConversationContext
    contact: Contact
    system_prompt: str
    messages: Annotated[list[dict[str, Any]], operator.add]
    tool_log: Annotated[list[ToolCallRecord], operator.add]
    iterations: int
    reply: str | None


def _context_with(state: AgentState) -> ConversationContext:
    return state["context"].model_copy(update={"contact": state["contact"]})


# ── Node: safety_gate ───────────────────────────────────────────────


def _make_safety_node(gate: SafetyGate):
    def safety_node(state: AgentState) -> dict:
        if not gate.requires_handoff(state["user_message"]):
            return {}
        metrics.record_event("Handoff", source="safety_gate")
        record = ToolCallRecord(
            name="request_human",
            args={"reason": "safety_gate"},
            result=ToolResult(success=True, message="Handoff triggered"),
        )
        return {"reply": HANDOFF_REPLY, "tool_log": [record]}

    return safety_node


def route_after_gate(state: AgentState) -> str:
    return END if state.get("reply") is not None else "prompt"


# ── Node: prompt ────────────────────────────────────────────────────


def _make_prompt_node(history_window: int, clock):
    def prompt_node(state: AgentState) -> dict:
        prior = state["context"].messages[-history_window:] if history_window > 0 else []
        window = [{"role": m.role, "content": m.content} for m in prior]
        window.append({"role": "user", "content": state["user_message"]})
        return {
            "system_prompt": build_system_prompt(_context_with(state), now=clock()),
            "messages": window,
        }

    return prompt_node


# ── Node: chatbot (DeepSeek with tools) ─────────────────────────────


def _make_chatbot_node(gateway, tool_definitions: list[dict], model: str, max_iterations: int):
    def chatbot_node(state: AgentState) -> dict:
        if state["iterations"] >= max_iterations:
            logger.warning("Tool iteration ceiling (%d) reached without a reply", max_iterations)
            metrics.record_event("IterationCeiling")
            return {"reply": MAX_ITERATIONS_REPLY}

        request = [{"role": "system", "content": state["system_prompt"]}, *state["messages"]]
        t0 = time.perf_counter()
        response = gateway.complete(
            model=model,
            messages=request,
            tools=tool_definitions,
            tool_choice="auto",
        )
        logger.debug(
            "chatbot call %d responded in %.0fms",
            state["iterations"] + 1, (time.perf_counter() - t0) * 1000,
        )

        message = response["choices"][0]["message"]
        tool_calls = message.get("tool_calls") or []
        if tool_calls:
            # Any text alongside tool calls is dropped; the turn is not final.
            assistant = {"role": "assistant", "content": "", "tool_calls": tool_calls}
            return {"messages": [assistant], "iterations": state["iterations"] + 1}

        text = message.get("content") or ""
        return {
            "messages": [{"role": "assistant", "content": text}],
            "iterations": state["iterations"] + 1,
            "reply": text if text.strip() else EMPTY_REPLY,
        }

    return chatbot_node


def should_use_tools(state: AgentState) -> str:
    """Route to the tools node while the last assistant turn has pending calls."""
    if state.get("reply") is not None:
        return END
    last_message = state["messages"][-1]
    if last_message.get("tool_calls"):
        return "tools"
    return END


# ── Node: tools ─────────────────────────────────────────────────────


def _make_tools_node(executor: ToolExecutor, store: ClinicStore, clock):
    def tools_node(state: AgentState) -> dict:
        contact = state["contact"]
        context = state["context"]
        tool_context = ToolContext(
            contact=contact,
            tenant_id=contact.tenant_id,
            clinic_config=context.clinic_config,
            store=store,
            now=clock(),
        )

        tool_messages: list[dict[str, Any]] = []
        records: list[ToolCallRecord] = []
        name_changed = False

        for call in state["messages"][-1]["tool_calls"]:
            function = call.get("function") or {}
            name = function.get("name") or ""
            raw_args = function.get("arguments")
            logger.info("Tool call: %s %s", name, raw_args)

            result = executor.execute(name, raw_args, tool_context)
            records.append(
                ToolCallRecord(name=name, args=parse_arguments(raw_args) or {}, result=result)
            )
            tool_messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call.get("id", ""),
                    "content": json.dumps(result.model_dump(mode="json"), ensure_ascii=False),
                }
            )

            if name == "update_name" and result.success and result.data:
                contact = contact.model_copy(update={"name": result.data["new_name"]})
                tool_context.contact = contact
                name_changed = True

        update: dict[str, Any] = {"messages": tool_messages, "tool_log": records}
        if name_changed:
            update["contact"] = contact
            update["system_prompt"] = build_system_prompt(
                context.model_copy(update={"contact": contact}), now=clock(),
            )
        return update

    return tools_node


# ── Agent ───────────────────────────────────────────────────────────


class ClinicAgent:
    """Runs the bounded model/tool loop for one inbound message at a time.

    ``process_message`` never raises: gateway or executor failures become
    ``TECHNICAL_ERROR_REPLY`` together with whatever tools already ran.
    """

    def __init__(
        self,
        gateway,
        store: ClinicStore,
        *,
        executor: ToolExecutor | None = None,
        gate: SafetyGate | None = None,
        model: str = MODEL_NAME,
        max_iterations: int = MAX_TOOL_ITERATIONS,
        history_window: int = HISTORY_WINDOW,
        clock: Callable[[], datetime | None] | None = None,
    ):
        self._executor = executor or ToolExecutor()
        self._gate = gate or default_gate()
        self._max_iterations = max_iterations
        self._clock = clock or (lambda: None)
        self._graph = self._build_graph(gateway, store, model, history_window)

    def _build_graph(self, gateway, store: ClinicStore, model: str, history_window: int):
        graph = StateGraph(AgentState)

        graph.add_node("safety_gate", _make_safety_node(self._gate))
        graph.add_node("prompt", _make_prompt_node(history_window, self._clock))
        graph.add_node(
            "chatbot",
            _make_chatbot_node(gateway, self._executor.definitions(), model, self._max_iterations),
        )
        graph.add_node("tools", _make_tools_node(self._executor, store, self._clock))

        graph.add_edge(START, "safety_gate")
        graph.add_conditional_edges(
            "safety_gate", route_after_gate, {"prompt": "prompt", END: END},
        )
        graph.add_edge("prompt", "chatbot")
        graph.add_conditional_edges(
            "chatbot", should_use_tools, {"tools": "tools", END: END},
        )
        graph.add_edge("tools", "chatbot")

        compiled = graph.compile()
        logger.debug(
            "Clinic agent compiled — model: %s, tools: %d, max iterations: %d",
            model, len(self._executor.tool_names), self._max_iterations,
        )
        return compiled

    def process_message(self, user_message: str, context: ConversationContext) -> AgentReply:
        """Produce the reply to ``user_message`` plus the ordered tool-call log."""
        inputs: AgentState = {
            "user_message": user_message,
            "context": context,
            "contact": context.contact.model_copy(deep=True),
            "system_prompt": "",
            "messages": [],
            "tool_log": [],
            "iterations": 0,
            "reply": None,
        }
        # Each loop turn is two graph steps; leave headroom for gate/prompt/ceiling.
        config = {"recursion_limit": 2 * self._max_iterations + 6}

        last_state: dict[str, Any] = inputs
        try:
            for state in self._graph.stream(inputs, config=config, stream_mode="values"):
                last_state = state
        except Exception:
            logger.exception("Agent loop failed for contact %s", context.contact.id)
            metrics.record_event("AgentError")
            return AgentReply(text=TECHNICAL_ERROR_REPLY, tool_calls=list(last_state["tool_log"]))

        reply = last_state.get("reply") or MAX_ITERATIONS_REPLY
        return AgentReply(text=reply, tool_calls=list(last_state["tool_log"]))
