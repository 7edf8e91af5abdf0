"""FastAPI route definitions for the Luxe Dental agent API."""

from __future__ import annotations

import asyncio
import logging
import secrets

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from dental_agent.api.schemas import ChatRequest, ChatResponse, HealthResponse, ToolCallSummary
from dental_agent.config import WHATSAPP_VERIFY_TOKEN
from dental_agent.services.whatsapp_client import (
    InboundMessage,
    WhatsAppAPIError,
    WebhookPayload,
    iter_inbound_messages,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_component(request: Request, name: str):
    """Retrieve a component built during the FastAPI lifespan (see ``server.py``)."""
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return component


def _schedule_compaction(background_tasks: BackgroundTasks, request: Request, contact) -> None:
    compactor = getattr(request.app.state, "compactor", None)
    if compactor is not None and contact is not None:
        background_tasks.add_task(compactor.maybe_compact, contact)


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request, background_tasks: BackgroundTasks):
    """Send a message as ``phone`` and get the assistant's reply.

    The agent loop is synchronous (it blocks on DeepSeek and the store), so
    it runs in a worker thread via ``asyncio.to_thread``.  Compaction is
    scheduled after the response is sent.
    """
    service = _get_component(http_request, "conversation_service")
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        tenant_id = request.tenant_id or await asyncio.to_thread(service.resolve_tenant, None)
        result = await asyncio.to_thread(
            service.handle_incoming_message,
            tenant_id,
            request.phone,
            request.message,
            request.name,
        )
    except Exception as e:
        # Log the full traceback server-side, but do NOT leak it to the client.
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    _schedule_compaction(background_tasks, http_request, result.contact)
    return ChatResponse(
        reply=result.reply,
        phone=request.phone,
        tool_calls=[ToolCallSummary(name=c.name, success=c.result.success) for c in result.tool_calls],
    )


# ── WhatsApp webhook ─────────────────────────────────────────────────


@router.get("/webhooks/whatsapp", response_class=PlainTextResponse)
async def verify_whatsapp_webhook(
    mode: str | None = Query(None, alias="hub.mode"),
    token: str | None = Query(None, alias="hub.verify_token"),
    challenge: str | None = Query(None, alias="hub.challenge"),
):
    """Meta's subscription handshake: echo ``hub.challenge`` if the token matches."""
    if (
        mode == "subscribe"
        and WHATSAPP_VERIFY_TOKEN
        and token
        and secrets.compare_digest(token, WHATSAPP_VERIFY_TOKEN)
    ):
        logger.info("WhatsApp webhook verified")
        return PlainTextResponse(challenge or "")
    logger.warning("WhatsApp webhook verification failed")
    return PlainTextResponse("Forbidden", status_code=403)


def _process_inbound(app_state, inbound: InboundMessage) -> None:
    """Run one WhatsApp message end-to-end.  Runs as a background task."""
    service = app_state.conversation_service
    whatsapp = app_state.whatsapp
    whatsapp.mark_as_read(inbound.message_id)

    result = service.handle_inbound(inbound)
    if result is None:
        return
    try:
        whatsapp.send_text(inbound.phone, result.reply)
    except WhatsAppAPIError:
        logger.exception("Could not deliver reply to %s", inbound.phone)

    compactor = getattr(app_state, "compactor", None)
    if compactor is not None and result.contact is not None:
        compactor.maybe_compact(result.contact)


@router.post("/webhooks/whatsapp", response_class=PlainTextResponse)
async def receive_whatsapp_webhook(http_request: Request, background_tasks: BackgroundTasks):
    """Acknowledge immediately and process messages in the background.

    Always answers 200, even for payloads we cannot read, so Meta does not
    keep redelivering them.
    """
    _get_component(http_request, "conversation_service")
    try:
        payload = WebhookPayload.model_validate(await http_request.json())
    except (ValueError, ValidationError):
        logger.warning("Ignoring unreadable WhatsApp webhook payload")
        return PlainTextResponse("OK")

    for inbound in iter_inbound_messages(payload):
        logger.info("WhatsApp message from %s (%s)", inbound.phone, inbound.kind)
        background_tasks.add_task(_process_inbound, http_request.app.state, inbound)
    return PlainTextResponse("OK")
