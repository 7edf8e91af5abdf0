"""Ingestion boundary between a channel (WhatsApp, the chat API, the CLI) and
the agent.

For one inbound message it resolves the tenant and the contact, assembles a
fresh ``ConversationContext`` from the store, runs the agent and persists
both sides of the exchange.  Compaction is *not* run here; the caller
schedules it off the request path with the returned contact.

Invocations for the same (tenant, phone) are serialised so that a duplicate
webhook delivery cannot race the first one for the same calendar slot.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from dental_agent.config import DEFAULT_TENANT_ID
from dental_agent.models import (
    ClinicConfig,
    Contact,
    ConversationContext,
    Message,
    ServiceInfo,
    ToolCallRecord,
    normalize_phone,
)
from dental_agent.services.cache import TTLCache
from dental_agent.services.locks import KeyedLocks
from dental_agent.services.store import ClinicStore, StoreError
from dental_agent.services.whatsapp_client import InboundMessage

logger = logging.getLogger(__name__)

HISTORY_FETCH_LIMIT = 20

# ── Fixed replies (patient-facing, Spanish) ──────────────────────────

INGESTION_ERROR_REPLY = "Lo siento, estamos experimentando dificultades. Intenta de nuevo más tarde."
AUDIO_REPLY = "Disculpa, no pude procesar tu mensaje de voz. ¿Podrías escribirme tu consulta? 📝"
IMAGE_REPLY = (
    "He recibido tu imagen. Por ahora solo puedo procesar mensajes de texto. "
    "¿En qué puedo ayudarte? 📝"
)
UNSUPPORTED_REPLY = "Disculpa, no pude entender ese tipo de mensaje. ¿Podrías escribirme tu consulta? 📝"


@dataclass
class ConversationResult:
    """What the channel sends back, plus the contact to compact afterwards."""

    reply: str
    contact: Contact | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


class ConversationService:
    def __init__(
        self,
        store: ClinicStore,
        agent,
        *,
        cache: TTLCache | None = None,
        default_tenant_id: str = DEFAULT_TENANT_ID,
        clock: Callable[[], datetime | None] | None = None,
    ):
        self._store = store
        self._agent = agent
        self._cache = cache or TTLCache()
        self._default_tenant_id = default_tenant_id
        self._clock = clock or (lambda: None)
        self._locks = KeyedLocks()

    # ── Tenant & clinic data (cached) ───────────────────────────────

    def resolve_tenant(self, channel_id: str | None = None) -> str:
        """Map a WhatsApp phone-number id to a tenant, falling back to the default."""
        tenant_id = self._cache.get_or_load(
            f"tenant:{channel_id or '-'}", lambda: self._store.resolve_tenant(channel_id),
        )
        return tenant_id or self._default_tenant_id

    def clinic_config(self, tenant_id: str) -> ClinicConfig:
        return self._cache.get_or_load(
            f"config:{tenant_id}", lambda: self._store.get_clinic_config(tenant_id),
        )

    def services(self, tenant_id: str) -> list[ServiceInfo]:
        return self._cache.get_or_load(
            f"services:{tenant_id}", lambda: self._store.get_active_services(tenant_id),
        )

    # ── Context assembly ────────────────────────────────────────────

    def build_context(self, contact: Contact) -> ConversationContext:
        """Prior history, appointments, catalogue and config for *contact*."""
        config = self.clinic_config(contact.tenant_id)
        history = self._store.get_recent_messages(contact, limit=HISTORY_FETCH_LIMIT)
        return ConversationContext(
            contact=contact,
            messages=[Message(role=m.role, content=m.content, timestamp=m.timestamp) for m in history],
            appointments=self._store.get_upcoming_appointments(contact, config, now=self._clock()),
            services=self.services(contact.tenant_id),
            clinic_config=config,
            last_cancellation=self._store.get_last_cancellation(contact, config),
        )

    def _lock_for(self, tenant_id: str, phone: str) -> threading.Lock:
        return self._locks.get((tenant_id, normalize_phone(phone)))

    # ── Entry points ────────────────────────────────────────────────

    def handle_incoming_message(
        self,
        tenant_id: str,
        phone: str,
        text: str,
        profile_name: str | None = None,
    ) -> ConversationResult:
        """Run one user message through the agent and persist the exchange.

        Store failures before the agent runs yield ``INGESTION_ERROR_REPLY``.
        A failure to save the assistant message is logged and the reply is
        still returned, since the tools may already have acted on it.
        """
        with self._lock_for(tenant_id, phone):
            try:
                contact = self._store.get_or_create_contact(tenant_id, phone, profile_name)
                # Context first: the agent appends the new message to the window itself.
                context = self.build_context(contact)
                self._store.append_message(contact, "user", text)
            except StoreError:
                logger.exception("Could not load conversation for %s (tenant %s)", phone, tenant_id)
                return ConversationResult(reply=INGESTION_ERROR_REPLY)

            reply = self._agent.process_message(text, context)

            try:
                # Re-read: a booking may have promoted the lead to a patient.
                contact = self._store.get_or_create_contact(tenant_id, phone)
                self._store.append_message(contact, "assistant", reply.text)
            except StoreError:
                logger.exception("Could not save assistant reply for contact %s", contact.id)

        logger.info(
            "Replied to contact %s (%d tool calls)", contact.id, len(reply.tool_calls),
        )
        return ConversationResult(reply=reply.text, contact=contact, tool_calls=reply.tool_calls)

    def handle_inbound(self, inbound: InboundMessage) -> ConversationResult | None:
        """Dispatch one webhook message by kind; ``None`` when nothing should be sent."""
        if inbound.kind == "audio":
            return ConversationResult(reply=AUDIO_REPLY)
        if inbound.kind == "image":
            return ConversationResult(reply=IMAGE_REPLY)
        if inbound.kind != "text":
            logger.info("Unsupported WhatsApp message type from %s", inbound.phone)
            return ConversationResult(reply=UNSUPPORTED_REPLY)
        if not (inbound.text or "").strip():
            return None

        try:
            tenant_id = self.resolve_tenant(inbound.channel_id)
        except StoreError:
            logger.exception("Tenant resolution failed for channel %s", inbound.channel_id)
            return ConversationResult(reply=INGESTION_ERROR_REPLY)
        return self.handle_incoming_message(
            tenant_id, inbound.phone, inbound.text, inbound.profile_name,
        )
