"""HTTP client for the WhatsApp Cloud API, plus the inbound webhook models.

WhatsApp Cloud API docs: https://developers.facebook.com/docs/whatsapp/cloud-api
All requests require a system-user access token passed as a Bearer token.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field

from dental_agent.config import WHATSAPP_ACCESS_TOKEN, WHATSAPP_API_URL, WHATSAPP_PHONE_NUMBER_ID
from dental_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

# Cloud API hard limit for a text body.
MAX_TEXT_LENGTH = 4096


class WhatsAppAPIError(Exception):
    """Raised when a Cloud API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


# ── Webhook payload (inbound) ───────────────────────────────────────


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TextBody(_Lenient):
    body: str = ""


class MediaRef(_Lenient):
    id: str
    mime_type: str | None = None
    caption: str | None = None


class InteractiveReply(_Lenient):
    id: str = ""
    title: str = ""


class Interactive(_Lenient):
    type: str = ""
    button_reply: InteractiveReply | None = None
    list_reply: InteractiveReply | None = None


class WebhookMessage(_Lenient):
    """One inbound message.  ``from`` is a Python keyword, hence the alias."""

    from_: str = Field(..., alias="from")
    id: str
    timestamp: str | None = None
    type: str
    text: TextBody | None = None
    audio: MediaRef | None = None
    image: MediaRef | None = None
    interactive: Interactive | None = None

    def text_content(self) -> str | None:
        """The text the agent should see, or ``None`` for non-text messages."""
        if self.type == "text" and self.text:
            return self.text.body
        if self.type == "interactive" and self.interactive:
            reply = self.interactive.button_reply or self.interactive.list_reply
            if reply:
                return reply.title or reply.id
        return None


class WebhookProfile(_Lenient):
    name: str | None = None


class WebhookContact(_Lenient):
    wa_id: str | None = None
    profile: WebhookProfile | None = None


class WebhookMetadata(_Lenient):
    display_phone_number: str | None = None
    phone_number_id: str | None = None


class WebhookStatus(_Lenient):
    id: str
    status: str
    recipient_id: str | None = None


class WebhookValue(_Lenient):
    messaging_product: str | None = None
    metadata: WebhookMetadata | None = None
    contacts: list[WebhookContact] = Field(default_factory=list)
    messages: list[WebhookMessage] = Field(default_factory=list)
    statuses: list[WebhookStatus] = Field(default_factory=list)


class WebhookChange(_Lenient):
    field: str
    value: WebhookValue


class WebhookEntry(_Lenient):
    id: str | None = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(_Lenient):
    object: str | None = None
    entry: list[WebhookEntry] = Field(default_factory=list)


class InboundMessage(BaseModel):
    """A flattened inbound message ready for the ingestion service."""

    message_id: str
    phone: str
    kind: Literal["text", "audio", "image", "other"]
    text: str | None = None
    profile_name: str | None = None
    channel_id: str | None = None


def iter_inbound_messages(payload: WebhookPayload) -> list[InboundMessage]:
    """Flatten every ``messages`` change of *payload*, in delivery order."""
    inbound: list[InboundMessage] = []
    for entry in payload.entry:
        for change in entry.changes:
            if change.field != "messages":
                continue
            value = change.value
            channel_id = value.metadata.phone_number_id if value.metadata else None
            for status in value.statuses:
                logger.debug("WhatsApp message %s status: %s", status.id, status.status)
            for message in value.messages:
                profile_name = _profile_name(value.contacts, message.from_)
                text = message.text_content()
                if text is not None:
                    kind = "text"
                elif message.type in ("audio", "image"):
                    kind = message.type
                else:
                    kind = "other"
                inbound.append(
                    InboundMessage(
                        message_id=message.id,
                        phone=message.from_,
                        kind=kind,
                        text=text,
                        profile_name=profile_name,
                        channel_id=channel_id,
                    )
                )
    return inbound


def _profile_name(contacts: list[WebhookContact], wa_id: str) -> str | None:
    for contact in contacts:
        if contact.wa_id in (None, wa_id) and contact.profile and contact.profile.name:
            return contact.profile.name
    return None


# ── Outbound client ─────────────────────────────────────────────────


class WhatsAppClient:
    """Send-side wrapper around ``POST /{phone_number_id}/messages``."""

    def __init__(
        self,
        access_token: str | None = None,
        phone_number_id: str | None = None,
        base_url: str | None = None,
    ):
        self._token = access_token or WHATSAPP_ACCESS_TOKEN
        self._phone_number_id = phone_number_id or WHATSAPP_PHONE_NUMBER_ID
        self._client = httpx.Client(
            base_url=base_url or WHATSAPP_API_URL,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self._token and self._phone_number_id)

    # ── Internal helpers ─────────────────────────────────────────────

    def _post_messages(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST with exponential-backoff retries on timeouts and 5xx."""
        if not self.configured:
            raise WhatsAppAPIError("WhatsApp is not configured")

        path = f"/{self._phone_number_id}/messages"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.post(path, json=payload)
                if response.status_code >= 500:
                    raise WhatsAppAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise WhatsAppAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                return response.json()

            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "WhatsApp API attempt %d/%d failed (%s). Retrying…",
                    attempt, MAX_RETRIES, type(exc).__name__,
                )
            except WhatsAppAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "WhatsApp API server error on attempt %d/%d. Retrying…",
                        attempt, MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise WhatsAppAPIError(
            f"WhatsApp API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    # ── Public API ───────────────────────────────────────────────────

    def send_text(self, to: str, body: str) -> str | None:
        """Send a text message; returns the WhatsApp message id."""
        recipient = "".join(ch for ch in to if ch.isdigit())
        t0 = time.perf_counter()
        try:
            data = self._post_messages(
                {
                    "messaging_product": "whatsapp",
                    "recipient_type": "individual",
                    "to": recipient,
                    "type": "text",
                    "text": {"body": body[:MAX_TEXT_LENGTH]},
                }
            )
        except WhatsAppAPIError as exc:
            metrics.record_failure(
                "whatsapp", "send_text",
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise

        metrics.record_success(
            "whatsapp", "send_text", latency_ms=(time.perf_counter() - t0) * 1000,
        )
        messages = data.get("messages") or [{}]
        return messages[0].get("id")

    def mark_as_read(self, message_id: str) -> None:
        """Show the blue ticks.  Best effort: failures are logged, not raised."""
        if not self.configured:
            return
        try:
            self._post_messages(
                {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
            )
        except WhatsAppAPIError as exc:
            logger.warning("Could not mark %s as read: %s", message_id, exc)

    def close(self) -> None:
        self._client.close()


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: WhatsAppClient | None = None
_client_lock = threading.Lock()


def get_whatsapp_client() -> WhatsAppClient:
    """Return a module-level WhatsAppClient singleton (double-checked locking)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = WhatsAppClient()
    return _client
