"""Tests for the WhatsApp Cloud API client and webhook parsing."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from dental_agent.services.whatsapp_client import (
    MAX_RETRIES,
    MAX_TEXT_LENGTH,
    WebhookPayload,
    WhatsAppAPIError,
    WhatsAppClient,
    iter_inbound_messages,
)

# ── Helpers ──────────────────────────────────────────────────────────


def _mock_response(data: dict, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    return mock


def _payload(*messages, contacts=None, field="messages", statuses=None) -> WebhookPayload:
    return WebhookPayload.model_validate(
        {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "id": "WABA-1",
                    "changes": [
                        {
                            "field": field,
                            "value": {
                                "messaging_product": "whatsapp",
                                "metadata": {"display_phone_number": "15550001111", "phone_number_id": "wa-phone-1"},
                                "contacts": contacts or [{"wa_id": "573001234567", "profile": {"name": "Ana"}}],
                                "messages": list(messages),
                                "statuses": statuses or [],
                            },
                        }
                    ],
                }
            ],
        }
    )


def _text(body="Hola", msg_id="wamid.1", sender="573001234567") -> dict:
    return {"from": sender, "id": msg_id, "timestamp": "1760882400", "type": "text", "text": {"body": body}}


@pytest.fixture
def client():
    return WhatsAppClient(access_token="token", phone_number_id="wa-phone-1", base_url="https://graph.test/v21.0")


# ── Tests: webhook parsing ───────────────────────────────────────────


class TestIterInboundMessages:
    def test_text_message(self):
        (inbound,) = iter_inbound_messages(_payload(_text()))
        assert inbound.kind == "text"
        assert inbound.text == "Hola"
        assert inbound.phone == "573001234567"
        assert inbound.profile_name == "Ana"
        assert inbound.channel_id == "wa-phone-1"
        assert inbound.message_id == "wamid.1"

    def test_interactive_reply_is_text(self):
        message = {
            "from": "573001234567", "id": "wamid.2", "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "yes", "title": "Sí, confirmo"}},
        }
        (inbound,) = iter_inbound_messages(_payload(message))
        assert inbound.kind == "text"
        assert inbound.text == "Sí, confirmo"

    @pytest.mark.parametrize(
        ("message", "kind"),
        [
            ({"type": "audio", "audio": {"id": "media-1", "mime_type": "audio/ogg"}}, "audio"),
            ({"type": "image", "image": {"id": "media-2", "caption": "mi diente"}}, "image"),
            ({"type": "sticker", "sticker": {"id": "media-3"}}, "other"),
        ],
    )
    def test_media_kinds(self, message, kind):
        (inbound,) = iter_inbound_messages(_payload({"from": "573001234567", "id": "wamid.3", **message}))
        assert inbound.kind == kind
        assert inbound.text is None

    def test_status_updates_yield_nothing(self):
        payload = _payload(statuses=[{"id": "wamid.9", "status": "delivered", "recipient_id": "573001234567"}])
        assert iter_inbound_messages(payload) == []

    def test_other_fields_ignored(self):
        assert iter_inbound_messages(_payload(_text(), field="account_update")) == []

    def test_order_preserved(self):
        inbound = iter_inbound_messages(_payload(_text("uno", "a"), _text("dos", "b")))
        assert [m.text for m in inbound] == ["uno", "dos"]

    def test_unknown_fields_are_tolerated(self):
        message = {**_text(), "context": {"from": "x", "id": "y"}, "referral": {}}
        assert len(iter_inbound_messages(_payload(message))) == 1


# ── Tests: send_text ─────────────────────────────────────────────────


class TestSendText:
    def test_posts_text_payload(self, client):
        response = _mock_response({"messages": [{"id": "wamid.out"}]})
        with patch.object(client._client, "post", return_value=response) as mock_post:
            message_id = client.send_text("+57 300 123 4567", "¡Hola!")

        assert message_id == "wamid.out"
        path = mock_post.call_args[0][0]
        payload = mock_post.call_args[1]["json"]
        assert path == "/wa-phone-1/messages"
        assert payload["to"] == "573001234567"
        assert payload["type"] == "text"
        assert payload["text"] == {"body": "¡Hola!"}

    def test_long_body_truncated(self, client):
        with patch.object(client._client, "post", return_value=_mock_response({"messages": [{"id": "x"}]})) as mock_post:
            client.send_text("573001234567", "a" * (MAX_TEXT_LENGTH + 50))
        assert len(mock_post.call_args[1]["json"]["text"]["body"]) == MAX_TEXT_LENGTH

    def test_client_error_not_retried(self, client):
        with patch.object(client._client, "post", return_value=_mock_response({"error": {}}, 400)) as mock_post:
            with pytest.raises(WhatsAppAPIError) as exc_info:
                client.send_text("573001234567", "Hola")
        assert exc_info.value.status_code == 400
        assert mock_post.call_count == 1

    def test_retries_on_server_error_and_timeout(self, client):
        responses = [_mock_response({}, 502), httpx.ConnectTimeout("slow"), _mock_response({"messages": [{"id": "x"}]})]
        with (
            patch.object(client._client, "post", side_effect=responses) as mock_post,
            patch("dental_agent.services.whatsapp_client.time.sleep"),
        ):
            assert client.send_text("573001234567", "Hola") == "x"
        assert mock_post.call_count == 3

    def test_gives_up_after_max_retries(self, client):
        with (
            patch.object(client._client, "post", return_value=_mock_response({}, 500)) as mock_post,
            patch("dental_agent.services.whatsapp_client.time.sleep"),
        ):
            with pytest.raises(WhatsAppAPIError):
                client.send_text("573001234567", "Hola")
        assert mock_post.call_count == MAX_RETRIES

    def test_unconfigured_client_raises(self):
        with (
            patch("dental_agent.services.whatsapp_client.WHATSAPP_ACCESS_TOKEN", None),
            patch("dental_agent.services.whatsapp_client.WHATSAPP_PHONE_NUMBER_ID", None),
        ):
            unconfigured = WhatsAppClient()
        assert not unconfigured.configured
        with pytest.raises(WhatsAppAPIError, match="not configured"):
            unconfigured.send_text("573001234567", "Hola")


# ── Tests: mark_as_read ──────────────────────────────────────────────


class TestMarkAsRead:
    def test_sends_read_status(self, client):
        with patch.object(client._client, "post", return_value=_mock_response({"success": True})) as mock_post:
            client.mark_as_read("wamid.1")
        payload = mock_post.call_args[1]["json"]
        assert payload == {"messaging_product": "whatsapp", "status": "read", "message_id": "wamid.1"}

    def test_failure_is_swallowed(self, client):
        with patch.object(client._client, "post", return_value=_mock_response({}, 401)):
            client.mark_as_read("wamid.1")

    def test_unconfigured_is_a_no_op(self):
        with (
            patch("dental_agent.services.whatsapp_client.WHATSAPP_ACCESS_TOKEN", None),
            patch("dental_agent.services.whatsapp_client.WHATSAPP_PHONE_NUMBER_ID", None),
        ):
            unconfigured = WhatsAppClient()
        with patch.object(unconfigured._client, "post") as mock_post:
            unconfigured.mark_as_read("wamid.1")
        mock_post.assert_not_called()
