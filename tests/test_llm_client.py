"""Tests for the DeepSeekClient gateway."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from dental_agent.services.llm_client import (
    INITIAL_BACKOFF_SECONDS,
    MAX_RETRIES,
    DeepSeekClient,
    LLMAPIError,
)

MESSAGES = [{"role": "system", "content": "Eres Luxe."}, {"role": "user", "content": "Hola"}]


# ── Helpers ──────────────────────────────────────────────────────────


def _mock_response(data, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    return mock


def _ok(content="¡Hola!"):
    return _mock_response({"choices": [{"message": {"role": "assistant", "content": content}}]})


# ── Tests: request payload ───────────────────────────────────────────


class TestPayload:
    def test_plain_chat_omits_tools(self):
        client = DeepSeekClient(api_key="k")
        with patch.object(client._client, "post", return_value=_ok()) as mock_post:
            data = client.complete("deepseek-chat", MESSAGES)

        assert data["choices"][0]["message"]["content"] == "¡Hola!"
        path = mock_post.call_args[0][0]
        payload = mock_post.call_args[1]["json"]
        assert path == "/chat/completions"
        assert payload["model"] == "deepseek-chat"
        assert payload["messages"] == MESSAGES
        assert "tools" not in payload
        assert "response_format" not in payload

    def test_tools_and_choice_forwarded(self):
        client = DeepSeekClient(api_key="k")
        tools = [{"type": "function", "function": {"name": "update_name", "parameters": {}}}]
        with patch.object(client._client, "post", return_value=_ok()) as mock_post:
            client.complete("deepseek-chat", MESSAGES, tools=tools)

        payload = mock_post.call_args[1]["json"]
        assert payload["tools"] == tools
        assert payload["tool_choice"] == "auto"

    def test_json_mode_and_sampling(self):
        client = DeepSeekClient(api_key="k")
        with patch.object(client._client, "post", return_value=_ok("{}")) as mock_post:
            client.complete(
                "deepseek-chat", MESSAGES,
                temperature=0.3, max_tokens=500, response_format={"type": "json_object"},
            )

        payload = mock_post.call_args[1]["json"]
        assert payload["response_format"] == {"type": "json_object"}
        assert payload["temperature"] == 0.3
        assert payload["max_tokens"] == 500

    def test_default_model_when_none(self):
        client = DeepSeekClient(api_key="k")
        with patch.object(client._client, "post", return_value=_ok()) as mock_post:
            client.complete(None, MESSAGES)
        assert mock_post.call_args[1]["json"]["model"]

    def test_bearer_header(self):
        client = DeepSeekClient(api_key="secret-key")
        assert client._client.headers["Authorization"] == "Bearer secret-key"


# ── Tests: retry logic ───────────────────────────────────────────────


class TestRetryLogic:
    def test_retries_on_server_error(self):
        client = DeepSeekClient(api_key="k")
        responses = [_mock_response({}, 503), _ok()]
        with (
            patch.object(client._client, "post", side_effect=responses) as mock_post,
            patch("dental_agent.services.llm_client.time.sleep") as mock_sleep,
        ):
            client.complete("deepseek-chat", MESSAGES)

        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(INITIAL_BACKOFF_SECONDS)

    def test_retries_on_timeout(self):
        client = DeepSeekClient(api_key="k")
        with (
            patch.object(
                client._client, "post",
                side_effect=[httpx.ReadTimeout("slow"), _ok()],
            ) as mock_post,
            patch("dental_agent.services.llm_client.time.sleep"),
        ):
            client.complete("deepseek-chat", MESSAGES)
        assert mock_post.call_count == 2

    @pytest.mark.parametrize(
        "error",
        [httpx.ReadError("connection reset"), httpx.RemoteProtocolError("server disconnected")],
    )
    def test_retries_on_transport_error(self, error):
        client = DeepSeekClient(api_key="k")
        with (
            patch.object(client._client, "post", side_effect=[error, _ok()]) as mock_post,
            patch("dental_agent.services.llm_client.time.sleep"),
        ):
            client.complete("deepseek-chat", MESSAGES)
        assert mock_post.call_count == 2

    def test_gives_up_after_max_retries(self):
        client = DeepSeekClient(api_key="k")
        with (
            patch.object(client._client, "post", return_value=_mock_response({}, 500)) as mock_post,
            patch("dental_agent.services.llm_client.time.sleep") as mock_sleep,
        ):
            with pytest.raises(LLMAPIError, match="failed after"):
                client.complete("deepseek-chat", MESSAGES)

        assert mock_post.call_count == MAX_RETRIES
        # Exponential backoff between attempts, none after the last.
        assert [c.args[0] for c in mock_sleep.call_args_list] == [
            INITIAL_BACKOFF_SECONDS * (2 ** i) for i in range(MAX_RETRIES - 1)
        ]

    def test_client_error_not_retried(self):
        client = DeepSeekClient(api_key="k")
        with patch.object(client._client, "post", return_value=_mock_response({"error": "bad"}, 400)) as mock_post:
            with pytest.raises(LLMAPIError) as exc_info:
                client.complete("deepseek-chat", MESSAGES)

        assert exc_info.value.status_code == 400
        assert mock_post.call_count == 1


# ── Tests: response validation ───────────────────────────────────────


class TestResponseValidation:
    @pytest.mark.parametrize(
        "body",
        [{}, {"choices": []}, {"choices": [{}]}, {"choices": [{"message": "text"}]}, ["not", "an", "object"]],
    )
    def test_malformed_body_raises(self, body):
        client = DeepSeekClient(api_key="k")
        with patch.object(client._client, "post", return_value=_mock_response(body)):
            with pytest.raises(LLMAPIError, match="Malformed"):
                client.complete("deepseek-chat", MESSAGES)

    def test_non_json_body_raises_api_error(self):
        client = DeepSeekClient(api_key="k")
        response = _mock_response(None)
        response.json.side_effect = ValueError("Expecting value")
        response.text = "<html>Bad Gateway</html>"
        with patch.object(client._client, "post", return_value=response) as mock_post:
            with pytest.raises(LLMAPIError, match="Invalid JSON") as exc_info:
                client.complete("deepseek-chat", MESSAGES)
        assert exc_info.value.status_code == 200
        assert mock_post.call_count == 1

    def test_failure_is_recorded_in_metrics(self):
        client = DeepSeekClient(api_key="k")
        with (
            patch.object(client._client, "post", return_value=_mock_response({"error": "x"}, 401)),
            patch("dental_agent.services.llm_client.metrics") as mock_metrics,
        ):
            with pytest.raises(LLMAPIError):
                client.complete("deepseek-chat", MESSAGES)

        mock_metrics.record_failure.assert_called_once()
        assert mock_metrics.record_failure.call_args[0][:2] == ("deepseek", "chat_completion")
