"""HTTP client for the DeepSeek chat-completion API (OpenAI-compatible).

This is a thin request/response gateway with retry logic and timeout
handling.  It owns no business logic: the agent loop decides what to send and
how to interpret tool calls.

DeepSeek API docs: https://api-docs.deepseek.com/
All requests require an API key passed as a Bearer token.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from dental_agent.config import DEEPSEEK_API_KEY, DEEPSEEK_BASE_URL, MODEL_NAME
from dental_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 60.0

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048


class LLMAPIError(Exception):
    """Raised when a chat-completion call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DeepSeekClient:
    """Chat-completion gateway with tool-calling support.

    ``complete`` returns the decoded response body unchanged, e.g.::

        {"choices": [{"message": {"content": "...", "tool_calls": [...]}}]}

    A body without ``choices[0].message`` is treated as a failed call.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self._api_key = api_key or DEEPSEEK_API_KEY
        self._base_url = base_url or DEEPSEEK_BASE_URL
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST with exponential-backoff retries on transport errors and 5xx."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.post(path, json=payload)
                if response.status_code >= 500:
                    raise LLMAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise LLMAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                try:
                    return response.json()
                except ValueError as exc:
                    raise LLMAPIError(
                        f"Invalid JSON in response: {response.text[:200]}",
                        status_code=response.status_code,
                    ) from exc

            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "DeepSeek API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except LLMAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "DeepSeek API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise LLMAPIError(
            f"DeepSeek API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    # ── Public API ───────────────────────────────────────────────────

    def complete(
        self,
        model: str | None,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] = "auto",
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        response_format: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Run one chat completion.

        Args:
            model: Model name (defaults to ``MODEL_NAME``).
            messages: OpenAI-format messages, system prompt first.
            tools: OpenAI-format tool definitions, or ``None`` for plain chat.
            tool_choice: ``"auto"``, ``"none"`` or a forced function choice.
            response_format: e.g. ``{"type": "json_object"}`` for JSON mode.
        """
        payload: dict[str, Any] = {
            "model": model or MODEL_NAME,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice
        if response_format:
            payload["response_format"] = response_format

        t0 = time.perf_counter()
        try:
            data = self._post("/chat/completions", payload)
            _first_message(data)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "deepseek", "chat_completion",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("deepseek", "chat_completion", latency_ms=elapsed)
        usage = data.get("usage") or {}
        logger.debug(
            "DeepSeek %s responded in %.0fms (tokens=%s)",
            payload["model"], elapsed, usage.get("total_tokens", "?"),
        )
        return data

    def close(self) -> None:
        self._client.close()


def _first_message(data: Any) -> dict[str, Any]:
    """Return ``choices[0].message`` or raise ``LLMAPIError`` for a malformed body."""
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise LLMAPIError(f"Malformed chat completion response: {data!r}"[:500]) from exc
    if not isinstance(message, dict):
        raise LLMAPIError("Malformed chat completion response: message is not an object")
    return message


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: DeepSeekClient | None = None
_client_lock = threading.Lock()


def get_llm_client() -> DeepSeekClient:
    """Return a module-level DeepSeekClient singleton (double-checked locking)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = DeepSeekClient()
    return _client
