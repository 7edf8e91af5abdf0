"""Centralized configuration for the Luxe Dental agent core.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/luxe-dental/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 (lazy: keeps boto3 off the test import path)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/luxe-dental/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /luxe-dental/{name} (AWS)."
    )


def _optional_secret(name: str) -> str | None:
    """Like ``_require_env`` but returns ``None`` when the value is absent."""
    try:
        return _require_env(name)
    except OSError:
        return None


def _csv_env(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# ── LLM (DeepSeek, OpenAI-compatible) ────────────────────────────────
DEEPSEEK_API_KEY: str = _require_env("DEEPSEEK_API_KEY")
DEEPSEEK_BASE_URL: str = os.getenv("DEEPSEEK_BASE_URL", "https://api.deepseek.com")
MODEL_NAME: str = os.getenv("MODEL_NAME", "deepseek-chat")
SUMMARY_MODEL_NAME: str = os.getenv("SUMMARY_MODEL_NAME", MODEL_NAME)

# ── Agent loop policy ────────────────────────────────────────────────
ASSISTANT_NAME: str = os.getenv("ASSISTANT_NAME", "Luxe")
MAX_TOOL_ITERATIONS: int = int(os.getenv("MAX_TOOL_ITERATIONS", "5"))
HISTORY_WINDOW: int = int(os.getenv("HISTORY_WINDOW", "10"))
EXTRA_HANDOFF_KEYWORDS: list[str] = _csv_env("EXTRA_HANDOFF_KEYWORDS")

# ── Context compaction ───────────────────────────────────────────────
SUMMARY_THRESHOLD: int = int(os.getenv("SUMMARY_THRESHOLD", "20"))
SUMMARY_KEEP_RECENT: int = int(os.getenv("SUMMARY_KEEP_RECENT", "5"))

# ── Persistence ──────────────────────────────────────────────────────
STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory").lower()
SUPABASE_URL: str | None = os.getenv("SUPABASE_URL") or None
SUPABASE_SERVICE_ROLE_KEY: str | None = _optional_secret("SUPABASE_SERVICE_ROLE_KEY")
DEFAULT_TENANT_ID: str = os.getenv("DEFAULT_TENANT_ID", "luxury-dental")

# ── WhatsApp Cloud API ───────────────────────────────────────────────
WHATSAPP_API_URL: str = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v21.0")
WHATSAPP_ACCESS_TOKEN: str | None = _optional_secret("WHATSAPP_ACCESS_TOKEN")
WHATSAPP_PHONE_NUMBER_ID: str | None = os.getenv("WHATSAPP_PHONE_NUMBER_ID") or None
WHATSAPP_VERIFY_TOKEN: str | None = _optional_secret("WHATSAPP_VERIFY_TOKEN")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = _csv_env(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
)
