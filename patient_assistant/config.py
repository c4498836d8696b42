"""Centralized configuration for the Patient Assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/patient-assistant/<VARIABLE_NAME>``.
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
        import boto3  # noqa: PLC0415 - lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/patient-assistant/{name}", WithDecryption=True)
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
        f"Set it in .env (local) or SSM Parameter Store /patient-assistant/{name} (AWS)."
    )


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "10"))
LLM_MAX_TOKENS: int = int(os.getenv("LLM_MAX_TOKENS", "500"))
LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.1"))
# Bind the capability catalog as native Anthropic tools; the text grammar
# stays active as the fallback for plain completions.
USE_NATIVE_TOOLS: bool = _env_flag("USE_NATIVE_TOOLS")

# ── Auth ────────────────────────────────────────────────────────────
JWT_SECRET: str = _require_env("JWT_SECRET")
JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

# ── Vector store (ChromaDB) ─────────────────────────────────────────
CHROMA_HOST: str = os.getenv("CHROMA_HOST", "localhost")
CHROMA_PORT: int = int(os.getenv("CHROMA_PORT", "8001"))
CHROMA_COLLECTION: str = os.getenv("CHROMA_COLLECTION", "healthcare_conversations")
CHROMA_RECONNECT_SECONDS: float = float(os.getenv("CHROMA_RECONNECT_SECONDS", "30"))

# ── Records backend (appointments / therapists / patients) ──────────
BACKEND_BASE_URL: str = os.getenv("BACKEND_BASE_URL", "http://localhost:3001")
BACKEND_SERVICE_TOKEN: str | None = os.getenv("BACKEND_SERVICE_TOKEN") or None

# ── Conversation context ────────────────────────────────────────────
SEMANTIC_TOP_K: int = int(os.getenv("SEMANTIC_TOP_K", "5"))
WINDOW_TURNS: int = int(os.getenv("WINDOW_TURNS", "5"))
CONTEXT_MAX_CHARS: int = int(os.getenv("CONTEXT_MAX_CHARS", "6000"))
HISTORY_PAGE_SIZE: int = int(os.getenv("HISTORY_PAGE_SIZE", "20"))
# Page size for scanning a patient's stored entries
HISTORY_SCAN_LIMIT: int = int(os.getenv("HISTORY_SCAN_LIMIT", "1000"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
