"""Single source of truth for all configuration and secrets.

All modules import from here, never from os.environ directly.

Set MAGPIE_USE_SOPS=true to read secrets/internal.env.enc through SOPS.
Otherwise a plain secrets/internal.env is read if present (chmod 600).
"""

import os
from pathlib import Path

from magpie.secrets import load_scope

PROJECT_ROOT = Path(__file__).resolve().parent.parent

USE_SOPS = os.environ.get("MAGPIE_USE_SOPS", "false").lower() == "true"


def _get(values: dict[str, str | None], key: str, default: str) -> str:
    value = values.get(key)
    return value if value is not None else default


_internal = load_scope(PROJECT_ROOT / "secrets", "internal", use_sops=USE_SOPS)

# --- LLM ---
OLLAMA_BASE_URL: str = _get(_internal, "OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL: str = _get(_internal, "OLLAMA_MODEL", "")
ANALYZER_TIMEOUT_SECONDS: float = float(_get(_internal, "ANALYZER_TIMEOUT_SECONDS", "120"))

# --- Storage ---
PIPELINE_DB_PATH: str = _get(_internal, "PIPELINE_DB_PATH", str(PROJECT_ROOT / "data" / "pipeline.db"))
AUDIT_LOG_PATH: str = _get(
    _internal, "AUDIT_LOG_PATH", str(PROJECT_ROOT / "data" / "pipeline_audit.jsonl")
)

# --- Gmail OAuth ---
GMAIL_CLIENT_ID: str = _get(_internal, "GMAIL_CLIENT_ID", "")
GMAIL_CLIENT_SECRET: str = _get(_internal, "GMAIL_CLIENT_SECRET", "")
GMAIL_REFRESH_TOKEN: str = _get(_internal, "GMAIL_REFRESH_TOKEN", "")
GMAIL_ACCESS_TOKEN: str = _get(_internal, "GMAIL_ACCESS_TOKEN", "")

# --- Pipeline ---
OWNER_EMAIL: str = _get(_internal, "OWNER_EMAIL", "")
DEFAULT_USER_ID: str = _get(_internal, "DEFAULT_USER_ID", "default")
MAX_RETRIES: int = int(_get(_internal, "MAX_RETRIES", "3"))
DRAIN_BATCH_SIZE: int = int(_get(_internal, "DRAIN_BATCH_SIZE", "10"))
