"""Configuration constants, thresholds, and .env loading.

WHY: Centralizes every tunable of the audit engine — chunk size, scoring
thresholds, concurrency, retry and timeout budgets, model settings — so
they are easy to find and override per deployment without code changes.

HOW: python-dotenv loads the .env file on import. Constants are defined
as module-level values read from the environment with documented
defaults. load_api_key() provides a clear error when the key is missing.

RULES:
- TIMELINE_CHUNK_SIZE changes chunk_index values — changing it invalidates
  citations stored by earlier runs
- COMPLIANCE_THRESHOLDS are fixed business rules, not environment values
- API key is loaded from .env via python-dotenv, never hardcoded
- All other defaults can be overridden via environment variables
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

# Load .env from the project root (where the script is run from)
load_dotenv()


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    """Read a positive integer from the environment, falling back on bad input."""
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, value)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------

TIMELINE_CHUNK_SIZE = _env_int("TIMELINE_CHUNK_SIZE", 10)
"""Messages (speaker turns) per conversation chunk."""

NOT_AVAILABLE = "N/A"
"""Sentinel rendered for recording metadata that could not be resolved."""

# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

COMPLIANCE_THRESHOLDS: dict[str, float] = {
    "EXCELLENT": 90.0,
    "BON": 75.0,
    "ACCEPTABLE": 60.0,
}
"""Minimum overall score (percent) for each compliance level, highest first."""

# ---------------------------------------------------------------------------
# Analysis orchestration
# ---------------------------------------------------------------------------

AUDIT_STEP_CONCURRENCY = _env_int("AUDIT_STEP_CONCURRENCY", 3)
ANALYSIS_MAX_RETRIES = _env_int("ANALYSIS_MAX_RETRIES", 3)
ANALYSIS_RETRY_BACKOFF_S = _env_float("ANALYSIS_RETRY_BACKOFF_S", 1.0)
ANALYSIS_CALL_TIMEOUT_S = _env_float("ANALYSIS_CALL_TIMEOUT_S", 300.0)
AUDIT_RUN_TIMEOUT_S = _env_float("AUDIT_RUN_TIMEOUT_S", 1800.0)
AUDIT_EVIDENCE_GATING = os.getenv("AUDIT_EVIDENCE_GATING", "1").strip() != "0"

# ---------------------------------------------------------------------------
# Model API
# ---------------------------------------------------------------------------

OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_MODEL_AUDIT = os.getenv("OPENAI_MODEL_AUDIT", "gpt-5.2")


def load_api_key() -> str:
    """Load the model provider API key from the environment.

    WHY: The key is required for every analysis call. Loading it from the
    environment (via .env) keeps it out of source code and audit configs.

    HOW: Reads OPENAI_API_KEY from os.environ (populated by python-dotenv).

    RULES:
    - Raises ValueError if the key is missing or empty
    - Never returns a default/placeholder value
    """
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise ValueError(
            "Model API key not configured. "
            "Add OPENAI_API_KEY to the .env file in the project folder."
        )
    return key
