from __future__ import annotations

import os
from pathlib import Path

COMPLETION_URL: str
COMPLETION_API_KEY: str
MODEL: str
COMPLETION_TIMEOUT: float
MAX_TOKENS: int
TEMPERATURE: float
DATA_DIR: Path
STORAGE: str
PG_DSN: str | None
PG_SCHEMA: str | None
ADMIN_SECRET: str
POLL_INTERVAL: float
ADMIN_POLL_INTERVAL: float
LOG_LEVEL: str
SYSTEM_PROMPT: str

WELCOME_MESSAGE = "What would you like to build?"
APOLOGY_MESSAGE = (
    "I'm sorry, I'm having trouble responding right now. "
    "Please try again in a moment, or leave your details and our team will get back to you."
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def reload_from_environment() -> None:
    """Refresh configuration values from the current environment."""

    global COMPLETION_URL, COMPLETION_API_KEY, MODEL, COMPLETION_TIMEOUT, MAX_TOKENS, TEMPERATURE
    global DATA_DIR, STORAGE, PG_DSN, PG_SCHEMA, ADMIN_SECRET, POLL_INTERVAL, ADMIN_POLL_INTERVAL
    global LOG_LEVEL, SYSTEM_PROMPT

    COMPLETION_URL = os.getenv("KIWA_COMPLETION_URL", "https://api.mistral.ai/v1/chat/completions")
    COMPLETION_API_KEY = os.getenv("KIWA_COMPLETION_API_KEY", "").strip()
    MODEL = os.getenv("KIWA_MODEL_NAME", "mistral-tiny")
    COMPLETION_TIMEOUT = _env_float("KIWA_COMPLETION_TIMEOUT", 60.0)
    if COMPLETION_TIMEOUT <= 0:
        COMPLETION_TIMEOUT = 60.0
    MAX_TOKENS = _env_int("KIWA_MAX_TOKENS", 1500)
    TEMPERATURE = _env_float("KIWA_TEMPERATURE", 0.7)
    DATA_DIR = Path(os.getenv("KIWA_DATA_DIR", str(Path.home() / ".kiwa"))).expanduser().resolve()
    STORAGE = os.getenv("KIWA_STORAGE", "fs").strip().lower() or "fs"
    PG_DSN = os.getenv("KIWA_PG_DSN") or None
    PG_SCHEMA = os.getenv("KIWA_PG_SCHEMA") or None
    ADMIN_SECRET = os.getenv("KIWA_ADMIN_SECRET", "")
    POLL_INTERVAL = _env_float("KIWA_POLL_INTERVAL", 3.0)
    ADMIN_POLL_INTERVAL = _env_float("KIWA_ADMIN_POLL_INTERVAL", 5.0)
    LOG_LEVEL = os.getenv("KIWA_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    SYSTEM_PROMPT = os.getenv(
        "KIWA_SYSTEM_PROMPT",
        (
            "You are K-AI, a calm, business-minded consultant for KiWA Labs, a software studio. "
            "Guide the visitor from idea to a clear, lean first version: confirm the idea, the target users, "
            "the must-have features and a soft budget range. Give price ranges as estimates only and say that "
            "final pricing is confirmed by the team. When enough is known, offer to continue with the KiWA Labs team.\n"
            "Reply with a single JSON object and nothing else:\n"
            "{\"response\": \"markdown reply\", "
            "\"contextSummary\": \"summary of the conversation so far, max 200 chars\", "
            "\"readyForHandoff\": false}\n"
            "Set readyForHandoff to true only when the visitor should now talk to the team."
        ),
    )


reload_from_environment()


__all__ = [
    "ADMIN_POLL_INTERVAL",
    "ADMIN_SECRET",
    "APOLOGY_MESSAGE",
    "COMPLETION_API_KEY",
    "COMPLETION_TIMEOUT",
    "COMPLETION_URL",
    "DATA_DIR",
    "LOG_LEVEL",
    "MAX_TOKENS",
    "MODEL",
    "PG_DSN",
    "PG_SCHEMA",
    "POLL_INTERVAL",
    "STORAGE",
    "SYSTEM_PROMPT",
    "TEMPERATURE",
    "WELCOME_MESSAGE",
    "reload_from_environment",
]
