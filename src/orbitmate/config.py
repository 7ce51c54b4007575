"""Runtime settings for the Orbitmate backend.

Values come from the process environment (optionally seeded from a ``.env``
file). Provider credentials are not copied here; the provider registry reads
them from the same environment mapping so they never end up in log output.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from dotenv import load_dotenv

DEFAULT_SYSTEM_PROMPT = (
    "You are Orbitmate, a helpful assistant. Answer clearly and concisely, "
    "ask a short follow-up question when the request is ambiguous, and use "
    "Markdown formatting when it improves readability."
)


def _as_int(raw: Optional[str], default: int) -> int:
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def _as_float(raw: Optional[str], default: float) -> float:
    try:
        return float(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def _as_list(raw: Optional[str], default: List[str]) -> List[str]:
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    default_provider: str = "ollama"
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    provider_timeout_s: float = 60.0
    max_message_length: int = 4000
    context_message_limit: int = 20
    max_tool_rounds: int = 3
    store_impl: str = "memory"
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "orbitmate"
    redis_url: Optional[str] = None
    ai_log_dir: str = "logs"
    ai_log_file: str = "ai.log"
    log_retention_days: int = 7
    log_rotation_interval_s: float = 3600.0
    broadcast_queue_size: int = 100
    cors_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``env`` (defaults to ``os.environ``)."""

    if env is None:
        load_dotenv()
        env = os.environ
    defaults = Settings()
    return Settings(
        default_provider=(env.get("ORBITMATE_AI_PROVIDER") or defaults.default_provider).strip().lower(),
        default_system_prompt=env.get("ORBITMATE_SYSTEM_PROMPT") or defaults.default_system_prompt,
        provider_timeout_s=_as_float(env.get("ORBITMATE_PROVIDER_TIMEOUT"), defaults.provider_timeout_s),
        max_message_length=_as_int(env.get("ORBITMATE_MAX_MESSAGE_LENGTH"), defaults.max_message_length),
        context_message_limit=_as_int(env.get("ORBITMATE_CONTEXT_MESSAGE_LIMIT"), defaults.context_message_limit),
        max_tool_rounds=_as_int(env.get("ORBITMATE_MAX_TOOL_ROUNDS"), defaults.max_tool_rounds),
        store_impl=(env.get("ORBITMATE_STORE_IMPL") or defaults.store_impl).strip().lower(),
        mongo_url=env.get("MONGO_URL") or defaults.mongo_url,
        mongo_db=env.get("MONGO_DB") or defaults.mongo_db,
        redis_url=env.get("REDIS_URL") or None,
        ai_log_dir=env.get("ORBITMATE_AI_LOG_DIR") or defaults.ai_log_dir,
        ai_log_file=env.get("ORBITMATE_AI_LOG_FILE") or defaults.ai_log_file,
        log_retention_days=_as_int(env.get("ORBITMATE_LOG_RETENTION_DAYS"), defaults.log_retention_days),
        log_rotation_interval_s=_as_float(env.get("ORBITMATE_LOG_ROTATION_INTERVAL"), defaults.log_rotation_interval_s),
        broadcast_queue_size=_as_int(env.get("ORBITMATE_BROADCAST_QUEUE_SIZE"), defaults.broadcast_queue_size),
        cors_origins=_as_list(env.get("ORBITMATE_CORS_ORIGINS"), defaults.cors_origins),
    )
