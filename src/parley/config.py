from __future__ import annotations

"""Runtime configuration read from the environment.

Env vars:
- PARLEY_LLM_API_KEY (required for chat; the service answers 503 without it)
- PARLEY_LLM_BASE_URL (default https://cloud-api.near.ai/v1)
- PARLEY_LLM_MODEL (default deepseek-ai/DeepSeek-V3.1)
- PARLEY_PROVIDER_CLIENT (http | langchain, default http)
- PARLEY_LLM_CONNECT_TIMEOUT / PARLEY_LLM_READ_TIMEOUT (seconds)
- PARLEY_SYSTEM_PROMPT
- PARLEY_HISTORY_LIMIT (default 20)
- PARLEY_RATE_LIMIT_<CATEGORY>_MAX / PARLEY_RATE_LIMIT_<CATEGORY>_WINDOW_MS
- PARLEY_RATE_LIMIT_SWEEP_SECONDS (default 60)
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional


DEFAULT_BASE_URL = "https://cloud-api.near.ai/v1"
DEFAULT_MODEL = "deepseek-ai/DeepSeek-V3.1"
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
DEFAULT_HISTORY_LIMIT = 20
TITLE_MAX_CHARS = 100
MAX_MESSAGE_CHARS = 10000
# matches the width of the conversations.id column
CONVERSATION_ID_MAX_CHARS = 64


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int


# Per-category limits; "global" is the shared ceiling checked after the caller's own quota.
RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "chat": RateLimitConfig(window_ms=60_000, max_requests=20),
    "kv": RateLimitConfig(window_ms=60_000, max_requests=100),
    "auth": RateLimitConfig(window_ms=60_000, max_requests=100),
    "global": RateLimitConfig(window_ms=60_000, max_requests=1000),
}


def _env_int(name: str, default: int) -> int:
    if not name:
        return default
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_flag(name: str) -> bool:
    flag = os.getenv(name)
    return bool(flag and flag.lower() in {"1", "true", "yes", "on"})


def rate_limits_from_env(defaults: Optional[Dict[str, RateLimitConfig]] = None) -> Dict[str, RateLimitConfig]:
    limits: Dict[str, RateLimitConfig] = {}
    for category, cfg in (defaults or RATE_LIMITS).items():
        prefix = f"PARLEY_RATE_LIMIT_{category.upper()}"
        limits[category] = RateLimitConfig(
            window_ms=_env_int(f"{prefix}_WINDOW_MS", cfg.window_ms),
            max_requests=_env_int(f"{prefix}_MAX", cfg.max_requests),
        )
    return limits


@dataclass
class Settings:
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    provider_client: str = "http"
    connect_timeout: int = 3
    read_timeout: int = 60
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    history_limit: int = DEFAULT_HISTORY_LIMIT
    store_impl: str = "memory"
    database_url: str = "sqlite:///parley.sqlite3"
    rate_limits: Dict[str, RateLimitConfig] = field(default_factory=lambda: dict(RATE_LIMITS))
    rate_limit_disabled: bool = False
    rate_limit_sweep_seconds: int = 60

    @property
    def provider_configured(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            api_key=os.getenv("PARLEY_LLM_API_KEY") or None,
            base_url=(os.getenv("PARLEY_LLM_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            model=os.getenv("PARLEY_LLM_MODEL") or DEFAULT_MODEL,
            provider_client=(os.getenv("PARLEY_PROVIDER_CLIENT") or "http").lower(),
            connect_timeout=_env_int("PARLEY_LLM_CONNECT_TIMEOUT", 3),
            read_timeout=_env_int("PARLEY_LLM_READ_TIMEOUT", 60),
            system_prompt=os.getenv("PARLEY_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
            history_limit=_env_int("PARLEY_HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT),
            store_impl=(os.getenv("PARLEY_STORE_IMPL") or "memory").lower(),
            database_url=os.getenv("PARLEY_DATABASE_URL") or "sqlite:///parley.sqlite3",
            rate_limits=rate_limits_from_env(),
            rate_limit_disabled=_env_flag("PARLEY_RATE_LIMIT_DISABLED"),
            rate_limit_sweep_seconds=_env_int("PARLEY_RATE_LIMIT_SWEEP_SECONDS", 60),
        )
