# core/config.py
"""
Environment-driven settings.

    AI_PROVIDER                 gemini | glm | fallback   (default: fallback)
    GEMINI_API_KEY              required for gemini / fallback
    GLM_API_KEY                 required for glm / fallback
    GEMINI_CHAT_MODEL           default gemini-2.5-flash
    GEMINI_SEARCH_MODEL         default gemini-2.5-flash
    GLM_CHAT_MODEL              default glm-4.5
    GLM_SEARCH_MODEL            default glm-4.5
    GLM_BASE_URL                OpenAI-compatible GLM endpoint
    RATE_LIMIT_WINDOW_SECONDS   default 60
    RATE_LIMIT_MAX_REQUESTS     default 10
    RATE_LIMIT_COMPACTION_KEYS  default 1000
    REQUEST_TIMEOUT_SECONDS     default 120 (0 disables)
    STREAM_CHANNEL_SIZE         default 32
    LOG_LEVEL                   default INFO

A `.env` file in the project root is loaded first; real environment
variables take precedence.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from core.exceptions import ConfigError

ROOT_DIR = Path(__file__).resolve().parent.parent

MODE_PRIMARY_ONLY = "gemini"
MODE_SECONDARY_ONLY = "glm"
MODE_FALLBACK = "fallback"
PROVIDER_MODES = (MODE_PRIMARY_ONLY, MODE_SECONDARY_ONLY, MODE_FALLBACK)

# Accepted spellings for the three modes
_MODE_ALIASES = {
    "gemini": MODE_PRIMARY_ONLY,
    "primary": MODE_PRIMARY_ONLY,
    "primary-only": MODE_PRIMARY_ONLY,
    "glm": MODE_SECONDARY_ONLY,
    "secondary": MODE_SECONDARY_ONLY,
    "secondary-only": MODE_SECONDARY_ONLY,
    "fallback": MODE_FALLBACK,
}


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    provider_mode: str = MODE_FALLBACK
    gemini_api_key: Optional[str] = None
    glm_api_key: Optional[str] = None
    gemini_chat_model: str = "gemini-2.5-flash"
    gemini_search_model: str = "gemini-2.5-flash"
    glm_chat_model: str = "glm-4.5"
    glm_search_model: str = "glm-4.5"
    glm_base_url: str = "https://api.z.ai/api/coding/paas/v4"
    chat_temperature: float = 0.7
    search_temperature: float = 0.3
    rate_limit_window_seconds: float = 60.0
    rate_limit_max_requests: int = 10
    rate_limit_compaction_keys: int = 1000
    request_timeout_seconds: Optional[float] = 120.0
    stream_channel_size: int = 32
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_dotenv(ROOT_DIR / ".env")
            env = os.environ

        raw_mode = (env.get("AI_PROVIDER") or MODE_FALLBACK).strip().lower()
        mode = _MODE_ALIASES.get(raw_mode)
        if mode is None:
            raise ConfigError(
                f"AI_PROVIDER must be one of {', '.join(PROVIDER_MODES)}, got {raw_mode!r}"
            )

        timeout = _float(env, "REQUEST_TIMEOUT_SECONDS", 120.0)

        defaults = cls()
        return cls(
            provider_mode=mode,
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            glm_api_key=env.get("GLM_API_KEY") or None,
            gemini_chat_model=env.get("GEMINI_CHAT_MODEL") or defaults.gemini_chat_model,
            gemini_search_model=env.get("GEMINI_SEARCH_MODEL") or defaults.gemini_search_model,
            glm_chat_model=env.get("GLM_CHAT_MODEL") or defaults.glm_chat_model,
            glm_search_model=env.get("GLM_SEARCH_MODEL") or defaults.glm_search_model,
            glm_base_url=env.get("GLM_BASE_URL") or defaults.glm_base_url,
            chat_temperature=_float(env, "CHAT_TEMPERATURE", defaults.chat_temperature),
            search_temperature=_float(env, "SEARCH_TEMPERATURE", defaults.search_temperature),
            rate_limit_window_seconds=_float(env, "RATE_LIMIT_WINDOW_SECONDS", 60.0),
            rate_limit_max_requests=_int(env, "RATE_LIMIT_MAX_REQUESTS", 10),
            rate_limit_compaction_keys=_int(env, "RATE_LIMIT_COMPACTION_KEYS", 1000),
            request_timeout_seconds=timeout if timeout > 0 else None,
            stream_channel_size=_int(env, "STREAM_CHANNEL_SIZE", 32),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    def validate(self) -> "Settings":
        """Fail fast when the selected mode is missing credentials."""
        if self.provider_mode in (MODE_PRIMARY_ONLY, MODE_FALLBACK) and not self.gemini_api_key:
            raise ConfigError("GEMINI_API_KEY environment variable is not set")
        if self.provider_mode in (MODE_SECONDARY_ONLY, MODE_FALLBACK) and not self.glm_api_key:
            raise ConfigError("GLM_API_KEY environment variable is not set")
        if self.rate_limit_max_requests < 1:
            raise ConfigError("RATE_LIMIT_MAX_REQUESTS must be >= 1")
        if self.rate_limit_window_seconds <= 0:
            raise ConfigError("RATE_LIMIT_WINDOW_SECONDS must be > 0")
        return self
