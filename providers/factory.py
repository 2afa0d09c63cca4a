# providers/factory.py
"""Build the provider chain for the configured AI_PROVIDER mode."""

import logging
from typing import Optional

from core.config import MODE_FALLBACK, MODE_PRIMARY_ONLY, MODE_SECONDARY_ONLY, Settings
from core.exceptions import ConfigError
from providers.base import LLMProvider
from providers.fallback import FallbackOrchestrator
from providers.gemini import GeminiProvider
from providers.glm import GLMProvider

logger = logging.getLogger(__name__)


def _init_gemini(settings: Settings) -> GeminiProvider:
    return GeminiProvider(
        settings.gemini_api_key,
        chat_model=settings.gemini_chat_model,
        search_model=settings.gemini_search_model,
        chat_temperature=settings.chat_temperature,
        search_temperature=settings.search_temperature,
    )


def _init_glm(settings: Settings) -> GLMProvider:
    return GLMProvider(
        settings.glm_api_key,
        base_url=settings.glm_base_url,
        chat_model=settings.glm_chat_model,
        search_model=settings.glm_search_model,
        chat_temperature=settings.chat_temperature,
        search_temperature=settings.search_temperature,
    )


def build_orchestrator(settings: Settings) -> FallbackOrchestrator:
    """
    Construct the adapters for the selected mode. Raises ConfigError when the
    mode is unknown or its credentials are missing, so a bad deployment fails
    at startup instead of on the first request.
    """
    settings.validate()

    secondary: Optional[LLMProvider] = None
    if settings.provider_mode == MODE_PRIMARY_ONLY:
        primary: LLMProvider = _init_gemini(settings)
    elif settings.provider_mode == MODE_SECONDARY_ONLY:
        primary = _init_glm(settings)
    elif settings.provider_mode == MODE_FALLBACK:
        primary = _init_gemini(settings)
        secondary = _init_glm(settings)
    else:
        raise ConfigError(f"Unknown AI_PROVIDER mode: {settings.provider_mode!r}")

    orchestrator = FallbackOrchestrator(
        primary,
        secondary,
        channel_size=settings.stream_channel_size,
        timeout=settings.request_timeout_seconds,
    )
    logger.info("Initialised LLM providers", extra={
        "mode": settings.provider_mode,
        "providers": orchestrator.provider_names,
    })
    return orchestrator
