"""Reasoning provider adapters."""

from __future__ import annotations

import httpx

from ergon.config import Settings
from ergon.providers.anthropic import AnthropicProvider
from ergon.providers.base import (
    ProviderRequest,
    ProviderResponse,
    ReasoningProvider,
    StopReason,
    StreamChunk,
)
from ergon.providers.openai import OpenAICompatibleProvider

__all__ = [
    "AnthropicProvider",
    "OpenAICompatibleProvider",
    "ProviderRequest",
    "ProviderResponse",
    "ReasoningProvider",
    "StopReason",
    "StreamChunk",
    "create_provider",
]


def create_provider(
    settings: Settings, http: httpx.AsyncClient | None = None
) -> AnthropicProvider | OpenAICompatibleProvider:
    """Build the adapter selected by ``settings.provider``."""
    if settings.provider == "openai":
        return OpenAICompatibleProvider(settings, http=http)
    return AnthropicProvider(settings, http=http)
