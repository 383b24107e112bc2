"""Building providers and the dispatcher from configuration."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from litestar_refinery.core.types import ProviderKind
from litestar_refinery.exceptions import NoAPIKeyError
from litestar_refinery.llm.anthropic import AnthropicProvider
from litestar_refinery.llm.client import Dispatcher
from litestar_refinery.llm.gemini import GeminiProvider
from litestar_refinery.llm.openai import OpenAIProvider

if TYPE_CHECKING:
    import httpx

    from litestar_refinery.config import LLMSettings, ProviderSettings
    from litestar_refinery.db.metrics import MetricsRecorder
    from litestar_refinery.llm.base import Provider

__all__ = ["PROVIDER_CLASSES", "build_dispatcher", "build_provider", "build_providers"]

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[ProviderKind, type[Provider]] = {
    ProviderKind.OPENAI: OpenAIProvider,
    ProviderKind.ANTHROPIC: AnthropicProvider,
    ProviderKind.GEMINI: GeminiProvider,
}


def build_provider(settings: ProviderSettings, client: httpx.AsyncClient, timeout: float) -> Provider:
    """Instantiate the adapter for one backend.

    Raises:
        NoAPIKeyError: If the backend has no key.
    """
    if not settings.api_key:
        raise NoAPIKeyError(settings.name)
    provider_class = PROVIDER_CLASSES[ProviderKind(settings.kind)]
    return provider_class(
        settings.name,
        settings.api_key,
        client,
        base_url=settings.base_url,
        models=settings.models,
        default_model=settings.default_model,
        timeout=timeout,
    )


def build_providers(settings: LLMSettings, client: httpx.AsyncClient) -> list[Provider]:
    """Instantiate every active backend in fallback order, skipping keyless extras."""
    providers: list[Provider] = []
    for provider_settings in settings.provider_settings():
        try:
            providers.append(build_provider(provider_settings, client, settings.timeout))
        except NoAPIKeyError:
            logger.warning("skipping provider %s: no API key configured", provider_settings.name)
    logger.info("configured LLM providers: %s", ", ".join(p.name for p in providers) or "none")
    return providers


def build_dispatcher(
    settings: LLMSettings,
    client: httpx.AsyncClient,
    metrics: MetricsRecorder | None = None,
) -> Dispatcher:
    return Dispatcher(build_providers(settings, client), metrics=metrics)
