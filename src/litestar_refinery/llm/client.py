"""The multi-provider dispatcher.

Example:
    >>> dispatcher = Dispatcher([groq, gemini])
    >>> await dispatcher.complete(CompletionRequest.from_prompt("hi", model="gemini/gemini-2.0-flash"))
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from litestar_refinery.core.grants import split_model
from litestar_refinery.db.metrics import LLMCallRecord
from litestar_refinery.exceptions import ProviderError, ProviderNotFoundError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from litestar_refinery.db.metrics import MetricsRecorder
    from litestar_refinery.llm.base import Provider
    from litestar_refinery.llm.types import CompletionRequest, CompletionResponse

__all__ = ["Dispatcher"]

logger = logging.getLogger(__name__)


class Dispatcher:
    """Route completion requests to providers, falling back through them in registration order.

    A model of the form ``<provider>/<name>`` whose provider is registered
    goes straight to that provider with the bare name. Any other request
    tries every provider in order and returns the first success; if all of
    them fail, the last error is raised.

    Args:
        providers: Providers in fallback order.
        metrics: Optional recorder receiving one entry per provider attempt.
    """

    def __init__(self, providers: Iterable[Provider] = (), metrics: MetricsRecorder | None = None) -> None:
        self._providers: dict[str, Provider] = {}
        self._fallback: list[str] = []
        self.metrics = metrics
        for provider in providers:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        """Add ``provider`` at the end of the fallback chain, replacing one of the same name."""
        if provider.name not in self._providers:
            self._fallback.append(provider.name)
        self._providers[provider.name] = provider

    def providers(self) -> list[str]:
        """Names of the registered providers in fallback order."""
        return list(self._fallback)

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def has_provider(self, name: str) -> bool:
        return name in self._providers

    @staticmethod
    def split_model(model: str) -> tuple[str, str]:
        """Split ``<provider>/<name>`` on the first slash."""
        return split_model(model)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Answer ``request`` through the routing rules described on the class.

        Raises:
            ProviderError: The error of the last provider tried.
            ProviderNotFoundError: If no provider is registered.
        """
        provider_name, model = split_model(request.model)
        if provider_name:
            request = request.with_model(model)
            provider = self._providers.get(provider_name)
            if provider is not None:
                return await self._call(provider, request)

        last_error: ProviderError = ProviderNotFoundError(provider_name or "fallback")
        for name in self._fallback:
            try:
                return await self._call(self._providers[name], request)
            except ProviderError as exc:
                logger.warning("provider %s failed, trying next: %s", name, exc)
                last_error = exc
        raise last_error

    async def complete_with(self, provider_name: str, request: CompletionRequest) -> CompletionResponse:
        """Answer ``request`` with one named provider, without fallback.

        Raises:
            ProviderNotFoundError: If ``provider_name`` is not registered.
            ProviderError: If the provider fails.
        """
        provider = self._providers.get(provider_name)
        if provider is None:
            raise ProviderNotFoundError(provider_name)
        return await self._call(provider, request)

    async def _call(self, provider: Provider, request: CompletionRequest) -> CompletionResponse:
        start = time.perf_counter()
        try:
            response = await provider.complete(request)
        except ProviderError as exc:
            self._record(
                LLMCallRecord(
                    provider=provider.name,
                    model=request.model,
                    latency_ms=int((time.perf_counter() - start) * 1000),
                    success=False,
                    error=str(exc),
                )
            )
            raise
        logger.debug(
            "%s/%s answered in %d ms (%d in, %d out)",
            response.provider,
            response.model,
            response.latency_ms,
            response.tokens_in,
            response.tokens_out,
        )
        self._record(
            LLMCallRecord(
                provider=response.provider,
                model=response.model,
                tokens_in=response.tokens_in,
                tokens_out=response.tokens_out,
                latency_ms=response.latency_ms,
            )
        )
        return response

    def _record(self, record: LLMCallRecord) -> None:
        if self.metrics is not None:
            self.metrics.record(record)
