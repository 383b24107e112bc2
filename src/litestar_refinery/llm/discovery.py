"""Model discovery.

A sweep asks every configured backend which models it serves and upserts
them into the forensic store's catalogue under ``<provider>/<name>``. A
backend that cannot be listed has all of its catalogued models marked
unavailable; the sweep then moves on to the next backend.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from litestar_refinery.core.types import AuditEventType, ProviderKind
from litestar_refinery.exceptions import ProviderWireError
from litestar_refinery.llm.gemini import GeminiProvider

if TYPE_CHECKING:
    from litestar_refinery.config import LLMSettings, ProviderSettings
    from litestar_refinery.db.forensic import ForensicStore

__all__ = ["ANTHROPIC_MODELS", "DISCOVERY_TIMEOUT", "DiscoveredModel", "ModelDiscovery"]

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT = 15.0
"""Seconds allowed for one listing request."""


@dataclass(frozen=True)
class DiscoveredModel:
    """A model reported by a backend."""

    provider: str
    model_name: str
    display_name: str | None = None
    context_window: int | None = None

    @property
    def model_id(self) -> str:
        return f"{self.provider}/{self.model_name}"


ANTHROPIC_MODELS: tuple[tuple[str, str, int], ...] = (
    ("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5", 200000),
    ("claude-haiku-4-5-20251001", "Claude Haiku 4.5", 200000),
    ("claude-opus-4-6", "Claude Opus 4.6", 200000),
)
"""Anthropic has no listing endpoint; these are catalogued as-is."""


class ModelDiscovery:
    """Populate the model catalogue from the configured backends.

    Args:
        store: The forensic store holding the catalogue.
        settings: Backend credentials; only backends with a key are swept.
        client: Shared HTTP client.
    """

    def __init__(self, store: ForensicStore, settings: LLMSettings, client: httpx.AsyncClient) -> None:
        self.store = store
        self.settings = settings
        self.client = client

    async def discover_all(self) -> int:
        """Sweep every backend and return the number of models catalogued."""
        backends = self.settings.provider_settings()
        if not backends:
            logger.info("no providers configured for model discovery")
            return 0

        total = 0
        for backend in backends:
            try:
                models = await self.discover_provider(backend)
            except (httpx.HTTPError, ProviderWireError) as exc:
                error = str(exc) or type(exc).__name__
                logger.warning("model discovery failed for %s: %s", backend.name, error)
                await self.store.mark_provider_unavailable(backend.name, error)
                continue
            for model in models:
                await self.store.upsert_model(
                    model.provider, model.model_name, model.display_name, model.context_window
                )
            total += len(models)
            logger.info("discovered %d models on %s", len(models), backend.name)

        await self.store.insert_audit_event(None, AuditEventType.MODEL_DISCOVERED, {"total_models": total})
        return total

    async def discover_provider(self, backend: ProviderSettings) -> list[DiscoveredModel]:
        """List the models of one backend.

        Raises:
            ProviderWireError: On a non-200 answer or an undecodable body.
            httpx.HTTPError: On a transport failure.
        """
        kind = ProviderKind(backend.kind)
        if kind == ProviderKind.ANTHROPIC:
            return [
                DiscoveredModel(backend.name, model_id, display_name, context_window)
                for model_id, display_name, context_window in ANTHROPIC_MODELS
            ]
        if kind == ProviderKind.GEMINI:
            base_url = (backend.base_url or GeminiProvider.default_base_url).rstrip("/")
            data = await self._get_json(backend.name, f"{base_url}/models", params={"key": backend.api_key})
            return [
                DiscoveredModel(
                    backend.name,
                    entry.get("name", "").removeprefix("models/"),
                    entry.get("displayName") or None,
                    entry.get("inputTokenLimit") or None,
                )
                for entry in self._entries(backend.name, data, "models")
                if entry.get("name")
            ]
        data = await self._get_json(
            backend.name,
            f"{backend.base_url.rstrip('/')}/models",
            headers={"Authorization": f"Bearer {backend.api_key}"},
        )
        return [
            DiscoveredModel(backend.name, entry["id"])
            for entry in self._entries(backend.name, data, "data")
            if entry.get("id")
        ]

    async def run_periodic(self, interval: float, stop_event: asyncio.Event) -> None:
        """Sweep now, then every ``interval`` seconds until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await self.discover_all()
            except Exception:
                logger.exception("model discovery sweep failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=interval)

    async def _get_json(
        self,
        provider: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self.client.get(url, headers=headers, params=params, timeout=DISCOVERY_TIMEOUT)
        if response.status_code != httpx.codes.OK:
            body = response.text[:1024]
            raise ProviderWireError(
                provider, f"HTTP {response.status_code}: {body}", status_code=response.status_code, body=body
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderWireError(provider, f"decoding response: {exc}") from exc
        if not isinstance(data, dict):
            raise ProviderWireError(provider, "decoding response: expected a JSON object")
        return data

    @staticmethod
    def _entries(provider: str, data: dict[str, Any], key: str) -> list[dict[str, Any]]:
        """Return the model entries listed under ``key``.

        Raises:
            ProviderWireError: If ``key`` does not hold a list of objects.
        """
        entries = data.get(key) or []
        if not isinstance(entries, list) or not all(isinstance(entry, dict) for entry in entries):
            msg = f"decoding response: {key} is not a list of objects"
            raise ProviderWireError(provider, msg)
        return entries

