"""Base class shared by the provider adapters."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

from litestar_refinery.config import DEFAULT_LLM_TIMEOUT
from litestar_refinery.exceptions import ProviderRateLimitedError, ProviderWireError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar_refinery.llm.types import CompletionRequest, CompletionResponse

__all__ = ["Provider", "truncate"]


def truncate(text: str, limit: int) -> str:
    """Cut ``text`` to ``limit`` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class Provider(ABC):
    """An LLM backend.

    Adapters share one ``httpx.AsyncClient``; every request carries its own
    timeout so the client itself stays safe for concurrent use.

    Attributes:
        name: Registry name, also the ``<provider>`` prefix of model ids.
        api_key: Credential.
        base_url: API root without trailing slash.
        client: Shared HTTP client.
        timeout: Seconds allowed per request.
    """

    default_base_url: str = ""
    default_models: tuple[str, ...] = ()

    def __init__(
        self,
        name: str,
        api_key: str,
        client: httpx.AsyncClient,
        *,
        base_url: str = "",
        models: list[str] | None = None,
        default_model: str = "",
        timeout: float = DEFAULT_LLM_TIMEOUT,
    ) -> None:
        self.name = name
        self.api_key = api_key
        self.client = client
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self._models = list(models) if models else list(self.default_models)
        self.default_model = default_model or (self._models[0] if self._models else "")
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, base_url={self.base_url!r})"

    @property
    def models(self) -> list[str]:
        """Model names offered by this backend."""
        return list(self._models)

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Send a completion request.

        Raises:
            ProviderError: On any backend failure.
        """

    async def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        model: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> tuple[dict[str, Any], int]:
        """POST ``payload`` and return the decoded answer with the exchange latency in ms.

        Raises:
            ProviderRateLimitedError: On HTTP 429.
            ProviderWireError: On a transport failure, any other non-200 answer
                or an undecodable body.
        """
        start = time.perf_counter()
        try:
            response = await self.client.post(url, json=payload, headers=headers, params=params, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise ProviderWireError(self.name, str(exc) or type(exc).__name__, model) from exc
        latency_ms = int((time.perf_counter() - start) * 1000)

        if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
            raise ProviderRateLimitedError(self.name, model)
        if response.status_code != httpx.codes.OK:
            body = truncate(response.text, 200)
            raise ProviderWireError(
                self.name,
                f"HTTP {response.status_code}: {body}",
                model,
                status_code=response.status_code,
                body=body,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderWireError(self.name, f"decoding response: {exc}", model) from exc
        return self._object(data, "response", model), latency_ms

    def _object(self, value: Any, what: str, model: str) -> dict[str, Any]:
        """Return ``value`` if it is a JSON object, an empty one if it is missing.

        Raises:
            ProviderWireError: If ``value`` is present but not an object.
        """
        if value is None:
            return {}
        if not isinstance(value, dict):
            msg = f"decoding response: {what} is not an object"
            raise ProviderWireError(self.name, msg, model)
        return value

    def _objects(self, value: Any, what: str, model: str) -> list[dict[str, Any]]:
        """Return ``value`` as a list of JSON objects, an empty list if it is missing.

        Raises:
            ProviderWireError: If ``value`` is not a list, or holds something other than objects.
        """
        if value is None:
            return []
        if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
            msg = f"decoding response: {what} is not a list of objects"
            raise ProviderWireError(self.name, msg, model)
        return value
