"""Adapter for the Anthropic messages API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from litestar_refinery.exceptions import ProviderWireError
from litestar_refinery.llm.base import Provider
from litestar_refinery.llm.types import CompletionResponse

if TYPE_CHECKING:
    from litestar_refinery.llm.types import CompletionRequest

__all__ = ["ANTHROPIC_VERSION", "DEFAULT_MAX_TOKENS", "AnthropicProvider"]

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


class AnthropicProvider(Provider):
    """Anthropic's ``/messages`` endpoint.

    The first system message becomes the top-level ``system`` field, and the
    answer is the concatenation of its text content blocks.
    """

    default_base_url = "https://api.anthropic.com/v1"
    default_models = ("claude-sonnet-4-5-20250929", "claude-haiku-4-5-20251001")

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        model = request.model or self.default_model
        system = ""
        messages: list[dict[str, str]] = []
        for message in request.messages:
            if message.role == "system":
                system = system or message.content
                continue
            messages.append({"role": message.role, "content": message.content})

        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_tokens if request.max_tokens > 0 else DEFAULT_MAX_TOKENS,
        }
        if system:
            payload["system"] = system
        if request.temperature > 0:
            payload["temperature"] = request.temperature
        if request.top_p > 0:
            payload["top_p"] = request.top_p

        headers = {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}
        data, latency_ms = await self._post_json(f"{self.base_url}/messages", payload, model, headers=headers)

        blocks = self._objects(data.get("content"), "content", model)
        if not blocks:
            raise ProviderWireError(self.name, "no content in response", model)
        usage = self._object(data.get("usage"), "usage", model)
        return CompletionResponse(
            provider=self.name,
            model=data.get("model") or model,
            content="".join(block.get("text", "") for block in blocks if block.get("type") == "text"),
            tokens_in=usage.get("input_tokens") or 0,
            tokens_out=usage.get("output_tokens") or 0,
            finish_reason=data.get("stop_reason") or "",
            latency_ms=latency_ms,
        )
