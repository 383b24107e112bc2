"""Adapter for OpenAI-compatible chat completion backends.

Mistral, Groq, OpenRouter, Hugging Face and any other backend exposing
``POST {base}/chat/completions`` with bearer authentication go through this
adapter.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from litestar_refinery.exceptions import ProviderError, ProviderWireError
from litestar_refinery.llm.base import Provider
from litestar_refinery.llm.types import CompletionResponse

if TYPE_CHECKING:
    from litestar_refinery.llm.types import CompletionRequest

__all__ = ["OpenAIProvider"]


class OpenAIProvider(Provider):
    """A backend speaking the OpenAI chat completion wire format."""

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        model = request.model or self.default_model
        if not model:
            raise ProviderError(self.name, "no model specified")

        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": message.role, "content": message.content} for message in request.messages],
        }
        if request.temperature > 0:
            payload["temperature"] = request.temperature
        if request.max_tokens > 0:
            payload["max_tokens"] = request.max_tokens
        if request.top_p > 0:
            payload["top_p"] = request.top_p
        if request.seed is not None:
            payload["seed"] = request.seed

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        data, latency_ms = await self._post_json(f"{self.base_url}/chat/completions", payload, model, headers=headers)

        choices = self._objects(data.get("choices"), "choices", model)
        if not choices:
            raise ProviderWireError(self.name, "no choices in response", model)
        choice = choices[0]
        message = self._object(choice.get("message"), "message", model)
        usage = self._object(data.get("usage"), "usage", model)
        return CompletionResponse(
            provider=self.name,
            model=data.get("model") or model,
            content=message.get("content") or "",
            tokens_in=usage.get("prompt_tokens") or 0,
            tokens_out=usage.get("completion_tokens") or 0,
            finish_reason=choice.get("finish_reason") or "",
            latency_ms=latency_ms,
        )
