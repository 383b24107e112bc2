"""Adapter for the Google Gemini ``generateContent`` API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from litestar_refinery.exceptions import ProviderWireError
from litestar_refinery.llm.base import Provider
from litestar_refinery.llm.types import CompletionResponse

if TYPE_CHECKING:
    from litestar_refinery.llm.types import CompletionRequest

__all__ = ["GeminiProvider"]


class GeminiProvider(Provider):
    """Gemini's ``models/{model}:generateContent`` endpoint.

    ``assistant`` messages are sent with the ``model`` role and system
    messages become the top-level ``systemInstruction``. The key travels as
    the ``key`` query parameter.
    """

    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_models = ("gemini-2.0-flash", "gemini-2.0-flash-lite", "gemini-1.5-pro")

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        model = request.model or self.default_model
        system_instruction: dict[str, Any] | None = None
        contents: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role == "system":
                system_instruction = {"parts": [{"text": message.content}]}
                continue
            role = "model" if message.role == "assistant" else message.role
            contents.append({"role": role, "parts": [{"text": message.content}]})

        payload: dict[str, Any] = {"contents": contents}
        if system_instruction is not None:
            payload["systemInstruction"] = system_instruction
        generation_config: dict[str, Any] = {}
        if request.temperature > 0:
            generation_config["temperature"] = request.temperature
        if request.max_tokens > 0:
            generation_config["maxOutputTokens"] = request.max_tokens
        if request.top_p > 0:
            generation_config["topP"] = request.top_p
        if generation_config:
            payload["generationConfig"] = generation_config

        data, latency_ms = await self._post_json(
            f"{self.base_url}/models/{model}:generateContent",
            payload,
            model,
            params={"key": self.api_key},
        )

        candidates = self._objects(data.get("candidates"), "candidates", model)
        if not candidates:
            raise ProviderWireError(self.name, "no candidates in response", model)
        candidate = candidates[0]
        content = self._object(candidate.get("content"), "candidate content", model)
        parts = self._objects(content.get("parts"), "parts", model)
        usage = self._object(data.get("usageMetadata"), "usageMetadata", model)
        return CompletionResponse(
            provider=self.name,
            model=model,
            content="".join(part.get("text", "") for part in parts),
            tokens_in=usage.get("promptTokenCount") or 0,
            tokens_out=usage.get("candidatesTokenCount") or 0,
            finish_reason=candidate.get("finishReason") or "",
            latency_ms=latency_ms,
        )
