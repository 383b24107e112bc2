"""LLM backends, the dispatcher and model discovery."""

from __future__ import annotations

from litestar_refinery.llm.anthropic import AnthropicProvider
from litestar_refinery.llm.base import Provider
from litestar_refinery.llm.client import Dispatcher
from litestar_refinery.llm.discovery import DiscoveredModel, ModelDiscovery
from litestar_refinery.llm.factory import build_dispatcher, build_provider, build_providers
from litestar_refinery.llm.gemini import GeminiProvider
from litestar_refinery.llm.openai import OpenAIProvider
from litestar_refinery.llm.types import CompletionRequest, CompletionResponse, Message

__all__ = [
    "AnthropicProvider",
    "CompletionRequest",
    "CompletionResponse",
    "DiscoveredModel",
    "Dispatcher",
    "GeminiProvider",
    "Message",
    "ModelDiscovery",
    "OpenAIProvider",
    "Provider",
    "build_dispatcher",
    "build_provider",
    "build_providers",
]
