"""Provider-agnostic completion types."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal

__all__ = ["CompletionRequest", "CompletionResponse", "Message", "MessageRole"]

MessageRole = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class Message:
    """A chat message."""

    role: MessageRole
    content: str


@dataclass
class CompletionRequest:
    """A completion request.

    Attributes:
        model: Model name, optionally prefixed ``<provider>/``. Empty lets the
            provider use its default model.
        messages: Ordered chat messages.
        temperature: Sampling temperature in ``[0, 2]``; ``0`` leaves the backend default.
        max_tokens: Output cap; ``0`` leaves the backend default.
        top_p: Nucleus sampling; ``0`` leaves the backend default.
        seed: Sampling seed, where the backend honours one.
    """

    model: str = ""
    messages: list[Message] = field(default_factory=list)
    temperature: float = 0.0
    max_tokens: int = 0
    top_p: float = 0.0
    seed: int | None = None

    def with_model(self, model: str) -> CompletionRequest:
        return replace(self, model=model)

    @classmethod
    def from_prompt(cls, prompt: str, system: str = "", **kwargs: object) -> CompletionRequest:
        """Build a request of one user message, preceded by a system message when given."""
        messages = [Message("system", system)] if system else []
        messages.append(Message("user", prompt))
        return cls(messages=messages, **kwargs)  # type: ignore[arg-type]


@dataclass
class CompletionResponse:
    """A completion as answered by a backend.

    Attributes:
        provider: Registry name of the provider that answered.
        model: Model that actually produced the answer.
        content: Generated text.
        tokens_in: Prompt tokens billed.
        tokens_out: Completion tokens billed.
        finish_reason: Backend's stop reason.
        latency_ms: Wall-clock time of the HTTP exchange.
    """

    provider: str
    model: str
    content: str
    tokens_in: int = 0
    tokens_out: int = 0
    finish_reason: str = ""
    latency_ms: int = 0
