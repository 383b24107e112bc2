"""Tests for the provider adapters and the dispatcher."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from litestar_refinery.exceptions import (
    ProviderError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderWireError,
)
from litestar_refinery.llm import AnthropicProvider, CompletionRequest, Dispatcher, GeminiProvider, OpenAIProvider
from litestar_refinery.llm.types import Message
from tests.conftest import ScriptedProvider, failing


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class Recorder:
    """Capture the requests a mock transport receives."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    @property
    def body(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)


@pytest.mark.unit
@pytest.mark.asyncio
class TestOpenAIProvider:
    """Tests for the OpenAI-compatible adapter."""

    async def test_complete(self) -> None:
        """Test the request shape and the decoded answer."""
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "model": "llama-3.3-70b-versatile",
                    "choices": [{"message": {"content": "hello"}, "finish_reason": "stop"}],
                    "usage": {"prompt_tokens": 12, "completion_tokens": 3},
                },
            )
        )
        async with _client(recorder) as client:
            provider = OpenAIProvider("groq", "gsk", client, base_url="https://api.groq.com/openai/v1/", models=["m"])
            request = CompletionRequest.from_prompt("hi", "sys", temperature=0.5, max_tokens=100)
            response = await provider.complete(request)

        sent = recorder.requests[0]
        assert str(sent.url) == "https://api.groq.com/openai/v1/chat/completions"
        assert sent.headers["Authorization"] == "Bearer gsk"
        assert recorder.body == {
            "model": "m",
            "messages": [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}],
            "temperature": 0.5,
            "max_tokens": 100,
        }
        assert response.provider == "groq"
        assert response.model == "llama-3.3-70b-versatile"
        assert response.content == "hello"
        assert (response.tokens_in, response.tokens_out) == (12, 3)
        assert response.finish_reason == "stop"

    async def test_zero_sampling_fields_omitted(self) -> None:
        """Test unset temperature, max_tokens and top_p are not sent."""
        recorder = Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "x"}}]}))
        async with _client(recorder) as client:
            provider = OpenAIProvider("p", "k", client, base_url="https://x", models=["m"])
            await provider.complete(CompletionRequest.from_prompt("hi"))

        assert set(recorder.body) == {"model", "messages"}

    async def test_no_choices(self) -> None:
        """Test an answer without choices is a wire error."""
        async with _client(lambda _: httpx.Response(200, json={"choices": []})) as client:
            provider = OpenAIProvider("p", "k", client, base_url="https://x", models=["m"])
            with pytest.raises(ProviderWireError, match="no choices in response"):
                await provider.complete(CompletionRequest.from_prompt("hi"))

    @pytest.mark.parametrize(
        "payload",
        [
            {"choices": [None]},
            {"choices": "text"},
            {"choices": [{"message": "hello"}]},
            {"choices": [{"message": {"content": "x"}}], "usage": 12},
        ],
    )
    async def test_malformed_answer(self, payload: dict[str, Any]) -> None:
        """Test a 200 answer of the wrong shape is a wire error."""
        async with _client(lambda _: httpx.Response(200, json=payload)) as client:
            provider = OpenAIProvider("p", "k", client, base_url="https://x", models=["m"])
            with pytest.raises(ProviderWireError, match="decoding response"):
                await provider.complete(CompletionRequest.from_prompt("hi"))

    async def test_rate_limited(self) -> None:
        """Test HTTP 429 maps to a rate-limit error."""
        async with _client(lambda _: httpx.Response(429, text="slow down")) as client:
            provider = OpenAIProvider("p", "k", client, base_url="https://x", models=["m"])
            with pytest.raises(ProviderRateLimitedError):
                await provider.complete(CompletionRequest.from_prompt("hi"))

    async def test_http_error_carries_status_and_body(self) -> None:
        """Test a non-200 answer reports its status and body."""
        async with _client(lambda _: httpx.Response(500, text="kaput")) as client:
            provider = OpenAIProvider("p", "k", client, base_url="https://x", models=["m"])
            with pytest.raises(ProviderWireError, match="HTTP 500: kaput") as exc_info:
                await provider.complete(CompletionRequest.from_prompt("hi"))

        assert exc_info.value.status_code == 500

    async def test_transport_error(self) -> None:
        """Test a transport failure becomes a provider error."""

        def boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(boom) as client:
            provider = OpenAIProvider("p", "k", client, base_url="https://x", models=["m"])
            with pytest.raises(ProviderWireError, match="refused"):
                await provider.complete(CompletionRequest.from_prompt("hi"))

    async def test_no_model(self) -> None:
        """Test a backend without any model refuses the request."""
        async with _client(lambda _: httpx.Response(200, json={})) as client:
            provider = OpenAIProvider("p", "k", client, base_url="https://x")
            with pytest.raises(ProviderError, match="no model specified"):
                await provider.complete(CompletionRequest.from_prompt("hi"))


@pytest.mark.unit
@pytest.mark.asyncio
class TestAnthropicProvider:
    """Tests for the Anthropic adapter."""

    async def test_complete(self) -> None:
        """Test system hoisting, default max_tokens and text block concatenation."""
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "model": "claude-x",
                    "content": [
                        {"type": "text", "text": "part one, "},
                        {"type": "tool_use", "id": "t"},
                        {"type": "text", "text": "part two"},
                    ],
                    "stop_reason": "end_turn",
                    "usage": {"input_tokens": 7, "output_tokens": 4},
                },
            )
        )
        async with _client(recorder) as client:
            provider = AnthropicProvider("anthropic", "sk-ant", client)
            response = await provider.complete(CompletionRequest.from_prompt("hi", "sys", model="claude-x"))

        sent = recorder.requests[0]
        assert str(sent.url) == "https://api.anthropic.com/v1/messages"
        assert sent.headers["x-api-key"] == "sk-ant"
        assert sent.headers["anthropic-version"] == "2023-06-01"
        assert recorder.body == {
            "model": "claude-x",
            "messages": [{"role": "user", "content": "hi"}],
            "max_tokens": 4096,
            "system": "sys",
        }
        assert response.content == "part one, part two"
        assert (response.tokens_in, response.tokens_out) == (7, 4)
        assert response.finish_reason == "end_turn"

    async def test_empty_content(self) -> None:
        """Test an answer without content blocks is a wire error."""
        async with _client(lambda _: httpx.Response(200, json={"content": []})) as client:
            provider = AnthropicProvider("anthropic", "k", client)
            with pytest.raises(ProviderWireError, match="no content"):
                await provider.complete(CompletionRequest.from_prompt("hi"))

    @pytest.mark.parametrize(
        "payload",
        [
            {"content": ["text"]},
            {"content": {"type": "text"}},
            {"content": [{"type": "text", "text": "x"}], "usage": [1, 2]},
        ],
    )
    async def test_malformed_answer(self, payload: dict[str, Any]) -> None:
        """Test a 200 answer of the wrong shape is a wire error."""
        async with _client(lambda _: httpx.Response(200, json=payload)) as client:
            provider = AnthropicProvider("anthropic", "k", client)
            with pytest.raises(ProviderWireError, match="decoding response"):
                await provider.complete(CompletionRequest.from_prompt("hi"))


@pytest.mark.unit
@pytest.mark.asyncio
class TestGeminiProvider:
    """Tests for the Gemini adapter."""

    async def test_complete(self) -> None:
        """Test the generateContent request shape and the decoded answer."""
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": "bon"}, {"text": "jour"}]}, "finishReason": "STOP"}],
                    "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 2},
                },
            )
        )
        request = CompletionRequest(
            model="gemini-2.0-flash",
            messages=[Message("system", "sys"), Message("user", "hi"), Message("assistant", "yo")],
            max_tokens=64,
        )
        async with _client(recorder) as client:
            response = await GeminiProvider("gemini", "gk", client).complete(request)

        sent = recorder.requests[0]
        assert sent.url.path == "/v1beta/models/gemini-2.0-flash:generateContent"
        assert sent.url.params["key"] == "gk"
        assert recorder.body == {
            "contents": [
                {"role": "user", "parts": [{"text": "hi"}]},
                {"role": "model", "parts": [{"text": "yo"}]},
            ],
            "systemInstruction": {"parts": [{"text": "sys"}]},
            "generationConfig": {"maxOutputTokens": 64},
        }
        assert response.content == "bonjour"
        assert response.model == "gemini-2.0-flash"
        assert (response.tokens_in, response.tokens_out) == (5, 2)

    async def test_default_model(self) -> None:
        """Test the first default model is used when none is requested."""
        recorder = Recorder(httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "x"}]}}]}))
        async with _client(recorder) as client:
            await GeminiProvider("gemini", "gk", client).complete(CompletionRequest.from_prompt("hi"))

        assert recorder.requests[0].url.path.endswith("/models/gemini-2.0-flash:generateContent")

    async def test_no_candidates(self) -> None:
        """Test an answer without candidates is a wire error."""
        async with _client(lambda _: httpx.Response(200, json={})) as client:
            with pytest.raises(ProviderWireError, match="no candidates"):
                await GeminiProvider("gemini", "gk", client).complete(CompletionRequest.from_prompt("hi"))

    @pytest.mark.parametrize(
        "payload",
        [
            {"candidates": ["bonjour"]},
            {"candidates": [{"content": "bonjour"}]},
            {"candidates": [{"content": {"parts": [None]}}]},
        ],
    )
    async def test_malformed_answer(self, payload: dict[str, Any]) -> None:
        """Test a 200 answer of the wrong shape is a wire error."""
        async with _client(lambda _: httpx.Response(200, json=payload)) as client:
            with pytest.raises(ProviderWireError, match="decoding response"):
                await GeminiProvider("gemini", "gk", client).complete(CompletionRequest.from_prompt("hi"))


@pytest.mark.unit
@pytest.mark.asyncio
class TestDispatcher:
    """Tests for dispatcher routing and fallback."""

    async def test_prefixed_model_routes_to_provider(self) -> None:
        """Test <provider>/<model> goes to that provider with the bare model name."""
        first, second = ScriptedProvider("a", ["from a"]), ScriptedProvider("b", ["from b"])
        dispatcher = Dispatcher([first, second])

        response = await dispatcher.complete(CompletionRequest.from_prompt("hi", model="b/some-model"))

        assert response.content == "from b"
        assert first.calls == []
        assert second.calls[0].model == "some-model"

    async def test_prefixed_model_does_not_fall_back(self) -> None:
        """Test a routed request surfaces its provider's failure."""
        first, second = ScriptedProvider("a"), ScriptedProvider("b", [failing("b")])
        dispatcher = Dispatcher([first, second])

        with pytest.raises(ProviderError, match="boom"):
            await dispatcher.complete(CompletionRequest.from_prompt("hi", model="b/m"))
        assert first.calls == []

    async def test_fallback_in_registration_order(self) -> None:
        """Test an unrouted request falls through failing providers."""
        first = ScriptedProvider("a", [failing("a")])
        second = ScriptedProvider("b", ["from b"])
        dispatcher = Dispatcher([first, second])

        response = await dispatcher.complete(CompletionRequest.from_prompt("hi"))

        assert response.content == "from b"
        assert len(first.calls) == 1

    async def test_unknown_prefix_falls_back_with_stripped_model(self) -> None:
        """Test an unregistered prefix is stripped and routed through the fallback chain."""
        provider = ScriptedProvider("a", ["ok"])
        dispatcher = Dispatcher([provider])

        await dispatcher.complete(CompletionRequest.from_prompt("hi", model="ghost/m1"))

        assert provider.calls[0].model == "m1"

    async def test_all_fail_raises_last(self) -> None:
        """Test the last provider error is raised when every provider fails."""
        dispatcher = Dispatcher(
            [ScriptedProvider("a", [failing("a", "first")]), ScriptedProvider("b", [failing("b", "second")])]
        )

        with pytest.raises(ProviderError, match="second"):
            await dispatcher.complete(CompletionRequest.from_prompt("hi"))

    async def test_malformed_answer_falls_back(self) -> None:
        """Test a backend answering 200 with a broken body yields to the next provider."""

        def handle(request: httpx.Request) -> httpx.Response:
            if request.url.host == "a.test":
                return httpx.Response(200, json={"choices": [None]})
            return httpx.Response(200, json={"choices": [{"message": {"content": "from b"}}]})

        async with _client(handle) as client:
            dispatcher = Dispatcher(
                [
                    OpenAIProvider("a", "k", client, base_url="https://a.test", models=["m"]),
                    OpenAIProvider("b", "k", client, base_url="https://b.test", models=["m"]),
                ]
            )
            response = await dispatcher.complete(CompletionRequest.from_prompt("hi"))

        assert response.provider == "b"
        assert response.content == "from b"

    async def test_no_providers(self) -> None:
        """Test an empty dispatcher raises a not-found error."""
        with pytest.raises(ProviderNotFoundError):
            await Dispatcher().complete(CompletionRequest.from_prompt("hi"))

    async def test_complete_with(self) -> None:
        """Test pinning a provider, and pinning an unknown one."""
        dispatcher = Dispatcher([ScriptedProvider("a", ["pinned"])])

        assert (await dispatcher.complete_with("a", CompletionRequest.from_prompt("hi"))).content == "pinned"
        with pytest.raises(ProviderNotFoundError):
            await dispatcher.complete_with("zz", CompletionRequest.from_prompt("hi"))

    async def test_register_replaces_same_name(self) -> None:
        """Test registering a provider twice keeps one fallback slot."""
        dispatcher = Dispatcher([ScriptedProvider("a"), ScriptedProvider("b")])
        replacement = ScriptedProvider("a", ["new"])
        dispatcher.register(replacement)

        assert dispatcher.providers() == ["a", "b"]
        assert dispatcher.get("a") is replacement
        assert dispatcher.has_provider("b")

    async def test_metrics_recorded_per_attempt(self) -> None:
        """Test every provider attempt, failed or not, is handed to the recorder."""
        from litestar_refinery.db.metrics import LLMCallRecord

        class Sink:
            def __init__(self) -> None:
                self.records: list[LLMCallRecord] = []

            def record(self, record: LLMCallRecord) -> None:
                self.records.append(record)

        sink = Sink()
        dispatcher = Dispatcher(
            [ScriptedProvider("a", [failing("a")]), ScriptedProvider("b", ["ok"])],
            metrics=sink,  # type: ignore[arg-type]
        )

        await dispatcher.complete(CompletionRequest.from_prompt("hi"))

        assert [(r.provider, r.success) for r in sink.records] == [("a", False), ("b", True)]
        assert sink.records[0].error is not None
        assert sink.records[1].tokens_in == 10
