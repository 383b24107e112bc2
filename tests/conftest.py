"""Shared test fixtures for litestar-refinery test suite."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from litestar_refinery.core.ids import new_id
from litestar_refinery.core.types import StepKind, WorkflowStatus
from litestar_refinery.db import ForensicStore, MainStore, MetricsStore
from litestar_refinery.db.models import WorkflowModel, WorkflowStepModel
from litestar_refinery.exceptions import ProviderError
from litestar_refinery.llm.base import Provider
from litestar_refinery.llm.client import Dispatcher
from litestar_refinery.llm.types import CompletionResponse

if TYPE_CHECKING:
    from pathlib import Path

    from litestar_refinery.engine import WorkflowEngine
    from litestar_refinery.llm.types import CompletionRequest


Reply = str | Exception | Callable[["CompletionRequest"], str]


class ScriptedProvider(Provider):
    """In-memory provider answering from a script.

    Each call consumes the next scripted reply: a string is returned as the
    content, an exception is raised, a callable is called with the request.
    Once the script is exhausted the provider echoes ``<name>:<last user message>``.
    """

    def __init__(
        self,
        name: str = "mock",
        replies: Sequence[Reply] = (),
        *,
        delay: float = 0.0,
        models: list[str] | None = None,
    ) -> None:
        super().__init__(name, "test-key", None, models=models or ["mock-1"])  # type: ignore[arg-type]
        self.replies: list[Reply] = list(replies)
        self.delay = delay
        self.calls: list[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply: Reply = self.replies.pop(0) if self.replies else f"{self.name}:{self.last_user_message(request)}"
        if isinstance(reply, Exception):
            raise reply
        content = reply(request) if callable(reply) else reply
        return CompletionResponse(
            provider=self.name,
            model=request.model or self.default_model,
            content=content,
            tokens_in=10,
            tokens_out=5,
            finish_reason="stop",
            latency_ms=1,
        )

    @staticmethod
    def last_user_message(request: CompletionRequest) -> str:
        users = [message.content for message in request.messages if message.role == "user"]
        return users[-1] if users else ""


def failing(provider: str = "mock", cause: str = "boom") -> ProviderError:
    """A retryable provider failure."""
    return ProviderError(provider, cause)


@pytest.fixture
async def forensic_store(tmp_path: Path) -> AsyncIterator[ForensicStore]:
    """Forensic store on a temporary file."""
    store = await ForensicStore.open(tmp_path / "flows.db")
    yield store
    await store.close()


@pytest.fixture
async def main_store(tmp_path: Path) -> AsyncIterator[MainStore]:
    """Main store on a temporary file."""
    store = await MainStore.open(tmp_path / "main.db")
    yield store
    await store.close()


@pytest.fixture
async def metrics_store(tmp_path: Path) -> AsyncIterator[MetricsStore]:
    """Metrics store on a temporary file."""
    store = await MetricsStore.open(tmp_path / "metrics.db")
    yield store
    await store.close()


@pytest.fixture
def mock_provider() -> ScriptedProvider:
    """Scripted provider registered as ``mock``."""
    return ScriptedProvider("mock")


@pytest.fixture
def dispatcher(mock_provider: ScriptedProvider) -> Dispatcher:
    """Dispatcher with the scripted provider as its only backend."""
    return Dispatcher([mock_provider])


@pytest.fixture
def http_handler() -> dict[str, Callable[[httpx.Request], httpx.Response]]:
    """Mutable routing of the mock HTTP transport, keyed by ``METHOD url``."""
    return {}


@pytest.fixture
async def http_client(
    http_handler: dict[str, Callable[[httpx.Request], httpx.Response]],
) -> AsyncIterator[httpx.AsyncClient]:
    """HTTP client whose transport answers from ``http_handler`` and 404s otherwise."""

    def handle(request: httpx.Request) -> httpx.Response:
        key = f"{request.method} {request.url.copy_with(query=None)}"
        handler = http_handler.get(key)
        if handler is None:
            return httpx.Response(404, text=f"no route for {key}")
        return handler(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handle)) as client:
        yield client


@pytest.fixture
def workflow_engine(
    forensic_store: ForensicStore, dispatcher: Dispatcher, http_client: httpx.AsyncClient
) -> WorkflowEngine:
    """Workflow engine over the temporary forensic store, retrying without pause."""
    from litestar_refinery.engine import WorkflowEngine

    engine = WorkflowEngine(forensic_store, dispatcher, http_client=http_client)
    engine.retry_backoff = 0.0
    return engine


@pytest.fixture
def make_workflow(forensic_store: ForensicStore) -> Callable[..., Any]:
    """Factory creating an active workflow from ``(order, name, kind, **fields)`` tuples.

    Example:
        >>> wf = await make_workflow([(1, "s1", "llm", {"prompt_template": "{{.Body}}"})])
    """

    async def _make(
        steps: Sequence[tuple[int, str, str, dict[str, Any]]],
        *,
        name: str | None = None,
        status: WorkflowStatus = WorkflowStatus.ACTIVE,
        pre_prompt: str | None = None,
    ) -> WorkflowModel:
        workflow_id = new_id()
        workflow = WorkflowModel(
            workflow_id=workflow_id,
            name=name or f"wf-{workflow_id}",
            description="",
            workflow_type="test",
            owner_id="owner",
            owner_role="operator",
            status=status,
            version=1,
            pre_prompt=pre_prompt,
        )
        step_models = []
        for order, step_name, kind, fields in steps:
            values: dict[str, Any] = {"timeout_ms": 30000, "retry_max": 2, "config_json": {}}
            values.update(fields)
            step_models.append(
                WorkflowStepModel(
                    step_id=new_id(),
                    workflow_id=workflow_id,
                    step_order=order,
                    step_name=step_name,
                    step_type=StepKind(kind),
                    **values,
                )
            )
        return await forensic_store.create_workflow(workflow, step_models)

    return _make
