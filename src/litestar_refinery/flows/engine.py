"""Linear thinking flows.

A thinking flow is a fixed sequence of LLM calls where each step sees the
body, the previous response and every earlier step's output. Flows predate
stored workflows and are kept for adversarial challenges. Every step,
successful or not, is persisted as a forensic ``flow_steps`` row.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from litestar_refinery.core.context import ExecutionContext
from litestar_refinery.core.ids import new_id
from litestar_refinery.core.template import render_template
from litestar_refinery.db.models import FlowStepModel
from litestar_refinery.exceptions import ProviderError
from litestar_refinery.llm.types import CompletionRequest

if TYPE_CHECKING:
    from litestar_refinery.db.forensic import ForensicStore
    from litestar_refinery.llm.client import Dispatcher
    from litestar_refinery.llm.types import CompletionResponse

__all__ = [
    "TARGET",
    "FlowConfig",
    "FlowContext",
    "FlowEngine",
    "FlowResult",
    "FlowStepConfig",
    "FlowStepResult",
]

logger = logging.getLogger(__name__)

TARGET = "$TARGET"
"""Placeholder provider or model replaced by the caller's target."""


@dataclass(frozen=True)
class FlowStepConfig:
    """One step of a thinking flow.

    Attributes:
        name: Step name, addressable as ``{{.Step.<name>}}`` by later steps.
        provider: Provider to pin, ``$TARGET``, or empty for routing.
        model: Model to request, ``$TARGET``, or empty for the provider default.
        role: Part the step plays (``defender``, ``attacker``, ``synthesizer``, ``judge``).
        prompt: User prompt template.
        system: System prompt template.
    """

    name: str
    provider: str = ""
    model: str = ""
    role: str = ""
    prompt: str = ""
    system: str = ""


@dataclass(frozen=True)
class FlowConfig:
    """A named sequence of flow steps."""

    name: str
    description: str = ""
    steps: tuple[FlowStepConfig, ...] = ()


@dataclass
class FlowContext:
    """Data carried through a flow execution."""

    flow_id: str = ""
    node_id: str | None = None
    body: str = ""
    previous_response: str = ""
    responses: dict[str, str] = field(default_factory=dict)
    target_provider: str = ""
    target_model: str = ""

    def as_execution_context(self) -> ExecutionContext:
        return ExecutionContext(
            body=self.body,
            previous_response=self.previous_response,
            responses=dict(self.responses),
            node_id=self.node_id,
        )


@dataclass
class FlowStepResult:
    """Outcome of one flow step. ``error`` is set when the call failed."""

    name: str
    provider: str
    model: str
    response: CompletionResponse | None = None
    error: str | None = None


@dataclass
class FlowResult:
    """Outcome of a flow execution."""

    flow_id: str
    steps: list[FlowStepResult] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def last_step(self) -> FlowStepResult | None:
        return self.steps[-1] if self.steps else None


class FlowEngine:
    """Execute thinking flows through the dispatcher.

    Args:
        dispatcher: The LLM dispatcher.
        store: Forensic store receiving one ``flow_steps`` row per step. Optional.
    """

    def __init__(self, dispatcher: Dispatcher, store: ForensicStore | None = None) -> None:
        self.dispatcher = dispatcher
        self.store = store

    async def execute(self, flow: FlowConfig, context: FlowContext) -> FlowResult:
        """Run every step of ``flow`` in order.

        A failing step is recorded in the result and in the forensic store;
        the flow carries on with the next step. Nothing is raised for
        provider failures.
        """
        context.flow_id = context.flow_id or new_id()
        result = FlowResult(flow_id=context.flow_id)
        start = time.perf_counter()

        for index, step in enumerate(flow.steps):
            logger.info("flow %s step %d %s via %s", flow.name, index, step.name, step.provider or "routing")
            rendered = context.as_execution_context()
            prompt = render_template(step.prompt, rendered)
            system = render_template(step.system, rendered)

            step_result = await self._execute_step(step, context, prompt, system)
            result.steps.append(step_result)
            if step_result.response is not None:
                context.previous_response = step_result.response.content
                context.responses[step.name] = step_result.response.content

            await self._persist_step(context, index, step_result, prompt, system)

        result.duration_ms = int((time.perf_counter() - start) * 1000)
        return result

    async def _execute_step(
        self, step: FlowStepConfig, context: FlowContext, prompt: str, system: str
    ) -> FlowStepResult:
        provider = context.target_provider if step.provider == TARGET else step.provider
        model = context.target_model if step.model == TARGET else step.model
        request = CompletionRequest.from_prompt(prompt, system, model=model)
        try:
            if provider:
                response = await self.dispatcher.complete_with(provider, request)
            else:
                response = await self.dispatcher.complete(request)
        except ProviderError as exc:
            logger.warning("flow step %s failed: %s", step.name, exc)
            return FlowStepResult(name=step.name, provider=provider, model=model, error=str(exc))
        return FlowStepResult(name=step.name, provider=provider, model=model, response=response)

    async def _persist_step(
        self, context: FlowContext, index: int, step_result: FlowStepResult, prompt: str, system: str
    ) -> None:
        if self.store is None:
            return
        record = FlowStepModel(
            flow_id=context.flow_id,
            step_index=index,
            node_id=context.node_id or None,
            model_id=step_result.model,
            provider=step_result.provider,
            prompt=prompt,
            system_prompt=system or None,
            error=step_result.error,
        )
        response = step_result.response
        if response is not None:
            record.model_id = response.model
            record.provider = response.provider
            record.response_raw = response.content
            record.response_parsed = response.content
            record.tokens_in = response.tokens_in
            record.tokens_out = response.tokens_out
            record.latency_ms = response.latency_ms
            record.finish_reason = response.finish_reason
        try:
            await self.store.insert_flow_step(record)
        except SQLAlchemyError:
            logger.warning("could not persist step %d of flow %s", index, context.flow_id, exc_info=True)
