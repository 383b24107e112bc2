"""Base step executor for litestar-refinery."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    import httpx

    from litestar_refinery.core.context import ExecutionContext
    from litestar_refinery.core.types import StepKind
    from litestar_refinery.db.forensic import ForensicStore
    from litestar_refinery.db.models import WorkflowStepModel
    from litestar_refinery.llm.client import Dispatcher
    from litestar_refinery.llm.types import CompletionRequest, CompletionResponse

__all__ = ["StepExecutor", "StepOutput", "StepServices"]


@dataclass
class StepOutput:
    """What a successful attempt produced.

    Attributes:
        output: Text stored as the step's output and recorded in the context.
        model_used: Model that actually answered, for LLM-backed steps.
        provider_used: Provider that actually answered, for LLM-backed steps.
        tokens_in: Prompt tokens billed.
        tokens_out: Completion tokens billed.
    """

    output: str
    model_used: str = ""
    provider_used: str = ""
    tokens_in: int = 0
    tokens_out: int = 0


@dataclass
class StepServices:
    """Collaborators available to every executor during a run."""

    store: ForensicStore
    dispatcher: Dispatcher
    http_client: httpx.AsyncClient


class StepExecutor:
    """Base implementation shared by all step kinds.

    An executor is stateless; one instance serves every step of its kind
    across runs, so concurrent fan-out siblings may share it.
    """

    step_type: ClassVar[StepKind]
    """Kind of step this executor runs."""

    async def execute(
        self,
        step: WorkflowStepModel,
        context: ExecutionContext,
        services: StepServices,
    ) -> StepOutput:
        """Run one attempt of ``step``.

        Args:
            step: The step definition.
            context: The context of this attempt. Fan-out siblings receive a private copy.
            services: Store, dispatcher and HTTP client.

        Returns:
            The attempt's output.

        Raises:
            NotImplementedError: Must be implemented by subclasses.
        """
        msg = f"Executor for {self.step_type} steps must implement execute()"
        raise NotImplementedError(msg)

    @staticmethod
    async def dispatch(
        step: WorkflowStepModel, request: CompletionRequest, services: StepServices
    ) -> CompletionResponse:
        """Send ``request`` for ``step``, pinned to the step's provider when it names one."""
        model = step.model or ""
        if step.provider:
            model = model.removeprefix(f"{step.provider}/")
            return await services.dispatcher.complete_with(step.provider, request.with_model(model))
        return await services.dispatcher.complete(request.with_model(model))

    @staticmethod
    def output_from(response: CompletionResponse) -> StepOutput:
        return StepOutput(
            output=response.content,
            model_used=response.model,
            provider_used=response.provider,
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
        )
