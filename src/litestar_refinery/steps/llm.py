"""LLM prompt steps."""

from __future__ import annotations

from typing import TYPE_CHECKING

from litestar_refinery.core.template import render_template
from litestar_refinery.core.types import StepKind
from litestar_refinery.llm.types import CompletionRequest
from litestar_refinery.steps.base import StepExecutor

if TYPE_CHECKING:
    from litestar_refinery.core.context import ExecutionContext
    from litestar_refinery.db.models import WorkflowStepModel
    from litestar_refinery.steps.base import StepOutput, StepServices

__all__ = ["LLMStepExecutor"]


class LLMStepExecutor(StepExecutor):
    """Render the prompt and system prompt templates and send them to the dispatcher.

    Example:
        A step with ``prompt_template="{{.PreviousResponse}}!"`` after a step
        that answered ``"A"`` sends the user message ``"A!"``.
    """

    step_type = StepKind.LLM

    async def execute(
        self,
        step: WorkflowStepModel,
        context: ExecutionContext,
        services: StepServices,
    ) -> StepOutput:
        prompt = render_template(step.prompt_template, context)
        system = render_template(step.system_prompt, context)
        response = await self.dispatch(step, CompletionRequest.from_prompt(prompt, system), services)
        return self.output_from(response)
