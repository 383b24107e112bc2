"""Criteria evaluation steps."""

from __future__ import annotations

from typing import TYPE_CHECKING

from litestar_refinery.core.types import StepKind
from litestar_refinery.exceptions import StepConfigurationError
from litestar_refinery.llm.types import CompletionRequest
from litestar_refinery.steps.base import StepExecutor

if TYPE_CHECKING:
    from collections.abc import Sequence

    from litestar_refinery.core.context import ExecutionContext
    from litestar_refinery.db.models import WorkflowStepModel
    from litestar_refinery.steps.base import StepOutput, StepServices

__all__ = ["CHECK_SYSTEM_PROMPT", "CheckStepExecutor", "build_check_prompt"]

CHECK_SYSTEM_PROMPT = "You are a strict evaluator. Evaluate content against criteria and respond in valid JSON only."


def build_check_prompt(content: str, criteria: Sequence[str]) -> str:
    """Build the evaluation prompt for ``content`` against numbered ``criteria``."""
    numbered = "".join(f"{index}. {item}\n" for index, item in enumerate(criteria, start=1))
    return (
        "Evaluate the following content against each criterion. "
        "For each, respond PASS or FAIL with a brief justification.\n\n"
        f"Content:\n{content}\n\n"
        f"Criteria:\n{numbered}\n"
        'Respond in JSON format: [{"criterion": "...", "result": "PASS"|"FAIL", "justification": "..."}]'
    )


class CheckStepExecutor(StepExecutor):
    """Evaluate the latest output against a criteria list.

    The evaluated content is the previous response, or the body for a
    first-stage check. The model's answer is returned unparsed.
    """

    step_type = StepKind.CHECK

    async def execute(
        self,
        step: WorkflowStepModel,
        context: ExecutionContext,
        services: StepServices,
    ) -> StepOutput:
        if not step.criteria_list_id:
            raise StepConfigurationError(step.step_name, "check step has no criteria_list_id")
        criteria = await services.store.get_criteria_list(step.criteria_list_id)
        content = context.previous_response or context.body
        request = CompletionRequest.from_prompt(
            build_check_prompt(content, criteria.items_json or []), CHECK_SYSTEM_PROMPT
        )
        response = await self.dispatch(step, request, services)
        return self.output_from(response)
