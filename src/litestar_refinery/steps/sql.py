"""Read-only SQL steps against the forensic store."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from litestar_refinery.core.template import render_template
from litestar_refinery.core.types import StepKind
from litestar_refinery.exceptions import StepConfigurationError
from litestar_refinery.steps.base import StepExecutor, StepOutput

if TYPE_CHECKING:
    from litestar_refinery.core.context import ExecutionContext
    from litestar_refinery.db.models import WorkflowStepModel
    from litestar_refinery.steps.base import StepServices

__all__ = ["SQLStepExecutor"]


class SQLStepExecutor(StepExecutor):
    """Render the template as a query and return its rows as a JSON list of objects.

    Only queries whose first keyword is ``SELECT`` run; anything else fails
    the step without touching the store. Values JSON cannot represent, such
    as timestamps, are rendered as strings.
    """

    step_type = StepKind.SQL

    async def execute(
        self,
        step: WorkflowStepModel,
        context: ExecutionContext,
        services: StepServices,
    ) -> StepOutput:
        query = render_template(step.prompt_template, context)
        if not query.strip():
            raise StepConfigurationError(step.step_name, "sql step has empty query")
        rows = await services.store.run_select(query)
        return StepOutput(output=json.dumps(rows, default=str))
