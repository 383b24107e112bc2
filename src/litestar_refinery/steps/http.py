"""HTTP fetch steps for external data integration."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from litestar_refinery.core.template import render_template
from litestar_refinery.core.types import StepKind
from litestar_refinery.exceptions import StepConfigurationError, StepExecutionError
from litestar_refinery.steps.base import StepExecutor, StepOutput

if TYPE_CHECKING:
    from litestar_refinery.core.context import ExecutionContext
    from litestar_refinery.db.models import WorkflowStepModel
    from litestar_refinery.steps.base import StepServices

__all__ = ["HTTP_STEP_TIMEOUT", "MAX_RESPONSE_BYTES", "HTTPStepExecutor"]

MAX_RESPONSE_BYTES = 1 << 20
HTTP_STEP_TIMEOUT = 60.0


class HTTPStepExecutor(StepExecutor):
    """Fetch the URL rendered from the template and return the response body.

    The step's configuration blob may carry a ``method`` (default ``GET``)
    and an ``authorization`` header value. At most 1 MiB of the body is read;
    anything beyond is discarded. Answers of 400 and above fail the attempt
    with the start of the body in the error.

    Example:
        >>> step = WorkflowStepModel(
        ...     step_name="fetch",
        ...     step_type=StepKind.HTTP,
        ...     prompt_template="https://example.org/claims/{{.Step.extract}}",
        ...     config_json={"method": "GET", "authorization": "Bearer t0k"},
        ... )
    """

    step_type = StepKind.HTTP

    async def execute(
        self,
        step: WorkflowStepModel,
        context: ExecutionContext,
        services: StepServices,
    ) -> StepOutput:
        url = render_template(step.prompt_template, context).strip()
        if not url:
            raise StepConfigurationError(step.step_name, "http step has empty URL")

        config = step.config_json or {}
        method = str(config.get("method") or "GET").upper()
        headers = {"Authorization": str(config["authorization"])} if config.get("authorization") else {}

        try:
            async with services.http_client.stream(
                method, url, headers=headers, timeout=HTTP_STEP_TIMEOUT
            ) as response:
                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk[: MAX_RESPONSE_BYTES - len(body)])
                    if len(body) >= MAX_RESPONSE_BYTES:
                        break
        except httpx.HTTPError as exc:
            raise StepExecutionError(step.step_name, f"http call: {exc}") from exc

        text = bytes(body).decode(response.encoding or "utf-8", errors="replace")
        if response.status_code >= httpx.codes.BAD_REQUEST:
            head = bytes(body[:500]).decode(response.encoding or "utf-8", errors="replace")
            raise StepExecutionError(step.step_name, f"http {response.status_code}: {head}")
        return StepOutput(output=text)
