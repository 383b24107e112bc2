"""The workflow engine.

A run executes the stage groups of a workflow in ascending rank. Every step
runs as its own unit of persistence: a step-run row is inserted as
``running`` before the first attempt, and closed as ``completed`` (together
with the run's completed-step count) or ``failed`` once the attempts are
over. The audit log receives one event for every transition.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy.exc import SQLAlchemyError

from litestar_refinery.core.context import ExecutionContext
from litestar_refinery.core.ids import new_id
from litestar_refinery.core.types import AuditEventType, RunStatus, StepKind
from litestar_refinery.engine.graph import group_stages
from litestar_refinery.exceptions import (
    GrantDeniedError,
    ModelUnavailableError,
    RefineryError,
    RunCancelledError,
    StepConfigurationError,
    StepExhaustedError,
    StepTimeoutError,
)
from litestar_refinery.steps import StepServices, default_executors

if TYPE_CHECKING:
    from collections.abc import Iterable

    from litestar_refinery.db.forensic import ForensicStore
    from litestar_refinery.db.models import WorkflowStepModel
    from litestar_refinery.engine.graph import StageGroup
    from litestar_refinery.llm.client import Dispatcher
    from litestar_refinery.steps import StepExecutor, StepOutput

__all__ = ["CANCELLED_ERROR", "WorkflowEngine"]

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"
"""Error recorded on a run stopped by its cancellation signal."""


class WorkflowEngine:
    """Execute stored workflows against a body of text.

    Attributes:
        store: The forensic store holding definitions, runs and the audit log.
        dispatcher: The LLM dispatcher used by ``llm`` and ``check`` steps.
        executors: Step executor per step kind.
        http_client: HTTP client used by ``http`` steps.
        retry_backoff: Seconds of pause per attempt number between attempts.

    Example:
        >>> engine = WorkflowEngine(store, dispatcher)
        >>> run_id = await engine.execute_workflow(workflow_id, "u1", "operator", body="Claim X")
        >>> (await store.get_run(run_id)).status
        <RunStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        store: ForensicStore,
        dispatcher: Dispatcher,
        executors: dict[StepKind, StepExecutor] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.executors = executors if executors is not None else default_executors()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient()
        self.retry_backoff = 0.1

    async def aclose(self) -> None:
        """Close the HTTP client if the engine created it."""
        if self._owns_client:
            await self.http_client.aclose()

    async def execute_workflow(
        self,
        workflow_id: str,
        user_id: str,
        role: str,
        body: str,
        pre_prompt: str | None = None,
        node_id: str | None = None,
        batch_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Run a workflow to its end and return the run id.

        A step that exhausts its attempts fails the run; the run id is still
        returned and the failure is recorded on the run.

        Args:
            workflow_id: The workflow to execute.
            user_id: Principal running it, used for grant checks.
            role: That principal's role.
            body: Text the workflow operates on, available as ``{{.Body}}``.
            pre_prompt: Instruction available as ``{{.PrePrompt}}``; the
                workflow's own pre-prompt when omitted.
            node_id: Node the run is attached to.
            batch_id: Batch the run belongs to.
            cancel_event: Checked between stages. Once set, no further stage
                or attempt starts.

        Returns:
            The run id.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            RunCancelledError: If ``cancel_event`` stopped the run. The run is
                persisted as ``cancelled`` first.
        """
        workflow, steps = await self.store.get_workflow_with_steps(workflow_id)
        effective_pre_prompt = pre_prompt if pre_prompt is not None else (workflow.pre_prompt or "")
        run_id = await self.store.create_run(
            workflow_id,
            user_id,
            len(steps),
            node_id=node_id,
            pre_prompt=pre_prompt,
            batch_id=batch_id,
        )
        cancel = cancel_event or asyncio.Event()
        context = ExecutionContext(
            body=body,
            pre_prompt=effective_pre_prompt,
            user_id=user_id,
            role=role,
            workflow_id=workflow_id,
            run_id=run_id,
            node_id=node_id,
        )
        services = StepServices(store=self.store, dispatcher=self.dispatcher, http_client=self.http_client)

        logger.info("run %s of workflow %s (%s) started by %s", run_id, workflow.name, workflow_id, user_id)
        try:
            await self.store.set_run_status(run_id, RunStatus.RUNNING)
            await self._audit(
                run_id, AuditEventType.RUN_STARTED, {"workflow_id": workflow_id, "workflow_name": workflow.name}
            )
            for group in group_stages(steps):
                if cancel.is_set():
                    break
                failure = await self._run_group(group, context, services, cancel)
                if failure is None:
                    continue
                if cancel.is_set():
                    break
                await self.store.set_run_status(run_id, RunStatus.FAILED, error=str(failure))
                logger.info("run %s failed at stage %d: %s", run_id, group.order, failure)
                return run_id
            else:
                await self.store.set_run_status(run_id, RunStatus.COMPLETED, result=dict(context.responses))
                await self._audit(run_id, AuditEventType.RUN_COMPLETED, {"completed_steps": len(context.responses)})
                logger.info("run %s completed", run_id)
                return run_id
        except Exception as exc:
            logger.exception("run %s aborted", run_id)
            await self._set_status_quietly(run_id, RunStatus.FAILED, str(exc) or type(exc).__name__)
            raise

        await self.store.set_run_status(run_id, RunStatus.CANCELLED, error=CANCELLED_ERROR)
        logger.info("run %s cancelled", run_id)
        raise RunCancelledError(run_id)

    async def execute_batch(
        self,
        workflow_id: str,
        bodies: Iterable[str],
        user_id: str,
        role: str,
        pre_prompt: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> tuple[str, list[str]]:
        """Run one workflow over several bodies, one after another, under a shared batch id.

        Returns:
            The batch id and the run ids in body order.
        """
        batch_id = new_id()
        run_ids = [
            await self.execute_workflow(
                workflow_id,
                user_id,
                role,
                body,
                pre_prompt=pre_prompt,
                batch_id=batch_id,
                cancel_event=cancel_event,
            )
            for body in bodies
        ]
        return batch_id, run_ids

    async def _run_group(
        self,
        group: StageGroup,
        context: ExecutionContext,
        services: StepServices,
        cancel: asyncio.Event,
    ) -> Exception | None:
        if not group.is_fan_out:
            return await self._run_step(group.steps[0], context, services, cancel)

        run_id = context.run_id
        await self._audit(
            run_id, AuditEventType.FAN_OUT_STARTED, {"step_order": group.order, "count": len(group.steps)}
        )
        sibling_contexts = [context.copy() for _ in group.steps]
        tasks = [
            asyncio.create_task(self._run_step(step, sibling, services, cancel))
            for step, sibling in zip(group.steps, sibling_contexts)
        ]
        await self._audit(run_id, AuditEventType.FAN_IN_WAITING, {"step_order": group.order})
        results = await asyncio.gather(*tasks, return_exceptions=True)

        failure: Exception | None = None
        fan_results: dict[str, str] = {}
        for step, sibling, result in zip(group.steps, sibling_contexts, results):
            if isinstance(result, Exception):
                failure = failure or result
                continue
            if isinstance(result, BaseException):
                raise result
            fan_results[step.step_name] = sibling.step_output(step.step_name)
        await self._audit(
            run_id, AuditEventType.FAN_IN_COMPLETED, {"step_order": group.order, "completed": len(fan_results)}
        )

        context.fan_results = json.dumps(fan_results)
        for step_name, output in fan_results.items():
            context.record(step_name, output)
        return failure

    async def _run_step(
        self,
        step: WorkflowStepModel,
        context: ExecutionContext,
        services: StepServices,
        cancel: asyncio.Event,
    ) -> Exception | None:
        """Execute one step with its retries and persist its outcome.

        Returns:
            ``None`` on success, else the error that failed the step.
        """
        run_id = context.run_id
        step_kind = str(step.step_type)
        await self._audit(run_id, AuditEventType.STEP_STARTED, {"step_name": step.step_name, "step_type": step_kind})
        step_run_id = await self.store.insert_step_run(run_id, step.step_id, step.step_order, context.input_blob())
        logger.info("run %s step %s (%s) at rank %d", run_id, step.step_name, step_kind, step.step_order)

        try:
            await self._check_model_access(step, context)
        except (ModelUnavailableError, GrantDeniedError) as exc:
            await self._persist_failure(run_id, step_run_id, step, exc, latency_ms=0, attempts=0)
            return exc

        max_attempts = max(step.retry_max or 0, 1)
        attempt = 0
        latency_ms = 0
        while True:
            attempt += 1
            start = time.perf_counter()
            try:
                result = await self._attempt(step, context, services)
            except Exception as exc:
                latency_ms = int((time.perf_counter() - start) * 1000)
                logger.warning("run %s step %s attempt %d failed: %s", run_id, step.step_name, attempt, exc)
                retryable = not isinstance(exc, RefineryError) or exc.retryable
                if attempt >= max_attempts or not retryable or cancel.is_set():
                    error = StepExhaustedError(step.step_name, attempt, exc)
                    await self._persist_failure(run_id, step_run_id, step, error, latency_ms, attempt)
                    return error
                await self._audit(
                    run_id,
                    AuditEventType.STEP_RETRIED,
                    {"attempt": attempt, "error": str(exc)},
                    step_run_id=step_run_id,
                )
                await asyncio.sleep(self.retry_backoff * attempt)
                continue
            latency_ms = int((time.perf_counter() - start) * 1000)
            break

        await self._persist_success(run_id, step_run_id, step, result, latency_ms, attempt)
        context.record(step.step_name, result.output)
        return None

    async def _attempt(self, step: WorkflowStepModel, context: ExecutionContext, services: StepServices) -> StepOutput:
        try:
            executor = self.executors.get(StepKind(step.step_type))
        except ValueError:
            executor = None
        if executor is None:
            raise StepConfigurationError(step.step_name, f"unknown step type: {step.step_type}")
        timeout_ms = step.timeout_ms or 0
        if timeout_ms <= 0:
            return await executor.execute(step, context, services)
        try:
            return await asyncio.wait_for(executor.execute(step, context, services), timeout=timeout_ms / 1000)
        except TimeoutError as exc:
            raise StepTimeoutError(step.step_name, timeout_ms) from exc

    async def _check_model_access(self, step: WorkflowStepModel, context: ExecutionContext) -> None:
        """Refuse a step whose model is unavailable or not granted to the caller.

        When no grant matches, an ownerless (discovered) or uncatalogued model
        is allowed and a model registered by another owner is refused.
        """
        if not step.model:
            return
        model_id = step.model
        if step.provider and not model_id.startswith(f"{step.provider}/"):
            model_id = f"{step.provider}/{model_id}"

        catalogued = await self.store.get_model(model_id)
        if catalogued is not None and not catalogued.is_available:
            raise ModelUnavailableError(model_id)

        step_kind = str(step.step_type)
        decision = await self.store.check_model_grant(context.user_id, context.role, model_id, step_kind)
        if decision.denied:
            raise GrantDeniedError(context.user_id, model_id, step_kind)
        if (
            not decision.explicit
            and catalogued is not None
            and catalogued.owner_id
            and catalogued.owner_id != context.user_id
        ):
            raise GrantDeniedError(context.user_id, model_id, step_kind)

    async def _persist_success(
        self,
        run_id: str,
        step_run_id: str,
        step: WorkflowStepModel,
        result: StepOutput,
        latency_ms: int,
        attempt: int,
    ) -> None:
        try:
            await self.store.complete_step_run(
                step_run_id,
                output=result.output,
                model_used=result.model_used,
                provider_used=result.provider_used,
                tokens_in=result.tokens_in,
                tokens_out=result.tokens_out,
                latency_ms=latency_ms,
                attempt=attempt,
            )
        except SQLAlchemyError as exc:
            await self._report_persist_failure(run_id, step_run_id, step, exc)
            return
        await self._audit(
            run_id,
            AuditEventType.STEP_COMPLETED,
            {
                "step_name": step.step_name,
                "provider": result.provider_used,
                "model": result.model_used,
                "tokens_in": result.tokens_in,
                "tokens_out": result.tokens_out,
                "latency_ms": latency_ms,
                "attempt": attempt,
            },
            step_run_id=step_run_id,
        )

    async def _persist_failure(
        self,
        run_id: str,
        step_run_id: str,
        step: WorkflowStepModel,
        error: Exception,
        latency_ms: int,
        attempts: int,
    ) -> None:
        try:
            await self.store.fail_step_run(step_run_id, error=str(error), latency_ms=latency_ms, attempt=attempts)
        except SQLAlchemyError as exc:
            await self._report_persist_failure(run_id, step_run_id, step, exc)
            return
        await self._audit(
            run_id,
            AuditEventType.STEP_FAILED,
            {
                "step_name": step.step_name,
                "error": str(error),
                "reason": getattr(error, "reason", "step_failed"),
                "attempts": attempts,
            },
            step_run_id=step_run_id,
        )

    async def _report_persist_failure(
        self, run_id: str, step_run_id: str, step: WorkflowStepModel, exc: SQLAlchemyError
    ) -> None:
        logger.error("run %s: could not persist outcome of step %s: %s", run_id, step.step_name, exc)
        await self._audit(
            run_id,
            AuditEventType.STEP_PERSIST_FAILED,
            {"step_name": step.step_name, "error": str(exc)},
            step_run_id=step_run_id,
        )

    async def _audit(
        self,
        run_id: str,
        event_type: AuditEventType,
        payload: dict[str, Any] | None = None,
        *,
        step_run_id: str | None = None,
    ) -> None:
        try:
            await self.store.insert_audit_event(run_id, event_type, payload, step_run_id=step_run_id)
        except SQLAlchemyError:
            logger.warning("run %s: could not write %s audit event", run_id, event_type, exc_info=True)

    async def _set_status_quietly(self, run_id: str, status: RunStatus, error: str) -> None:
        try:
            await self.store.set_run_status(run_id, status, error=error)
        except SQLAlchemyError:
            logger.warning("run %s: could not record status %s", run_id, status, exc_info=True)
