"""The forensic store.

Workflow definitions, runs, step runs, the audit log, the model catalogue,
grants, operator groups, criteria lists and the ``flow_steps`` forensic
records all live here. Every public coroutine opens its own session, and
every write touching more than one row commits in a single transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy import text

from litestar_refinery.core.ids import new_id
from litestar_refinery.core.models import AuditEntry, RunView, StepRunView
from litestar_refinery.core.types import (
    GrantEffect,
    GranteeKind,
    Role,
    RunStatus,
    StepKind,
    StepRunStatus,
    WorkflowStatus,
)
from litestar_refinery.db.connection import Database
from litestar_refinery.db.models import (
    AvailableModel,
    CriteriaListModel,
    FlowStepModel,
    ForensicBase,
    ModelGrantModel,
    OperatorGroupModel,
    ReplayBatchModel,
    WorkflowModel,
    WorkflowRunModel,
    WorkflowStepModel,
    WorkflowStepRunModel,
)
from litestar_refinery.db.repositories import (
    AuditLogRepository,
    AvailableModelRepository,
    CriteriaListRepository,
    FlowStepRepository,
    ModelGrantRepository,
    OperatorGroupRepository,
    ReplayBatchRepository,
    StepRunRepository,
    WorkflowRepository,
    WorkflowRunRepository,
    WorkflowStepRepository,
)
from litestar_refinery.exceptions import (
    CriteriaListNotFoundError,
    FlowStepNotFoundError,
    InvalidTransitionError,
    RunNotFoundError,
    SqlForbiddenError,
    WorkflowNotEditableError,
    WorkflowNotFoundError,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from litestar_refinery.core.grants import GrantDecision

__all__ = ["ALLOWED_TRANSITIONS", "ForensicStore", "allowed_step_types"]

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.DRAFT: frozenset({WorkflowStatus.ACTIVE, WorkflowStatus.REJECTED}),
    WorkflowStatus.ACTIVE: frozenset({WorkflowStatus.ARCHIVED}),
    WorkflowStatus.REJECTED: frozenset({WorkflowStatus.DRAFT}),
    WorkflowStatus.ARCHIVED: frozenset(),
}
"""Workflow lifecycle: ``draft → active | rejected``, ``active → archived``, ``rejected → draft``."""

_WORKFLOW_FIELDS = frozenset({"name", "description", "workflow_type", "pre_prompt"})
_STEP_FIELDS = frozenset(
    {
        "step_name",
        "step_order",
        "step_type",
        "provider",
        "model",
        "prompt_template",
        "system_prompt",
        "config_json",
        "criteria_list_id",
        "timeout_ms",
        "retry_max",
        "fan_group",
    }
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def allowed_step_types(role: str) -> frozenset[StepKind]:
    """Return the step kinds a role may put in a workflow.

    Operators may use ``llm`` and ``check``, providers additionally ``sql``,
    admins every kind.
    """
    if role in (Role.ADMIN, Role.OPERATOR_ADMIN):
        return frozenset(StepKind)
    if role == Role.PROVIDER:
        return frozenset({StepKind.LLM, StepKind.CHECK, StepKind.SQL})
    return frozenset({StepKind.LLM, StepKind.CHECK})


def _run_view(run: WorkflowRunModel) -> RunView:
    return RunView(
        run_id=run.run_id,
        workflow_id=run.workflow_id,
        workflow_name=run.workflow.name,
        status=RunStatus(run.status),
        total_steps=run.total_steps,
        completed_steps=run.completed_steps,
        user_id=run.user_id,
        node_id=run.node_id,
        pre_prompt=run.pre_prompt,
        batch_id=run.batch_id,
        result=run.result_json,
        error=run.error,
        started_at=run.started_at,
        completed_at=run.completed_at,
        created_at=run.created_at,
    )


def _step_run_view(step_run: WorkflowStepRunModel) -> StepRunView:
    return StepRunView(
        step_run_id=step_run.step_run_id,
        run_id=step_run.run_id,
        step_id=step_run.step_id,
        step_name=step_run.step.step_name,
        step_type=str(step_run.step.step_type),
        step_order=step_run.step_order,
        status=StepRunStatus(step_run.status),
        input=step_run.input_json,
        output=step_run.output_json,
        model_used=step_run.model_used,
        provider_used=step_run.provider_used,
        tokens_in=step_run.tokens_in,
        tokens_out=step_run.tokens_out,
        latency_ms=step_run.latency_ms,
        attempt=step_run.attempt,
        error=step_run.error,
        started_at=step_run.started_at,
        completed_at=step_run.completed_at,
    )


class ForensicStore(Database):
    """Typed access to the forensic store."""

    metadata = ForensicBase.metadata
    alterations: ClassVar[tuple[str, ...]] = (
        "ALTER TABLE flow_steps ADD COLUMN replay_of_id VARCHAR(12) REFERENCES flow_steps(id)",
        "ALTER TABLE flow_steps ADD COLUMN dispatch_id VARCHAR(12)",
        "ALTER TABLE available_models ADD COLUMN owner_id VARCHAR(64)",
    )

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def create_workflow(
        self,
        workflow: WorkflowModel,
        steps: Sequence[WorkflowStepModel] = (),
    ) -> WorkflowModel:
        """Insert a workflow together with its initial steps.

        Args:
            workflow: The workflow to insert. Its status defaults to ``draft``.
            steps: Steps inserted in the same transaction.

        Returns:
            The inserted workflow.
        """
        workflow.workflow_id = workflow.workflow_id or new_id()
        async with self.session() as session, session.begin():
            repo = WorkflowRepository(session=session)
            await repo.add(workflow)
            step_repo = WorkflowStepRepository(session=session)
            for step in steps:
                step.workflow_id = workflow.workflow_id
                step.step_id = step.step_id or new_id()
                await step_repo.add(step)
        return workflow

    async def get_workflow(self, workflow_id: str) -> WorkflowModel:
        """Return a workflow.

        Raises:
            WorkflowNotFoundError: If it does not exist.
        """
        async with self.session() as session:
            workflow = await WorkflowRepository(session=session).get_one_or_none(workflow_id=workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def get_workflow_with_steps(self, workflow_id: str) -> tuple[WorkflowModel, list[WorkflowStepModel]]:
        """Return a workflow and its steps ordered by rank, then name.

        Raises:
            WorkflowNotFoundError: If it does not exist.
        """
        async with self.session() as session:
            workflow = await WorkflowRepository(session=session).get_one_or_none(workflow_id=workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)
            steps = await WorkflowStepRepository(session=session).list_for_workflow(workflow_id)
        return workflow, list(steps)

    async def get_workflow_by_name(self, name: str) -> WorkflowModel | None:
        async with self.session() as session:
            return await WorkflowRepository(session=session).get_by_name(name)

    async def list_workflows(self, role: str | None = None, status: str | None = None) -> list[WorkflowModel]:
        """List workflows visible to ``role``, optionally by status."""
        async with self.session() as session:
            return list(await WorkflowRepository(session=session).list_visible(role, status))

    async def update_workflow(self, workflow_id: str, **fields: Any) -> WorkflowModel:
        """Change the name, description, type or pre-prompt of a draft workflow.

        Raises:
            WorkflowNotFoundError: If it does not exist.
            WorkflowNotEditableError: If it is no longer a draft.
            ValueError: On an unknown field.
        """
        unknown = set(fields) - _WORKFLOW_FIELDS
        if unknown:
            msg = f"cannot update workflow fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        async with self.session() as session, session.begin():
            workflow = await self._require_draft(session, workflow_id)
            for key, value in fields.items():
                setattr(workflow, key, value)
            await session.flush()
        return workflow

    async def update_workflow_status(
        self,
        workflow_id: str,
        status: WorkflowStatus,
        *,
        actor_id: str | None = None,
        rejection_reason: str | None = None,
    ) -> WorkflowModel:
        """Move a workflow along its lifecycle.

        Activation stamps the validator; rejection records the reason;
        resubmitting a rejected workflow as draft bumps its version.

        Args:
            workflow_id: The workflow to transition.
            status: Target lifecycle state.
            actor_id: Principal validating or rejecting the workflow.
            rejection_reason: Why it was rejected.

        Returns:
            The updated workflow.

        Raises:
            WorkflowNotFoundError: If it does not exist.
            InvalidTransitionError: If the lifecycle forbids the move.
        """
        async with self.session() as session, session.begin():
            workflow = await WorkflowRepository(session=session).get_one_or_none(workflow_id=workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)
            current = WorkflowStatus(workflow.status)
            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(current, status)

            workflow.status = status
            if status == WorkflowStatus.ACTIVE:
                workflow.validated_by = actor_id
                workflow.validated_at = _now()
            elif status == WorkflowStatus.REJECTED:
                workflow.validated_by = actor_id
                workflow.validated_at = _now()
                workflow.rejection_reason = rejection_reason
            elif status == WorkflowStatus.DRAFT:
                workflow.version += 1
                workflow.rejection_reason = None
            await session.flush()
        logger.info("workflow %s moved from %s to %s", workflow_id, current, status)
        return workflow

    async def delete_workflow(self, workflow_id: str) -> None:
        """Delete a workflow; its steps and runs cascade."""
        async with self.session() as session, session.begin():
            repo = WorkflowRepository(session=session)
            if await repo.get_one_or_none(workflow_id=workflow_id) is None:
                raise WorkflowNotFoundError(workflow_id)
            await repo.delete(workflow_id)

    async def _require_draft(self, session: AsyncSession, workflow_id: str) -> WorkflowModel:
        workflow = await WorkflowRepository(session=session).get_one_or_none(workflow_id=workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if workflow.status != WorkflowStatus.DRAFT:
            raise WorkflowNotEditableError(workflow_id, str(workflow.status))
        return workflow

    # ------------------------------------------------------------------
    # Workflow steps (draft only)
    # ------------------------------------------------------------------

    async def create_step(self, step: WorkflowStepModel) -> WorkflowStepModel:
        """Add a step to a draft workflow."""
        step.step_id = step.step_id or new_id()
        async with self.session() as session, session.begin():
            await self._require_draft(session, step.workflow_id)
            await WorkflowStepRepository(session=session).add(step)
        return step

    async def update_step(self, step_id: str, **fields: Any) -> WorkflowStepModel:
        """Change fields of a step on a draft workflow.

        Raises:
            WorkflowNotEditableError: If the workflow is no longer a draft.
            ValueError: On an unknown field or an unknown step.
        """
        unknown = set(fields) - _STEP_FIELDS
        if unknown:
            msg = f"cannot update step fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        async with self.session() as session, session.begin():
            step = await WorkflowStepRepository(session=session).get_one_or_none(step_id=step_id)
            if step is None:
                msg = f"step '{step_id}' not found"
                raise ValueError(msg)
            await self._require_draft(session, step.workflow_id)
            for key, value in fields.items():
                setattr(step, key, value)
            await session.flush()
        return step

    async def delete_step(self, step_id: str) -> None:
        """Remove a step from a draft workflow."""
        async with self.session() as session, session.begin():
            repo = WorkflowStepRepository(session=session)
            step = await repo.get_one_or_none(step_id=step_id)
            if step is None:
                return
            await self._require_draft(session, step.workflow_id)
            await repo.delete(step_id)

    async def list_steps(self, workflow_id: str) -> list[WorkflowStepModel]:
        async with self.session() as session:
            return list(await WorkflowStepRepository(session=session).list_for_workflow(workflow_id))

    async def reorder_steps(self, workflow_id: str, orders: Iterable[tuple[str, int]]) -> None:
        """Assign new ranks to steps of a draft workflow in one transaction."""
        async with self.session() as session, session.begin():
            await self._require_draft(session, workflow_id)
            await WorkflowStepRepository(session=session).reorder(workflow_id, orders)

    # ------------------------------------------------------------------
    # Criteria lists
    # ------------------------------------------------------------------

    async def create_criteria_list(
        self, name: str, items: Sequence[str], owner_id: str, description: str = ""
    ) -> CriteriaListModel:
        criteria = CriteriaListModel(
            list_id=new_id(), name=name, description=description, items_json=list(items), owner_id=owner_id
        )
        async with self.session() as session, session.begin():
            await CriteriaListRepository(session=session).add(criteria)
        return criteria

    async def get_criteria_list(self, list_id: str) -> CriteriaListModel:
        """Return a criteria list.

        Raises:
            CriteriaListNotFoundError: If it does not exist.
        """
        async with self.session() as session:
            criteria = await CriteriaListRepository(session=session).get_one_or_none(list_id=list_id)
        if criteria is None:
            raise CriteriaListNotFoundError(list_id)
        return criteria

    async def get_criteria_list_by_name(self, name: str) -> CriteriaListModel | None:
        async with self.session() as session:
            return await CriteriaListRepository(session=session).get_one_or_none(name=name)

    async def list_criteria_lists(self, owner_id: str | None = None) -> list[CriteriaListModel]:
        async with self.session() as session:
            repo = CriteriaListRepository(session=session)
            if owner_id:
                return list(await repo.list(owner_id=owner_id))
            return list(await repo.list())

    async def update_criteria_list(
        self,
        list_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        items: Sequence[str] | None = None,
    ) -> CriteriaListModel:
        async with self.session() as session, session.begin():
            criteria = await CriteriaListRepository(session=session).get_one_or_none(list_id=list_id)
            if criteria is None:
                raise CriteriaListNotFoundError(list_id)
            if name is not None:
                criteria.name = name
            if description is not None:
                criteria.description = description
            if items is not None:
                criteria.items_json = list(items)
            await session.flush()
        return criteria

    async def delete_criteria_list(self, list_id: str) -> None:
        async with self.session() as session, session.begin():
            repo = CriteriaListRepository(session=session)
            if await repo.get_one_or_none(list_id=list_id) is None:
                raise CriteriaListNotFoundError(list_id)
            await repo.delete(list_id)

    # ------------------------------------------------------------------
    # Runs and step runs
    # ------------------------------------------------------------------

    async def create_run(
        self,
        workflow_id: str,
        user_id: str,
        total_steps: int,
        *,
        node_id: str | None = None,
        pre_prompt: str | None = None,
        batch_id: str | None = None,
    ) -> str:
        """Insert a ``pending`` run and return its id."""
        run = WorkflowRunModel(
            run_id=new_id(),
            workflow_id=workflow_id,
            user_id=user_id,
            node_id=node_id,
            pre_prompt=pre_prompt,
            batch_id=batch_id,
            total_steps=total_steps,
            completed_steps=0,
            status=RunStatus.PENDING,
        )
        async with self.session() as session, session.begin():
            await WorkflowRunRepository(session=session).add(run, auto_refresh=False)
        return run.run_id

    async def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        async with self.session() as session, session.begin():
            await WorkflowRunRepository(session=session).set_status(run_id, status, result=result, error=error)

    async def increment_completed_steps(self, run_id: str) -> None:
        async with self.session() as session, session.begin():
            await WorkflowRunRepository(session=session).increment_completed(run_id)

    async def get_run(self, run_id: str) -> RunView:
        """Return a run with its workflow name.

        Raises:
            RunNotFoundError: If it does not exist.
        """
        async with self.session() as session:
            run = await WorkflowRunRepository(session=session).get_one_or_none(run_id=run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return _run_view(run)

    async def list_runs(self, workflow_id: str | None = None, batch_id: str | None = None) -> list[RunView]:
        async with self.session() as session:
            runs = await WorkflowRunRepository(session=session).list_runs(workflow_id, batch_id)
        return [_run_view(run) for run in runs]

    async def insert_step_run(
        self, run_id: str, step_id: str, step_order: int, input_blob: dict[str, Any]
    ) -> str:
        """Insert a step run in state ``running`` and return its id."""
        step_run = WorkflowStepRunModel(
            step_run_id=new_id(),
            run_id=run_id,
            step_id=step_id,
            step_order=step_order,
            status=StepRunStatus.RUNNING,
            input_json=input_blob,
            started_at=_now(),
        )
        async with self.session() as session, session.begin():
            await StepRunRepository(session=session).add(step_run, auto_refresh=False)
        return step_run.step_run_id

    async def complete_step_run(
        self,
        step_run_id: str,
        *,
        output: str,
        model_used: str | None,
        provider_used: str | None,
        tokens_in: int,
        tokens_out: int,
        latency_ms: int,
        attempt: int,
    ) -> None:
        """Close a step run as ``completed`` and count it on its run, atomically."""
        async with self.session() as session, session.begin():
            repo = StepRunRepository(session=session)
            step_run = await repo.get_one_or_none(step_run_id=step_run_id)
            if step_run is None:
                raise RunNotFoundError(step_run_id)
            step_run.status = StepRunStatus.COMPLETED
            step_run.output_json = output
            step_run.model_used = model_used or None
            step_run.provider_used = provider_used or None
            step_run.tokens_in = tokens_in
            step_run.tokens_out = tokens_out
            step_run.latency_ms = latency_ms
            step_run.attempt = attempt
            step_run.completed_at = _now()
            await session.flush()
            await WorkflowRunRepository(session=session).increment_completed(step_run.run_id)

    async def fail_step_run(self, step_run_id: str, *, error: str, latency_ms: int, attempt: int) -> None:
        """Close a step run as ``failed``."""
        async with self.session() as session, session.begin():
            step_run = await StepRunRepository(session=session).get_one_or_none(step_run_id=step_run_id)
            if step_run is None:
                raise RunNotFoundError(step_run_id)
            step_run.status = StepRunStatus.FAILED
            step_run.error = error
            step_run.latency_ms = latency_ms
            step_run.attempt = attempt
            step_run.completed_at = _now()

    async def get_step_runs(self, run_id: str) -> list[StepRunView]:
        """Return a run's step runs with step name and kind, in execution order."""
        async with self.session() as session:
            step_runs = await StepRunRepository(session=session).list_for_run(run_id)
        return [_step_run_view(step_run) for step_run in step_runs]

    async def count_completed_step_runs(self, run_id: str) -> int:
        async with self.session() as session:
            return await StepRunRepository(session=session).count_completed(run_id)

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    async def insert_audit_event(
        self,
        run_id: str | None,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        step_run_id: str | None = None,
    ) -> int:
        """Append an audit event and return its ``log_id``."""
        async with self.session() as session, session.begin():
            entry = await AuditLogRepository(session=session).add(
                AuditLogRepository.model_type(
                    run_id=run_id,
                    step_run_id=step_run_id,
                    event_type=str(event_type),
                    event_json=payload or {},
                    created_at=_now(),
                )
            )
        return entry.log_id

    async def get_audit_log(self, run_id: str | None) -> list[AuditEntry]:
        """Return a run's audit events in insert order."""
        async with self.session() as session:
            entries = await AuditLogRepository(session=session).list_for_run(run_id)
        return [
            AuditEntry(
                log_id=entry.log_id,
                event_type=entry.event_type,
                run_id=entry.run_id,
                step_run_id=entry.step_run_id,
                payload=entry.event_json or {},
                created_at=entry.created_at,
            )
            for entry in entries
        ]

    # ------------------------------------------------------------------
    # Model catalogue
    # ------------------------------------------------------------------

    async def upsert_model(
        self,
        provider: str,
        model_name: str,
        display_name: str | None = None,
        context_window: int | None = None,
        capabilities: dict[str, Any] | None = None,
    ) -> None:
        async with self.session() as session, session.begin():
            await AvailableModelRepository(session=session).upsert_discovered(
                provider, model_name, display_name, context_window, capabilities
            )

    async def create_model(
        self,
        provider: str,
        model_name: str,
        owner_id: str,
        display_name: str | None = None,
        context_window: int | None = None,
    ) -> AvailableModel:
        """Register an owned model by hand. Owned models need a grant to be listed for others."""
        model = AvailableModel(
            model_id=f"{provider}/{model_name}",
            provider=provider,
            model_name=model_name,
            display_name=display_name,
            context_window=context_window,
            is_available=True,
            capabilities_json={},
            discovered_at=_now(),
            owner_id=owner_id,
        )
        async with self.session() as session, session.begin():
            await AvailableModelRepository(session=session).add(model)
        return model

    async def get_model(self, model_id: str) -> AvailableModel | None:
        async with self.session() as session:
            return await AvailableModelRepository(session=session).get_one_or_none(model_id=model_id)

    async def model_exists(self, model_id: str) -> bool:
        return await self.get_model(model_id) is not None

    async def model_is_available(self, model_id: str) -> bool:
        model = await self.get_model(model_id)
        return model is not None and model.is_available

    async def list_models(self, provider: str | None = None, *, available_only: bool = False) -> list[AvailableModel]:
        async with self.session() as session:
            repo = AvailableModelRepository(session=session)
            return list(await repo.list_models(provider, available_only=available_only))

    async def list_allowed_models(self, user_id: str, role: str) -> list[AvailableModel]:
        async with self.session() as session:
            return list(await AvailableModelRepository(session=session).list_allowed(user_id, role))

    async def mark_model_unavailable(self, model_id: str, error: str) -> None:
        async with self.session() as session, session.begin():
            await AvailableModelRepository(session=session).mark_unavailable(model_id, error)

    async def mark_provider_unavailable(self, provider: str, error: str) -> int:
        async with self.session() as session, session.begin():
            return await AvailableModelRepository(session=session).mark_provider_unavailable(provider, error)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def create_grant(
        self,
        grantee_type: GranteeKind,
        grantee_id: str,
        model_id: str,
        created_by: str,
        *,
        step_type: str = "*",
        effect: GrantEffect = GrantEffect.ALLOW,
    ) -> ModelGrantModel:
        grant = ModelGrantModel(
            grant_id=new_id(),
            grantee_type=grantee_type,
            grantee_id=grantee_id,
            model_id=model_id,
            step_type=str(step_type),
            effect=effect,
            created_by=created_by,
            created_at=_now(),
        )
        async with self.session() as session, session.begin():
            await ModelGrantRepository(session=session).add(grant)
        return grant

    async def delete_grant(self, grant_id: str) -> None:
        async with self.session() as session, session.begin():
            repo = ModelGrantRepository(session=session)
            if await repo.get_one_or_none(grant_id=grant_id) is not None:
                await repo.delete(grant_id)

    async def list_grants(
        self, grantee_type: GranteeKind | None = None, grantee_id: str | None = None
    ) -> list[ModelGrantModel]:
        async with self.session() as session:
            return list(await ModelGrantRepository(session=session).list_grants(grantee_type, grantee_id))

    async def check_model_grant(self, user_id: str, role: str, model_id: str, step_type: str) -> GrantDecision:
        """Evaluate the grant hierarchy for ``(user, role, model, step kind)``."""
        async with self.session() as session:
            return await ModelGrantRepository(session=session).check(user_id, role, model_id, str(step_type))

    async def bulk_set_grants(
        self,
        models: Sequence[str],
        grant_ids: Sequence[str],
        revoke_ids: Sequence[str],
        created_by: str,
    ) -> None:
        """Revoke, then grant, catch-all access to ``models`` for several users in one transaction."""
        async with self.session() as session, session.begin():
            await ModelGrantRepository(session=session).bulk_set(models, grant_ids, revoke_ids, created_by)

    # ------------------------------------------------------------------
    # Operator groups
    # ------------------------------------------------------------------

    async def create_group(self, provider_id: str, name: str, description: str = "") -> OperatorGroupModel:
        group = OperatorGroupModel(group_id=new_id(), provider_id=provider_id, name=name, description=description)
        async with self.session() as session, session.begin():
            await OperatorGroupRepository(session=session).add(group)
        return group

    async def get_group(self, group_id: str) -> OperatorGroupModel | None:
        async with self.session() as session:
            return await OperatorGroupRepository(session=session).get_one_or_none(group_id=group_id)

    async def list_groups(self, provider_id: str) -> list[OperatorGroupModel]:
        async with self.session() as session:
            return list(await OperatorGroupRepository(session=session).list_for_provider(provider_id))

    async def update_group(
        self, group_id: str, *, name: str | None = None, description: str | None = None
    ) -> OperatorGroupModel | None:
        async with self.session() as session, session.begin():
            group = await OperatorGroupRepository(session=session).get_one_or_none(group_id=group_id)
            if group is None:
                return None
            if name is not None:
                group.name = name
            if description is not None:
                group.description = description
        return group

    async def delete_group(self, group_id: str) -> None:
        """Delete a group; its memberships cascade."""
        async with self.session() as session, session.begin():
            repo = OperatorGroupRepository(session=session)
            if await repo.get_one_or_none(group_id=group_id) is not None:
                await repo.delete(group_id)

    async def add_group_member(self, group_id: str, operator_id: str) -> None:
        async with self.session() as session, session.begin():
            await OperatorGroupRepository(session=session).add_member(group_id, operator_id)

    async def remove_group_member(self, group_id: str, operator_id: str) -> None:
        async with self.session() as session, session.begin():
            await OperatorGroupRepository(session=session).remove_member(group_id, operator_id)

    async def list_group_members(self, group_id: str) -> list[str]:
        async with self.session() as session:
            return await OperatorGroupRepository(session=session).list_members(group_id)

    # ------------------------------------------------------------------
    # Forensic flow records
    # ------------------------------------------------------------------

    async def insert_flow_step(self, record: FlowStepModel) -> str:
        """Persist a forensic flow step and return its id."""
        record.id = record.id or new_id()
        record.created_at = record.created_at or _now()
        async with self.session() as session, session.begin():
            await FlowStepRepository(session=session).add(record, auto_refresh=False)
        return record.id

    async def get_flow_step(self, step_id: str) -> FlowStepModel:
        """Return a forensic flow step.

        Raises:
            FlowStepNotFoundError: If it does not exist.
        """
        async with self.session() as session:
            record = await FlowStepRepository(session=session).get_one_or_none(id=step_id)
        if record is None:
            raise FlowStepNotFoundError(step_id)
        return record

    async def list_flow_steps(self, flow_id: str) -> list[FlowStepModel]:
        async with self.session() as session:
            return list(await FlowStepRepository(session=session).list_for_flow(flow_id))

    async def list_original_flow_steps(self, model_id: str | None = None) -> list[FlowStepModel]:
        async with self.session() as session:
            return list(await FlowStepRepository(session=session).list_originals(model_id))

    async def create_replay_batch(
        self, original_model: str, replay_model: str, total_steps: int, filter_tag: str = ""
    ) -> str:
        batch = ReplayBatchModel(
            id=new_id(),
            original_model=original_model,
            replay_model=replay_model,
            filter_tag=filter_tag,
            total_steps=total_steps,
            status="running",
        )
        async with self.session() as session, session.begin():
            await ReplayBatchRepository(session=session).add(batch, auto_refresh=False)
        return batch.id

    async def finish_replay_batch(self, batch_id: str, *, status: str, completed: int, failed: int) -> None:
        async with self.session() as session, session.begin():
            batch = await ReplayBatchRepository(session=session).get_one_or_none(id=batch_id)
            if batch is None:
                return
            batch.status = status
            batch.completed = completed
            batch.failed = failed
            batch.completed_at = _now()

    async def get_replay_batch(self, batch_id: str) -> ReplayBatchModel | None:
        async with self.session() as session:
            return await ReplayBatchRepository(session=session).get_one_or_none(id=batch_id)

    # ------------------------------------------------------------------
    # Read-only queries for ``sql`` steps
    # ------------------------------------------------------------------

    async def run_select(self, query: str) -> list[dict[str, Any]]:
        """Run a read-only query and return its rows as column-to-value mappings.

        Raises:
            SqlForbiddenError: If the query does not start with ``SELECT``.
        """
        if not query.strip().upper().startswith("SELECT"):
            raise SqlForbiddenError(query)
        async with self.session() as session:
            result = await session.execute(text(query))
            return [dict(row._mapping) for row in result]
