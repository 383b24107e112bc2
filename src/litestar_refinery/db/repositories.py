"""Repository implementations for the refinery stores.

This module provides async repositories for the forensic, main and metrics
models using advanced-alchemy's repository pattern. Repositories are bound to
one session; the store facades create a session per operation and compose
repositories inside it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from advanced_alchemy.repository import SQLAlchemyAsyncRepository
from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from litestar_refinery.core.grants import WILDCARD, GrantDecision, grant_candidates
from litestar_refinery.core.ids import new_id
from litestar_refinery.core.types import GrantEffect, GranteeKind, Role, RunStatus, StepRunStatus
from litestar_refinery.db.models import (
    AuditLogModel,
    AvailableModel,
    CriteriaListModel,
    FlowStepModel,
    LLMCallModel,
    ModelGrantModel,
    NodeModel,
    OperatorGroupMemberModel,
    OperatorGroupModel,
    ReplayBatchModel,
    VoteModel,
    WorkflowModel,
    WorkflowRunModel,
    WorkflowStepModel,
    WorkflowStepRunModel,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

__all__ = [
    "AuditLogRepository",
    "AvailableModelRepository",
    "CriteriaListRepository",
    "FlowStepRepository",
    "LLMCallRepository",
    "ModelGrantRepository",
    "NodeRepository",
    "OperatorGroupRepository",
    "ReplayBatchRepository",
    "StepRunRepository",
    "VoteRepository",
    "WorkflowRepository",
    "WorkflowRunRepository",
    "WorkflowStepRepository",
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


class WorkflowRepository(SQLAlchemyAsyncRepository[WorkflowModel]):
    """Repository for workflow definitions."""

    model_type = WorkflowModel
    id_attribute = "workflow_id"

    async def get_by_name(self, name: str) -> WorkflowModel | None:
        """Get a workflow by its unique name.

        Args:
            name: The workflow name.

        Returns:
            The workflow or None if not found.
        """
        result = await self.session.execute(select(WorkflowModel).where(WorkflowModel.name == name))
        return result.scalar_one_or_none()

    async def list_visible(self, role: str | None = None, status: str | None = None) -> Sequence[WorkflowModel]:
        """List workflows a role may see, optionally filtered by status.

        Operators only see workflows owned by operators; every other role sees
        all workflows.

        Args:
            role: Role of the caller, or None for no role filter.
            status: Optional lifecycle state to filter on.

        Returns:
            Workflows ordered by most recently created first.
        """
        conditions = []
        if role == Role.OPERATOR:
            conditions.append(WorkflowModel.owner_role == Role.OPERATOR.value)
        if status:
            conditions.append(WorkflowModel.status == status)

        stmt = select(WorkflowModel).order_by(WorkflowModel.created_at.desc())
        if conditions:
            stmt = stmt.where(and_(*conditions))
        result = await self.session.execute(stmt)
        return result.scalars().all()


class WorkflowStepRepository(SQLAlchemyAsyncRepository[WorkflowStepModel]):
    """Repository for workflow step definitions."""

    model_type = WorkflowStepModel
    id_attribute = "step_id"

    async def list_for_workflow(self, workflow_id: str) -> Sequence[WorkflowStepModel]:
        """List the steps of a workflow ordered by rank, then name."""
        stmt = (
            select(WorkflowStepModel)
            .where(WorkflowStepModel.workflow_id == workflow_id)
            .order_by(WorkflowStepModel.step_order, WorkflowStepModel.step_name)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def reorder(self, workflow_id: str, orders: Iterable[tuple[str, int]]) -> None:
        """Assign new ranks to several steps of one workflow.

        Args:
            workflow_id: The workflow owning the steps.
            orders: ``(step_id, step_order)`` pairs.
        """
        for step_id, step_order in orders:
            await self.session.execute(
                update(WorkflowStepModel)
                .where(WorkflowStepModel.step_id == step_id, WorkflowStepModel.workflow_id == workflow_id)
                .values(step_order=step_order)
            )


class CriteriaListRepository(SQLAlchemyAsyncRepository[CriteriaListModel]):
    """Repository for criteria lists."""

    model_type = CriteriaListModel
    id_attribute = "list_id"


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class WorkflowRunRepository(SQLAlchemyAsyncRepository[WorkflowRunModel]):
    """Repository for workflow runs."""

    model_type = WorkflowRunModel
    id_attribute = "run_id"

    async def set_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        """Move a run to ``status``, stamping the matching timestamp.

        ``started_at`` is set on the transition to running, ``completed_at``
        on any terminal state.

        Args:
            run_id: The run to update.
            status: The new lifecycle state.
            result: Result blob, written when given.
            error: Error marker, written when given.
        """
        values: dict[str, Any] = {"status": status}
        if status == RunStatus.RUNNING:
            values["started_at"] = _now()
        if status.is_terminal:
            values["completed_at"] = _now()
        if result is not None:
            values["result_json"] = result
        if error is not None:
            values["error"] = error
        await self.session.execute(update(WorkflowRunModel).where(WorkflowRunModel.run_id == run_id).values(**values))

    async def increment_completed(self, run_id: str) -> None:
        """Atomically add one to a run's ``completed_steps``."""
        await self.session.execute(
            update(WorkflowRunModel)
            .where(WorkflowRunModel.run_id == run_id)
            .values(completed_steps=WorkflowRunModel.completed_steps + 1)
        )

    async def list_runs(
        self, workflow_id: str | None = None, batch_id: str | None = None
    ) -> Sequence[WorkflowRunModel]:
        """List runs, newest first, optionally by workflow or batch."""
        stmt = select(WorkflowRunModel).order_by(WorkflowRunModel.created_at.desc())
        if workflow_id:
            stmt = stmt.where(WorkflowRunModel.workflow_id == workflow_id)
        if batch_id:
            stmt = stmt.where(WorkflowRunModel.batch_id == batch_id)
        result = await self.session.execute(stmt)
        return result.scalars().all()


class StepRunRepository(SQLAlchemyAsyncRepository[WorkflowStepRunModel]):
    """Repository for step runs."""

    model_type = WorkflowStepRunModel
    id_attribute = "step_run_id"

    async def list_for_run(self, run_id: str) -> Sequence[WorkflowStepRunModel]:
        """List step runs of a run in execution order."""
        stmt = (
            select(WorkflowStepRunModel)
            .where(WorkflowStepRunModel.run_id == run_id)
            .order_by(WorkflowStepRunModel.step_order, WorkflowStepRunModel.started_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def count_completed(self, run_id: str) -> int:
        """Count the step runs of a run in state ``completed``."""
        stmt = select(func.count()).where(
            WorkflowStepRunModel.run_id == run_id,
            WorkflowStepRunModel.status == StepRunStatus.COMPLETED,
        )
        return (await self.session.execute(stmt)).scalar_one()


class AuditLogRepository(SQLAlchemyAsyncRepository[AuditLogModel]):
    """Repository for the append-only audit log."""

    model_type = AuditLogModel
    id_attribute = "log_id"

    async def list_for_run(self, run_id: str | None) -> Sequence[AuditLogModel]:
        """List a run's events in insert order; ``None`` lists run-less events."""
        condition = AuditLogModel.run_id.is_(None) if run_id is None else AuditLogModel.run_id == run_id
        stmt = select(AuditLogModel).where(condition).order_by(AuditLogModel.log_id)
        result = await self.session.execute(stmt)
        return result.scalars().all()


# ---------------------------------------------------------------------------
# Model catalogue and grants
# ---------------------------------------------------------------------------


class AvailableModelRepository(SQLAlchemyAsyncRepository[AvailableModel]):
    """Repository for the model catalogue."""

    model_type = AvailableModel
    id_attribute = "model_id"

    async def upsert_discovered(
        self,
        provider: str,
        model_name: str,
        display_name: str | None = None,
        context_window: int | None = None,
        capabilities: dict[str, Any] | None = None,
    ) -> None:
        """Insert or refresh a discovered model, marking it available.

        An existing row keeps its display name and context window when the
        new values are null, keeps its discovery timestamp and its owner.

        Args:
            provider: Backend name.
            model_name: Bare model name as reported by the backend.
            display_name: Optional human name.
            context_window: Optional context size in tokens.
            capabilities: Optional capability blob.
        """
        now = _now()
        stmt = sqlite_insert(AvailableModel).values(
            model_id=f"{provider}/{model_name}",
            provider=provider,
            model_name=model_name,
            display_name=display_name,
            context_window=context_window,
            is_available=True,
            last_checked=now,
            last_error=None,
            capabilities_json=capabilities or {},
            discovered_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[AvailableModel.model_id],
            set_={
                "display_name": func.coalesce(stmt.excluded.display_name, AvailableModel.display_name),
                "context_window": func.coalesce(stmt.excluded.context_window, AvailableModel.context_window),
                "is_available": True,
                "last_checked": stmt.excluded.last_checked,
                "last_error": None,
            },
        )
        await self.session.execute(stmt)

    async def mark_unavailable(self, model_id: str, error: str) -> None:
        """Flag one model unavailable with the error that caused it."""
        await self.session.execute(
            update(AvailableModel)
            .where(AvailableModel.model_id == model_id)
            .values(is_available=False, last_checked=_now(), last_error=error)
        )

    async def mark_provider_unavailable(self, provider: str, error: str) -> int:
        """Flag every model of ``provider`` unavailable.

        Returns:
            Number of rows touched.
        """
        result = await self.session.execute(
            update(AvailableModel)
            .where(AvailableModel.provider == provider)
            .values(is_available=False, last_checked=_now(), last_error=error)
        )
        return result.rowcount or 0

    async def list_models(self, provider: str | None = None, *, available_only: bool = False) -> Sequence[AvailableModel]:
        """List catalogued models ordered by provider then name."""
        stmt = select(AvailableModel).order_by(AvailableModel.provider, AvailableModel.model_name)
        if provider:
            stmt = stmt.where(AvailableModel.provider == provider)
        if available_only:
            stmt = stmt.where(AvailableModel.is_available.is_(True))
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_allowed(self, user_id: str, role: str) -> Sequence[AvailableModel]:
        """List available models a principal may pick.

        That is every ownerless (auto-discovered) model plus every model an
        ``allow`` grant names for the user or their role.
        """
        granted = select(ModelGrantModel.model_id).where(
            ModelGrantModel.effect == GrantEffect.ALLOW,
            or_(
                and_(ModelGrantModel.grantee_type == GranteeKind.USER, ModelGrantModel.grantee_id == user_id),
                and_(ModelGrantModel.grantee_type == GranteeKind.ROLE, ModelGrantModel.grantee_id == role),
            ),
        )
        stmt = (
            select(AvailableModel)
            .where(
                AvailableModel.is_available.is_(True),
                or_(AvailableModel.owner_id.is_(None), AvailableModel.model_id.in_(granted)),
            )
            .order_by(AvailableModel.provider, AvailableModel.model_name)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class ModelGrantRepository(SQLAlchemyAsyncRepository[ModelGrantModel]):
    """Repository for model grants."""

    model_type = ModelGrantModel
    id_attribute = "grant_id"

    async def check(self, user_id: str, role: str, model_id: str, step_type: str) -> GrantDecision:
        """Evaluate the grant hierarchy for one model use.

        All rows that could match are fetched in one query, then probed in the
        fixed priority order of :func:`grant_candidates`; the first hit wins.

        Args:
            user_id: The principal.
            role: The principal's role.
            model_id: The model the step wants.
            step_type: The step kind.

        Returns:
            The decision; ``explicit`` is False when no row matched.
        """
        candidates = grant_candidates(user_id, role, model_id, step_type)
        models = {c.model_id for c in candidates}
        stmt = select(ModelGrantModel).where(
            or_(
                and_(ModelGrantModel.grantee_type == GranteeKind.USER, ModelGrantModel.grantee_id == user_id),
                and_(ModelGrantModel.grantee_type == GranteeKind.ROLE, ModelGrantModel.grantee_id == role),
            ),
            ModelGrantModel.model_id.in_(sorted(models)),
            ModelGrantModel.step_type.in_([step_type, WILDCARD]),
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        effects = {(row.grantee_type.value, row.grantee_id, row.model_id, row.step_type): row.effect for row in rows}
        for candidate in candidates:
            effect = effects.get((candidate.grantee_kind.value, candidate.grantee_id, candidate.model_id, candidate.step_type))
            if effect is not None:
                return GrantDecision(allowed=effect == GrantEffect.ALLOW, explicit=True)
        return GrantDecision(allowed=True, explicit=False)

    async def list_grants(
        self, grantee_type: GranteeKind | None = None, grantee_id: str | None = None
    ) -> Sequence[ModelGrantModel]:
        """List grants, optionally for one grantee."""
        stmt = select(ModelGrantModel).order_by(ModelGrantModel.created_at, ModelGrantModel.grant_id)
        if grantee_type:
            stmt = stmt.where(ModelGrantModel.grantee_type == grantee_type)
        if grantee_id:
            stmt = stmt.where(ModelGrantModel.grantee_id == grantee_id)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def bulk_set(
        self,
        models: Sequence[str],
        grant_ids: Sequence[str],
        revoke_ids: Sequence[str],
        created_by: str,
    ) -> None:
        """Revoke then grant catch-all step access to ``models`` for several users.

        Revocation deletes ``(user, id, model, '*')`` rows; granting inserts
        ``(user, id, model, '*', allow)`` rows and ignores duplicates. The
        caller owns the transaction.
        """
        for grantee_id in revoke_ids:
            for model_id in models:
                await self.session.execute(
                    delete(ModelGrantModel).where(
                        ModelGrantModel.grantee_type == GranteeKind.USER,
                        ModelGrantModel.grantee_id == grantee_id,
                        ModelGrantModel.model_id == model_id,
                        ModelGrantModel.step_type == WILDCARD,
                    )
                )
        for grantee_id in grant_ids:
            for model_id in models:
                stmt = sqlite_insert(ModelGrantModel).values(
                    grant_id=new_id(),
                    grantee_type=GranteeKind.USER,
                    grantee_id=grantee_id,
                    model_id=model_id,
                    step_type=WILDCARD,
                    effect=GrantEffect.ALLOW,
                    created_by=created_by,
                    created_at=_now(),
                )
                await self.session.execute(
                    stmt.on_conflict_do_nothing(
                        index_elements=[
                            ModelGrantModel.grantee_type,
                            ModelGrantModel.grantee_id,
                            ModelGrantModel.model_id,
                            ModelGrantModel.step_type,
                        ]
                    )
                )


class OperatorGroupRepository(SQLAlchemyAsyncRepository[OperatorGroupModel]):
    """Repository for operator groups and their memberships."""

    model_type = OperatorGroupModel
    id_attribute = "group_id"

    async def list_for_provider(self, provider_id: str) -> Sequence[OperatorGroupModel]:
        """List a provider's groups by name."""
        stmt = (
            select(OperatorGroupModel)
            .where(OperatorGroupModel.provider_id == provider_id)
            .order_by(OperatorGroupModel.name)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def add_member(self, group_id: str, operator_id: str) -> None:
        """Add an operator to a group; adding twice is a no-op."""
        stmt = sqlite_insert(OperatorGroupMemberModel).values(
            group_id=group_id, operator_id=operator_id, added_at=_now()
        )
        await self.session.execute(stmt.on_conflict_do_nothing())

    async def remove_member(self, group_id: str, operator_id: str) -> None:
        """Remove an operator from a group."""
        await self.session.execute(
            delete(OperatorGroupMemberModel).where(
                OperatorGroupMemberModel.group_id == group_id,
                OperatorGroupMemberModel.operator_id == operator_id,
            )
        )

    async def list_members(self, group_id: str) -> list[str]:
        """List operator ids of a group in the order they were added."""
        stmt = (
            select(OperatorGroupMemberModel.operator_id)
            .where(OperatorGroupMemberModel.group_id == group_id)
            .order_by(OperatorGroupMemberModel.added_at, OperatorGroupMemberModel.operator_id)
        )
        return list((await self.session.execute(stmt)).scalars().all())


# ---------------------------------------------------------------------------
# Forensic flow records
# ---------------------------------------------------------------------------


class FlowStepRepository(SQLAlchemyAsyncRepository[FlowStepModel]):
    """Repository for forensic flow step records."""

    model_type = FlowStepModel

    async def list_for_flow(self, flow_id: str) -> Sequence[FlowStepModel]:
        """List a flow's records by step index, replays after their original."""
        stmt = (
            select(FlowStepModel)
            .where(FlowStepModel.flow_id == flow_id)
            .order_by(FlowStepModel.step_index, FlowStepModel.created_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_originals(self, model_id: str | None = None) -> Sequence[FlowStepModel]:
        """List records that are not themselves replays, oldest first."""
        stmt = select(FlowStepModel).where(FlowStepModel.replay_of_id.is_(None)).order_by(FlowStepModel.created_at)
        if model_id:
            stmt = stmt.where(FlowStepModel.model_id == model_id)
        result = await self.session.execute(stmt)
        return result.scalars().all()


class ReplayBatchRepository(SQLAlchemyAsyncRepository[ReplayBatchModel]):
    """Repository for replay batches."""

    model_type = ReplayBatchModel


# ---------------------------------------------------------------------------
# Main store
# ---------------------------------------------------------------------------


class NodeRepository(SQLAlchemyAsyncRepository[NodeModel]):
    """Repository for proof-tree nodes."""

    model_type = NodeModel


class VoteRepository(SQLAlchemyAsyncRepository[VoteModel]):
    """Repository for votes."""

    model_type = VoteModel

    async def get_vote(self, user_id: str, node_id: str) -> VoteModel | None:
        """Return the user's current vote on a node, if any."""
        stmt = select(VoteModel).where(VoteModel.user_id == user_id, VoteModel.node_id == node_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Metrics store
# ---------------------------------------------------------------------------


class LLMCallRepository(SQLAlchemyAsyncRepository[LLMCallModel]):
    """Repository for recorded LLM calls."""

    model_type = LLMCallModel

    async def summary(self) -> list[dict[str, Any]]:
        """Aggregate call counts, tokens and mean latency per provider and model."""
        stmt = (
            select(
                LLMCallModel.provider,
                LLMCallModel.model,
                func.count().label("calls"),
                func.sum(LLMCallModel.tokens_in).label("tokens_in"),
                func.sum(LLMCallModel.tokens_out).label("tokens_out"),
                func.avg(LLMCallModel.latency_ms).label("avg_latency_ms"),
                func.sum(case((LLMCallModel.success.is_(True), 0), else_=1)).label("errors"),
            )
            .group_by(LLMCallModel.provider, LLMCallModel.model)
            .order_by(LLMCallModel.provider, LLMCallModel.model)
        )
        return [dict(row._mapping) for row in await self.session.execute(stmt)]
