"""SQLAlchemy models for the refinery stores.

Three logical stores each have their own declarative base and metadata:

- ``ForensicBase``: workflow definitions, runs, step runs, the audit log, the
  model catalogue, grants, operator groups, criteria lists and the forensic
  ``flow_steps`` records.
- ``MainBase``: the node tree, votes and the visibility strata lookup.
- ``MetricsBase``: one row per LLM call.

Column names match attribute names so that raw ``sql`` steps and ORM reads
agree on every field.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from advanced_alchemy.base import CommonTableAttributes
from advanced_alchemy.types import DateTimeUTC
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from litestar_refinery.core.ids import new_id
from litestar_refinery.core.types import (
    GrantEffect,
    GranteeKind,
    RunStatus,
    StepKind,
    StepRunStatus,
    WorkflowStatus,
)

__all__ = [
    "AuditLogModel",
    "AvailableModel",
    "CriteriaListModel",
    "FlowStepModel",
    "ForensicBase",
    "LLMCallModel",
    "MainBase",
    "MetricsBase",
    "ModelGrantModel",
    "NodeModel",
    "OperatorGroupMemberModel",
    "OperatorGroupModel",
    "ReplayBatchModel",
    "VisibilityStratumModel",
    "VoteModel",
    "WorkflowModel",
    "WorkflowRunModel",
    "WorkflowStepModel",
    "WorkflowStepRunModel",
]


# Cross-database JSON type: uses JSONB for PostgreSQL, JSON for others (SQLite, MySQL, etc.)
JSONType = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _str_enum(enum_cls: type, length: int = 16) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        create_constraint=True,
        length=length,
        values_callable=lambda members: [member.value for member in members],
    )


def _id_column(name: str) -> Any:
    return mapped_column(name, String(12), primary_key=True, default=new_id)


class ForensicBase(CommonTableAttributes, DeclarativeBase):
    """Declarative base of the forensic store."""


class MainBase(CommonTableAttributes, DeclarativeBase):
    """Declarative base of the main (node tree) store."""


class MetricsBase(CommonTableAttributes, DeclarativeBase):
    """Declarative base of the metrics store."""


# ---------------------------------------------------------------------------
# Forensic store: workflows
# ---------------------------------------------------------------------------


class WorkflowModel(ForensicBase):
    """A user-defined workflow.

    Attributes:
        workflow_id: 12-character identifier.
        name: Unique human name.
        workflow_type: Free-form type tag (``critique``, ``factcheck``...).
        owner_id: Principal that created the workflow.
        owner_role: Role of the owner at creation time.
        status: Lifecycle state; only ``draft`` workflows accept step changes.
        version: Incremented on resubmission after a rejection.
        pre_prompt: Default pre-prompt template for runs.
    """

    __tablename__ = "workflows"

    workflow_id: Mapped[str] = _id_column("workflow_id")
    name: Mapped[str] = mapped_column(String(255), unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    workflow_type: Mapped[str] = mapped_column(String(64), default="")
    owner_id: Mapped[str] = mapped_column(String(64))
    owner_role: Mapped[str] = mapped_column(String(32), default="operator")
    status: Mapped[WorkflowStatus] = mapped_column(_str_enum(WorkflowStatus), default=WorkflowStatus.DRAFT)
    version: Mapped[int] = mapped_column(Integer, default=1)
    pre_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    validated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow, onupdate=utcnow)


class WorkflowStepModel(ForensicBase):
    """One step of a workflow. Steps sharing ``step_order`` form a parallel group."""

    __tablename__ = "workflow_steps"
    __table_args__ = (
        UniqueConstraint("workflow_id", "step_name", name="uq_workflow_steps_name"),
        Index("ix_workflow_steps_workflow_order", "workflow_id", "step_order"),
    )

    step_id: Mapped[str] = _id_column("step_id")
    workflow_id: Mapped[str] = mapped_column(ForeignKey("workflows.workflow_id", ondelete="CASCADE"))
    step_order: Mapped[int] = mapped_column(Integer)
    step_name: Mapped[str] = mapped_column(String(255))
    step_type: Mapped[StepKind] = mapped_column(_str_enum(StepKind))
    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    prompt_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    config_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    criteria_list_id: Mapped[str | None] = mapped_column(
        ForeignKey("criteria_lists.list_id", ondelete="SET NULL"), nullable=True
    )
    timeout_ms: Mapped[int] = mapped_column(Integer, default=30000)
    retry_max: Mapped[int] = mapped_column(Integer, default=2)
    fan_group: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)


class CriteriaListModel(ForensicBase):
    """An ordered list of natural-language predicates evaluated by ``check`` steps."""

    __tablename__ = "criteria_lists"

    list_id: Mapped[str] = _id_column("list_id")
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    items_json: Mapped[list[str]] = mapped_column(JSONType, default=list)
    owner_id: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow, onupdate=utcnow)


class WorkflowRunModel(ForensicBase):
    """One execution of a workflow.

    Invariant: ``completed_steps`` equals the number of child step runs in
    state ``completed``.
    """

    __tablename__ = "workflow_runs"
    __table_args__ = (
        Index("ix_workflow_runs_workflow", "workflow_id"),
        Index("ix_workflow_runs_batch", "batch_id"),
    )

    run_id: Mapped[str] = _id_column("run_id")
    workflow_id: Mapped[str] = mapped_column(ForeignKey("workflows.workflow_id", ondelete="CASCADE"))
    node_id: Mapped[str | None] = mapped_column(String(12), nullable=True)
    user_id: Mapped[str] = mapped_column(String(64))
    status: Mapped[RunStatus] = mapped_column(_str_enum(RunStatus), default=RunStatus.PENDING)
    pre_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(12), nullable=True)
    total_steps: Mapped[int] = mapped_column(Integer, default=0)
    completed_steps: Mapped[int] = mapped_column(Integer, default=0)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)

    workflow: Mapped[WorkflowModel] = relationship(lazy="joined", innerjoin=True)


class WorkflowStepRunModel(ForensicBase):
    """One executed step of a run, inserted ``running`` and closed exactly once."""

    __tablename__ = "workflow_step_runs"
    __table_args__ = (Index("ix_workflow_step_runs_run", "run_id"),)

    step_run_id: Mapped[str] = _id_column("step_run_id")
    run_id: Mapped[str] = mapped_column(ForeignKey("workflow_runs.run_id", ondelete="CASCADE"))
    step_id: Mapped[str] = mapped_column(ForeignKey("workflow_steps.step_id", ondelete="CASCADE"))
    step_order: Mapped[int] = mapped_column(Integer)
    status: Mapped[StepRunStatus] = mapped_column(_str_enum(StepRunStatus), default=StepRunStatus.RUNNING)
    input_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    output_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    model_used: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_used: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tokens_in: Mapped[int] = mapped_column(Integer, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, default=0)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)

    step: Mapped[WorkflowStepModel] = relationship(lazy="joined", innerjoin=True)


class AuditLogModel(ForensicBase):
    """Append-only audit log; ``log_id`` gives per-run causal order."""

    __tablename__ = "workflow_audit_log"
    __table_args__ = (Index("ix_workflow_audit_log_run", "run_id"),)

    log_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str | None] = mapped_column(
        ForeignKey("workflow_runs.run_id", ondelete="CASCADE"), nullable=True
    )
    step_run_id: Mapped[str | None] = mapped_column(String(12), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64))
    event_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)


# ---------------------------------------------------------------------------
# Forensic store: model catalogue and grants
# ---------------------------------------------------------------------------


class AvailableModel(ForensicBase):
    """A catalogued model keyed by ``<provider>/<name>``.

    ``owner_id`` is null for auto-discovered models, which every principal may
    use unless a grant says otherwise.
    """

    __tablename__ = "available_models"
    __table_args__ = (Index("ix_available_models_provider", "provider"),)

    model_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider: Mapped[str] = mapped_column(String(64))
    model_name: Mapped[str] = mapped_column(String(255))
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context_window: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_available: Mapped[bool] = mapped_column(default=True)
    last_checked: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    capabilities_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    discovered_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class ModelGrantModel(ForensicBase):
    """Allow or deny a principal the use of a model for a step kind.

    ``model_id`` is a literal model, a ``<provider>/*`` wildcard or ``*``;
    ``step_type`` is a step kind or ``*``.
    """

    __tablename__ = "model_grants"
    __table_args__ = (
        UniqueConstraint("grantee_type", "grantee_id", "model_id", "step_type", name="uq_model_grants_target"),
    )

    grant_id: Mapped[str] = _id_column("grant_id")
    grantee_type: Mapped[GranteeKind] = mapped_column(_str_enum(GranteeKind, 8))
    grantee_id: Mapped[str] = mapped_column(String(64))
    model_id: Mapped[str] = mapped_column(String(255))
    step_type: Mapped[str] = mapped_column(String(16), default="*")
    effect: Mapped[GrantEffect] = mapped_column(_str_enum(GrantEffect, 8), default=GrantEffect.ALLOW)
    created_by: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)


class OperatorGroupModel(ForensicBase):
    """A provider-scoped set of operators used for bulk grants."""

    __tablename__ = "operator_groups"
    __table_args__ = (UniqueConstraint("provider_id", "name", name="uq_operator_groups_name"),)

    group_id: Mapped[str] = _id_column("group_id")
    provider_id: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)


class OperatorGroupMemberModel(ForensicBase):
    """Membership of an operator in a group."""

    __tablename__ = "operator_group_members"
    __table_args__ = (PrimaryKeyConstraint("group_id", "operator_id"),)

    group_id: Mapped[str] = mapped_column(ForeignKey("operator_groups.group_id", ondelete="CASCADE"))
    operator_id: Mapped[str] = mapped_column(String(64))
    added_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)


# ---------------------------------------------------------------------------
# Forensic store: thinking-flow records
# ---------------------------------------------------------------------------


class FlowStepModel(ForensicBase):
    """Forensic record of one rendered prompt and its response."""

    __tablename__ = "flow_steps"
    __table_args__ = (
        Index("ix_flow_steps_flow", "flow_id"),
        Index("ix_flow_steps_model", "model_id"),
    )

    id: Mapped[str] = _id_column("id")
    flow_id: Mapped[str] = mapped_column(String(32))
    step_index: Mapped[int] = mapped_column(Integer, default=0)
    node_id: Mapped[str | None] = mapped_column(String(12), nullable=True)
    model_id: Mapped[str] = mapped_column(String(255), default="")
    provider: Mapped[str] = mapped_column(String(64), default="")
    prompt: Mapped[str] = mapped_column(Text, default="")
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_raw: Mapped[str] = mapped_column(Text, default="")
    response_parsed: Mapped[str] = mapped_column(Text, default="")
    tokens_in: Mapped[int] = mapped_column(Integer, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, default=0)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    finish_reason: Mapped[str] = mapped_column(String(64), default="")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    replay_of_id: Mapped[str | None] = mapped_column(ForeignKey("flow_steps.id"), nullable=True)
    dispatch_id: Mapped[str | None] = mapped_column(String(12), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)


class ReplayBatchModel(ForensicBase):
    """Bookkeeping for a bulk replay of flow steps against another model."""

    __tablename__ = "replay_batches"

    id: Mapped[str] = _id_column("id")
    original_model: Mapped[str] = mapped_column(String(255), default="")
    replay_model: Mapped[str] = mapped_column(String(255))
    scope: Mapped[str] = mapped_column(String(32), default="filtered")
    filter_tag: Mapped[str] = mapped_column(String(64), default="")
    total_steps: Mapped[int] = mapped_column(Integer, default=0)
    completed: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default="running")
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Main store
# ---------------------------------------------------------------------------


class NodeModel(MainBase):
    """A node of a proof tree (``claim`` or ``piece``)."""

    __tablename__ = "nodes"
    __table_args__ = (
        CheckConstraint("node_type IN ('piece','claim')", name="ck_nodes_node_type"),
        CheckConstraint("temperature IN ('cold','warm','hot','critical')", name="ck_nodes_temperature"),
        Index("idx_nodes_parent", "parent_id"),
        Index("idx_nodes_root", "root_id"),
        Index("idx_nodes_type", "node_type"),
        Index("idx_nodes_author", "author_id"),
    )

    id: Mapped[str] = _id_column("id")
    parent_id: Mapped[str | None] = mapped_column(ForeignKey("nodes.id"), nullable=True)
    root_id: Mapped[str] = mapped_column(String(12))
    node_type: Mapped[str] = mapped_column(String(16))
    body: Mapped[str] = mapped_column(Text)
    author_id: Mapped[str] = mapped_column(String(64))
    model_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    score: Mapped[int] = mapped_column(Integer, default=0)
    temperature: Mapped[str] = mapped_column(String(16), default="cold")
    child_count: Mapped[int] = mapped_column(Integer, default=0)
    depth: Mapped[int] = mapped_column(Integer, default=0)
    visibility: Mapped[str | None] = mapped_column(String(32), default="public", nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    decomposed_from: Mapped[str | None] = mapped_column(ForeignKey("nodes.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow, onupdate=utcnow)


class VoteModel(MainBase):
    """A +1/-1 vote of a user on a node."""

    __tablename__ = "votes"
    __table_args__ = (
        PrimaryKeyConstraint("user_id", "node_id"),
        CheckConstraint("value IN (-1, 1)", name="ck_votes_value"),
    )

    user_id: Mapped[str] = mapped_column(String(64))
    node_id: Mapped[str] = mapped_column(String(12))
    value: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)


class VisibilityStratumModel(MainBase):
    """Lookup of visibility levels and the minimum role that may read them."""

    __tablename__ = "visibility_strata"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    min_role: Mapped[str] = mapped_column(String(32))
    ordinal: Mapped[int] = mapped_column(Integer)


# ---------------------------------------------------------------------------
# Metrics store
# ---------------------------------------------------------------------------


class LLMCallModel(MetricsBase):
    """One provider attempt as seen by the dispatcher."""

    __tablename__ = "llm_calls"
    __table_args__ = (Index("ix_llm_calls_provider_model", "provider", "model"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(64))
    model: Mapped[str] = mapped_column(String(255), default="")
    tokens_in: Mapped[int] = mapped_column(Integer, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, default=0)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    success: Mapped[bool] = mapped_column(default=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True), default=utcnow)
