"""Persistence for litestar-refinery.

Three embedded SQLite stores, each opened with :meth:`Database.open`:

- :class:`ForensicStore`: workflows, runs, audit log, model catalogue and grants.
- :class:`MainStore`: the node tree and votes.
- :class:`MetricsStore`: LLM call metrics, written through :class:`MetricsRecorder`.
"""

from __future__ import annotations

from litestar_refinery.db.connection import BUSY_TIMEOUT_MS, Database, is_busy_error, is_duplicate_column_error
from litestar_refinery.db.forensic import ALLOWED_TRANSITIONS, ForensicStore, allowed_step_types
from litestar_refinery.db.main import VOTE_MAX_ATTEMPTS, MainStore
from litestar_refinery.db.metrics import LLMCallRecord, MetricsRecorder, MetricsStore
from litestar_refinery.db.models import (
    AuditLogModel,
    AvailableModel,
    CriteriaListModel,
    FlowStepModel,
    ForensicBase,
    LLMCallModel,
    MainBase,
    MetricsBase,
    ModelGrantModel,
    NodeModel,
    OperatorGroupMemberModel,
    OperatorGroupModel,
    ReplayBatchModel,
    VisibilityStratumModel,
    VoteModel,
    WorkflowModel,
    WorkflowRunModel,
    WorkflowStepModel,
    WorkflowStepRunModel,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BUSY_TIMEOUT_MS",
    "VOTE_MAX_ATTEMPTS",
    "AuditLogModel",
    "AvailableModel",
    "CriteriaListModel",
    "Database",
    "FlowStepModel",
    "ForensicBase",
    "ForensicStore",
    "LLMCallModel",
    "LLMCallRecord",
    "MainBase",
    "MainStore",
    "MetricsBase",
    "MetricsRecorder",
    "MetricsStore",
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
    "allowed_step_types",
    "is_busy_error",
    "is_duplicate_column_error",
]
