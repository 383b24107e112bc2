"""Core domain module for litestar-refinery.

This module exports the enums, the execution context and the pure helpers the
engine and the stores build on.
"""

from __future__ import annotations

from litestar_refinery.core.context import ExecutionContext
from litestar_refinery.core.grants import GrantCandidate, GrantDecision, grant_candidates, split_model
from litestar_refinery.core.ids import new_id
from litestar_refinery.core.models import AuditEntry, RunView, StepRunView
from litestar_refinery.core.template import render_template
from litestar_refinery.core.types import (
    AuditEventType,
    ConfigBlob,
    GrantEffect,
    GranteeKind,
    ProviderKind,
    Role,
    RunStatus,
    StepKind,
    StepRunStatus,
    WorkflowStatus,
)

__all__ = [
    "AuditEntry",
    "AuditEventType",
    "ConfigBlob",
    "ExecutionContext",
    "GrantCandidate",
    "GrantDecision",
    "GrantEffect",
    "GranteeKind",
    "ProviderKind",
    "Role",
    "RunStatus",
    "RunView",
    "StepKind",
    "StepRunStatus",
    "StepRunView",
    "WorkflowStatus",
    "grant_candidates",
    "new_id",
    "render_template",
    "split_model",
]
