"""Read models returned to callers polling runs.

These dataclasses are what the forensic store hands out for runs, step runs
and audit entries; every nullable column is an explicit optional field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from litestar_refinery.core.types import RunStatus, StepRunStatus

__all__ = ["AuditEntry", "RunView", "StepRunView"]


@dataclass
class RunView:
    """A workflow run as seen by the caller.

    Attributes:
        run_id: Identifier of the run.
        workflow_id: The executed workflow.
        workflow_name: Its name at read time.
        status: Current lifecycle state.
        total_steps: Number of steps in the workflow.
        completed_steps: Number of step runs that completed.
        user_id: The initiating principal.
        node_id: Optional node the run is attached to.
        pre_prompt: Instance-level pre-prompt, if one was given.
        batch_id: Batch the run belongs to, if any.
        result: Step name to output, once completed.
        error: Failure or cancellation marker.
        started_at: When the run moved to running.
        completed_at: When the run reached a terminal state.
        created_at: When the run was created.
    """

    run_id: str
    workflow_id: str
    workflow_name: str
    status: RunStatus
    total_steps: int
    completed_steps: int
    user_id: str
    node_id: str | None = None
    pre_prompt: str | None = None
    batch_id: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class StepRunView:
    """One executed step of a run."""

    step_run_id: str
    run_id: str
    step_id: str
    step_name: str
    step_type: str
    step_order: int
    status: StepRunStatus
    input: dict[str, Any] | None = None
    output: str | None = None
    model_used: str | None = None
    provider_used: str | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    attempt: int = 0
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class AuditEntry:
    """One row of a run's audit log, in insert order."""

    log_id: int
    event_type: str
    run_id: str | None = None
    step_run_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
