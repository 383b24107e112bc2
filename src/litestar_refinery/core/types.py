"""Core type definitions for litestar-refinery.

This module defines the enums shared by the persistence layer, the workflow
engine and the dispatcher. Every member's value is the string stored in the
database.
"""

from __future__ import annotations

from enum import StrEnum, auto
from typing import Any, TypeAlias

__all__ = [
    "AuditEventType",
    "ConfigBlob",
    "GrantEffect",
    "GranteeKind",
    "ProviderKind",
    "Role",
    "RunStatus",
    "StepKind",
    "StepRunStatus",
    "WorkflowStatus",
]

ConfigBlob: TypeAlias = dict[str, Any]
"""Opaque per-step options, e.g. ``{"method": "POST", "authorization": "..."}``."""


class StepKind(StrEnum):
    """Kind of a workflow step.

    Attributes:
        LLM: Render a prompt and send it to the dispatcher.
        CHECK: Evaluate the context against a criteria list through the dispatcher.
        SQL: Run a read-only query against the forensic store.
        HTTP: Fetch a URL.
    """

    LLM = auto()
    CHECK = auto()
    SQL = auto()
    HTTP = auto()


class WorkflowStatus(StrEnum):
    """Lifecycle of a workflow definition.

    Attributes:
        DRAFT: Editable; cannot be run by operators.
        ACTIVE: Validated and runnable; steps are frozen.
        ARCHIVED: Retired.
        REJECTED: Refused at validation; may be resubmitted as draft.
    """

    DRAFT = auto()
    ACTIVE = auto()
    ARCHIVED = auto()
    REJECTED = auto()


class RunStatus(StrEnum):
    """Lifecycle of a workflow run.

    Attributes:
        PENDING: Created, no stage dispatched yet.
        RUNNING: Stages are executing.
        COMPLETED: Every stage finished successfully.
        FAILED: A step exhausted its attempts.
        CANCELLED: The caller's cancellation signal was observed between stages.
    """

    PENDING = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}


class StepRunStatus(StrEnum):
    """Lifecycle of a single step execution."""

    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()


class GranteeKind(StrEnum):
    """Who a model grant applies to."""

    USER = auto()
    ROLE = auto()


class GrantEffect(StrEnum):
    """Effect of a matching model grant."""

    ALLOW = auto()
    DENY = auto()


class Role(StrEnum):
    """Principal roles known to the step-kind policy."""

    OPERATOR = auto()
    PROVIDER = auto()
    OPERATOR_ADMIN = auto()
    ADMIN = auto()


class ProviderKind(StrEnum):
    """Wire family spoken by an LLM backend."""

    OPENAI = auto()
    ANTHROPIC = auto()
    GEMINI = auto()


class AuditEventType(StrEnum):
    """Event kinds written to the per-run audit log."""

    RUN_STARTED = auto()
    RUN_COMPLETED = auto()
    STEP_STARTED = auto()
    STEP_RETRIED = auto()
    STEP_COMPLETED = auto()
    STEP_FAILED = auto()
    STEP_PERSIST_FAILED = auto()
    FAN_OUT_STARTED = auto()
    FAN_IN_WAITING = auto()
    FAN_IN_COMPLETED = auto()
    MODEL_DISCOVERED = auto()
