"""Litestar Refinery - a knowledge refinery core for Litestar.

This package runs operator-defined LLM workflows over the nodes of proof
trees and keeps a forensic record of every step.

Key Features:
    - SQLite stores with WAL, additive migrations and an auditable run log
    - One dispatcher over OpenAI-compatible, Anthropic and Gemini backends
    - Model discovery and a per-user, per-role grant policy
    - Staged workflows with fan-out, retries, timeouts and cancellation
    - Adversarial challenges, Resolutions and replays on proof trees

Example:
    >>> from litestar_refinery import ForensicStore, Dispatcher, WorkflowEngine
    >>>
    >>> store = await ForensicStore.open("flows.db")
    >>> engine = WorkflowEngine(store, Dispatcher([groq]))
    >>> run_id = await engine.execute_workflow(workflow_id, "u1", "operator", body="Water boils at 100C")
"""

from __future__ import annotations

from litestar_refinery.__metadata__ import __project__, __version__
from litestar_refinery.config import LLMSettings, ProviderSettings, RefineryPluginConfig
from litestar_refinery.core import ExecutionContext, RunStatus, StepKind, WorkflowStatus
from litestar_refinery.db import ForensicStore, MainStore, MetricsStore
from litestar_refinery.engine import WorkflowEngine
from litestar_refinery.exceptions import (
    GrantDeniedError,
    ModelUnavailableError,
    ProviderError,
    RefineryError,
    RunCancelledError,
    SchemaMigrationError,
    StepExhaustedError,
    StepTimeoutError,
)
from litestar_refinery.flows import ChallengeRunner, ReplayEngine, ResolutionEngine
from litestar_refinery.llm import CompletionRequest, CompletionResponse, Dispatcher, ModelDiscovery
from litestar_refinery.plugin import RefineryPlugin

__all__ = (
    "ChallengeRunner",
    "CompletionRequest",
    "CompletionResponse",
    "Dispatcher",
    "ExecutionContext",
    "ForensicStore",
    "GrantDeniedError",
    "LLMSettings",
    "MainStore",
    "MetricsStore",
    "ModelDiscovery",
    "ModelUnavailableError",
    "ProviderError",
    "ProviderSettings",
    "RefineryError",
    "RefineryPlugin",
    "RefineryPluginConfig",
    "ReplayEngine",
    "ResolutionEngine",
    "RunCancelledError",
    "RunStatus",
    "SchemaMigrationError",
    "StepExhaustedError",
    "StepKind",
    "StepTimeoutError",
    "WorkflowEngine",
    "WorkflowStatus",
    "__project__",
    "__version__",
)
