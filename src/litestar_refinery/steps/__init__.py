"""Step executors for litestar-refinery.

Each step kind has one executor; the engine looks executors up by kind.
"""

from __future__ import annotations

from litestar_refinery.core.types import StepKind
from litestar_refinery.steps.base import StepExecutor, StepOutput, StepServices
from litestar_refinery.steps.check import CHECK_SYSTEM_PROMPT, CheckStepExecutor, build_check_prompt
from litestar_refinery.steps.http import HTTP_STEP_TIMEOUT, MAX_RESPONSE_BYTES, HTTPStepExecutor
from litestar_refinery.steps.llm import LLMStepExecutor
from litestar_refinery.steps.sql import SQLStepExecutor

__all__ = [
    "CHECK_SYSTEM_PROMPT",
    "HTTP_STEP_TIMEOUT",
    "MAX_RESPONSE_BYTES",
    "CheckStepExecutor",
    "HTTPStepExecutor",
    "LLMStepExecutor",
    "SQLStepExecutor",
    "StepExecutor",
    "StepOutput",
    "StepServices",
    "default_executors",
]


def default_executors() -> dict[StepKind, StepExecutor]:
    """Return a fresh registry holding the built-in executor of every step kind."""
    executors: list[StepExecutor] = [
        LLMStepExecutor(),
        SQLStepExecutor(),
        HTTPStepExecutor(),
        CheckStepExecutor(),
    ]
    return {executor.step_type: executor for executor in executors}
