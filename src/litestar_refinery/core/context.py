"""Workflow execution context.

This module provides the ExecutionContext dataclass which carries the body,
the pre-prompt and every step output through a workflow run.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

__all__ = ["ExecutionContext"]


@dataclass
class ExecutionContext:
    """State passed from stage to stage during a run.

    The context is owned by the coordinating task of a run. Fan-out siblings
    each receive a deep copy from :meth:`copy`, so nothing one sibling writes
    is visible to the others until the engine merges outputs after the join.

    Attributes:
        body: The text the workflow operates on.
        pre_prompt: Instance-level instruction, or the workflow's template.
        previous_response: Output of the most recently completed step.
        responses: Step name to output for every completed step.
        fan_results: JSON mapping of the last fan-out group's outputs.
        user_id: Principal running the workflow.
        role: Role of that principal.
        workflow_id: The workflow being executed.
        run_id: The run this context belongs to.
        node_id: Optional node the run is attached to.

    Example:
        >>> ctx = ExecutionContext(body="Claim X", user_id="u1", role="operator")
        >>> ctx.record("s1", "A")
        >>> ctx.previous_response
        'A'
    """

    body: str = ""
    pre_prompt: str = ""
    previous_response: str = ""
    responses: dict[str, str] = field(default_factory=dict)
    fan_results: str | None = None
    user_id: str = ""
    role: str = ""
    workflow_id: str = ""
    run_id: str = ""
    node_id: str | None = None

    def record(self, step_name: str, output: str) -> None:
        """Store a step output and make it the previous response.

        Args:
            step_name: Name of the completed step.
            output: Its output text.
        """
        self.responses[step_name] = output
        self.previous_response = output

    def step_output(self, step_name: str) -> str:
        """Return the output of a completed step, or an empty string."""
        return self.responses.get(step_name, "")

    def copy(self) -> ExecutionContext:
        """Return a private deep copy for a fan-out sibling."""
        return copy.deepcopy(self)

    def input_blob(self) -> dict[str, Any]:
        """Return the input snapshot persisted with each step run."""
        return {
            "body": self.body,
            "pre_prompt": self.pre_prompt,
            "previous_response": self.previous_response,
        }
