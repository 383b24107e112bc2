"""Stage grouping of workflow steps.

Steps sharing an order rank form a stage group. Groups run strictly in
ascending rank; the steps inside a group of two or more run concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import groupby
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from litestar_refinery.db.models import WorkflowStepModel

__all__ = ["StageGroup", "group_stages"]


@dataclass
class StageGroup:
    """Steps sharing one order rank.

    Attributes:
        order: The shared rank.
        steps: The steps of the group, by name.
    """

    order: int
    steps: list[WorkflowStepModel] = field(default_factory=list)

    @property
    def is_fan_out(self) -> bool:
        """Whether the group runs its steps concurrently."""
        return len(self.steps) >= 2

    @property
    def step_names(self) -> list[str]:
        return [step.step_name for step in self.steps]


def group_stages(steps: Iterable[WorkflowStepModel]) -> list[StageGroup]:
    """Partition ``steps`` into stage groups in ascending rank.

    The result depends only on the steps' ranks and names, never on the order
    they were passed in.

    Example:
        Ranks ``1, 2, 2, 2, 3`` give three groups, the second a fan-out of three.
    """
    ordered = sorted(steps, key=lambda step: (step.step_order, step.step_name))
    return [
        StageGroup(order=order, steps=list(members))
        for order, members in groupby(ordered, key=lambda step: step.step_order)
    ]
