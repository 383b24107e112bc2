"""Tests for stage grouping."""

from __future__ import annotations

import pytest

from litestar_refinery.core.types import StepKind
from litestar_refinery.db.models import WorkflowStepModel
from litestar_refinery.engine.graph import group_stages


def _step(order: int, name: str) -> WorkflowStepModel:
    return WorkflowStepModel(step_id=name, workflow_id="wf", step_order=order, step_name=name, step_type=StepKind.LLM)


@pytest.mark.unit
class TestGroupStages:
    """Tests for group_stages."""

    def test_empty(self) -> None:
        """Test a workflow without steps has no stages."""
        assert group_stages([]) == []

    def test_groups_by_order_ascending(self) -> None:
        """Test steps are grouped by rank in ascending order."""
        groups = group_stages([_step(3, "s4"), _step(1, "s1"), _step(2, "s3"), _step(2, "s2")])

        assert [group.order for group in groups] == [1, 2, 3]
        assert [group.step_names for group in groups] == [["s1"], ["s2", "s3"], ["s4"]]

    def test_fan_out_flag(self) -> None:
        """Test only groups of two or more steps are fan-outs."""
        groups = group_stages([_step(1, "s1"), _step(2, "s2"), _step(2, "s3")])

        assert not groups[0].is_fan_out
        assert groups[1].is_fan_out

    def test_gaps_in_order(self) -> None:
        """Test sparse ranks still run in ascending order."""
        groups = group_stages([_step(10, "late"), _step(-1, "early")])

        assert [group.step_names for group in groups] == [["early"], ["late"]]
