"""Workflow execution engine for litestar-refinery."""

from __future__ import annotations

from litestar_refinery.engine.graph import StageGroup, group_stages
from litestar_refinery.engine.workflow import CANCELLED_ERROR, WorkflowEngine

__all__ = ["CANCELLED_ERROR", "StageGroup", "WorkflowEngine", "group_stages"]
