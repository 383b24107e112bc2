"""Proof-tree flows: thinking flows, challenges, Resolutions, replay and seeds."""

from __future__ import annotations

from litestar_refinery.flows.challenge import ChallengeResult, ChallengeRunner, extract_scoring
from litestar_refinery.flows.core import core_flows, flow_names, get_core_flow, seed_core_workflows
from litestar_refinery.flows.engine import (
    FlowConfig,
    FlowContext,
    FlowEngine,
    FlowResult,
    FlowStepConfig,
    FlowStepResult,
)
from litestar_refinery.flows.replay import ReplayBatchResult, ReplayEngine, ReplayResult
from litestar_refinery.flows.resolution import RenderResult, ResolutionEngine, ResolutionResult
from litestar_refinery.flows.tree import TreeNode, build_tree, serialize_tree

__all__ = [
    "ChallengeResult",
    "ChallengeRunner",
    "FlowConfig",
    "FlowContext",
    "FlowEngine",
    "FlowResult",
    "FlowStepConfig",
    "FlowStepResult",
    "RenderResult",
    "ReplayBatchResult",
    "ReplayEngine",
    "ReplayResult",
    "ResolutionEngine",
    "ResolutionResult",
    "TreeNode",
    "build_tree",
    "core_flows",
    "extract_scoring",
    "flow_names",
    "get_core_flow",
    "seed_core_workflows",
    "serialize_tree",
]
