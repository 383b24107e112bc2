"""Adversarial challenges against proof trees."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from litestar_refinery.core.ids import new_id
from litestar_refinery.exceptions import NodeNotFoundError
from litestar_refinery.flows.core import get_core_flow
from litestar_refinery.flows.engine import FlowContext
from litestar_refinery.flows.tree import build_tree, serialize_tree

if TYPE_CHECKING:
    from litestar_refinery.db.main import MainStore
    from litestar_refinery.engine.workflow import WorkflowEngine
    from litestar_refinery.flows.engine import FlowEngine, FlowResult
    from litestar_refinery.flows.tree import TreeNode

__all__ = ["SCORE_PATTERN", "SUMMARY_LIMIT", "ChallengeResult", "ChallengeRunner", "extract_scoring"]

logger = logging.getLogger(__name__)

SCORE_PATTERN = re.compile(
    r"(?i)(?:overall|resistance|fidelity|detection|confidence|deceptiveness)?\s*score[:\s]+(\d+)"
)
"""Matches ``score: 75``, ``Score: 85/100``, ``resistance score: 60`` and the like."""

SUMMARY_LIMIT = 500


@dataclass
class ChallengeResult:
    """Outcome of a challenge.

    Attributes:
        challenge_id: Identifier of the challenge, also the flow id of its forensic rows.
        flow_name: The flow that was run.
        flow_result: Per-step results.
        score: Last score found in the final step's answer, ``0`` when none.
        summary: Start of the final step's answer, or why there is none.
    """

    challenge_id: str
    flow_name: str
    flow_result: FlowResult
    score: float
    summary: str


def summarize(content: str) -> str:
    """Shorten ``content`` to at most :data:`SUMMARY_LIMIT` characters.

    The cut falls after the last full stop of the window when that stop lies
    past character 200; otherwise the window is kept and ``...`` appended.
    """
    if len(content) <= SUMMARY_LIMIT:
        return content
    window = content[:SUMMARY_LIMIT]
    stop = window.rfind(".")
    if stop > 200:
        return window[: stop + 1]
    return window + "..."


def extract_scoring(result: FlowResult) -> tuple[float, str]:
    """Return the score and summary of a flow's final step."""
    last = result.last_step
    if last is None:
        return 0.0, "no steps completed"
    if last.error is not None:
        return 0.0, f"last step failed: {last.error}"
    if last.response is None:
        return 0.0, "no response from last step"

    content = last.response.content
    matches = SCORE_PATTERN.findall(content)
    score = float(matches[-1]) if matches else 0.0
    return score, summarize(content)


class ChallengeRunner:
    """Run adversarial flows or stored workflows against proof trees.

    Args:
        flow_engine: Engine for the built-in thinking flows.
        main_store: Store holding the trees, used when challenging a node by id.
        workflow_engine: Engine for workflow-driven challenges.
    """

    def __init__(
        self,
        flow_engine: FlowEngine,
        main_store: MainStore | None = None,
        workflow_engine: WorkflowEngine | None = None,
    ) -> None:
        self.flow_engine = flow_engine
        self.main_store = main_store
        self.workflow_engine = workflow_engine

    async def run_challenge(
        self,
        flow_name: str,
        tree: TreeNode,
        target_provider: str | None = None,
        target_model: str | None = None,
    ) -> ChallengeResult:
        """Run the built-in flow ``flow_name`` with the serialized tree as body.

        Steps marked ``$TARGET`` use ``target_provider`` and ``target_model``.

        Raises:
            ValueError: If ``flow_name`` is not a built-in flow.
        """
        flow = get_core_flow(flow_name)
        challenge_id = new_id()
        logger.info(
            "running challenge %s: flow %s on node %s against %s",
            challenge_id,
            flow_name,
            tree.node_id,
            target_provider or "routing",
        )
        context = FlowContext(
            flow_id=challenge_id,
            node_id=tree.node_id,
            body=serialize_tree(tree),
            target_provider=target_provider or "",
            target_model=target_model or "",
        )
        flow_result = await self.flow_engine.execute(flow, context)
        score, summary = extract_scoring(flow_result)
        return ChallengeResult(
            challenge_id=challenge_id,
            flow_name=flow_name,
            flow_result=flow_result,
            score=score,
            summary=summary,
        )

    async def challenge_node(
        self,
        flow_name: str,
        node_id: str,
        target_provider: str | None = None,
        target_model: str | None = None,
    ) -> ChallengeResult:
        """Load the tree under ``node_id`` and challenge it.

        Raises:
            NodeNotFoundError: If the node does not exist or is deleted.
        """
        tree = await self.load_tree(node_id)
        return await self.run_challenge(flow_name, tree, target_provider, target_model)

    async def run_workflow_challenge(
        self,
        workflow_id: str,
        tree: TreeNode,
        user_id: str,
        role: str,
        pre_prompt: str | None = None,
    ) -> str:
        """Execute a stored workflow with the serialized tree as body and return the run id."""
        if self.workflow_engine is None:
            msg = "ChallengeRunner has no workflow engine"
            raise RuntimeError(msg)
        return await self.workflow_engine.execute_workflow(
            workflow_id,
            user_id,
            role,
            serialize_tree(tree),
            pre_prompt=pre_prompt,
            node_id=tree.node_id,
        )

    async def load_tree(self, node_id: str, max_depth: int = 50) -> TreeNode:
        if self.main_store is None:
            msg = "ChallengeRunner has no main store"
            raise RuntimeError(msg)
        tree = build_tree(await self.main_store.get_tree(node_id, max_depth), node_id)
        if tree is None:
            raise NodeNotFoundError(node_id)
        return tree
