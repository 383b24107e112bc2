"""Proof tree assembly and text serialization."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from litestar_refinery.db.models import NodeModel

__all__ = ["TreeNode", "build_tree", "serialize_tree"]


@dataclass
class TreeNode:
    """A node of a proof tree with its children attached."""

    node_id: str
    node_type: str
    body: str
    score: int = 0
    temperature: str = "cold"
    model_id: str | None = None
    children: list[TreeNode] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: NodeModel) -> TreeNode:
        return cls(
            node_id=row.id,
            node_type=row.node_type,
            body=row.body,
            score=row.score or 0,
            temperature=row.temperature or "cold",
            model_id=row.model_id,
        )


def build_tree(rows: Iterable[NodeModel], root_id: str | None = None) -> TreeNode | None:
    """Attach rows to their parents and return the root.

    ``rows`` must list parents before their children, as
    :meth:`MainStore.get_tree` does. Rows whose parent is absent are dropped.

    Args:
        rows: Node rows of one subtree.
        root_id: The subtree root. Defaults to the first row.

    Returns:
        The root, or ``None`` for an empty subtree.
    """
    nodes: dict[str, TreeNode] = {}
    root: TreeNode | None = None
    for row in rows:
        node = TreeNode.from_row(row)
        if root is None and (root_id is None or row.id == root_id):
            root = node
            nodes[row.id] = node
            continue
        parent = nodes.get(row.parent_id or "")
        if parent is not None:
            parent.children.append(node)
            nodes[row.id] = node
    return root


def serialize_tree(node: TreeNode | None, depth: int = 0) -> str:
    """Render a tree as indented text for LLM prompts.

    Each node renders as a ``[type] (score:N, temp:T, model:M)`` header
    followed by its body lines, indented two spaces further than the header.

    Example:
        >>> print(serialize_tree(TreeNode("n1", "claim", "Water boils at 100C", score=3)))
        [claim] (score:3, temp:cold)
          Water boils at 100C
    """
    if node is None:
        return ""
    indent = "  " * depth
    header = f"{indent}[{node.node_type}] (score:{node.score}, temp:{node.temperature}"
    if node.model_id is not None:
        header += f", model:{node.model_id}"
    parts = [header + ")\n"]
    parts.extend(f"{indent}  {line}\n" for line in node.body.split("\n"))
    parts.extend(serialize_tree(child, depth + 1) for child in node.children)
    return "".join(parts)
