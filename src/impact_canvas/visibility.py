"""Derive the rendered subset of a tree from its collapse / hide flags.

Nothing here mutates a node.  The flags themselves are flipped only by
``TreeModel.toggle_collapse`` and ``TreeModel.toggle_child_visibility``.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from .layout import root_ids, subtree_ids
from .models import NodeConnection, TreeNode


def _visible_children(node: TreeNode) -> list[str]:
    if node.is_collapsed:
        return []
    return [c for c in node.children if c not in node.hidden_children]


def get_visible_nodes(nodes: Mapping[str, TreeNode]) -> list[TreeNode]:
    """Nodes to render, pre-order from each root.

    A collapsed node is itself visible but none of its descendants are.  A
    child listed in its parent's ``hidden_children`` is excluded together
    with its whole subtree.
    """
    visible: list[TreeNode] = []
    seen: set[str] = set()
    stack = list(reversed(root_ids(nodes)))
    while stack:
        node_id = stack.pop()
        if node_id in seen or node_id not in nodes:
            continue
        seen.add(node_id)
        node = nodes[node_id]
        visible.append(node)
        stack.extend(reversed(_visible_children(node)))
    return visible


def get_visible_connections(
    nodes: Mapping[str, TreeNode],
    connections: Iterable[NodeConnection],
) -> list[NodeConnection]:
    """Connections whose both endpoints are visible."""
    visible_ids = {node.id for node in get_visible_nodes(nodes)}
    return [
        conn for conn in connections
        if conn.from_node_id in visible_ids and conn.to_node_id in visible_ids
    ]


def hidden_count(nodes: Mapping[str, TreeNode], node_id: str) -> int:
    """How many descendants of ``node_id`` its own flags keep off the canvas."""
    node = nodes[node_id]
    if node.is_collapsed:
        return len(subtree_ids(nodes, node_id)) - 1
    return sum(len(subtree_ids(nodes, child)) for child in node.hidden_children if child in nodes)
