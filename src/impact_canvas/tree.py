"""
TreeModel — the in-memory forest of impact-tree nodes.

The model owns every ``TreeNode`` and ``NodeConnection`` of a tree and is the
only place where structure changes.  Each structural method either applies
completely or raises ``ValidationError`` before touching anything, so callers
never observe a half-applied edit.

Structural invariants
---------------------
- The forest is acyclic.
- ``parent.children`` contains ``id`` iff ``node.parent_id == parent.id``.
- ``hidden_children`` is a subset of ``children``.
- Exactly one connection exists per non-root node, from its parent to it.

``validate()`` checks all four and is cheap enough to call from tests after
every operation.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from .errors import ValidationError
from .models import CanvasState, NodeConnection, Position, TreeNode

logger = logging.getLogger(__name__)


class TreeModel:
    """Mutable forest of nodes plus the connections mirroring its edges."""

    def __init__(
        self,
        nodes: Iterable[TreeNode] = (),
        connections: Optional[Iterable[NodeConnection]] = None,
        canvas_state: Optional[CanvasState] = None,
    ):
        self._nodes: dict[str, TreeNode] = {}
        for node in nodes:
            if node.id in self._nodes:
                raise ValidationError(f"Duplicate node id: {node.id}")
            self._nodes[node.id] = node
        if connections is None:
            self._connections = self._derive_connections()
        else:
            self._connections = list(connections)
        self.canvas_state = canvas_state or CanvasState()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> Mapping[str, TreeNode]:
        return self._nodes

    @property
    def connections(self) -> list[NodeConnection]:
        return list(self._connections)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: str) -> TreeNode:
        """Return a node or raise ``ValidationError`` for an unknown id."""
        node = self._nodes.get(node_id)
        if node is None:
            raise ValidationError(f"Unknown node: {node_id}")
        return node

    def root_ids(self) -> list[str]:
        """Ids of root nodes, in insertion order."""
        return [
            node.id for node in self._nodes.values()
            if node.parent_id is None or node.parent_id not in self._nodes
        ]

    def descendant_ids(self, node_id: str) -> list[str]:
        """All descendants of ``node_id`` in pre-order, excluding the node."""
        result: list[str] = []
        stack = list(reversed(self.get(node_id).children))
        seen: set[str] = set()
        while stack:
            current = stack.pop()
            if current in seen or current not in self._nodes:
                continue
            seen.add(current)
            result.append(current)
            stack.extend(reversed(self._nodes[current].children))
        return result

    def subtree_ids(self, node_id: str) -> list[str]:
        """``node_id`` followed by all its descendants."""
        return [node_id] + self.descendant_ids(node_id)

    def is_descendant(self, ancestor_id: str, candidate_id: str) -> bool:
        return candidate_id in set(self.descendant_ids(ancestor_id))

    def connection_to(self, node_id: str) -> Optional[NodeConnection]:
        for conn in self._connections:
            if conn.to_node_id == node_id:
                return conn
        return None

    def positions(self) -> dict[str, Position]:
        return {node_id: node.position for node_id, node in self._nodes.items()}

    def parents(self) -> dict[str, Optional[str]]:
        return {node_id: node.parent_id for node_id, node in self._nodes.items()}

    # ------------------------------------------------------------------
    # Structural commands
    # ------------------------------------------------------------------

    def add_node(self, node: TreeNode) -> TreeNode:
        """Insert a new node, linking it under ``node.parent_id`` if set."""
        if node.id in self._nodes:
            raise ValidationError(f"Duplicate node id: {node.id}")
        if node.children:
            raise ValidationError("New nodes cannot arrive with children")
        parent = self.get(node.parent_id) if node.parent_id is not None else None

        self._nodes[node.id] = node
        if parent is not None:
            parent.children.append(node.id)
            self._connections.append(NodeConnection.between(parent.id, node.id))
        logger.debug("Added node %s under %s", node.id, node.parent_id)
        return node

    def remove_subtree(self, node_id: str) -> list[str]:
        """Delete a node with every descendant and every touching connection.

        Returns the removed ids, leaves first, so a store can delete them
        without orphaning rows.
        """
        node = self.get(node_id)
        removed = self.subtree_ids(node_id)
        removed_set = set(removed)

        if node.parent_id is not None and node.parent_id in self._nodes:
            parent = self._nodes[node.parent_id]
            parent.children = [c for c in parent.children if c != node_id]
            parent.hidden_children.discard(node_id)

        for removed_id in removed:
            del self._nodes[removed_id]
        self._connections = [c for c in self._connections if not c.touches(removed_set)]
        logger.debug("Removed %d nodes rooted at %s", len(removed), node_id)
        return list(reversed(removed))

    def check_reattach(self, node_id: str, new_parent_id: Optional[str]) -> None:
        """Raise ``ValidationError`` if the reattachment is not allowed."""
        self.get(node_id)
        if new_parent_id is None:
            return
        self.get(new_parent_id)
        if node_id == new_parent_id:
            raise ValidationError(f"Cannot attach node {node_id} to itself")
        if self.is_descendant(node_id, new_parent_id):
            raise ValidationError(
                f"Cannot attach {node_id} under its own descendant {new_parent_id}"
            )

    def reattach(self, node_id: str, new_parent_id: Optional[str]) -> None:
        """Move ``node_id`` under ``new_parent_id`` (``None`` detaches to root).

        Positions are untouched; placement is the caller's concern.
        """
        self.check_reattach(node_id, new_parent_id)
        node = self._nodes[node_id]
        old_parent_id = node.parent_id
        if old_parent_id == new_parent_id:
            return

        if old_parent_id is not None and old_parent_id in self._nodes:
            old_parent = self._nodes[old_parent_id]
            old_parent.children = [c for c in old_parent.children if c != node_id]
            old_parent.hidden_children.discard(node_id)
        self._connections = [c for c in self._connections if c.to_node_id != node_id]

        node.parent_id = new_parent_id
        if new_parent_id is not None:
            self._nodes[new_parent_id].children.append(node_id)
            self._connections.append(NodeConnection.between(new_parent_id, node_id))
        logger.debug("Reattached %s: %s -> %s", node_id, old_parent_id, new_parent_id)

    # ------------------------------------------------------------------
    # Content & position commands
    # ------------------------------------------------------------------

    def update_content(self, node_id: str, **fields: Any) -> TreeNode:
        """Update non-structural fields (title, description, template data ...)."""
        allowed = {"title", "description", "template_data", "test_category"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        node = self.get(node_id)
        updated = TreeNode.model_validate({**node.model_dump(), **fields})
        for name in fields:
            setattr(node, name, getattr(updated, name))
        return node

    def set_position(self, node_id: str, position: Position) -> bool:
        """Move a single node.  Returns True if the position changed."""
        node = self.get(node_id)
        if node.position == position:
            return False
        node.position = position
        return True

    def apply_positions(self, positions: Mapping[str, Position]) -> list[str]:
        """Apply many positions at once.  Returns ids that actually moved."""
        changed = []
        for node_id, position in positions.items():
            if node_id in self._nodes and self.set_position(node_id, position):
                changed.append(node_id)
        return changed

    def set_dragging(self, node_ids: Iterable[str], dragging: bool) -> None:
        for node_id in node_ids:
            if node_id in self._nodes:
                self._nodes[node_id].is_dragging = dragging

    def replace_node(self, node: TreeNode) -> None:
        """Overwrite a node's content and position from a remote copy.

        Structure (parent and children) is kept from the local model.
        """
        local = self.get(node.id)
        local.title = node.title
        local.description = node.description
        local.position = node.position
        local.test_category = node.test_category
        local.template_data = dict(node.template_data)

    # ------------------------------------------------------------------
    # Visibility flags
    # ------------------------------------------------------------------

    def toggle_collapse(self, node_id: str) -> bool:
        """Flip ``is_collapsed``.  Returns the new value."""
        node = self.get(node_id)
        node.is_collapsed = not node.is_collapsed
        return node.is_collapsed

    def toggle_child_visibility(self, parent_id: str, child_id: str) -> bool:
        """Flip whether ``child_id`` is hidden under ``parent_id``.

        Returns True if the child is now hidden.
        """
        parent = self.get(parent_id)
        if child_id not in parent.children:
            raise ValidationError(f"{child_id} is not a child of {parent_id}")
        if child_id in parent.hidden_children:
            parent.hidden_children.discard(child_id)
            return False
        parent.hidden_children.add(child_id)
        return True

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def _derive_connections(self) -> list[NodeConnection]:
        return [
            NodeConnection.between(node.parent_id, node.id)
            for node in self._nodes.values()
            if node.parent_id is not None and node.parent_id in self._nodes
        ]

    def validate(self) -> None:
        """Raise ``ValidationError`` describing the first broken invariant."""
        for node in self._nodes.values():
            # Acyclic
            seen = {node.id}
            current = node.parent_id
            while current is not None and current in self._nodes:
                if current in seen:
                    raise ValidationError(f"Cycle through node {node.id}")
                seen.add(current)
                current = self._nodes[current].parent_id

            # Bidirectional
            if node.parent_id is not None:
                parent = self._nodes.get(node.parent_id)
                if parent is None:
                    raise ValidationError(f"{node.id} references missing parent {node.parent_id}")
                if node.id not in parent.children:
                    raise ValidationError(f"{node.parent_id} does not list child {node.id}")
            for child_id in node.children:
                child = self._nodes.get(child_id)
                if child is None or child.parent_id != node.id:
                    raise ValidationError(f"{node.id} lists {child_id} which is not its child")
            if len(set(node.children)) != len(node.children):
                raise ValidationError(f"{node.id} lists a child twice")

            if not node.hidden_children <= set(node.children):
                raise ValidationError(f"{node.id} hides nodes that are not its children")

        expected = {
            (node.parent_id, node.id)
            for node in self._nodes.values() if node.parent_id is not None
        }
        actual = [(c.from_node_id, c.to_node_id) for c in self._connections]
        if len(actual) != len(set(actual)) or set(actual) != expected:
            raise ValidationError("Connections are out of step with parent/child edges")
