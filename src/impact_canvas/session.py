"""
CanvasSession — the command surface of one open impact tree.

A session wires together the four collaborators of the canvas:

    TreeModel          local forest, mutated synchronously
    PersistenceQueue   debounced write-back to the store
    DragCoordinator    pointer gestures
    layout / collision placement maths

Every command updates the model first and returns immediately with the new
local state (optimistic update).  Writes reach the store later, through the
queue.  Structural commands (create, delete, reattach) additionally call the
store directly, under the queue's retry policy.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from .collision import find_conflicts, get_smart_node_position, prevent_overlap, snap_to_grid
from .config import EngineSettings, get_settings
from .drag import DragCoordinator, position_patch
from .errors import PersistenceError, ValidationError
from .layout import (
    compute_layout,
    compute_subtree_layout,
    fit_view,
    home_view,
    translate_subtree,
)
from .models import (
    CanvasState,
    NodeConnection,
    NodeType,
    Orientation,
    Pan,
    Position,
    TestCategory,
    TreeNode,
)
from .persistence import (
    InMemoryCollaborator,
    PersistenceCollaborator,
    PersistenceQueue,
    SaveStatus,
)
from .tree import TreeModel
from .visibility import get_visible_connections, get_visible_nodes

logger = logging.getLogger(__name__)


def _wire_name(field_name: str) -> str:
    return TreeNode.model_fields[field_name].alias or field_name


class CanvasSession:
    """One open tree: model, queue and drag state behind a single API."""

    def __init__(
        self,
        model: Optional[TreeModel] = None,
        collaborator: Optional[PersistenceCollaborator] = None,
        settings: Optional[EngineSettings] = None,
        on_failure: Optional[Callable[[PersistenceError], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.model = model if model is not None else TreeModel()
        self.collaborator = collaborator or InMemoryCollaborator()
        self.failures: list[PersistenceError] = []
        self._on_failure = on_failure
        self.queue = PersistenceQueue(self.collaborator, self.settings, on_failure=self._report_failure)
        self.drag = DragCoordinator(
            self.model, self.queue, self.settings,
            orientation=lambda: self.model.canvas_state.orientation,
            clock=clock,
        )

    async def __aenter__(self) -> CanvasSession:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _report_failure(self, error: PersistenceError) -> None:
        self.failures.append(error)
        if self._on_failure is not None:
            self._on_failure(error)

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> Mapping[str, TreeNode]:
        return self.model.nodes

    @property
    def connections(self) -> list[NodeConnection]:
        return self.model.connections

    @property
    def canvas_state(self) -> CanvasState:
        return self.model.canvas_state

    @property
    def orientation(self) -> Orientation:
        return self.model.canvas_state.orientation

    def visible_nodes(self) -> list[TreeNode]:
        return get_visible_nodes(self.model.nodes)

    def visible_connections(self) -> list[NodeConnection]:
        return get_visible_connections(self.model.nodes, self.model.connections)

    @property
    def pending_count(self) -> int:
        return self.queue.pending_count

    @property
    def is_flushing(self) -> bool:
        return self.queue.is_flushing

    @property
    def status(self) -> SaveStatus:
        return self.queue.status

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enqueue_positions(self, node_ids: Iterable[str]) -> None:
        self.queue.enqueue_many(
            {i: position_patch(self.model.nodes[i].position) for i in node_ids if i in self.model}
        )

    def _release_drag_within(self, node_ids: Iterable[str]) -> None:
        if self.drag.is_dragging and self.drag.node_id in set(node_ids):
            self.drag.cancel()

    def _branch_collides(self, root_id: str) -> bool:
        branch = set(self.model.subtree_ids(root_id))
        outside = {i: n for i, n in self.model.nodes.items() if i not in branch}
        return any(
            find_conflicts(outside, self.model.nodes[i].position, self.settings)
            for i in branch
        )

    def _relayout_branch(self, root_id: str, reorganize: bool = True) -> list[str]:
        """Lay out the subtree under ``root_id`` in place.

        A subtree layout only looks inside the branch.  When the branch lands
        on nodes outside it, the whole canvas is laid out instead.  Returns ids
        that moved.
        """
        moved: list[str] = []
        if reorganize:
            moved = self.model.apply_positions(
                compute_subtree_layout(self.model.nodes, root_id, self.orientation, self.settings)
            )
        if self._branch_collides(root_id):
            logger.info("Branch %s runs into other nodes; laying out the whole canvas", root_id)
            moved += self.model.apply_positions(
                compute_layout(self.model.nodes, None, self.orientation, self.settings)
            )
        return list(dict.fromkeys(moved))

    # ------------------------------------------------------------------
    # Node commands
    # ------------------------------------------------------------------

    async def create_node(
        self,
        node_type: Union[NodeType, str],
        parent_id: Optional[str] = None,
        position: Optional[Position] = None,
        test_category: Optional[Union[TestCategory, str]] = None,
    ) -> TreeNode:
        """Create a node, placing it automatically unless ``position`` is given.

        Adding a child to a parent that already has children re-lays out the
        parent's subtree so the new branch fits between its siblings.
        """
        parent = self.model.get(parent_id) if parent_id is not None else None
        if position is None:
            position = get_smart_node_position(
                self.model.nodes, parent, self.orientation, self.settings
            )
        else:
            position = prevent_overlap(self.model.nodes, None, position, self.settings)

        node = TreeNode.create(node_type, position, parent_id=parent_id, test_category=test_category)
        had_siblings = parent is not None and bool(parent.children)
        self.model.add_node(node)

        if had_siblings:
            moved = self._relayout_branch(parent_id)
        else:
            moved = self._relayout_branch(node.id, reorganize=False)
        logger.info("Created %s node %s", node.type.value, node.id)

        await self.queue.submit_structural(
            "create_node", [node.id], lambda: self.collaborator.create_node(node.to_wire())
        )
        self._enqueue_positions(i for i in moved if i != node.id)
        return node

    def update_content(self, node_id: str, **fields: Any) -> TreeNode:
        """Edit title, description, template data or test category."""
        node = self.model.update_content(node_id, **fields)
        wire = node.to_wire()
        patch = {_wire_name(name): wire[_wire_name(name)] for name in fields}
        if patch:
            self.queue.enqueue(node_id, patch)
        return node

    def update_position(self, node_id: str, position: Position) -> list[str]:
        """Move a node to ``position`` (snapped), carrying its subtree along."""
        node = self.model.get(node_id)
        target = snap_to_grid(position, self.settings.grid_size)
        moved = self.model.apply_positions(
            translate_subtree(
                self.model.nodes, node_id,
                target.x - node.position.x, target.y - node.position.y,
            )
        )
        self._enqueue_positions(moved)
        return moved

    async def delete_node(self, node_id: str) -> list[str]:
        """Delete a node and its whole subtree.  Returns removed ids, leaves first."""
        self.model.get(node_id)
        self._release_drag_within(self.model.subtree_ids(node_id))
        removed = self.model.remove_subtree(node_id)

        # A batch already in transit may still carry these nodes.
        await self.queue.wait_idle()
        self.queue.discard(removed)
        for removed_id in removed:
            await self.queue.submit_structural(
                "delete_node", [removed_id],
                lambda removed_id=removed_id: self.collaborator.delete_node(removed_id),
            )
        logger.info("Deleted %d node(s) rooted at %s", len(removed), node_id)
        return removed

    async def reattach_node(self, node_id: str, new_parent_id: Optional[str]) -> list[str]:
        """Move ``node_id`` (with its subtree) under ``new_parent_id``.

        ``None`` detaches the node into a new root.  Returns ids of every
        node whose position or parent changed.
        """
        self.model.check_reattach(node_id, new_parent_id)
        if self.model.get(node_id).parent_id == new_parent_id:
            return []
        self._release_drag_within(self.model.subtree_ids(node_id))
        await self.queue.flush()

        old_positions = self.model.positions()
        old_parents = self.model.parents()
        self.model.reattach(node_id, new_parent_id)

        subtree = self.model.subtree_ids(node_id)
        new_parent = self.model.nodes[new_parent_id] if new_parent_id is not None else None
        target = get_smart_node_position(
            self.model.nodes, new_parent, self.orientation, self.settings, ignore=subtree
        )
        root = self.model.get(node_id)
        self.model.apply_positions(
            translate_subtree(
                self.model.nodes, node_id,
                target.x - root.position.x, target.y - root.position.y,
            )
        )
        self._relayout_branch(node_id)
        if self.settings.relayout_after_reattach:
            self.model.apply_positions(
                compute_layout(self.model.nodes, None, self.orientation, self.settings)
            )

        await self.queue.submit_structural(
            "reattach", [node_id], lambda: self.collaborator.reattach(node_id, new_parent_id)
        )

        patches: dict[str, dict[str, Any]] = {}
        for other_id, node in self.model.nodes.items():
            patch: dict[str, Any] = {}
            if node.position != old_positions.get(other_id):
                patch.update(position_patch(node.position))
            if node.parent_id != old_parents.get(other_id):
                patch["parentId"] = node.parent_id
            if patch:
                patches[other_id] = patch
        self.queue.enqueue_many(patches)
        logger.info("Reattached %s under %s", node_id, new_parent_id or "canvas")
        return list(patches)

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    def toggle_collapse(self, node_id: str) -> bool:
        collapsed = self.model.toggle_collapse(node_id)
        self.queue.enqueue(node_id, {"isCollapsed": collapsed})
        return collapsed

    def toggle_child_visibility(self, parent_id: str, child_id: str) -> bool:
        hidden = self.model.toggle_child_visibility(parent_id, child_id)
        parent = self.model.nodes[parent_id]
        self.queue.enqueue(parent_id, {"hiddenChildren": sorted(parent.hidden_children)})
        return hidden

    # ------------------------------------------------------------------
    # Layout & viewport
    # ------------------------------------------------------------------

    def auto_layout(self) -> list[str]:
        """Re-lay out the whole forest.  Returns ids that moved."""
        moved = self.model.apply_positions(
            compute_layout(self.model.nodes, None, self.orientation, self.settings)
        )
        self._enqueue_positions(moved)
        return moved

    def set_orientation(self, orientation: Union[Orientation, str]) -> list[str]:
        orientation = Orientation(orientation)
        if orientation == self.orientation:
            return []
        self.model.canvas_state.orientation = orientation
        return self.auto_layout()

    def pan_zoom(
        self,
        zoom: Optional[float] = None,
        pan_x: Optional[float] = None,
        pan_y: Optional[float] = None,
    ) -> CanvasState:
        state = self.model.canvas_state
        self.model.canvas_state = CanvasState(
            zoom=state.zoom if zoom is None else zoom,
            pan=Pan(
                x=state.pan.x if pan_x is None else pan_x,
                y=state.pan.y if pan_y is None else pan_y,
            ),
            orientation=state.orientation,
        )
        return self.model.canvas_state

    def reset_view(self) -> CanvasState:
        self.model.canvas_state = home_view(self.model.nodes, self.orientation, self.settings)
        return self.model.canvas_state

    def fit_to_screen(self, width: float, height: float) -> CanvasState:
        self.model.canvas_state = fit_view(
            self.model.nodes, width, height, self.orientation, self.settings
        )
        return self.model.canvas_state

    # ------------------------------------------------------------------
    # Drag
    # ------------------------------------------------------------------

    def start_drag(self, node_id: str, pointer: Position) -> None:
        self.drag.start(node_id, pointer)

    def drag_to(self, pointer: Position) -> bool:
        return self.drag.update(pointer)

    async def end_drag(
        self,
        pointer: Optional[Position] = None,
        drop_on: Optional[str] = None,
        detach: bool = False,
    ) -> list[str]:
        """Finish the current drag.

        Plain release moves the branch.  ``drop_on`` reattaches the dragged
        node under that node and ``detach=True`` turns it into a root; an
        invalid drop puts the node back where the drag started and raises
        ``ValidationError``.
        """
        if drop_on is None and not detach:
            return self.drag.end(pointer)

        node_id = self.drag.node_id
        if node_id is None:
            raise ValidationError("No drag in progress")
        if self.model.get(node_id).parent_id == drop_on:
            return self.drag.end(pointer)
        self.drag.cancel()
        return await self.reattach_node(node_id, drop_on)

    def cancel_drag(self) -> None:
        self.drag.cancel()

    # ------------------------------------------------------------------
    # Store sync
    # ------------------------------------------------------------------

    def apply_remote(self, nodes: Iterable[Union[TreeNode, Mapping[str, Any]]]) -> list[str]:
        """Merge node content fetched from the store.

        Nodes being dragged or with local writes not yet confirmed keep their
        local state.  Unknown ids are ignored; structure is never merged.
        """
        applied = []
        for raw in nodes:
            node = raw if isinstance(raw, TreeNode) else TreeNode.model_validate(raw)
            local = self.model.nodes.get(node.id)
            if local is None:
                logger.debug("Ignoring remote node %s not in local tree", node.id)
                continue
            if local.is_dragging or self.queue.is_pending(node.id):
                continue
            self.model.replace_node(node)
            applied.append(node.id)
        return applied

    async def flush(self) -> None:
        await self.queue.flush()

    async def retry_failed(self) -> None:
        self.failures.clear()
        await self.queue.retry_failed()

    async def close(self) -> None:
        self.drag.close()
        await self.queue.close()
