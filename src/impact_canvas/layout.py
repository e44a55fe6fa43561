"""
Tree layout for Impact Canvas.

A classic "extent" tree layout: every node reserves as many sibling slots as
it has leaves below it, and parents are centred over the slots of their
children.

Steps:
  1. Post-order: compute each node's extent (1 for a leaf, otherwise the sum
     of its children's extents, never less than 1).
  2. Pre-order: place each node at ``level * level_spacing`` along the depth
     axis and centred within its ``extent * sibling_spacing`` band along the
     cross axis.
  3. Roots are laid out one after another along the cross axis, separated by
     ``tree_gap``.

The depth axis is x for horizontal trees (children to the right) and y for
vertical trees (children below).

Every function here is pure: inputs are never mutated, and the output depends
only on tree shape, orientation and settings.  The one exception to "shape
only" is ``reorganize_subtree``, which anchors on the current position of the
subtree root.

Spacing constants (defaults, see ``EngineSettings``):
  - Horizontal: 400 between levels, 200 between sibling slots
  - Vertical:   240 between levels, 360 between sibling slots
  - Trees:      100 extra gap between independent roots
"""

from __future__ import annotations

import math
from typing import Iterable, Mapping, Optional

from .collision import snap_to_grid
from .config import EngineSettings
from .models import CanvasState, NodeType, Orientation, Pan, Position, TreeNode


# ---------------------------------------------------------------------------
# Traversal helpers
# ---------------------------------------------------------------------------

def root_ids(nodes: Mapping[str, TreeNode]) -> list[str]:
    """Ids of nodes without a (known) parent, in mapping order."""
    return [
        node_id for node_id, node in nodes.items()
        if node.parent_id is None or node.parent_id not in nodes
    ]


def subtree_ids(nodes: Mapping[str, TreeNode], root_id: str) -> list[str]:
    """``root_id`` and all its descendants, pre-order."""
    result: list[str] = []
    seen: set[str] = set()
    stack = [root_id]
    while stack:
        current = stack.pop()
        if current in seen or current not in nodes:
            continue
        seen.add(current)
        result.append(current)
        stack.extend(reversed(nodes[current].children))
    return result


def compute_extents(nodes: Mapping[str, TreeNode], roots: Iterable[str]) -> dict[str, int]:
    """Number of sibling slots each node's subtree needs."""
    extents: dict[str, int] = {}

    def visit(node_id: str) -> int:
        children = [c for c in nodes[node_id].children if c in nodes]
        total = sum(visit(child) for child in children)
        extents[node_id] = max(1, total)
        return extents[node_id]

    for root in roots:
        if root in nodes and root not in extents:
            visit(root)
    return extents


# ---------------------------------------------------------------------------
# Core layout algorithm
# ---------------------------------------------------------------------------

def _axis_position(depth: float, cross: float, orientation: Orientation) -> Position:
    if orientation == Orientation.HORIZONTAL:
        return Position(x=depth, y=cross)
    return Position(x=cross, y=depth)


def _axis_coords(position: Position, orientation: Orientation) -> tuple[float, float]:
    """Split a position into (depth, cross) coordinates."""
    if orientation == Orientation.HORIZONTAL:
        return position.x, position.y
    return position.y, position.x


def _place_subtree(
    nodes: Mapping[str, TreeNode],
    root_id: str,
    extents: Mapping[str, int],
    depth_origin: float,
    cross_start: float,
    orientation: Orientation,
    settings: EngineSettings,
    positions: dict[str, Position],
) -> None:
    level_spacing = settings.level_spacing(orientation)
    sibling_spacing = settings.sibling_spacing(orientation)

    def place(node_id: str, level: int, band_start: float) -> None:
        extent = extents[node_id]
        cross = band_start + (extent - 1) * sibling_spacing / 2
        depth = depth_origin + level * level_spacing
        positions[node_id] = snap_to_grid(
            _axis_position(depth, cross, orientation), settings.grid_size
        )
        cursor = band_start
        for child_id in nodes[node_id].children:
            if child_id not in nodes:
                continue
            place(child_id, level + 1, cursor)
            cursor += extents[child_id] * sibling_spacing

    place(root_id, 0, cross_start)


def compute_layout(
    nodes: Mapping[str, TreeNode],
    roots: Optional[Iterable[str]],
    orientation: Orientation,
    settings: EngineSettings,
) -> dict[str, Position]:
    """Compute positions for every node reachable from ``roots``.

    ``roots`` defaults to every root of the forest, in mapping order.
    """
    roots = list(roots) if roots is not None else root_ids(nodes)
    extents = compute_extents(nodes, roots)
    sibling_spacing = settings.sibling_spacing(orientation)

    depth_origin, cross_cursor = _axis_coords(settings.origin, orientation)
    positions: dict[str, Position] = {}
    for root in roots:
        if root not in nodes or root in positions:
            continue
        _place_subtree(
            nodes, root, extents, depth_origin, cross_cursor,
            orientation, settings, positions,
        )
        cross_cursor += extents[root] * sibling_spacing + settings.tree_gap
    return positions


def compute_subtree_layout(
    nodes: Mapping[str, TreeNode],
    root_id: str,
    orientation: Orientation,
    settings: EngineSettings,
) -> dict[str, Position]:
    """Positions for one subtree, anchored at its root's current position.

    The root itself keeps its position exactly; only descendants move.
    """
    root = nodes[root_id]
    extents = compute_extents(nodes, [root_id])
    sibling_spacing = settings.sibling_spacing(orientation)

    depth, cross = _axis_coords(root.position, orientation)
    cross_start = cross - (extents[root_id] - 1) * sibling_spacing / 2

    positions: dict[str, Position] = {}
    _place_subtree(
        nodes, root_id, extents, depth, cross_start,
        orientation, settings, positions,
    )
    positions[root_id] = root.position
    return positions


def _with_positions(
    nodes: Mapping[str, TreeNode],
    positions: Mapping[str, Position],
) -> dict[str, TreeNode]:
    result = {}
    for node_id, node in nodes.items():
        if node_id in positions:
            result[node_id] = node.model_copy(update={"position": positions[node_id]}, deep=True)
        else:
            result[node_id] = node.model_copy(deep=True)
    return result


def layout_forest(
    nodes: Mapping[str, TreeNode],
    roots: Optional[Iterable[str]],
    orientation: Orientation,
    settings: EngineSettings,
) -> dict[str, TreeNode]:
    """Return copies of ``nodes`` with every reachable node laid out."""
    return _with_positions(nodes, compute_layout(nodes, roots, orientation, settings))


def reorganize_subtree(
    nodes: Mapping[str, TreeNode],
    root_id: str,
    orientation: Orientation,
    settings: EngineSettings,
) -> dict[str, TreeNode]:
    """Return copies of ``nodes`` with the subtree under ``root_id`` re-laid out."""
    return _with_positions(nodes, compute_subtree_layout(nodes, root_id, orientation, settings))


def translate_subtree(
    nodes: Mapping[str, TreeNode],
    root_id: str,
    dx: float,
    dy: float,
) -> dict[str, Position]:
    """New positions for ``root_id`` and its descendants moved by ``(dx, dy)``."""
    return {
        node_id: nodes[node_id].position.offset(dx, dy)
        for node_id in subtree_ids(nodes, root_id)
    }


# ---------------------------------------------------------------------------
# Viewport helpers
# ---------------------------------------------------------------------------

# Viewport point the home view centres on
HOME_FOCUS = Position(x=400, y=300)
FIT_PADDING = 50


def home_view(
    nodes: Mapping[str, TreeNode],
    orientation: Orientation,
    settings: EngineSettings,
) -> CanvasState:
    """Canvas state centred on the outcome node closest to the top-left.

    Falls back to a fixed top-left pan when the tree has no outcome nodes.
    """
    outcomes = [n for n in nodes.values() if n.type == NodeType.OUTCOME]
    if not outcomes:
        return CanvasState(zoom=1, pan=Pan(x=100, y=100), orientation=orientation)

    anchor = min(outcomes, key=lambda n: (n.position.x + n.position.y, n.id))
    center_x = anchor.position.x + settings.node_width / 2
    center_y = anchor.position.y + settings.node_height / 2
    return CanvasState(
        zoom=1,
        pan=Pan(x=HOME_FOCUS.x - center_x, y=HOME_FOCUS.y - center_y),
        orientation=orientation,
    )


def fit_view(
    nodes: Mapping[str, TreeNode],
    canvas_width: float,
    canvas_height: float,
    orientation: Orientation,
    settings: EngineSettings,
    padding: float = FIT_PADDING,
) -> CanvasState:
    """Zoom and pan so every node fits the viewport (never zooming past 1)."""
    if not nodes:
        return home_view(nodes, orientation, settings)

    min_x = min(n.position.x for n in nodes.values())
    min_y = min(n.position.y for n in nodes.values())
    max_x = max(n.position.x + settings.node_width for n in nodes.values())
    max_y = max(n.position.y + settings.node_height for n in nodes.values())

    content_width = max(1.0, max_x - min_x)
    content_height = max(1.0, max_y - min_y)

    scale_x = (canvas_width - padding * 2) / content_width
    scale_y = (canvas_height - padding * 2) / content_height
    zoom = min(scale_x, scale_y, 1.0)
    if not math.isfinite(zoom) or zoom <= 0:
        zoom = 1.0

    state = CanvasState(zoom=zoom, orientation=orientation)
    # Pan uses the clamped zoom so tiny viewports still centre correctly.
    zoom = state.zoom
    state.pan = Pan(
        x=(canvas_width - content_width * zoom) / 2 - min_x * zoom,
        y=(canvas_height - content_height * zoom) / 2 - min_y * zoom,
    )
    return state
