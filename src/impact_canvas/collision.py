"""
Grid snapping and single-node overlap avoidance.

Used when one node is placed outside a full relayout: creating a node,
dropping a branch onto the empty canvas, reattaching a leaf.  A full
relayout (see ``layout.py``) never needs this module's search because the
extent algorithm cannot produce overlaps.

Every node is treated as a fixed ``node_width`` x ``node_height`` box whose
top-left corner is its position.  Two boxes conflict when they come closer
than ``overlap_padding`` on both axes.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Mapping, Optional

from .config import EngineSettings
from .errors import PlacementExhausted
from .models import Orientation, Position, TreeNode

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Grid
# ---------------------------------------------------------------------------

def _snap(value: float, grid_size: float) -> float:
    # Half-up; round() would use banker's rounding.
    return math.floor(value / grid_size + 0.5) * grid_size


def _snap_away(value: float, direction: int, grid_size: float) -> float:
    """Snap in the push direction so snapping never pulls a node back."""
    if direction > 0:
        return math.ceil(value / grid_size) * grid_size
    return math.floor(value / grid_size) * grid_size


def snap_to_grid(position: Position, grid_size: float = 20) -> Position:
    """Round both coordinates to the nearest grid line."""
    return Position(x=_snap(position.x, grid_size), y=_snap(position.y, grid_size))


# ---------------------------------------------------------------------------
# Overlap tests
# ---------------------------------------------------------------------------

def boxes_overlap(a: Position, b: Position, settings: EngineSettings) -> bool:
    """True if node boxes at ``a`` and ``b`` intersect within the padding."""
    reach_x = settings.node_width + settings.overlap_padding
    reach_y = settings.node_height + settings.overlap_padding
    return abs(a.x - b.x) < reach_x and abs(a.y - b.y) < reach_y


def find_conflicts(
    nodes: Mapping[str, TreeNode],
    position: Position,
    settings: EngineSettings,
    ignore: Iterable[str] = (),
) -> list[str]:
    """Ids of nodes whose boxes conflict with a box at ``position``."""
    skip = set(ignore)
    return [
        node_id for node_id, node in nodes.items()
        if node_id not in skip and boxes_overlap(position, node.position, settings)
    ]


def _distance(a: Position, b: Position) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


# ---------------------------------------------------------------------------
# Overlap avoidance
# ---------------------------------------------------------------------------

def prevent_overlap(
    nodes: Mapping[str, TreeNode],
    target_id: Optional[str],
    candidate: Position,
    settings: EngineSettings,
    ignore: Iterable[str] = (),
    strict: bool = False,
) -> Position:
    """Nudge ``candidate`` until it clears every node except the target.

    Each attempt finds the nearest conflicting node and pushes the candidate
    just past it along the axis where the two boxes overlap more, then
    re-snaps.  The search is bounded by ``max_placement_attempts``; when the
    bound is hit the last attempt is returned (or ``PlacementExhausted`` is
    raised if ``strict``).
    """
    skip = set(ignore)
    if target_id is not None:
        skip.add(target_id)
    others = {node_id: node for node_id, node in nodes.items() if node_id not in skip}

    reach_x = settings.node_width + settings.overlap_padding
    reach_y = settings.node_height + settings.overlap_padding
    grid = settings.grid_size
    attempts = settings.max_placement_attempts

    position = snap_to_grid(candidate, grid)
    for attempt in range(attempts + 1):
        conflicts = find_conflicts(others, position, settings)
        if not conflicts:
            if attempt:
                logger.debug("Placed %s after %d nudges", target_id or "node", attempt)
            return position
        if attempt == attempts:
            break

        nearest_id = min(
            conflicts, key=lambda nid: (_distance(position, others[nid].position), nid)
        )
        other = others[nearest_id].position
        dx = position.x - other.x
        dy = position.y - other.y
        overlap_x = reach_x - abs(dx)
        overlap_y = reach_y - abs(dy)

        if overlap_x >= overlap_y:
            direction = 1 if dx >= 0 else -1
            x = _snap_away(other.x + direction * reach_x, direction, grid)
            position = Position(x=x, y=position.y)
        else:
            direction = 1 if dy >= 0 else -1
            y = _snap_away(other.y + direction * reach_y, direction, grid)
            position = Position(x=position.x, y=y)

    exhausted = PlacementExhausted(position, attempts)
    if strict:
        raise exhausted
    logger.warning("%s", exhausted)
    return position


def get_smart_node_position(
    nodes: Mapping[str, TreeNode],
    parent: Optional[TreeNode],
    orientation: Orientation,
    settings: EngineSettings,
    ignore: Iterable[str] = (),
) -> Position:
    """Overlap-free placement for a new (or moved) node.

    Without a parent the node goes right of the rightmost root.  Under a
    parent it goes one level out along the orientation axis, shifted along
    the cross axis by one sibling slot per existing child.  ``ignore`` lists
    nodes (typically the moved branch itself) that neither count as siblings
    nor as obstacles.
    """
    skip = set(ignore)

    if parent is None:
        roots = [
            node for node_id, node in nodes.items()
            if node_id not in skip and (node.parent_id is None or node.parent_id not in nodes)
        ]
        if not roots:
            candidate = settings.origin
        else:
            rightmost = max(roots, key=lambda n: (n.position.x, -n.position.y, n.id))
            candidate = Position(
                x=rightmost.position.x + settings.node_width + settings.tree_gap,
                y=rightmost.position.y,
            )
    else:
        sibling_count = sum(1 for c in parent.children if c not in skip)
        level = settings.level_spacing(orientation)
        slot = settings.sibling_spacing(orientation) * sibling_count
        if orientation == Orientation.HORIZONTAL:
            candidate = parent.position.offset(level, slot)
        else:
            candidate = parent.position.offset(slot, level)

    return prevent_overlap(nodes, None, candidate, settings, ignore=skip)
