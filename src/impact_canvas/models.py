"""
Data models for Impact Canvas — the impact tree ontology.

An impact tree is a forest of typed nodes laid out on an infinite logical
canvas.  Every non-root node hangs off exactly one parent, and every
parent/child edge is mirrored by a ``NodeConnection`` so renderers can draw
connectors without walking the tree:

    Objective
    └── Outcome
        └── Opportunity
            └── Solution
                └── Assumption / Metric / Research

The hierarchy above is the conventional shape, not an enforced one: any
node type may parent any other.

This module also defines the **node type system** — seven semantic types
that carry product-strategy meaning:

    objective   — the business objective the tree serves
    outcome     — a measurable customer or business outcome
    opportunity — a customer problem or market opportunity
    solution    — a candidate solution to an opportunity
    assumption  — an assumption test (optionally categorised)
    metric      — a metric tracking an outcome
    research    — a research activity feeding the tree

Wire format
-----------
The store speaks camelCase JSON (``parentId``, ``isCollapsed``,
``hiddenChildren`` ...).  Models accept both the Python field names and the
camelCase aliases, and ``to_wire()`` produces the alias form with the
transient ``is_dragging`` flag stripped.
"""

from __future__ import annotations

import random
import string
import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class NodeType(str, Enum):
    """The seven semantic node kinds of an impact tree."""
    OBJECTIVE = "objective"
    OUTCOME = "outcome"
    OPPORTUNITY = "opportunity"
    SOLUTION = "solution"
    ASSUMPTION = "assumption"
    METRIC = "metric"
    RESEARCH = "research"


class TestCategory(str, Enum):
    """Risk category of an assumption test."""
    __test__ = False  # not a pytest test class

    VIABILITY = "viability"
    VALUE = "value"
    FEASIBILITY = "feasibility"
    USABILITY = "usability"


class Orientation(str, Enum):
    """Axis along which child levels are laid out.

    ``horizontal`` places children to the right of their parent,
    ``vertical`` places them below.
    """
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"


# Default content per node type
DEFAULT_TITLES: dict[NodeType, str] = {
    NodeType.OBJECTIVE: "New Objective",
    NodeType.OUTCOME: "New Outcome",
    NodeType.OPPORTUNITY: "New Opportunity",
    NodeType.SOLUTION: "New Solution",
    NodeType.ASSUMPTION: "New Assumption Test",
    NodeType.METRIC: "New Metric",
    NodeType.RESEARCH: "New Research",
}

DEFAULT_DESCRIPTIONS: dict[NodeType, str] = {
    NodeType.OBJECTIVE: "Define the strategic objective",
    NodeType.OUTCOME: "Define the desired business outcome",
    NodeType.OPPORTUNITY: "Identify the market opportunity",
    NodeType.SOLUTION: "Design the solution approach",
    NodeType.ASSUMPTION: "Test key assumptions",
    NodeType.METRIC: "Define how progress is measured",
    NodeType.RESEARCH: "Plan the research activity",
}

# Example text shown in empty title inputs
TITLE_PLACEHOLDERS: dict[NodeType, str] = {
    NodeType.OBJECTIVE: "e.g., Increase monthly revenue by 20%",
    NodeType.OUTCOME: "e.g., Higher customer satisfaction scores",
    NodeType.OPPORTUNITY: "e.g., Expand to mobile app market",
    NodeType.SOLUTION: "e.g., Build automated email system",
    NodeType.ASSUMPTION: "e.g., Users will pay $10/month for premium",
    NodeType.METRIC: "e.g., Weekly active users",
    NodeType.RESEARCH: "e.g., Survey 100 existing customers",
}


# ---------------------------------------------------------------------------
# Id generation
# ---------------------------------------------------------------------------

_ID_ALPHABET = string.digits + string.ascii_lowercase


def _random_suffix(length: int = 9) -> str:
    return "".join(random.choice(_ID_ALPHABET) for _ in range(length))


def generate_node_id(node_type: NodeType | str) -> str:
    """Generate a node id of the form ``{type}-{epoch_ms}-{suffix}``."""
    type_name = NodeType(node_type).value
    return f"{type_name}-{int(time.time() * 1000)}-{_random_suffix()}"


def generate_connection_id() -> str:
    """Generate a connection id of the form ``conn-{epoch_ms}-{suffix}``."""
    return f"conn-{int(time.time() * 1000)}-{_random_suffix()}"


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

class Position(BaseModel):
    """A point on the logical canvas (top-left corner of a node box)."""
    model_config = ConfigDict(frozen=True)

    x: float = 0.0
    y: float = 0.0

    def offset(self, dx: float, dy: float) -> Position:
        """Return this position translated by ``(dx, dy)``."""
        return Position(x=self.x + dx, y=self.y + dy)


class Pan(BaseModel):
    x: float = 0.0
    y: float = 0.0


# ---------------------------------------------------------------------------
# Node
# ---------------------------------------------------------------------------

class TreeNode(BaseModel):
    """A node — one typed item of the impact tree.

    Structure
    ---------
    ``parent_id`` and ``children`` describe the same edge from both ends.
    ``TreeModel`` is the only writer of either field and keeps them
    consistent; callers should never edit them directly.

    Visibility
    ----------
    ``is_collapsed`` hides every descendant of the node.  ``hidden_children``
    hides individual child branches while the node stays expanded.  Neither
    flag affects layout, only what ``visibility.get_visible_nodes`` returns.

    Drag state
    ----------
    ``is_dragging`` is display-only and never persisted: ``to_wire()``
    excludes it.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: NodeType
    title: str = ""
    description: str = ""
    position: Position = Field(default_factory=Position)
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    children: list[str] = Field(default_factory=list)
    is_collapsed: bool = Field(default=False, alias="isCollapsed")
    hidden_children: set[str] = Field(default_factory=set, alias="hiddenChildren")
    is_dragging: bool = Field(default=False, alias="isDragging")
    test_category: Optional[TestCategory] = Field(default=None, alias="testCategory")
    template_data: dict[str, Any] = Field(default_factory=dict, alias="templateData")

    @field_validator("hidden_children", mode="before")
    @classmethod
    def _coerce_hidden(cls, value: Any) -> Any:
        # The store sends a list; older snapshots may send null.
        if value is None:
            return set()
        return value

    @classmethod
    def create(
        cls,
        node_type: NodeType | str,
        position: Position,
        parent_id: Optional[str] = None,
        test_category: Optional[TestCategory | str] = None,
        node_id: Optional[str] = None,
    ) -> TreeNode:
        """Build a fresh node with the default content for its type."""
        node_type = NodeType(node_type)
        return cls(
            id=node_id or generate_node_id(node_type),
            type=node_type,
            title=DEFAULT_TITLES[node_type],
            description=DEFAULT_DESCRIPTIONS[node_type],
            position=position,
            parent_id=parent_id,
            test_category=TestCategory(test_category) if test_category else None,
        )

    @property
    def placeholder(self) -> str:
        """Example title text for this node's type."""
        return TITLE_PLACEHOLDERS[self.type]

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the store's camelCase JSON shape."""
        data = self.model_dump(mode="json", by_alias=True, exclude={"is_dragging"})
        # Sets have no stable order; keep snapshots diffable.
        data["hiddenChildren"] = sorted(self.hidden_children)
        return data


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class NodeConnection(BaseModel):
    """A connector from a parent node to one of its children."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_node_id: str = Field(alias="fromNodeId")
    to_node_id: str = Field(alias="toNodeId")

    @classmethod
    def between(cls, from_node_id: str, to_node_id: str) -> NodeConnection:
        return cls(
            id=generate_connection_id(),
            from_node_id=from_node_id,
            to_node_id=to_node_id,
        )

    def touches(self, node_ids: set[str]) -> bool:
        return self.from_node_id in node_ids or self.to_node_id in node_ids

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Canvas state
# ---------------------------------------------------------------------------

MIN_ZOOM = 0.1
MAX_ZOOM = 3.0


class CanvasState(BaseModel):
    """Viewport and orientation of the canvas.

    ``zoom`` is clamped into ``[MIN_ZOOM, MAX_ZOOM]`` rather than rejected,
    since zoom gestures routinely overshoot.
    """
    model_config = ConfigDict(populate_by_name=True)

    zoom: float = 1.0
    pan: Pan = Field(default_factory=Pan)
    orientation: Orientation = Orientation.HORIZONTAL

    @field_validator("zoom", mode="before")
    @classmethod
    def _clamp_zoom(cls, value: Any) -> float:
        return min(MAX_ZOOM, max(MIN_ZOOM, float(value)))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
