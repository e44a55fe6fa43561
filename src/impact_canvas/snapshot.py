"""YAML snapshots for Impact Canvas.

Supports two formats:
1. Full snapshot (``tree:`` with nodes, connections and canvas state), as
   written by ``tree_to_yaml``
2. Simplified outline (flat list of nodes naming their parent), laid out
   automatically on load
"""

from __future__ import annotations
from pathlib import Path
from typing import Optional

import yaml

from .config import EngineSettings, get_settings
from .errors import ValidationError
from .layout import compute_layout
from .models import CanvasState, NodeConnection, NodeType, TreeNode, DEFAULT_TITLES
from .tree import TreeModel


def parse_yaml(yaml_str: str, settings: Optional[EngineSettings] = None) -> TreeModel:
    """Parse a YAML string into a TreeModel."""
    data = yaml.safe_load(yaml_str)
    if not data:
        raise ValueError("Empty YAML input")

    if "tree" in data:
        return _parse_snapshot_format(data["tree"])

    return _parse_outline_format(data, settings or get_settings())


def parse_file(path: str | Path, settings: Optional[EngineSettings] = None) -> TreeModel:
    """Parse a YAML file into a TreeModel."""
    content = Path(path).read_text()
    return parse_yaml(content, settings)


def _parse_snapshot_format(data: dict) -> TreeModel:
    """Parse the full snapshot format, trusting stored positions."""
    nodes = [TreeNode.model_validate(node_data) for node_data in data.get("nodes", [])]
    connections = None
    if "connections" in data:
        connections = [NodeConnection.model_validate(c) for c in data["connections"]]
    canvas_state = CanvasState.model_validate(data.get("canvasState") or {})

    model = TreeModel(nodes, connections, canvas_state)
    model.validate()
    return model


def _parse_outline_format(data: dict, settings: EngineSettings) -> TreeModel:
    """Parse the simplified outline format.

    Example:
        orientation: horizontal
        nodes:
          - id: grow
            type: outcome
            title: "Grow retention"
          - id: churn
            type: opportunity
            title: "Users churn after trial"
            parent: grow
          - id: onboarding
            type: solution
            parent: churn

    Children are ordered as listed.  Positions are computed by the tree
    layout unless every node gives ``x`` and ``y``.
    """
    canvas_state = CanvasState(orientation=data.get("orientation", "horizontal"))

    nodes: dict[str, TreeNode] = {}
    for node_data in data.get("nodes", []):
        node = _parse_outline_node(node_data)
        if node.id in nodes:
            raise ValidationError(f"Duplicate node id: {node.id}")
        nodes[node.id] = node

    for node in nodes.values():
        if node.parent_id is None:
            continue
        if node.parent_id not in nodes:
            raise ValidationError(f"{node.id} names unknown parent {node.parent_id}")
        nodes[node.parent_id].children.append(node.id)

    model = TreeModel(nodes.values(), None, canvas_state)
    model.validate()

    explicit = all("x" in n and "y" in n for n in data.get("nodes", []))
    if not explicit:
        model.apply_positions(
            compute_layout(model.nodes, None, canvas_state.orientation, settings)
        )
    return model


def _parse_outline_node(data: dict) -> TreeNode:
    """Parse a single outline node."""
    node_type = NodeType(data.get("type", NodeType.OUTCOME.value))
    return TreeNode(
        id=data["id"],
        type=node_type,
        title=data.get("title", DEFAULT_TITLES[node_type]),
        description=data.get("description", ""),
        position={"x": float(data.get("x", 0)), "y": float(data.get("y", 0))},
        parent_id=data.get("parent"),
        is_collapsed=data.get("collapsed", False),
        test_category=data.get("test_category"),
    )


def tree_to_yaml(model: TreeModel) -> str:
    """Serialize a TreeModel to the full snapshot YAML."""
    data = {
        "tree": {
            "canvasState": model.canvas_state.to_wire(),
            "nodes": [node.to_wire() for node in model.nodes.values()],
            "connections": [conn.to_wire() for conn in model.connections],
        }
    }
    return yaml.dump(data, default_flow_style=False, sort_keys=False)


def save_file(model: TreeModel, path: str | Path) -> Path:
    """Write a snapshot, creating parent directories as needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(tree_to_yaml(model))
    return path
