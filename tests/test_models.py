"""Tests for the node / connection / canvas-state models."""

import re

from impact_canvas.models import (
    CanvasState,
    NodeConnection,
    NodeType,
    Orientation,
    Position,
    TestCategory,
    TreeNode,
    generate_node_id,
)


def test_node_id_format():
    node_id = generate_node_id(NodeType.SOLUTION)
    assert re.fullmatch(r"solution-\d+-[0-9a-z]{9}", node_id)


def test_create_uses_type_defaults():
    node = TreeNode.create("assumption", Position(x=100, y=100), test_category="viability")

    assert node.type == NodeType.ASSUMPTION
    assert node.title == "New Assumption Test"
    assert node.test_category == TestCategory.VIABILITY
    assert node.placeholder.startswith("e.g.")
    assert node.children == []
    assert node.hidden_children == set()


def test_wire_format_is_camel_case_and_drops_dragging():
    node = TreeNode(
        id="n1", type="outcome", parentId="root",
        isCollapsed=True, hiddenChildren=["b", "a"], isDragging=True,
    )
    wire = node.to_wire()

    assert wire["parentId"] == "root"
    assert wire["isCollapsed"] is True
    assert wire["hiddenChildren"] == ["a", "b"]
    assert "isDragging" not in wire
    assert "is_dragging" not in wire
    assert TreeNode.model_validate(wire).hidden_children == {"a", "b"}


def test_null_hidden_children_accepted():
    node = TreeNode.model_validate({"id": "n", "type": "metric", "hiddenChildren": None})
    assert node.hidden_children == set()


def test_connection_between():
    conn = NodeConnection.between("a", "b")
    assert conn.id.startswith("conn-")
    assert conn.to_wire()["fromNodeId"] == "a"
    assert conn.touches({"b"})
    assert not conn.touches({"c"})


def test_zoom_is_clamped():
    assert CanvasState(zoom=10).zoom == 3.0
    assert CanvasState(zoom=0.01).zoom == 0.1
    assert CanvasState().orientation == Orientation.HORIZONTAL
