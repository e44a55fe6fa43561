"""Tests for TreeModel structure commands and invariants."""

import pytest

from conftest import build_tree, make_node
from impact_canvas.errors import ValidationError
from impact_canvas.tree import TreeModel


def test_add_node_links_parent_and_connection(family):
    family.validate()
    assert family.get("A").children == ["B", "C"]
    assert family.connection_to("D").from_node_id == "B"
    assert family.root_ids() == ["A"]


def test_add_node_unknown_parent_rejected(family):
    with pytest.raises(ValidationError):
        family.add_node(make_node("X", "missing"))
    assert "X" not in family


def test_duplicate_id_rejected(family):
    with pytest.raises(ValidationError):
        family.add_node(make_node("B"))


def test_descendants_pre_order(family):
    assert family.descendant_ids("A") == ["B", "D", "E", "C"]
    assert family.subtree_ids("B") == ["B", "D", "E"]
    assert family.is_descendant("A", "E")
    assert not family.is_descendant("B", "C")


def test_remove_subtree_leaves_first(family):
    family.toggle_child_visibility("A", "B")
    removed = family.remove_subtree("B")

    assert removed == ["E", "D", "B"]
    assert family.get("A").children == ["C"]
    assert family.get("A").hidden_children == set()
    assert all(c.to_node_id == "C" for c in family.connections)
    family.validate()


def test_reattach_moves_edge(family):
    family.reattach("D", "C")

    assert family.get("B").children == ["E"]
    assert family.get("C").children == ["D"]
    assert family.connection_to("D").from_node_id == "C"
    family.validate()


def test_reattach_to_root(family):
    family.reattach("B", None)
    assert set(family.root_ids()) == {"A", "B"}
    assert family.connection_to("B") is None
    family.validate()


@pytest.mark.parametrize("node_id,new_parent", [
    ("A", "D"),    # ancestor onto descendant
    ("B", "B"),    # onto itself
    ("B", "nope"),
    ("nope", "A"),
])
def test_invalid_reattach_leaves_tree_unchanged(family, node_id, new_parent):
    parents = family.parents()
    connections = [(c.from_node_id, c.to_node_id) for c in family.connections]

    with pytest.raises(ValidationError):
        family.reattach(node_id, new_parent)

    assert family.parents() == parents
    assert [(c.from_node_id, c.to_node_id) for c in family.connections] == connections
    family.validate()


def test_update_content_only_allows_content_fields(family):
    node = family.update_content("A", title="Grow revenue", test_category="value")
    assert node.title == "Grow revenue"
    assert node.test_category.value == "value"

    with pytest.raises(ValidationError):
        family.update_content("A", parent_id="C")


def test_toggle_child_visibility_requires_child(family):
    assert family.toggle_child_visibility("A", "B") is True
    assert family.toggle_child_visibility("A", "B") is False
    with pytest.raises(ValidationError):
        family.toggle_child_visibility("A", "D")


def test_toggle_collapse(family):
    assert family.toggle_collapse("B") is True
    assert family.toggle_collapse("B") is False


def test_validate_detects_broken_edges():
    model = TreeModel([make_node("A"), make_node("B", "A")])
    with pytest.raises(ValidationError):
        model.validate()  # A does not list B

    model = build_tree([("A", None), ("B", "A")])
    model.get("A").hidden_children.add("Z")
    with pytest.raises(ValidationError):
        model.validate()


def test_connections_derived_when_loading():
    a = make_node("A")
    b = make_node("B", "A")
    a.children.append("B")
    model = TreeModel([a, b])
    assert [(c.from_node_id, c.to_node_id) for c in model.connections] == [("A", "B")]
    model.validate()
