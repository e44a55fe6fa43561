"""Tests for the extent tree layout."""

import itertools

import pytest

from conftest import build_tree
from impact_canvas.collision import boxes_overlap
from impact_canvas.layout import (
    compute_extents,
    compute_layout,
    compute_subtree_layout,
    fit_view,
    home_view,
    layout_forest,
    translate_subtree,
)
from impact_canvas.models import NodeType, Orientation, Position


def _xy(positions):
    return {node_id: (p.x, p.y) for node_id, p in positions.items()}


def test_extents(family):
    assert compute_extents(family.nodes, ["A"]) == {"D": 1, "E": 1, "B": 2, "C": 1, "A": 3}


def test_horizontal_layout(family, settings):
    positions = compute_layout(family.nodes, None, Orientation.HORIZONTAL, settings)
    assert _xy(positions) == {
        "A": (100, 300),
        "B": (500, 200),
        "D": (900, 100),
        "E": (900, 300),
        "C": (500, 500),
    }


def test_vertical_layout(family, settings):
    positions = compute_layout(family.nodes, None, Orientation.VERTICAL, settings)
    assert _xy(positions) == {
        "A": (460, 100),
        "B": (280, 340),
        "D": (100, 580),
        "E": (460, 580),
        "C": (820, 340),
    }


def test_roots_separated_by_tree_gap(settings):
    model = build_tree([("A", None), ("B", "A"), ("R", None)])
    positions = compute_layout(model.nodes, None, Orientation.HORIZONTAL, settings)
    assert _xy(positions) == {"A": (100, 100), "B": (500, 100), "R": (100, 400)}


def test_layout_is_deterministic(family, settings):
    first = compute_layout(family.nodes, None, Orientation.HORIZONTAL, settings)
    family.apply_positions({"A": Position(x=-999, y=42), "E": Position(x=7, y=7)})
    second = compute_layout(family.nodes, None, Orientation.HORIZONTAL, settings)
    assert first == second


@pytest.mark.parametrize("orientation", list(Orientation))
def test_layout_has_no_overlaps_and_is_on_grid(settings, orientation):
    model = build_tree([
        ("O", None), ("P1", "O"), ("P2", "O"), ("P3", "O"),
        ("S1", "P1"), ("S2", "P1"), ("S3", "P2"), ("T1", "S3"), ("T2", "S3"),
        ("X", None), ("Y", "X"),
    ])
    positions = compute_layout(model.nodes, None, orientation, settings)

    for a, b in itertools.combinations(positions, 2):
        assert not boxes_overlap(positions[a], positions[b], settings), (a, b)
    for p in positions.values():
        assert p.x % settings.grid_size == 0
        assert p.y % settings.grid_size == 0


def test_subtree_layout_anchors_on_root(family, settings):
    family.get("A").position = Position(x=160, y=140)
    positions = compute_subtree_layout(family.nodes, "A", Orientation.HORIZONTAL, settings)
    assert _xy(positions) == {
        "A": (160, 140),
        "B": (560, 140),
        "D": (960, 40),
        "E": (960, 240),
        "C": (560, 440),
    }


def test_layout_forest_does_not_mutate_input(family, settings):
    laid_out = layout_forest(family.nodes, None, Orientation.HORIZONTAL, settings)
    assert laid_out["D"].position == Position(x=900, y=100)
    assert family.get("D").position == Position(x=0, y=0)


def test_translate_subtree(family):
    family.get("B").position = Position(x=10, y=10)
    moved = translate_subtree(family.nodes, "B", 5, -5)
    assert set(moved) == {"B", "D", "E"}
    assert moved["B"] == Position(x=15, y=5)


def test_home_view_centres_top_left_outcome(settings):
    model = build_tree([("A", None), ("B", None)])
    model.get("A").position = Position(x=1000, y=1000)
    model.get("B").position = Position(x=200, y=100)
    state = home_view(model.nodes, Orientation.HORIZONTAL, settings)

    assert state.zoom == 1
    assert state.pan.x == 400 - (200 + settings.node_width / 2)
    assert state.pan.y == 300 - (100 + settings.node_height / 2)


def test_home_view_without_outcomes(settings):
    model = build_tree([("A", None)])
    model.get("A").type = NodeType.OBJECTIVE
    state = home_view(model.nodes, Orientation.VERTICAL, settings)
    assert (state.pan.x, state.pan.y) == (100, 100)
    assert state.orientation == Orientation.VERTICAL


def test_fit_view_contains_every_node(family, settings):
    family.apply_positions(compute_layout(family.nodes, None, Orientation.HORIZONTAL, settings))
    width, height = 800, 600
    state = fit_view(family.nodes, width, height, Orientation.HORIZONTAL, settings)

    assert state.zoom <= 1
    for node in family.nodes.values():
        left = node.position.x * state.zoom + state.pan.x
        top = node.position.y * state.zoom + state.pan.y
        right = (node.position.x + settings.node_width) * state.zoom + state.pan.x
        bottom = (node.position.y + settings.node_height) * state.zoom + state.pan.y
        assert left >= 0 and top >= 0
        assert right <= width + 1e-6 and bottom <= height + 1e-6
