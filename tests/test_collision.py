"""Tests for grid snapping and overlap avoidance."""

import logging

import pytest

from conftest import build_tree, make_node
from impact_canvas.collision import (
    boxes_overlap,
    find_conflicts,
    get_smart_node_position,
    prevent_overlap,
    snap_to_grid,
)
from impact_canvas.config import EngineSettings
from impact_canvas.errors import PlacementExhausted
from impact_canvas.models import Orientation, Position
from impact_canvas.tree import TreeModel


@pytest.mark.parametrize("raw,snapped", [
    ((150, 130), (160, 140)),   # halves round up
    ((149, 129), (140, 120)),
    ((-10, -31), (0, -40)),
    ((100, 100), (100, 100)),
])
def test_snap_to_grid(raw, snapped):
    result = snap_to_grid(Position(x=raw[0], y=raw[1]), 20)
    assert (result.x, result.y) == snapped


def test_boxes_overlap_respects_padding(settings):
    origin = Position(x=0, y=0)
    assert boxes_overlap(origin, Position(x=319, y=0), settings)
    assert not boxes_overlap(origin, Position(x=320, y=0), settings)
    assert not boxes_overlap(origin, Position(x=0, y=164), settings)


def test_prevent_overlap_keeps_free_spot(settings):
    model = build_tree([("A", None)])
    model.get("A").position = Position(x=100, y=100)
    assert prevent_overlap(model.nodes, None, Position(x=100, y=400), settings) == Position(x=100, y=400)


def test_prevent_overlap_pushes_clear(settings):
    model = build_tree([("A", None), ("B", None)])
    model.get("A").position = Position(x=100, y=100)
    model.get("B").position = Position(x=100, y=300)

    placed = prevent_overlap(model.nodes, None, Position(x=120, y=110), settings)

    assert not find_conflicts(model.nodes, placed, settings)
    assert placed.x % 20 == 0 and placed.y % 20 == 0


def test_prevent_overlap_ignores_target(settings):
    model = build_tree([("A", None)])
    model.get("A").position = Position(x=100, y=100)
    assert prevent_overlap(model.nodes, "A", Position(x=100, y=100), settings) == Position(x=100, y=100)


def test_placement_exhaustion_is_bounded(caplog):
    settings = EngineSettings(max_placement_attempts=1)
    # A row of nodes along x: each push lands on the next one.
    model = TreeModel([make_node(f"n{i}", x=i * 320, y=0) for i in range(6)])
    candidate = Position(x=0, y=0)

    with caplog.at_level(logging.WARNING, logger="impact_canvas.collision"):
        placed = prevent_overlap(model.nodes, None, candidate, settings)
    assert isinstance(placed, Position)

    with pytest.raises(PlacementExhausted) as info:
        prevent_overlap(model.nodes, None, candidate, settings, strict=True)
    assert info.value.attempts == 1


def test_first_root_goes_to_origin(settings):
    assert get_smart_node_position({}, None, Orientation.HORIZONTAL, settings) == Position(x=100, y=100)


def test_new_root_goes_right_of_rightmost_root(settings):
    model = build_tree([("A", None)])
    model.get("A").position = Position(x=100, y=100)
    placed = get_smart_node_position(model.nodes, None, Orientation.HORIZONTAL, settings)
    assert placed == Position(x=500, y=100)


@pytest.mark.parametrize("orientation,expected", [
    (Orientation.HORIZONTAL, Position(x=500, y=100)),
    (Orientation.VERTICAL, Position(x=100, y=340)),
])
def test_first_child_goes_one_level_out(settings, orientation, expected):
    model = build_tree([("A", None)])
    model.get("A").position = Position(x=100, y=100)
    placed = get_smart_node_position(model.nodes, model.get("A"), orientation, settings)
    assert placed == expected


def test_second_child_takes_next_slot(settings):
    model = build_tree([("A", None), ("B", "A")])
    model.get("A").position = Position(x=100, y=100)
    model.get("B").position = Position(x=500, y=100)
    placed = get_smart_node_position(model.nodes, model.get("A"), Orientation.HORIZONTAL, settings)
    assert placed == Position(x=500, y=300)


def test_ignored_nodes_are_not_siblings_or_obstacles(settings):
    model = build_tree([("A", None), ("B", "A")])
    model.get("A").position = Position(x=100, y=100)
    model.get("B").position = Position(x=500, y=100)
    placed = get_smart_node_position(
        model.nodes, model.get("A"), Orientation.HORIZONTAL, settings, ignore=["B"]
    )
    assert placed == Position(x=500, y=100)
