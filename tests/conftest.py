"""Shared fixtures for Impact Canvas tests."""

from __future__ import annotations

import pytest

from impact_canvas.config import EngineSettings
from impact_canvas.models import NodeType, Position, TreeNode
from impact_canvas.persistence import InMemoryCollaborator
from impact_canvas.session import CanvasSession
from impact_canvas.tree import TreeModel


class FakeClock:
    """Manually advanced monotonic clock for drag throttling."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings() -> EngineSettings:
    """Default geometry with near-instant timers."""
    return EngineSettings(
        debounce_seconds=0.05,
        retry_base_delay=0.001,
        inter_batch_delay=0.0,
        drag_settle_delay=0.01,
    )


@pytest.fixture
def collaborator() -> InMemoryCollaborator:
    return InMemoryCollaborator()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session(settings, collaborator, clock) -> CanvasSession:
    return CanvasSession(collaborator=collaborator, settings=settings, clock=clock)


def make_node(node_id: str, parent_id: str | None = None, x: float = 0, y: float = 0,
              node_type: NodeType = NodeType.OUTCOME) -> TreeNode:
    return TreeNode(id=node_id, type=node_type, position=Position(x=x, y=y), parent_id=parent_id)


def build_tree(edges: list[tuple[str, str | None]]) -> TreeModel:
    """Build a model from ``(id, parent_id)`` pairs, listed parents first."""
    model = TreeModel()
    for node_id, parent_id in edges:
        model.add_node(make_node(node_id, parent_id))
    return model


@pytest.fixture
def family() -> TreeModel:
    """A -> (B -> (D, E), C)."""
    return build_tree([("A", None), ("B", "A"), ("C", "A"), ("D", "B"), ("E", "B")])
