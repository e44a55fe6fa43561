"""Error taxonomy for Impact Canvas."""

from __future__ import annotations

from typing import Iterable, Optional

from .models import Position


class CanvasError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(CanvasError, ValueError):
    """A command was rejected before touching the model.

    Raised for unknown node ids, self-attachment, reattachments that would
    create a cycle, bad child references and illegal drag transitions.  The
    tree is guaranteed unchanged when this is raised.
    """


class PlacementExhausted(CanvasError):
    """``prevent_overlap`` ran out of attempts.

    Non-fatal: the resolver logs this and uses ``position`` unless the caller
    asked for strict placement.
    """

    def __init__(self, position: Position, attempts: int):
        self.position = position
        self.attempts = attempts
        super().__init__(
            f"No overlap-free position found after {attempts} attempts; "
            f"best effort ({position.x:g}, {position.y:g})"
        )


class PersistenceError(CanvasError):
    """The external store rejected a write.

    ``node_ids`` lists the nodes whose changes did not reach the store.  The
    local model is never rolled back; the nodes stay flagged unsaved until a
    later flush succeeds.
    """

    def __init__(self, message: str, node_ids: Optional[Iterable[str]] = None):
        self.node_ids = list(node_ids or [])
        super().__init__(message)
