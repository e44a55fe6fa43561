"""
Drag gestures on the canvas.

A drag moves only the grabbed node while the pointer is down; its subtree
follows on release.  The persistence queue is held for the whole gesture,
so no write reaches the store while dragging.  The move itself is persisted
once, on release:

    IDLE --start--> DRAGGING --end--> SETTLING --saved / delay--> IDLE
                        |
                        +--cancel--> IDLE

SETTLING lasts until the queue reports the dropped nodes saved, or until
``drag_settle_delay`` passes, whichever comes first.  A new drag may start
while settling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional

from .collision import snap_to_grid
from .config import EngineSettings
from .errors import ValidationError
from .layout import compute_subtree_layout
from .models import Orientation, Position
from .persistence import PersistenceQueue, QueueEvent
from .tree import TreeModel

logger = logging.getLogger(__name__)


class DragPhase(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    SETTLING = "settling"


def position_patch(position: Position) -> dict:
    """Queue patch carrying a node position."""
    return {"position": {"x": position.x, "y": position.y}}


class DragCoordinator:
    """Owns the drag state machine for one canvas.

    ``orientation`` is read at release time, so a session can switch
    orientation without rebuilding the coordinator.
    """

    def __init__(
        self,
        model: TreeModel,
        queue: PersistenceQueue,
        settings: EngineSettings,
        orientation: Callable[[], Orientation],
        clock: Callable[[], float] = time.monotonic,
    ):
        self._model = model
        self._queue = queue
        self._settings = settings
        self._orientation = orientation
        self._clock = clock

        self.phase = DragPhase.IDLE
        self.node_id: Optional[str] = None
        self._pointer_origin = Position()
        self._node_origin = Position()
        self._start_positions: dict[str, Position] = {}
        self._last_frame_at: Optional[float] = None
        self._pending_frame: Optional[Position] = None
        self._settling_ids: set[str] = set()
        self._settle_handle: Optional[asyncio.TimerHandle] = None

        self._unsubscribe = queue.add_listener(self._on_queue_event)

    @property
    def is_dragging(self) -> bool:
        return self.phase == DragPhase.DRAGGING

    # ------------------------------------------------------------------
    # Gesture
    # ------------------------------------------------------------------

    def start(self, node_id: str, pointer: Position) -> None:
        if self.phase == DragPhase.DRAGGING:
            raise ValidationError(f"Already dragging {self.node_id}")
        node = self._model.get(node_id)
        if self.phase == DragPhase.SETTLING:
            self._finish_settle()

        subtree = self._model.subtree_ids(node_id)
        self._start_positions = {i: self._model.nodes[i].position for i in subtree}
        self._model.set_dragging(subtree, True)
        self._queue.hold()

        self.phase = DragPhase.DRAGGING
        self.node_id = node_id
        self._pointer_origin = pointer
        self._node_origin = node.position
        self._last_frame_at = None
        self._pending_frame = None
        logger.debug("Drag started on %s", node_id)

    def _target(self, pointer: Position) -> Position:
        return self._node_origin.offset(
            pointer.x - self._pointer_origin.x,
            pointer.y - self._pointer_origin.y,
        )

    def update(self, pointer: Position) -> bool:
        """Move the dragged node under the pointer.

        Returns False when the frame arrived too soon after the previous one;
        the latest such frame is kept and applied on release.
        """
        if self.phase != DragPhase.DRAGGING:
            raise ValidationError("No drag in progress")
        target = self._target(pointer)
        now = self._clock()
        if (
            self._last_frame_at is not None
            and now - self._last_frame_at < self._settings.drag_frame_interval
        ):
            self._pending_frame = target
            return False
        self._last_frame_at = now
        self._pending_frame = None
        self._model.set_position(self.node_id, target)
        return True

    def end(self, pointer: Optional[Position] = None) -> list[str]:
        """Drop the node where it is, lay out its subtree and persist once.

        Returns the ids of every node whose position changed.
        """
        if self.phase != DragPhase.DRAGGING:
            raise ValidationError("No drag in progress")
        node_id = self.node_id

        if pointer is not None:
            target = self._target(pointer)
        elif self._pending_frame is not None:
            target = self._pending_frame
        else:
            target = self._model.get(node_id).position
        self._model.set_position(node_id, snap_to_grid(target, self._settings.grid_size))

        if self._model.get(node_id).children:
            self._model.apply_positions(
                compute_subtree_layout(
                    self._model.nodes, node_id, self._orientation(), self._settings
                )
            )

        subtree = list(self._start_positions)
        self._model.set_dragging(subtree, False)
        changed = [
            i for i in subtree
            if i in self._model and self._model.nodes[i].position != self._start_positions[i]
        ]
        if changed:
            self._queue.enqueue_many(
                {i: position_patch(self._model.nodes[i].position) for i in changed}
            )
        logger.debug("Drag of %s ended; %d nodes moved", node_id, len(changed))
        self._queue.release()
        self._begin_settle(changed)
        return changed

    def cancel(self) -> None:
        """Abort the drag and put every node back where it started."""
        if self.phase != DragPhase.DRAGGING:
            return
        self._model.apply_positions(self._start_positions)
        self._model.set_dragging(self._start_positions, False)
        logger.debug("Drag of %s cancelled", self.node_id)
        self._queue.release()
        self._reset()

    # ------------------------------------------------------------------
    # Settling
    # ------------------------------------------------------------------

    def _begin_settle(self, node_ids: list[str]) -> None:
        self._reset()
        if not node_ids:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self.phase = DragPhase.SETTLING
        self._settling_ids = set(node_ids)
        self._settle_handle = loop.call_later(
            self._settings.drag_settle_delay, self._finish_settle
        )

    def _on_queue_event(self, event: QueueEvent) -> None:
        if (
            self.phase == DragPhase.SETTLING
            and event.kind == "saved"
            and self._settling_ids.intersection(event.node_ids)
        ):
            self._finish_settle()

    def _finish_settle(self) -> None:
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None
        self._settling_ids = set()
        if self.phase == DragPhase.SETTLING:
            self.phase = DragPhase.IDLE

    def _reset(self) -> None:
        self.phase = DragPhase.IDLE
        self.node_id = None
        self._start_positions = {}
        self._pending_frame = None
        self._last_frame_at = None

    def close(self) -> None:
        self.cancel()
        self._finish_settle()
        self._unsubscribe()
