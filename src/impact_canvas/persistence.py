"""
Optimistic persistence for Impact Canvas.

Local edits are applied to the ``TreeModel`` immediately and written back to
the store later, in the background:

  1. ``enqueue`` merges a patch into a pending map keyed by node id (the
     latest value of each field wins) and restarts a debounce timer.
  2. When the timer fires, or ``flush()`` is awaited, the whole pending map
     is drained at once and split into fixed-size batches.
  3. Batches are submitted one after another, with a short pause between
     them.
  4. A failed batch is retried with exponential backoff.  Items that run out
     of retries go back into the pending map (beneath any newer edit),
     are flagged unsaved, and one failure notification is raised for the
     whole flush cycle.

Ordering
--------
Only one flush runs at a time.  Edits that arrive while a flush is in flight
wait in the pending map for the next cycle, so writes for a given node are
never reordered.

A drag holds the queue (``hold()`` / ``release()``): while held, no batch is
sent and the timer's flush is deferred until release.

Everything runs on one asyncio event loop; the ``is_flushing`` flag is the
only guard needed.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import EngineSettings
from .errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Collaborator interface
# ---------------------------------------------------------------------------

class BatchUpdate(BaseModel):
    """One entry of a batch write: the merged patch for a single node."""
    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(alias="nodeId")
    patch: dict[str, Any] = Field(default_factory=dict)


class BatchUpdateResult(BaseModel):
    """Per-node outcome of a batch write, for stores that report partial success."""
    updated: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


class PersistenceCollaborator(ABC):
    """The durable store.  Every call may raise; failures are retried."""

    @abstractmethod
    async def create_node(self, spec: dict[str, Any]) -> str: ...

    @abstractmethod
    async def batch_update(
        self, updates: list[BatchUpdate]
    ) -> Union[bool, BatchUpdateResult]: ...

    @abstractmethod
    async def delete_node(self, node_id: str) -> None: ...

    @abstractmethod
    async def reattach(self, node_id: str, new_parent_id: Optional[str]) -> None: ...


class InMemoryCollaborator(PersistenceCollaborator):
    """A store that keeps node records in a dict.

    Used for offline sessions and tests.  ``calls`` records every call in
    order; ``fail_next(n)`` makes the next ``n`` calls raise.
    """

    def __init__(self):
        self.records: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        self._failures_left = 0
        self.failing_ids: set[str] = set()

    def fail_next(self, count: int = 1) -> None:
        self._failures_left = count

    def _maybe_fail(self, operation: str) -> None:
        if self._failures_left > 0:
            self._failures_left -= 1
            raise PersistenceError(f"{operation} rejected by store")

    async def create_node(self, spec: dict[str, Any]) -> str:
        self.calls.append(("create_node", spec))
        self._maybe_fail("create_node")
        self.records[spec["id"]] = dict(spec)
        return spec["id"]

    async def batch_update(self, updates: list[BatchUpdate]) -> BatchUpdateResult:
        self.calls.append(("batch_update", [u.model_copy(deep=True) for u in updates]))
        self._maybe_fail("batch_update")
        result = BatchUpdateResult()
        for update in updates:
            if update.node_id in self.failing_ids:
                result.failed.append(update.node_id)
                continue
            self.records.setdefault(update.node_id, {"id": update.node_id}).update(update.patch)
            result.updated.append(update.node_id)
        return result

    async def delete_node(self, node_id: str) -> None:
        self.calls.append(("delete_node", node_id))
        self._maybe_fail("delete_node")
        self.records.pop(node_id, None)

    async def reattach(self, node_id: str, new_parent_id: Optional[str]) -> None:
        self.calls.append(("reattach", (node_id, new_parent_id)))
        self._maybe_fail("reattach")
        self.records.setdefault(node_id, {"id": node_id})["parentId"] = new_parent_id

    def calls_named(self, name: str) -> list[Any]:
        return [payload for call, payload in self.calls if call == name]


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class SaveStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SAVING = "saving"
    ERROR = "error"


@dataclass
class QueueEvent:
    """Notification sent to queue listeners.

    ``kind`` is one of ``enqueued``, ``saved``, ``failed``, ``discarded`` or
    ``idle``.
    """
    kind: str
    node_ids: tuple[str, ...] = field(default_factory=tuple)


Listener = Callable[[QueueEvent], None]
FailureHandler = Callable[[PersistenceError], None]


def _failed_ids(result: Union[bool, BatchUpdateResult, None], sent: Iterable[str]) -> list[str]:
    if isinstance(result, BatchUpdateResult):
        return [node_id for node_id in sent if node_id in set(result.failed)]
    if result is False:
        return list(sent)
    return []


class PersistenceQueue:
    """Debounced, batched, retried write-back of node patches."""

    def __init__(
        self,
        collaborator: PersistenceCollaborator,
        settings: EngineSettings,
        on_failure: Optional[FailureHandler] = None,
    ):
        self._collaborator = collaborator
        self._settings = settings
        self._on_failure = on_failure

        self._pending: dict[str, dict[str, Any]] = {}
        self._in_flight: dict[str, dict[str, Any]] = {}
        self._retry_counts: dict[str, int] = {}
        self._unsaved: set[str] = set()
        self._last_error: Optional[PersistenceError] = None

        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_deferred = False
        self._holds = 0
        self._failed_structural: list[tuple[str, list[str], Callable[[], Awaitable[Any]]]] = []
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        """Distinct nodes with changes not yet confirmed by the store."""
        return len(self._pending.keys() | self._in_flight.keys())

    @property
    def is_flushing(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    @property
    def is_held(self) -> bool:
        return self._holds > 0

    @property
    def unsaved(self) -> frozenset[str]:
        """Nodes whose last write ran out of retries."""
        return frozenset(self._unsaved)

    @property
    def last_error(self) -> Optional[PersistenceError]:
        return self._last_error

    @property
    def status(self) -> SaveStatus:
        if self.is_flushing:
            return SaveStatus.SAVING
        if self._unsaved:
            return SaveStatus.ERROR
        if self._pending:
            return SaveStatus.PENDING
        return SaveStatus.IDLE

    def is_pending(self, node_id: str) -> bool:
        return node_id in self._pending or node_id in self._in_flight

    def pending_patch(self, node_id: str) -> Optional[dict[str, Any]]:
        patch = self._pending.get(node_id)
        return dict(patch) if patch is not None else None

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to queue events.  Returns an unsubscribe function."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, kind: str, node_ids: Iterable[str] = ()) -> None:
        event = QueueEvent(kind=kind, node_ids=tuple(node_ids))
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Queue listener failed on %s event", kind)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, node_id: str, patch: dict[str, Any]) -> None:
        """Merge ``patch`` into the pending write for ``node_id``."""
        self.enqueue_many({node_id: patch})

    def enqueue_many(self, patches: dict[str, dict[str, Any]]) -> None:
        """Merge several patches with a single debounce restart."""
        if not patches:
            return
        for node_id, patch in patches.items():
            merged = dict(self._pending.get(node_id, {}))
            merged.update(patch)
            self._pending[node_id] = merged
        self._schedule()
        self._emit("enqueued", patches.keys())

    def discard(self, node_ids: Iterable[str]) -> None:
        """Forget pending writes for nodes that no longer exist."""
        dropped = []
        for node_id in node_ids:
            if self._pending.pop(node_id, None) is not None:
                dropped.append(node_id)
            self._unsaved.discard(node_id)
            self._retry_counts.pop(node_id, None)
        if dropped:
            self._emit("discarded", dropped)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self) -> None:
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %d writes wait for flush()", len(self._pending))
            return
        self._timer = loop.call_later(self._settings.debounce_seconds, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self.is_flushing or self.is_held:
            self._flush_deferred = True
            return
        if self._pending:
            self._start_flush()

    def hold(self) -> None:
        """Keep writes away from the store until the matching ``release()``.

        Edits still collect in the pending map.  A batch already in transit
        finishes its current call, and whatever is left goes back to pending.
        """
        self._holds += 1

    def release(self) -> None:
        if not self._holds:
            return
        self._holds -= 1
        if self._holds or not self._pending:
            return
        if self.is_flushing:
            self._flush_deferred = True
        else:
            self._schedule()

    def _start_flush(self) -> asyncio.Task:
        # Drain atomically: later edits land in a fresh pending map.
        batch, self._pending = self._pending, {}
        self._in_flight = dict(batch)
        self._flush_task = asyncio.get_running_loop().create_task(self._run_flush(batch))
        return self._flush_task

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait until no flush is in flight."""
        while self.is_flushing:
            await asyncio.shield(self._flush_task)

    async def flush(self) -> None:
        """Write everything pending now and wait for it to finish.

        If a flush is already running this waits for it first, then flushes
        whatever accumulated meanwhile.  Never runs two flushes at once.
        While the queue is held nothing is written; ``release()`` schedules
        the pending writes instead.
        """
        self._cancel_timer()
        while self.is_flushing:
            await asyncio.shield(self._flush_task)
            self._cancel_timer()
        if not self._pending:
            return
        if self.is_held:
            logger.debug("Queue held; %d writes wait for release", len(self._pending))
            return
        await asyncio.shield(self._start_flush())

    async def retry_failed(self) -> None:
        """Resubmit failed structural calls in order, then flush the patches.

        Every unsaved node gets a fresh retry budget.
        """
        for node_id in self._unsaved:
            self._retry_counts.pop(node_id, None)
        self._last_error = None
        failed, self._failed_structural = self._failed_structural, []
        for label, node_ids, call in failed:
            await self.submit_structural(label, node_ids, call)
        await self.flush()

    async def close(self) -> None:
        """Flush outstanding writes and stop the timer."""
        await self.flush()
        self._cancel_timer()

    async def _run_flush(self, batch: dict[str, dict[str, Any]]) -> None:
        size = self._settings.batch_size
        entries = list(batch.items())
        chunks = [dict(entries[i:i + size]) for i in range(0, len(entries), size)]
        logger.debug("Flushing %d updates in %d batches", len(entries), len(chunks))

        exhausted: list[str] = []
        try:
            for index, chunk in enumerate(chunks):
                if index:
                    await asyncio.sleep(self._settings.inter_batch_delay)
                if self.is_held:
                    logger.debug("Queue held; %d batches put back", len(chunks) - index)
                    break
                exhausted.extend(await self._submit_batch(chunk))
        finally:
            # Anything still in flight here was interrupted; keep it pending.
            for node_id, patch in self._in_flight.items():
                self._restore_pending(node_id, patch)
            self._in_flight = {}

        if exhausted:
            self._raise_failure(
                PersistenceError(f"{len(exhausted)} change(s) could not be saved", exhausted)
            )

        if self._flush_deferred and self._pending:
            self._schedule()
        self._flush_deferred = False
        self._emit("idle")

    async def _submit_batch(self, chunk: dict[str, dict[str, Any]]) -> list[str]:
        """Submit one batch, retrying failures.  Returns ids that gave up."""
        remaining = dict(chunk)
        exhausted: list[str] = []
        attempt = 0

        while remaining:
            updates = [BatchUpdate(node_id=n, patch=p) for n, p in remaining.items()]
            try:
                result = await self._collaborator.batch_update(updates)
                failed = _failed_ids(result, remaining)
                reason = "store reported failure"
            except Exception as exc:
                failed = list(remaining)
                reason = str(exc) or type(exc).__name__

            saved = [n for n in remaining if n not in failed]
            for node_id in saved:
                self._in_flight.pop(node_id, None)
                self._retry_counts.pop(node_id, None)
                self._unsaved.discard(node_id)
            if saved:
                if not self._unsaved:
                    self._last_error = None
                self._emit("saved", saved)
            if not failed:
                break

            retry: dict[str, dict[str, Any]] = {}
            for node_id in failed:
                count = self._retry_counts.get(node_id, 0) + 1
                self._retry_counts[node_id] = count
                if count <= self._settings.max_retries:
                    retry[node_id] = remaining[node_id]
                else:
                    exhausted.append(node_id)
                    self._give_up(node_id)

            if not retry:
                break
            delay = self._settings.retry_base_delay * (2 ** attempt)
            attempt += 1
            logger.warning(
                "Batch write failed for %d node(s) (%s); retry %d in %.2fs",
                len(retry), reason, attempt, delay,
            )
            await asyncio.sleep(delay)
            if self.is_held:
                break
            remaining = retry

        return exhausted

    def _restore_pending(self, node_id: str, patch: dict[str, Any]) -> None:
        # Newer edits made during the flush win over the failed patch.
        self._pending[node_id] = {**patch, **self._pending.get(node_id, {})}

    def _give_up(self, node_id: str) -> None:
        patch = self._in_flight.pop(node_id, {})
        self._restore_pending(node_id, patch)
        self._retry_counts.pop(node_id, None)
        self._unsaved.add(node_id)

    def _raise_failure(self, error: PersistenceError) -> None:
        self._last_error = error
        logger.error("%s: %s", error, ", ".join(error.node_ids))
        self._emit("failed", error.node_ids)
        if self._on_failure is not None:
            try:
                self._on_failure(error)
            except Exception:
                logger.exception("Failure handler raised")

    # ------------------------------------------------------------------
    # Structural writes
    # ------------------------------------------------------------------

    async def submit_structural(
        self,
        label: str,
        node_ids: Iterable[str],
        call: Callable[[], Awaitable[T]],
    ) -> Optional[T]:
        """Run a create / delete / reattach call with the retry policy.

        Returns the call's result, or ``None`` after the retries ran out (in
        which case the failure has been reported once and the nodes are
        flagged unsaved).
        """
        node_ids = list(node_ids)
        attempt = 0
        while True:
            try:
                result = await call()
            except Exception as exc:
                if attempt >= self._settings.max_retries:
                    self._unsaved.update(node_ids)
                    self._failed_structural.append((label, node_ids, call))
                    self._raise_failure(PersistenceError(f"{label} failed: {exc}", node_ids))
                    return None
                delay = self._settings.retry_base_delay * (2 ** attempt)
                attempt += 1
                logger.warning("%s failed (%s); retry %d in %.2fs", label, exc, attempt, delay)
                await asyncio.sleep(delay)
                continue
            self._unsaved.difference_update(node_ids)
            return result
