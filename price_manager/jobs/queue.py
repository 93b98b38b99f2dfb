"""In-memory priority + delay action queue (single-process).

Features:
- Priority ordering (lower numeric priority value = higher priority).
- Absolute (``schedule_at``) or relative (``delay_seconds``) execution time.
- Bulk cancellation of pending actions by hook name + payload fields.
- Capacity limits / backpressure via QUEUE_SETTINGS.
- Thread-safe with condition variable.

Two-heaps strategy:
 1. ready_heap: (priority, seq, item)
 2. scheduled_heap: (ready_at_ts, priority, seq, item)

On enqueue:
  - If ready_at <= now -> push to ready_heap else scheduled_heap.
On dequeue:
  - Promote any scheduled items whose ready_at <= now.
  - Pop highest priority from ready_heap (ties resolved by seq FIFO).
  - If nothing ready: wait until next scheduled item's ready_at or until notified.

Staggered batches of a large job sit in scheduled_heap; a far-future entry never
blocks currently-ready lower-priority actions.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional
import threading
import time
import heapq

from price_manager.config import QUEUE_SETTINGS
from price_manager.jobs.actions import ScheduledAction
from price_manager.utils import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class QueueItem:
    action: ScheduledAction
    priority_label: str
    priority_value: int
    enqueued_at: float
    ready_at: float
    seq: int


class PriorityDelayQueue:
    def __init__(self) -> None:
        priorities_cfg = QUEUE_SETTINGS.get("priorities", {})
        self._priority_map: dict[str, int] = priorities_cfg if isinstance(priorities_cfg, dict) else {"normal": 5}
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        self._max_in_memory = int(QUEUE_SETTINGS.get("max_in_memory", 50000))  # type: ignore[arg-type]
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)
        self._ready_heap: list[tuple[int, int, QueueItem]] = []  # (priority_value, seq, item)
        self._scheduled_heap: list[tuple[float, int, int, QueueItem]] = []  # (ready_at_ts, priority_value, seq, item)
        self._seq_counter = 0
        self._shutdown = False

    # ----------------------------- internal helpers ----------------------------- #
    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    def _promote_scheduled(self) -> None:
        now_ts = time.time()
        while self._scheduled_heap and self._scheduled_heap[0][0] <= now_ts:
            _, priority_value, seq, item = heapq.heappop(self._scheduled_heap)
            heapq.heappush(self._ready_heap, (priority_value, seq, item))

    def _await_next_ready(self, timeout: Optional[float]) -> None:
        """Wait until something may have become ready or the timeout expires."""
        if self._ready_heap:
            return
        if not self._scheduled_heap:
            self._cv.wait(timeout=timeout)
            return
        wait_time = max(0.0, self._scheduled_heap[0][0] - time.time())
        if timeout is not None:
            wait_time = min(wait_time, timeout)
        if wait_time > 0:
            self._cv.wait(timeout=wait_time)

    def _push(self, item: QueueItem, now_ts: float) -> None:
        if item.ready_at <= now_ts:
            heapq.heappush(self._ready_heap, (item.priority_value, item.seq, item))
        else:
            heapq.heappush(self._scheduled_heap, (item.ready_at, item.priority_value, item.seq, item))

    # ----------------------------- public API ----------------------------- #
    def schedule_at(self, timestamp: float, action: ScheduledAction) -> QueueItem:
        """Schedule ``action`` to become ready at epoch ``timestamp``."""
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if self.depth() >= self._max_in_memory:
                raise OverflowError("Queue capacity exceeded")
            priority = action.priority
            if priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{priority}'")
            now_ts = time.time()
            item = QueueItem(
                action=action,
                priority_label=priority,
                priority_value=self._priority_map[priority],
                enqueued_at=now_ts,
                ready_at=max(now_ts, timestamp),
                seq=self._next_seq(),
            )
            self._push(item, now_ts)
            if self.depth() >= self._warn_depth:
                logger.warning("Queue depth warning", depth=self.depth())
            self._cv.notify()
            return item

    def enqueue(self, action: ScheduledAction, *, priority: str | None = None, delay_seconds: float = 0.0) -> QueueItem:
        if priority is not None:
            action.priority = priority
        return self.schedule_at(time.time() + max(0.0, delay_seconds), action)

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> ScheduledAction | None:
        """Pop next ready action. Returns None if non-blocking and empty or timeout occurs."""
        end_time = None if timeout is None else time.time() + timeout
        with self._lock:
            while True:
                if self._shutdown and not self._ready_heap and not self._scheduled_heap:
                    return None
                self._promote_scheduled()
                if self._ready_heap:
                    _, _, item = heapq.heappop(self._ready_heap)
                    return item.action
                if not block:
                    return None
                remaining = None if end_time is None else max(0.0, end_time - time.time())
                if end_time is not None and remaining == 0:
                    return None
                self._await_next_ready(remaining)

    def cancel_matching(self, hook: str, payload_filter: Mapping[str, Any] | None = None) -> int:
        """Drop every pending action for ``hook`` whose payload matches the filter.

        Actions already handed to a worker are not affected.
        """
        with self._lock:
            before = self.depth()
            self._ready_heap = [e for e in self._ready_heap if not e[2].action.matches(hook, payload_filter)]
            self._scheduled_heap = [e for e in self._scheduled_heap if not e[3].action.matches(hook, payload_filter)]
            heapq.heapify(self._ready_heap)
            heapq.heapify(self._scheduled_heap)
            removed = before - self.depth()
            if removed:
                logger.info("Cancelled pending actions", hook=hook, removed=removed, filter=dict(payload_filter or {}))
            self._cv.notify_all()
            return removed

    def has_pending(self, hook: str, payload_filter: Mapping[str, Any] | None = None) -> bool:
        with self._lock:
            return any(e[2].action.matches(hook, payload_filter) for e in self._ready_heap) or any(
                e[3].action.matches(hook, payload_filter) for e in self._scheduled_heap
            )

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._cv.notify_all()

    # ----------------------------- test utilities ----------------------------- #
    def purge(self) -> None:
        """Remove all queued (ready + scheduled) actions.

        Intended for test isolation; any worker currently running an action continues unaffected.
        """
        with self._lock:
            self._ready_heap.clear()
            self._scheduled_heap.clear()
            self._cv.notify_all()

    # ----------------------------- inspection ----------------------------- #
    def depth(self) -> int:
        return len(self._ready_heap) + len(self._scheduled_heap)

    def __len__(self) -> int:  # pragma: no cover
        return self.depth()

    def pending(self) -> list[ScheduledAction]:
        """Pending actions ordered by ready time."""
        with self._lock:
            items = [e[2] for e in self._ready_heap] + [e[3] for e in self._scheduled_heap]
            return [i.action for i in sorted(items, key=lambda i: (i.ready_at, i.priority_value, i.seq))]

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "depth": self.depth(),
                "ready": len(self._ready_heap),
                "scheduled": len(self._scheduled_heap),
                "shutdown": self._shutdown,
            }


__all__ = ["PriorityDelayQueue", "QueueItem"]
