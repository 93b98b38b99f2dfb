"""Background workers draining the scheduled action queue."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol, Optional, Mapping, Union

from price_manager.config import QUEUE_SETTINGS
from price_manager.jobs.actions import ScheduledAction
from price_manager.jobs.queue import PriorityDelayQueue
from price_manager.jobs.redis_queue import RedisQueue
from price_manager.utils import get_logger, log_performance

logger = get_logger(__name__)

# Debug instrumentation store (test visibility)
LAST_EXCEPTIONS: list[dict] = []

HookFn = Callable[..., Any]


class QueueProtocol(Protocol):
    def schedule_at(self, timestamp: float, action: ScheduledAction) -> Any: ...
    def enqueue(self, action: ScheduledAction, *, priority: str | None = None, delay_seconds: float = 0.0) -> Any: ...
    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> ScheduledAction | None: ...
    def cancel_matching(self, hook: str, payload_filter: Mapping[str, Any] | None = None) -> int: ...
    def has_pending(self, hook: str, payload_filter: Mapping[str, Any] | None = None) -> bool: ...
    def shutdown(self) -> None: ...
    def depth(self) -> int: ...
    def snapshot(self) -> dict: ...


class ActionWorker:
    """Pool of daemon threads running queued actions through registered hooks.

    Delivery is at-least-once from the worker's point of view: a hook that
    raises is logged and its action is not retried, so hooks are expected to
    convert their own failures into recorded outcomes.
    """

    def __init__(self, queue: QueueProtocol, *, worker_count: int | None = None, poll_timeout: float | None = None):
        self.queue = queue
        self.worker_count = int(worker_count if worker_count is not None else QUEUE_SETTINGS.get("worker_count", 4))  # type: ignore[arg-type]
        self.poll_timeout = float(poll_timeout if poll_timeout is not None else QUEUE_SETTINGS.get("poll_timeout", 1.0))  # type: ignore[arg-type]
        self._hooks: dict[str, HookFn] = {}
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()

    def register(self, hook: str, fn: HookFn) -> None:
        self._hooks[hook] = fn
        logger.debug("Hook registered", hook=hook)

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):  # pragma: no cover
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"price-worker-{i}", daemon=True)
            for i in range(max(1, self.worker_count))
        ]
        for t in self._threads:
            t.start()
        logger.info("Action workers started", worker_count=len(self._threads))

    def stop(self, *, join_timeout: float | None = None) -> None:
        self._stop_event.set()
        logger.info("Action worker stop requested")
        if join_timeout is not None:
            for t in self._threads:
                t.join(timeout=join_timeout)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                action = self.queue.dequeue(timeout=self.poll_timeout)
                if action is None:
                    continue
                if not isinstance(action, ScheduledAction):
                    logger.warning("Skipping unknown action type", action_type=type(action).__name__)
                    continue
                self.run_action(action)
            except Exception as e:  # pragma: no cover - keeps the thread alive
                logger.error("Worker loop error", error=str(e), exc_info=True)
                time.sleep(1)

    def run_action(self, action: ScheduledAction) -> bool:
        """Execute one action synchronously. Returns False if its hook failed or is unknown."""
        fn = self._hooks.get(action.hook)
        if fn is None:
            logger.warning("No hook registered for action", hook=action.hook, action_id=action.action_id)
            return False
        start = time.time()
        ok = True
        try:
            fn(**action.payload)
        except Exception as e:
            ok = False
            logger.error("Action hook failed", hook=action.hook, payload=action.payload, error=str(e), exc_info=True)
            LAST_EXCEPTIONS.append({
                "hook": action.hook,
                "payload": dict(action.payload),
                "error": str(e),
                "type": type(e).__name__,
            })
        finally:
            if action.is_recurring and not self._stop_event.is_set():
                self._reschedule(action)
        log_performance(
            operation=f"action:{action.hook}",
            duration_ms=(time.time() - start) * 1000,
            additional_data={"ok": ok},
        )
        return ok

    def _reschedule(self, action: ScheduledAction) -> None:
        next_run = ScheduledAction(
            hook=action.hook,
            payload=dict(action.payload),
            group=action.group,
            priority=action.priority,
            interval_seconds=action.interval_seconds,
        )
        try:
            self.queue.enqueue(next_run, delay_seconds=float(action.interval_seconds or 0))
        except (RuntimeError, OverflowError) as e:
            logger.error("Could not reschedule recurring action", hook=action.hook, error=str(e))


def create_queue() -> Union[PriorityDelayQueue, RedisQueue]:
    """Create and return the appropriate queue based on configuration."""
    use_redis = bool(QUEUE_SETTINGS.get("use_redis", False))

    if use_redis:
        try:
            redis_queue = RedisQueue()
            if redis_queue.health_check():
                logger.info("Using Redis-backed queue")
                return redis_queue
            logger.warning("Redis server is not reachable. Using in-memory queue.")
        except Exception as e:
            logger.warning("Error initializing Redis queue, falling back to in-memory queue", error=str(e))

    logger.info("Using in-memory queue")
    return PriorityDelayQueue()


__all__ = ["ActionWorker", "LAST_EXCEPTIONS", "QueueProtocol", "create_queue"]
