"""Redis-backed delay action queue.

Features:
- Optional delay (scheduled execution time) per action.
- Persistence of pending batches across application restarts.
- Bulk cancellation of pending actions by hook + payload fields.
- Thread-safe operations.
- Fallback to in-memory queue if Redis is unavailable.

Data structures in Redis:
 1. List: price_manager:ready_queue - serialized actions ready to execute (FIFO)
 2. Sorted Set: price_manager:scheduled_actions - scores=ready_at_ts, members=serialized actions

On enqueue:
  - If ready_at <= now -> push to ready list else scheduled sorted set.
On dequeue:
  - Promote any scheduled items whose ready_at <= now to ready list.
  - Pop from ready list.
  - If nothing ready: wait using blocking pop with timeout.

Priorities are recorded on each action but Redis ordering is by ready time only.
"""
from __future__ import annotations

import json
import time
import threading
from typing import Any, Mapping, Optional, List
import redis

from price_manager.config import QUEUE_SETTINGS
from price_manager.jobs.actions import ScheduledAction
from price_manager.jobs.queue import PriorityDelayQueue, QueueItem
from price_manager.utils import get_logger

logger = get_logger(__name__)


class RedisQueue:
    def __init__(self) -> None:
        self._redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        self._ready_key: str = str(QUEUE_SETTINGS.get("redis_ready_key", "price_manager:ready_queue"))
        self._scheduled_key: str = str(QUEUE_SETTINGS.get("redis_scheduled_key", "price_manager:scheduled_actions"))
        self._health_check_timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
        self._warn_depth = int(QUEUE_SETTINGS.get("warn_depth", 1000))  # type: ignore[arg-type]
        priorities_cfg = QUEUE_SETTINGS.get("priorities", {})
        self._priority_map: dict[str, int] = priorities_cfg if isinstance(priorities_cfg, dict) else {"normal": 5}

        self._fallback_queue = PriorityDelayQueue()

        self._redis_client: Optional[redis.Redis] = None
        self._lock = threading.RLock()
        self._is_redis_active = False
        self._seq = 0
        self._shutdown = False
        self._init_redis_client()

    def _init_redis_client(self) -> None:
        """Initialize Redis client and test connection."""
        try:
            self._redis_client = redis.from_url(self._redis_url, socket_connect_timeout=self._health_check_timeout)
            self._redis_client.ping()
            self._is_redis_active = True
            logger.info("Connected to Redis successfully", url=self._redis_url)
        except (redis.RedisError, ConnectionError) as e:
            self._is_redis_active = False
            self._redis_client = None
            logger.warning("Failed to connect to Redis, using in-memory fallback queue", error=str(e))

    def health_check(self) -> bool:
        """Check if Redis is available and update status accordingly."""
        with self._lock:
            if self._redis_client is None:
                self._init_redis_client()
                return self._is_redis_active

            try:
                self._redis_client.ping()
                if not self._is_redis_active:
                    logger.info("Redis connection restored")
                self._is_redis_active = True
                return True
            except (redis.RedisError, ConnectionError, AttributeError) as e:
                if self._is_redis_active:
                    logger.warning("Redis connection lost, using in-memory fallback queue", error=str(e))
                self._is_redis_active = False
                return False

    @staticmethod
    def _decode(raw: Any) -> str:
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    def _serialize(self, item: QueueItem) -> str:
        return json.dumps({
            "action": item.action.to_dict(),
            "priority_label": item.priority_label,
            "priority_value": item.priority_value,
            "enqueued_at": item.enqueued_at,
            "ready_at": item.ready_at,
            "seq": item.seq,
        })

    def _deserialize(self, serialized: str) -> QueueItem:
        data = json.loads(serialized)
        return QueueItem(
            action=ScheduledAction.from_dict(data["action"]),
            priority_label=data.get("priority_label", "normal"),
            priority_value=data.get("priority_value", 5),
            enqueued_at=data.get("enqueued_at", time.time()),
            ready_at=data.get("ready_at", time.time()),
            seq=data.get("seq", 0),
        )

    def _promote_scheduled(self) -> None:
        """Move scheduled actions that are due to the ready list."""
        if not self._is_redis_active or self._redis_client is None:
            return

        try:
            due: List[bytes] = list(self._redis_client.zrangebyscore(self._scheduled_key, 0, time.time()) or [])
            for raw in due:
                member = self._decode(raw)
                # zrem wins exactly once when several workers promote concurrently
                if self._redis_client.zrem(self._scheduled_key, member):
                    self._redis_client.rpush(self._ready_key, member)
            if due:
                logger.debug("Promoted scheduled actions to ready queue", count=len(due))
        except redis.RedisError as e:
            logger.error("Error promoting scheduled actions", error=str(e))
            self._is_redis_active = False

    def schedule_at(self, timestamp: float, action: ScheduledAction) -> QueueItem:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            if action.priority not in self._priority_map:
                raise ValueError(f"Unknown priority '{action.priority}'")

            now_ts = time.time()
            ready_at_ts = max(now_ts, timestamp)
            self._seq += 1
            item = QueueItem(
                action=action,
                priority_label=action.priority,
                priority_value=self._priority_map[action.priority],
                enqueued_at=now_ts,
                ready_at=ready_at_ts,
                seq=self._seq,
            )

            if not self.health_check() or self._redis_client is None:
                logger.warning("Redis unavailable, falling back to in-memory queue")
                return self._fallback_queue.schedule_at(timestamp, action)

            try:
                serialized = self._serialize(item)
                if ready_at_ts <= now_ts:
                    self._redis_client.rpush(self._ready_key, serialized)
                else:
                    self._redis_client.zadd(self._scheduled_key, {serialized: ready_at_ts})

                queue_depth = self.depth()
                if queue_depth >= self._warn_depth:
                    logger.warning("Queue depth warning", depth=queue_depth)
                return item
            except redis.RedisError as e:
                logger.error("Redis error during enqueue", error=str(e))
                self._is_redis_active = False
                return self._fallback_queue.schedule_at(timestamp, action)

    def enqueue(self, action: ScheduledAction, *, priority: str | None = None, delay_seconds: float = 0.0) -> QueueItem:
        if priority is not None:
            action.priority = priority
        return self.schedule_at(time.time() + max(0.0, delay_seconds), action)

    def dequeue(self, *, block: bool = True, timeout: Optional[float] = None) -> ScheduledAction | None:
        """Dequeue the next ready action."""
        if self._shutdown and self.depth() == 0:
            return None

        # Actions parked in the fallback queue during an outage drain first
        if self._fallback_queue.depth():
            action = self._fallback_queue.dequeue(block=False)
            if action is not None:
                return action

        end_time = None if timeout is None else time.time() + timeout

        with self._lock:
            if not self.health_check() or self._redis_client is None:
                logger.debug("Redis unavailable for dequeue, using in-memory fallback")
                return self._fallback_queue.dequeue(block=block, timeout=timeout)
            self._promote_scheduled()

        # The blocking pop runs outside the lock so producers are never stalled
        if self._redis_client is not None:
            try:
                if block:
                    remaining = None if end_time is None else max(0.0, end_time - time.time())
                    if remaining == 0:
                        return None
                    # BLPOP timeout is whole seconds; 0 waits indefinitely
                    result = self._redis_client.blpop([self._ready_key], timeout=max(1, int(remaining)) if remaining else 0)
                    if result is None:
                        return None
                    if not isinstance(result, (list, tuple)) or len(result) != 2:
                        logger.warning("Unexpected result type from blpop", result_type=type(result).__name__)
                        return None
                    _, value = result
                else:
                    value = self._redis_client.lpop(self._ready_key)
                    if value is None:
                        return None

                return self._deserialize(self._decode(value)).action
            except (ValueError, KeyError) as e:
                logger.error("Dropping undecodable action", error=str(e))
                return None
            except redis.RedisError as e:
                logger.error("Redis error during dequeue", error=str(e))
                self._is_redis_active = False
                return self._fallback_queue.dequeue(block=block, timeout=timeout)
        return None

    def cancel_matching(self, hook: str, payload_filter: Mapping[str, Any] | None = None) -> int:
        """Remove pending actions for ``hook`` whose payload matches the filter."""
        with self._lock:
            removed = self._fallback_queue.cancel_matching(hook, payload_filter)
            if not self.health_check() or self._redis_client is None:
                return removed
            try:
                for raw in list(self._redis_client.zrange(self._scheduled_key, 0, -1) or []):
                    member = self._decode(raw)
                    if self._matches(member, hook, payload_filter):
                        removed += self._safe_int_conversion(self._redis_client.zrem(self._scheduled_key, member))
                for raw in list(self._redis_client.lrange(self._ready_key, 0, -1) or []):
                    member = self._decode(raw)
                    if self._matches(member, hook, payload_filter):
                        removed += self._safe_int_conversion(self._redis_client.lrem(self._ready_key, 0, member))
                if removed:
                    logger.info("Cancelled pending actions", hook=hook, removed=removed, filter=dict(payload_filter or {}))
            except redis.RedisError as e:
                logger.error("Error cancelling actions", error=str(e), hook=hook)
                self._is_redis_active = False
            return removed

    def has_pending(self, hook: str, payload_filter: Mapping[str, Any] | None = None) -> bool:
        with self._lock:
            if self._fallback_queue.has_pending(hook, payload_filter):
                return True
            if not self.health_check() or self._redis_client is None:
                return False
            try:
                members = list(self._redis_client.zrange(self._scheduled_key, 0, -1) or [])
                members += list(self._redis_client.lrange(self._ready_key, 0, -1) or [])
                return any(self._matches(self._decode(m), hook, payload_filter) for m in members)
            except redis.RedisError as e:
                logger.error("Error inspecting pending actions", error=str(e))
                self._is_redis_active = False
                return False

    def _matches(self, member: str, hook: str, payload_filter: Mapping[str, Any] | None) -> bool:
        try:
            return self._deserialize(member).action.matches(hook, payload_filter)
        except (ValueError, KeyError):
            return False

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            self._fallback_queue.shutdown()

    def purge(self) -> None:
        """Remove all queued actions (for testing)."""
        with self._lock:
            self._fallback_queue.purge()

            if not self.health_check() or self._redis_client is None:
                return

            try:
                self._redis_client.delete(self._ready_key)
                self._redis_client.delete(self._scheduled_key)
                logger.info("Redis queue purged")
            except redis.RedisError as e:
                logger.error("Error purging Redis queue", error=str(e))
                self._is_redis_active = False

    def _safe_int_conversion(self, value: Any) -> int:
        """Safely convert a value to int, handling various Redis response types."""
        if value is None:
            return 0
        try:
            if isinstance(value, bytes):
                value = value.decode('utf-8')
            return int(value)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to convert Redis response to int", value_type=type(value).__name__, error=str(e))
            return 0

    def depth(self) -> int:
        """Total number of queued actions (Redis + fallback)."""
        with self._lock:
            fallback_depth = self._fallback_queue.depth()
            if not self.health_check() or self._redis_client is None:
                return fallback_depth

            try:
                ready_count = self._safe_int_conversion(self._redis_client.llen(self._ready_key))
                scheduled_count = self._safe_int_conversion(self._redis_client.zcard(self._scheduled_key))
                return ready_count + scheduled_count + fallback_depth
            except redis.RedisError as e:
                logger.error("Error getting queue depth", error=str(e))
                self._is_redis_active = False
                return fallback_depth

    def __len__(self) -> int:
        return self.depth()

    def snapshot(self) -> dict:
        with self._lock:
            if not self.health_check() or self._redis_client is None:
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot

            try:
                ready_count = self._safe_int_conversion(self._redis_client.llen(self._ready_key))
                scheduled_count = self._safe_int_conversion(self._redis_client.zcard(self._scheduled_key))
                return {
                    "depth": ready_count + scheduled_count,
                    "ready": ready_count,
                    "scheduled": scheduled_count,
                    "shutdown": self._shutdown,
                    "redis_active": True,
                    "redis_url": self._redis_url,
                }
            except redis.RedisError as e:
                logger.error("Error getting queue snapshot", error=str(e))
                self._is_redis_active = False
                snapshot = self._fallback_queue.snapshot()
                snapshot["redis_active"] = False
                return snapshot


__all__ = ["RedisQueue"]
