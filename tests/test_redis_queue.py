"""Tests for the Redis queue implementation against a mocked client.

The mock keeps a list for the ready queue and a dict for the scheduled sorted
set, which is enough to exercise promotion, FIFO order and cancellation.
"""
import time
import pytest
import redis
from unittest.mock import patch, MagicMock

from price_manager.config import QUEUE_SETTINGS
from price_manager.jobs.actions import ScheduledAction
from price_manager.jobs.queue import PriorityDelayQueue
from price_manager.jobs.redis_queue import RedisQueue
from price_manager.jobs.worker import create_queue


def _action(hook="batch", **payload):
    return ScheduledAction(hook=hook, payload=payload, group="test")


@pytest.fixture
def mock_redis():
    """Mock Redis for testing."""
    with patch('redis.from_url') as mock_redis_client:
        mock_client = MagicMock()
        mock_client.ping.return_value = True

        ready_queue_data = []
        scheduled_data = {}

        def mock_rpush(key, value):
            ready_queue_data.append(value)
            return len(ready_queue_data)

        def mock_zadd(key, mapping):
            for item, score in mapping.items():
                scheduled_data[item] = score
            return len(mapping)

        def mock_llen(key):
            return len(ready_queue_data)

        def mock_zcard(key):
            return len(scheduled_data)

        def mock_lpop(key):
            if ready_queue_data:
                return ready_queue_data.pop(0).encode("utf-8")
            return None

        def mock_blpop(keys, timeout=0):
            if ready_queue_data:
                return [keys[0].encode("utf-8"), ready_queue_data.pop(0).encode("utf-8")]
            return None

        def mock_zrangebyscore(key, min_score, max_score):
            return [item.encode("utf-8") for item, score in sorted(scheduled_data.items(), key=lambda kv: kv[1])
                    if min_score <= score <= max_score]

        def mock_zrange(key, start, end):
            return [item.encode("utf-8") for item, _ in sorted(scheduled_data.items(), key=lambda kv: kv[1])]

        def mock_lrange(key, start, end):
            return [item.encode("utf-8") for item in ready_queue_data]

        def mock_zrem(key, value):
            if value in scheduled_data:
                del scheduled_data[value]
                return 1
            return 0

        def mock_lrem(key, count, value):
            before = len(ready_queue_data)
            ready_queue_data[:] = [v for v in ready_queue_data if v != value]
            return before - len(ready_queue_data)

        def mock_delete(key):
            if key == QUEUE_SETTINGS["redis_ready_key"]:
                ready_queue_data.clear()
            elif key == QUEUE_SETTINGS["redis_scheduled_key"]:
                scheduled_data.clear()
            return 1

        mock_client.rpush.side_effect = mock_rpush
        mock_client.zadd.side_effect = mock_zadd
        mock_client.llen.side_effect = mock_llen
        mock_client.zcard.side_effect = mock_zcard
        mock_client.blpop.side_effect = mock_blpop
        mock_client.lpop.side_effect = mock_lpop
        mock_client.zrangebyscore.side_effect = mock_zrangebyscore
        mock_client.zrange.side_effect = mock_zrange
        mock_client.lrange.side_effect = mock_lrange
        mock_client.zrem.side_effect = mock_zrem
        mock_client.lrem.side_effect = mock_lrem
        mock_client.delete.side_effect = mock_delete

        mock_redis_client.return_value = mock_client
        yield mock_client


@pytest.fixture
def mock_redis_unavailable():
    """Mock Redis as unavailable for testing fallback."""
    with patch('redis.from_url') as mock_redis_client:
        mock_redis_client.side_effect = redis.RedisError("Connection refused")
        yield mock_redis_client


@pytest.fixture
def redis_queue(mock_redis):
    queue = RedisQueue()
    queue.purge()
    yield queue
    queue.purge()


def test_redis_queue_operations(redis_queue):
    redis_queue.enqueue(_action(job_id="j1", batch_index=0))
    assert redis_queue.depth() == 1

    result = redis_queue.dequeue(block=False)
    assert isinstance(result, ScheduledAction)
    assert result.payload == {"job_id": "j1", "batch_index": 0}
    assert redis_queue.depth() == 0


def test_redis_queue_is_fifo(redis_queue):
    for i in range(3):
        redis_queue.enqueue(_action(batch_index=i))
    assert [redis_queue.dequeue(block=False).payload["batch_index"] for _ in range(3)] == [0, 1, 2]


def test_redis_queue_blocking_dequeue(redis_queue):
    redis_queue.enqueue(_action(batch_index=7))
    result = redis_queue.dequeue(block=True, timeout=1.0)
    assert result is not None
    assert result.payload["batch_index"] == 7


def test_redis_queue_with_delayed_actions(redis_queue):
    redis_queue.enqueue(_action(batch_index=2), delay_seconds=1)

    assert redis_queue.snapshot()["scheduled"] == 1
    assert redis_queue.snapshot()["ready"] == 0
    assert redis_queue.dequeue(block=False) is None

    time.sleep(1.2)

    result = redis_queue.dequeue(block=False)
    assert result is not None
    assert result.payload["batch_index"] == 2
    assert redis_queue.depth() == 0


def test_redis_queue_cancel_matching(redis_queue):
    redis_queue.enqueue(_action(job_id="a", batch_index=0))
    redis_queue.enqueue(_action(job_id="a", batch_index=1), delay_seconds=30)
    redis_queue.enqueue(_action(job_id="b", batch_index=0))

    assert redis_queue.has_pending("batch", {"job_id": "a"})
    removed = redis_queue.cancel_matching("batch", {"job_id": "a"})

    assert removed == 2
    assert not redis_queue.has_pending("batch", {"job_id": "a"})
    assert redis_queue.has_pending("batch", {"job_id": "b"})
    assert redis_queue.depth() == 1


def test_redis_queue_snapshot(redis_queue):
    snapshot = redis_queue.snapshot()
    assert snapshot["depth"] == 0
    assert snapshot["redis_active"] is True

    redis_queue.enqueue(_action(batch_index=0))
    redis_queue.enqueue(_action(batch_index=1), delay_seconds=10)

    snapshot = redis_queue.snapshot()
    assert snapshot["depth"] == 2
    assert snapshot["ready"] == 1
    assert snapshot["scheduled"] == 1

    with patch.object(redis_queue, 'health_check', return_value=False):
        snapshot = redis_queue.snapshot()
        assert snapshot["redis_active"] is False


def test_redis_queue_fallback(mock_redis_unavailable):
    queue = RedisQueue()
    assert not queue._is_redis_active

    queue.enqueue(_action(batch_index=4))
    assert queue.depth() == 1

    result = queue.dequeue(block=False)
    assert result is not None
    assert result.payload["batch_index"] == 4


def test_create_queue_function_with_redis_enabled(mock_redis, monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", True)
    queue = create_queue()
    assert isinstance(queue, RedisQueue)
    assert queue._is_redis_active


def test_create_queue_function_with_redis_unavailable(mock_redis_unavailable, monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", True)
    queue = create_queue()
    assert isinstance(queue, PriorityDelayQueue)


def test_create_queue_defaults_to_memory(monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "use_redis", False)
    assert isinstance(create_queue(), PriorityDelayQueue)
