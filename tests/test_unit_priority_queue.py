import time

import pytest

from price_manager.config import QUEUE_SETTINGS
from price_manager.jobs.actions import ScheduledAction
from price_manager.jobs.queue import PriorityDelayQueue


def _action(hook="batch", priority="normal", **payload):
    return ScheduledAction(hook=hook, payload=payload, group="test", priority=priority)


def test_priority_queue_ordering():
    q = PriorityDelayQueue()
    q.enqueue(_action(job="low"), priority="low")
    q.enqueue(_action(job="high"), priority="high")
    q.enqueue(_action(job="normal"), priority="normal")
    snap = q.snapshot()
    assert snap.get("ready") == 3
    assert snap.get("depth") == 3

    order = [q.dequeue(block=False).payload["job"] for _ in range(3)]
    assert order == ["high", "normal", "low"]


def test_same_priority_is_fifo():
    q = PriorityDelayQueue()
    for i in range(5):
        q.enqueue(_action(batch_index=i))
    assert [q.dequeue(block=False).payload["batch_index"] for _ in range(5)] == [0, 1, 2, 3, 4]


def test_schedule_at_holds_action_until_due():
    q = PriorityDelayQueue()
    q.schedule_at(time.time() + 0.3, _action(batch_index=1))
    assert q.snapshot()["scheduled"] == 1
    assert q.dequeue(block=False) is None

    action = q.dequeue(timeout=2.0)
    assert action is not None
    assert action.payload["batch_index"] == 1


def test_past_timestamp_is_ready_immediately():
    q = PriorityDelayQueue()
    q.schedule_at(time.time() - 10, _action(batch_index=0))
    assert q.snapshot()["ready"] == 1


def test_cancel_matching_removes_ready_and_scheduled():
    q = PriorityDelayQueue()
    now = time.time()
    for i in range(3):
        q.schedule_at(now + i * 5, _action(job_id="a", batch_index=i))
    q.schedule_at(now, _action(job_id="b", batch_index=0))
    q.enqueue(_action(hook="other", job_id="a"))

    removed = q.cancel_matching("batch", {"job_id": "a"})

    assert removed == 3
    remaining = q.pending()
    assert len(remaining) == 2
    assert {(a.hook, a.payload["job_id"]) for a in remaining} == {("batch", "b"), ("other", "a")}


def test_has_pending_matches_payload_subset():
    q = PriorityDelayQueue()
    q.enqueue(_action(job_id="a", batch_index=2), delay_seconds=30)
    assert q.has_pending("batch")
    assert q.has_pending("batch", {"job_id": "a"})
    assert not q.has_pending("batch", {"job_id": "z"})
    assert not q.has_pending("cleanup")


def test_unknown_priority_rejected():
    q = PriorityDelayQueue()
    with pytest.raises(ValueError):
        q.enqueue(_action(), priority="urgent")


def test_capacity_limit(monkeypatch):
    monkeypatch.setitem(QUEUE_SETTINGS, "max_in_memory", 2)
    q = PriorityDelayQueue()
    q.enqueue(_action())
    q.enqueue(_action())
    with pytest.raises(OverflowError):
        q.enqueue(_action())


def test_shutdown_rejects_new_actions_and_drains():
    q = PriorityDelayQueue()
    q.enqueue(_action(batch_index=0))
    q.shutdown()
    with pytest.raises(RuntimeError):
        q.enqueue(_action())
    assert q.dequeue(block=False).payload["batch_index"] == 0
    assert q.dequeue(timeout=0.1) is None


def test_purge_empties_queue():
    q = PriorityDelayQueue()
    q.enqueue(_action())
    q.enqueue(_action(), delay_seconds=60)
    q.purge()
    assert q.depth() == 0
