import threading

import pytest
from sqlalchemy.exc import OperationalError

from price_manager.models.db.enums import JobStatus
from price_manager.models.schemas.price_jobs import PriceJob
from price_manager.services.job_store import JobStore, JobUpdateConflict
from price_manager.services.record_store import InMemoryRecordStore, SqlRecordStore


def _job(job_id: str = "pricejob_1", total: int = 100, **kwargs) -> PriceJob:
    return PriceJob(id=job_id, total=total, variation_ids=list(range(total)), created_at=0.0, updated_at=0.0, **kwargs)


@pytest.fixture(params=["memory", "sql"])
def records(request, session_factory):
    if request.param == "memory":
        return InMemoryRecordStore()
    return SqlRecordStore(session_factory)


def test_add_is_insert_only(records):
    assert records.add("pricejob_a", {"status": "processing"})
    assert not records.add("pricejob_a", {"status": "completed"})
    assert records.get("pricejob_a") == {"status": "processing"}


def test_compare_and_set_rejects_stale_version(records):
    records.add("pricejob_a", {"status": "processing", "n": 1})
    value, version = records.get_versioned("pricejob_a")

    assert records.compare_and_set("pricejob_a", {**value, "n": 2}, version)
    assert not records.compare_and_set("pricejob_a", {**value, "n": 3}, version)
    assert records.get("pricejob_a")["n"] == 2


def test_get_versioned_missing_key(records):
    assert records.get_versioned("pricejob_missing") == (None, 0)
    assert not records.compare_and_set("pricejob_missing", {}, 0)


def test_list_keys_by_prefix_and_status(records):
    records.add("pricejob_a", {"status": "processing"})
    records.add("pricejob_b", {"status": "completed"})
    records.add("other_c", {"status": "processing"})
    # '_' in the prefix must not act as a LIKE wildcard
    records.add("pricejobXd", {"status": "processing"})

    assert records.list_keys_by_prefix("pricejob_") == ["pricejob_a", "pricejob_b"]
    assert records.list_keys_by_prefix("pricejob_", status="processing") == ["pricejob_a"]


def test_delete(records):
    records.add("pricejob_a", {"status": "processing"})
    assert records.delete("pricejob_a")
    assert not records.delete("pricejob_a")
    assert records.get("pricejob_a") is None


def test_job_store_roundtrip_and_duplicate(records):
    store = JobStore(records)
    store.create(_job())
    with pytest.raises(JobUpdateConflict):
        store.create(_job())

    loaded = store.get("pricejob_1")
    assert loaded is not None
    assert loaded.id == "pricejob_1"
    assert loaded.status == JobStatus.PROCESSING
    assert "id" not in records.get("pricejob_1")


def test_update_missing_job_returns_none():
    store = JobStore(InMemoryRecordStore())
    assert store.update("pricejob_nope", lambda job: True) is None


def test_update_skips_write_when_mutator_declines():
    records = InMemoryRecordStore()
    store = JobStore(records)
    store.create(_job())
    _, version = records.get_versioned("pricejob_1")

    store.update("pricejob_1", lambda job: False)

    assert records.get_versioned("pricejob_1")[1] == version


def test_update_retries_after_concurrent_write():
    records = InMemoryRecordStore()
    store = JobStore(records)
    store.create(_job())
    calls = []

    def mutate(job: PriceJob) -> bool:
        calls.append(job.processed)
        if len(calls) == 1:
            # Another writer lands between our read and our write
            other = store.get("pricejob_1")
            other.processed += 10
            records.set("pricejob_1", other.to_record())
        job.processed += 5
        return True

    result = store.update("pricejob_1", mutate)

    assert calls == [0, 10]
    assert result.processed == 15
    assert store.get("pricejob_1").processed == 15


def test_update_gives_up_after_max_retries():
    records = InMemoryRecordStore()
    store = JobStore(records, max_retries=3)
    store.create(_job())

    def always_conflict(job: PriceJob) -> bool:
        records.set("pricejob_1", store.get("pricejob_1").to_record())
        job.processed += 1
        return True

    with pytest.raises(JobUpdateConflict):
        store.update("pricejob_1", always_conflict)


def test_concurrent_updates_lose_nothing(records):
    store = JobStore(records, max_retries=200)
    store.create(_job(total=1000))
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        for _ in range(5):
            store.update("pricejob_1", _increment)

    def _increment(job: PriceJob) -> bool:
        job.processed += 1
        return True

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert store.get("pricejob_1").processed == 40


def test_list_jobs_filters_by_status():
    store = JobStore(InMemoryRecordStore())
    store.create(_job("pricejob_a"))
    store.create(_job("pricejob_b", status=JobStatus.COMPLETED))

    assert [j.id for j in store.list_jobs(JobStatus.PROCESSING)] == ["pricejob_a"]
    assert [j.id for j in store.list_jobs()] == ["pricejob_a", "pricejob_b"]


def test_update_retries_after_storage_error():
    class LockedOnce(InMemoryRecordStore):
        tripped = False

        def compare_and_set(self, key, value, expected_version):
            if not self.tripped:
                self.tripped = True
                raise OperationalError("UPDATE job_records", {}, Exception("database is locked"))
            return super().compare_and_set(key, value, expected_version)

    records = LockedOnce()
    store = JobStore(records)
    store.create(_job())

    def bump(job: PriceJob) -> bool:
        job.processed += 7
        return True

    result = store.update("pricejob_1", bump)

    assert records.tripped
    assert result.processed == 7
    assert store.get("pricejob_1").processed == 7


def test_update_gives_up_when_storage_keeps_failing():
    class AlwaysLocked(InMemoryRecordStore):
        def get_versioned(self, key):
            raise OperationalError("SELECT job_records", {}, Exception("database is locked"))

    store = JobStore(AlwaysLocked(), max_retries=2)

    with pytest.raises(JobUpdateConflict):
        store.update("pricejob_1", lambda job: True)
