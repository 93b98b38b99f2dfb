"""Price job persistence on top of a record store.

``update`` is the only write path for existing jobs: it re-reads the record,
applies the mutator and writes back with a version check, retrying on conflict.
Overlapping batches of one job therefore never lose a progress increment.
"""
from __future__ import annotations

import random
import time
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from price_manager.config import JOB_SETTINGS
from price_manager.models.db.enums import JobStatus
from price_manager.models.schemas.price_jobs import PriceJob
from price_manager.services.record_store import RecordStore
from price_manager.utils import get_logger

logger = get_logger(__name__)

# Returns False to skip the write (nothing changed)
JobMutator = Callable[[PriceJob], bool]


class JobUpdateConflict(RuntimeError):
    """Raised when a job could not be written after the configured number of attempts."""


class JobStore:
    def __init__(self, records: RecordStore, *, key_prefix: str | None = None, max_retries: int | None = None):
        self.records = records
        self.key_prefix = str(key_prefix if key_prefix is not None else JOB_SETTINGS["key_prefix"])
        self.max_retries = int(max_retries if max_retries is not None else JOB_SETTINGS["max_update_retries"])

    def _load(self, job_id: str, value: Optional[dict]) -> Optional[PriceJob]:
        if value is None:
            return None
        try:
            return PriceJob.from_record(job_id, value)
        except ValidationError as e:
            logger.error("Corrupt job record ignored", job_id=job_id, error=str(e))
            return None

    def create(self, job: PriceJob) -> None:
        if not self.records.add(job.id, job.to_record()):
            raise JobUpdateConflict(f"Job {job.id} already exists")

    def get(self, job_id: str) -> Optional[PriceJob]:
        return self._load(job_id, self.records.get(job_id))

    def delete(self, job_id: str) -> bool:
        return self.records.delete(job_id)

    def list_ids(self, status: JobStatus | None = None) -> list[str]:
        return self.records.list_keys_by_prefix(self.key_prefix, status=status.value if status else None)

    def list_jobs(self, status: JobStatus | None = None) -> list[PriceJob]:
        jobs: list[PriceJob] = []
        for job_id in self.list_ids(status):
            job = self.get(job_id)
            # Status may have moved between the key scan and the read
            if job is not None and (status is None or job.status == status):
                jobs.append(job)
        return jobs

    def update(self, job_id: str, mutator: JobMutator) -> Optional[PriceJob]:
        """Apply ``mutator`` atomically. Returns the stored job, or None if it does not exist."""
        for attempt in range(1, self.max_retries + 1):
            try:
                value, version = self.records.get_versioned(job_id)
                job = self._load(job_id, value)
                if job is None:
                    return None
                if not mutator(job):
                    return job
                written = self.records.compare_and_set(job_id, job.to_record(), version)
            except SQLAlchemyError as e:
                # Transient storage errors (e.g. a locked database) retry like a version conflict
                logger.warning("Job update storage error", job_id=job_id, attempt=attempt, error=str(e))
                written = False
            if written:
                if attempt > 1:
                    logger.debug("Job update succeeded after retry", job_id=job_id, attempt=attempt)
                return job
            # jitter
            time.sleep(random.uniform(0, 0.005 * attempt))
        logger.error("Job update abandoned after repeated conflicts", job_id=job_id, attempts=self.max_retries)
        raise JobUpdateConflict(f"Could not update job {job_id} after {self.max_retries} attempts")


__all__ = ["JobStore", "JobUpdateConflict", "JobMutator"]
