"""Background price job orchestration.

Public surface (used by the API layer and the worker hooks):
- start_job(...)            validate, persist, schedule one action per batch
- process_batch(...)        worker hook; runs one batch through the mutation engine
- update_job_progress(...)  the single write path for progress, logs and completion
- get_job_status / cancel_job / get_active_jobs / get_processing_variation_ids
- cleanup_old_jobs(...)     recurring hook deleting old terminal jobs

Batches of one job may run concurrently on different worker threads; every
write goes through JobStore.update so progress increments are never lost.
"""
from __future__ import annotations

import math
import time
import uuid
from typing import Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from price_manager.config import JOB_SETTINGS
from price_manager.jobs.actions import ScheduledAction
from price_manager.jobs.worker import ActionWorker, QueueProtocol
from price_manager.models.db.enums import JobStatus
from price_manager.models.schemas.price_jobs import ActiveJob, JobStatusView, PriceJob, StartJobResult
from price_manager.services.job_store import JobStore, JobUpdateConflict
from price_manager.services.mutation_engine import MutationResult, apply_price_change
from price_manager.services.price_validation import normalize_price, validate_price_request
from price_manager.utils import get_logger, log_business_event, log_performance
from price_manager.utils.time import epoch_now, format_elapsed

logger = get_logger(__name__)

BATCH_HOOK = "price_manager.process_price_batch"
CLEANUP_HOOK = "price_manager.cleanup_completed_jobs"

COMPLETED_MESSAGE = "All variations updated successfully!"
CANCELLED_MESSAGE = "Job cancelled by user."


def batch_summary_logs(batch_number: int, result: MutationResult) -> list[str]:
    """Human readable log lines for one executed batch."""
    if result.error is not None:
        return [f"Batch {batch_number}: Error - {result.error}"]
    if result.updated_count == 0:
        line = f"Batch {batch_number}: No updates needed (already correct: {result.skipped_same_price}"
        if result.skipped_invalid > 0:
            line += f", invalid: {result.skipped_invalid}"
        return [line + ")"]

    line = f"Batch {batch_number}: Updated {result.updated_count} variations"
    if result.skipped_same_price > 0 or result.skipped_invalid > 0:
        line += f" ({result.skipped_same_price} already correct, {result.skipped_invalid} invalid)"
    lines = [line]
    if result.affected_parent_ids:
        lines.append(f"Synced {len(result.affected_parent_ids)} parent products")
    return lines


class PriceJobController:
    def __init__(
        self,
        store: JobStore,
        queue: QueueProtocol,
        session_factory: Callable[[], Session],
        *,
        clock: Callable[[], float] = epoch_now,
    ):
        self.store = store
        self.queue = queue
        self.session_factory = session_factory
        self.clock = clock

    @property
    def batch_size(self) -> int:
        return max(1, int(JOB_SETTINGS["batch_size"]))

    @property
    def max_logs(self) -> int:
        return int(JOB_SETTINGS["max_logs"])

    # ------------------------------------------------------------------ start
    def start_job(
        self,
        target_ids: Sequence[int],
        parent_ids: Sequence[int],
        regular_price: str,
        sale_price: str,
    ) -> StartJobResult:
        """Create a job and schedule its batches. Raises PriceValidationError on bad input."""
        regular = normalize_price(regular_price) or ""
        sale = normalize_price(sale_price) or ""
        validate_price_request(target_ids, regular, sale)

        now = self.clock()
        job = PriceJob(
            id=f"{JOB_SETTINGS['key_prefix']}{uuid.uuid4().hex}",
            total=len(target_ids),
            variation_ids=list(target_ids),
            product_ids=list(parent_ids),
            regular_price=regular,
            sale_price=sale,
            created_at=now,
            updated_at=now,
        )
        job.add_log(f"Started processing {job.total} variations...", now, self.max_logs)
        self.store.create(job)

        batches = math.ceil(job.total / self.batch_size)
        stagger = float(JOB_SETTINGS["stagger_seconds"])
        try:
            for batch_index in range(batches):
                self.queue.schedule_at(now + batch_index * stagger, self._batch_action(job.id, batch_index))
        except Exception as e:
            # A half-scheduled job could never complete
            removed = self.queue.cancel_matching(BATCH_HOOK, {"job_id": job.id})
            self.store.delete(job.id)
            logger.error(
                "Price job could not be scheduled, rolled back",
                job_id=job.id, batches=batches, pending_removed=removed, error=str(e),
            )
            raise

        logger.info("Price job started", job_id=job.id, total=job.total, batches=batches)
        log_business_event(
            "price_job_started",
            {"total": job.total, "batches": batches, "regular_price": regular, "sale_price": sale},
            job_id=job.id,
        )
        return StartJobResult(job_id=job.id, total=job.total, batches=batches, first_batch_at=now)

    # ------------------------------------------------------------------ batches
    def _batch_action(self, job_id: str, batch_index: int) -> ScheduledAction:
        return ScheduledAction(
            hook=BATCH_HOOK,
            payload={"job_id": job_id, "batch_index": batch_index},
            group=str(JOB_SETTINGS["action_group"]),
        )

    def process_batch(self, job_id: str, batch_index: int) -> None:
        """Worker hook. Safe to run more than once for the same batch."""
        try:
            job = self.store.get(job_id)
        except SQLAlchemyError as e:
            # Nothing was written yet; run the batch again later
            delay = max(1.0, float(JOB_SETTINGS["stagger_seconds"]))
            logger.error(
                "Batch deferred, job could not be read",
                job_id=job_id, batch_index=batch_index, retry_in=delay, error=str(e),
            )
            self.queue.enqueue(self._batch_action(job_id, batch_index), delay_seconds=delay)
            return
        if job is None:
            logger.debug("Batch skipped, job not found", job_id=job_id, batch_index=batch_index)
            return
        if job.status == JobStatus.CANCELLED:
            logger.debug("Batch skipped, job cancelled", job_id=job_id, batch_index=batch_index)
            return

        start = self.batch_size * batch_index
        batch_ids = job.variation_ids[start:start + self.batch_size]
        if not batch_ids:
            return

        batch_number = batch_index + 1
        started_at = time.time()
        try:
            session = self.session_factory()
            try:
                result = apply_price_change(session, batch_ids, job.regular_price, job.sale_price)
            finally:
                session.close()
            logs = batch_summary_logs(batch_number, result)
        except Exception as e:
            logger.error("Batch failed unexpectedly", job_id=job_id, batch_index=batch_index, error=str(e), exc_info=True)
            result = None
            logs = [f"Batch {batch_number}: Error - {e}"]

        self.update_job_progress(job_id, len(batch_ids), logs)

        duration_ms = (time.time() - started_at) * 1000
        logger.info(
            "Batch processed",
            job_id=job_id,
            batch_index=batch_index,
            size=len(batch_ids),
            updated=result.updated_count if result else 0,
            elapsed=format_elapsed(started_at),
        )
        log_performance("price_batch", duration_ms, {"job_id": job_id, "batch_size": len(batch_ids)})

    def update_job_progress(self, job_id: str, processed_delta: int, new_logs: Sequence[str]) -> Optional[PriceJob]:
        completed = False

        def mutate(job: PriceJob) -> bool:
            nonlocal completed
            completed = False
            if job.status != JobStatus.PROCESSING:
                return False
            now = self.clock()
            job.processed = min(job.total, job.processed + max(0, processed_delta))
            for message in new_logs:
                job.add_log(message, now, self.max_logs)
            if job.processed >= job.total:
                job.status = JobStatus.COMPLETED
                job.add_log(COMPLETED_MESSAGE, now, self.max_logs)
                completed = True
            job.updated_at = now
            return True

        try:
            job = self.store.update(job_id, mutate)
        except (JobUpdateConflict, SQLAlchemyError) as e:
            logger.error("Progress update lost", job_id=job_id, delta=processed_delta, error=str(e))
            return None
        if completed and job is not None:
            logger.info("Price job completed", job_id=job_id, total=job.total)
            log_business_event("price_job_completed", {"total": job.total}, job_id=job_id)
        return job

    # ------------------------------------------------------------------ reads
    def get_job_status(self, job_id: str) -> Optional[JobStatusView]:
        job = self.store.get(job_id)
        return JobStatusView.from_job(job) if job is not None else None

    def get_active_jobs(self) -> list[ActiveJob]:
        return [
            ActiveJob(job_id=job.id, data=JobStatusView.from_job(job), variation_ids=list(job.variation_ids))
            for job in self.store.list_jobs(JobStatus.PROCESSING)
        ]

    def get_processing_variation_ids(self) -> set[int]:
        ids: set[int] = set()
        for job in self.store.list_jobs(JobStatus.PROCESSING):
            ids.update(job.variation_ids)
        return ids

    # ------------------------------------------------------------------ cancel
    def cancel_job(self, job_id: str) -> bool:
        cancelled = False

        def mutate(job: PriceJob) -> bool:
            nonlocal cancelled
            cancelled = False
            if job.status != JobStatus.PROCESSING:
                return False
            now = self.clock()
            job.status = JobStatus.CANCELLED
            job.add_log(CANCELLED_MESSAGE, now, self.max_logs)
            job.updated_at = now
            cancelled = True
            return True

        try:
            job = self.store.update(job_id, mutate)
        except JobUpdateConflict as e:
            logger.error("Price job cancel failed", job_id=job_id, error=str(e))
            raise
        if job is None:
            return False
        if cancelled:
            removed = self.queue.cancel_matching(BATCH_HOOK, {"job_id": job_id})
            logger.info("Price job cancelled", job_id=job_id, processed=job.processed, pending_removed=removed)
            log_business_event(
                "price_job_cancelled",
                {"processed": job.processed, "total": job.total, "pending_removed": removed},
                job_id=job_id,
            )
        return True

    # ------------------------------------------------------------------ cleanup
    def cleanup_old_jobs(self, now: float | None = None) -> int:
        """Delete completed/cancelled jobs untouched for longer than the retention window."""
        cutoff = (now if now is not None else self.clock()) - float(JOB_SETTINGS["retention_seconds"])
        deleted = 0
        for job in self.store.list_jobs():
            if job.status.is_terminal and job.updated_at < cutoff and self.store.delete(job.id):
                deleted += 1
        if deleted:
            logger.info("Old price jobs removed", deleted=deleted)
            log_business_event("price_jobs_cleaned", {"deleted": deleted})
        return deleted

    def _cleanup_hook(self) -> None:
        self.cleanup_old_jobs()

    def register(self, worker: ActionWorker) -> None:
        worker.register(BATCH_HOOK, self.process_batch)
        worker.register(CLEANUP_HOOK, self._cleanup_hook)
        if not self.queue.has_pending(CLEANUP_HOOK):
            interval = float(JOB_SETTINGS["cleanup_interval_seconds"])
            self.queue.enqueue(
                ScheduledAction(
                    hook=CLEANUP_HOOK,
                    group=str(JOB_SETTINGS["action_group"]),
                    priority="low",
                    interval_seconds=interval,
                ),
                delay_seconds=interval,
            )
            logger.info("Recurring job cleanup scheduled", interval_seconds=interval)


__all__ = [
    "PriceJobController",
    "BATCH_HOOK",
    "CLEANUP_HOOK",
    "COMPLETED_MESSAGE",
    "CANCELLED_MESSAGE",
    "batch_summary_logs",
]
