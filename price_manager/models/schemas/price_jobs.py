"""
Pydantic schemas for background price update jobs.

``PriceJob`` is the persisted record (stored as JSON in the record store under
its id); the remaining models are request/response shapes.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from price_manager.models.db.enums import JobStatus


class JobLogEntry(BaseModel):
    time: float = Field(description="Epoch seconds when the line was written")
    message: str


class PriceJob(BaseModel):
    """One bulk price update request, tracked from creation to a terminal state."""
    id: str = Field(exclude=True)
    status: JobStatus = JobStatus.PROCESSING
    total: int = Field(ge=0)
    processed: int = Field(0, ge=0)
    variation_ids: List[int] = Field(default_factory=list)
    product_ids: List[int] = Field(default_factory=list)
    regular_price: str = ""
    sale_price: str = ""
    logs: List[JobLogEntry] = Field(default_factory=list)
    created_at: float
    updated_at: float

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, job_id: str, value: Dict[str, Any]) -> "PriceJob":
        return cls.model_validate({**value, "id": job_id})

    def add_log(self, message: str, at: float, max_logs: int) -> None:
        self.logs.append(JobLogEntry(time=at, message=message))
        if len(self.logs) > max_logs:
            self.logs = self.logs[-max_logs:]

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        # Half-up rounding; round() would turn 12.5 into 12
        pct = int(self.processed * 100 / self.total + 0.5)
        return max(0, min(100, pct))


class PriceJobCreate(BaseModel):
    """Request body for starting a background price update."""
    variation_ids: List[int] = Field(default_factory=list, description="Variation ids sharing one attribute combination")
    product_ids: List[int] = Field(default_factory=list, description="Parent product ids of the selection")
    regular_price: str = Field("", description="New regular price; empty leaves it unchanged")
    sale_price: str = Field("", description="New sale price; empty clears it")


class JobStatusView(BaseModel):
    status: JobStatus
    total: int
    processed: int
    percentage: int = Field(ge=0, le=100)
    logs: List[JobLogEntry] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job: PriceJob) -> "JobStatusView":
        return cls(
            status=job.status,
            total=job.total,
            processed=job.processed,
            percentage=job.percentage,
            logs=list(job.logs),
        )


class ActiveJob(BaseModel):
    job_id: str
    data: JobStatusView
    variation_ids: List[int] = Field(default_factory=list)


class StartJobResult(BaseModel):
    job_id: str
    total: int
    batches: int
    first_batch_at: Optional[float] = None
