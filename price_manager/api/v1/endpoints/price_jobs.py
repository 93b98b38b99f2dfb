"""
Background price job endpoints: start, poll, cancel and list active jobs.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
import time
from price_manager.api.deps import get_controller
from price_manager.models.schemas.base import ResponseBase
from price_manager.models.schemas.price_jobs import PriceJobCreate
from price_manager.services.job_controller import PriceJobController
from price_manager.services.price_validation import PriceValidationError
from price_manager.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "/",
    response_model=ResponseBase,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a background price update",
    description="Validate the request, persist a job and schedule its batches. Returns immediately."
)
async def start_price_job(
    job_data: PriceJobCreate,
    request: Request,
    controller: PriceJobController = Depends(get_controller)
) -> ResponseBase:
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    logger.info(
        "Price job requested",
        variation_count=len(job_data.variation_ids),
        product_count=len(job_data.product_ids),
        request_id=request_id
    )

    try:
        result = controller.start_job(
            job_data.variation_ids,
            job_data.product_ids,
            job_data.regular_price,
            job_data.sale_price,
        )
    except PriceValidationError as e:
        logger.warning("Price job rejected", reason=e.code, error=str(e), request_id=request_id)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    log_performance(
        operation="start_price_job",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"total": result.total, "batches": result.batches}
    )
    return ResponseBase(
        success=True,
        message=f"Started processing {result.total} variations",
        data=result.model_dump(mode="json")
    )


@router.get(
    "/",
    response_model=ResponseBase,
    summary="List active price jobs"
)
async def list_active_jobs(
    controller: PriceJobController = Depends(get_controller)
) -> ResponseBase:
    jobs = controller.get_active_jobs()
    return ResponseBase(
        success=True,
        message=f"{len(jobs)} active job(s)",
        data={"jobs": [job.model_dump(mode="json") for job in jobs]}
    )


@router.get(
    "/processing-ids",
    response_model=ResponseBase,
    summary="Variation ids currently targeted by active jobs"
)
async def processing_variation_ids(
    controller: PriceJobController = Depends(get_controller)
) -> ResponseBase:
    ids = sorted(controller.get_processing_variation_ids())
    return ResponseBase(success=True, data={"variation_ids": ids})


@router.get(
    "/{job_id}",
    response_model=ResponseBase,
    summary="Get price job status"
)
async def get_price_job(
    job_id: str,
    controller: PriceJobController = Depends(get_controller)
) -> ResponseBase:
    view = controller.get_job_status(job_id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return ResponseBase(success=True, data=view.model_dump(mode="json"))


@router.post(
    "/{job_id}/cancel",
    response_model=ResponseBase,
    summary="Cancel a price job",
    description="Marks the job cancelled and drops its pending batches. Batches already running finish."
)
async def cancel_price_job(
    job_id: str,
    request: Request,
    controller: PriceJobController = Depends(get_controller)
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    if not controller.cancel_job(job_id):
        logger.warning("Cancel requested for unknown job", job_id=job_id, request_id=request_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    view = controller.get_job_status(job_id)
    return ResponseBase(
        success=True,
        message="Job cancelled",
        data=view.model_dump(mode="json") if view is not None else None
    )
