"""
Variation combination listing and the synchronous price edit path.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from sqlalchemy.orm import Session
import time
from price_manager.api.deps import get_db, get_controller
from price_manager.models.schemas.base import ResponseBase
from price_manager.models.schemas.variations import VariationCountRequest, VariationPriceUpdate
from price_manager.services.catalog_query import get_unique_variations, update_variation_prices_now
from price_manager.services.catalog_sync import get_price_range
from price_manager.services.job_controller import PriceJobController
from price_manager.services.price_validation import PriceValidationError
from price_manager.utils import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)


@router.get(
    "/",
    response_model=ResponseBase,
    summary="List unique variation combinations"
)
async def list_variations(
    search: str = Query("", description="Case-insensitive filter on the combination label"),
    page: int = Query(1, ge=1),
    per_page: int | None = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
    controller: PriceJobController = Depends(get_controller)
) -> ResponseBase:
    start_time = time.time()
    result = get_unique_variations(db, search=search, page=page, per_page=per_page)
    processing = controller.get_processing_variation_ids()
    for item in result.items:
        item.processing = any(vid in processing for vid in item.variation_ids)
    log_performance(
        operation="list_variations",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"total": result.total, "page": page}
    )
    return ResponseBase(success=True, data=result.model_dump(mode="json"))


@router.post(
    "/prices",
    response_model=ResponseBase,
    summary="Update variation prices immediately"
)
async def update_prices_now(
    payload: VariationPriceUpdate,
    request: Request,
    db: Session = Depends(get_db)
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    try:
        outcome = update_variation_prices_now(db, payload.variation_ids, payload.regular_price, payload.sale_price)
    except PriceValidationError as e:
        logger.warning("Inline price update rejected", reason=e.code, error=str(e), request_id=request_id)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    result = outcome.result
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Price update failed")

    log_business_event(
        event_type="variation_prices_updated",
        details={"variation_count": len(payload.variation_ids), "updated": result.updated_count},
        request_id=request_id
    )
    return ResponseBase(
        success=True,
        message=f"Updated {result.updated_count} variations",
        data={
            "updated": result.updated_count,
            "skipped_same_price": result.skipped_same_price,
            "skipped_invalid": result.skipped_invalid,
            "synced_parents": result.affected_parent_ids,
            "current_price": outcome.current_price,
        }
    )


@router.post(
    "/count",
    response_model=ResponseBase,
    summary="Count selected variations"
)
async def count_variations(payload: VariationCountRequest) -> ResponseBase:
    return ResponseBase(success=True, data={"count": len(payload.variation_ids)})


@router.get(
    "/products/{product_id}/price-range",
    response_model=ResponseBase,
    summary="Cached min/max variation price of a product"
)
async def product_price_range(
    product_id: int,
    db: Session = Depends(get_db)
) -> ResponseBase:
    low, high = get_price_range(db, product_id)
    return ResponseBase(success=True, data={"product_id": product_id, "min_price": low, "max_price": high})
