"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import price_jobs, variations

api_router = APIRouter()

api_router.include_router(
    price_jobs.router,
    prefix="/price-jobs",
    tags=["price-jobs"]
)

api_router.include_router(
    variations.router,
    prefix="/variations",
    tags=["variations"]
)
