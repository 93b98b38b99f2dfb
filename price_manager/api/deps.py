"""
Dependencies for database sessions and the shared price job controller.
"""
from typing import Generator
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session
from price_manager.database import SessionLocal
from price_manager.services.job_controller import PriceJobController
from price_manager.utils import get_logger

logger = get_logger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def get_controller(request: Request) -> PriceJobController:
    """
    Return the controller created during application startup.

    Raises:
        HTTPException: 503 if the background machinery is not running
    """
    controller = getattr(request.app.state, "price_jobs", None)
    if controller is None:
        logger.error("Price job controller requested before startup completed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Background job processing is not available"
        )
    return controller
