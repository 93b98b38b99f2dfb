"""
FastAPI application main module.
Wires the job queue, worker pool and price job controller into the app lifespan
and exposes the HTTP surface with request logging and JSON error handling.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import uuid
import os
from contextlib import asynccontextmanager
from price_manager.api.v1 import api_router
from price_manager.utils import setup_logging, get_logger
from price_manager.jobs.worker import ActionWorker, create_queue
from price_manager import database
from price_manager.database import engine, Base
from price_manager.config import QUEUE_SETTINGS
from price_manager.services.job_controller import PriceJobController
from price_manager.services.job_store import JobStore
from price_manager.services.record_store import SqlRecordStore
import price_manager.models.db  # noqa: F401  (register tables on Base.metadata)

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/price_manager.log"),
    enable_console=True
)

logger = get_logger(__name__)

_worker: ActionWorker | None = None


def check_redis_health() -> bool:
    """Check if Redis is available for queue operations."""
    try:
        import redis
        redis_url = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]

        redis_client = redis.from_url(redis_url, socket_connect_timeout=timeout)
        redis_client.ping()
        logger.info("Redis health check: Redis is available", url=redis_url)
        return True
    except Exception as e:
        logger.warning("Redis health check: Redis is unavailable", error=str(e))
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")

    global _worker
    queue = None
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")

        queue = create_queue()
        store = JobStore(SqlRecordStore(lambda: database.SessionLocal()))
        controller = PriceJobController(store, queue, lambda: database.SessionLocal())
        _worker = ActionWorker(queue)
        controller.register(_worker)
        _worker.start()

        # endpoints reach these through app.state (avoids importing main)
        app.state.job_queue = queue  # type: ignore[attr-defined]
        app.state.price_jobs = controller  # type: ignore[attr-defined]
        logger.info("Price job queue + workers started")

        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if _worker:
            _worker.stop()
            logger.info("Action worker stop signal sent")
        if queue is not None:
            queue.shutdown()
        logger.info("Application shutdown completed")

app = FastAPI(
    title="Variation Price Manager",
    description="""
    Bulk price updates for product variations, processed in the background.

    ## Features
    * **Combination browsing** - variations grouped by attribute combination across products
    * **Background jobs** - large selections split into staggered batches
    * **Progress tracking** - per-job progress, percentage and a bounded log
    * **Cancellation** - pending batches dropped on request
    * **Parent resync** - product price ranges refreshed after each batch
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

# Request ID and logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        user_agent=request.headers.get("User-Agent"),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response

def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold exception instances
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]

# Custom exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": request_id
        }
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        }
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )

# Health check endpoints
@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    use_redis = bool(QUEUE_SETTINGS.get("use_redis", False))  # type: ignore[arg-type]
    redis_status = None
    queue_backend = "redis" if use_redis else "memory"
    if use_redis:
        redis_status = "healthy" if check_redis_health() else "unavailable"
    return {
        "status": "healthy",
        "service": "variation-price-manager",
        "version": "1.0.0",
        "timestamp": time.time(),
        "queue_backend": queue_backend,
        **({"redis_status": redis_status} if redis_status is not None else {}),
    }

@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Detailed health check with database, redis and queue status."""
    health_status = {
        "status": "healthy",
        "service": "variation-price-manager",
        "version": "1.0.0",
        "timestamp": time.time(),
        "checks": {}
    }

    # Database check
    try:
        from sqlalchemy import text
        db = database.SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    use_redis = bool(QUEUE_SETTINGS.get("use_redis", False))  # type: ignore[arg-type]
    if use_redis:
        healthy = check_redis_health()
        health_status["checks"]["redis"] = "healthy" if healthy else "unavailable"
        if not healthy and health_status["status"] == "healthy":
            health_status["status"] = "degraded"

    queue = getattr(app.state, "job_queue", None)  # type: ignore[attr-defined]
    if queue is not None:
        snap = queue.snapshot()
        # Avoid dumping potentially large internals
        health_status["checks"]["queue"] = {
            k: v for k, v in snap.items() if k in {"depth", "ready", "scheduled", "redis_active"}
        }

    return health_status

@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Variation Price Manager API",
        "version": "1.0.0",
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }

app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "price_manager.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["price_manager"],
        log_level="info",
        access_log=True
    )
