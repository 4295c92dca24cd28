"""
FastAPI application main module.
Wires the reward scheduler components together, runs the tick worker in the
background and exposes the HTTP API with request logging and error envelopes.
"""
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import os
from contextlib import asynccontextmanager
import redis
from sqlalchemy import text

from sidekick.api.v1 import api_router
from sidekick.config import API_PREFIX, QUEUE_SETTINGS, SERVICE_NAME, SERVICE_VERSION
from sidekick.database import SessionLocal, init_db
from sidekick.errors import SidekickError
from sidekick.integrations.evm import SignerRegistry
from sidekick.jobs.queue import RecurringJobQueue
from sidekick.jobs.redis_queue import RedisRecurringQueue, create_queue
from sidekick.jobs.worker_rewards import RewardWorker
from sidekick.services.attempt_ledger import AttemptLedger
from sidekick.services.job_store import InMemoryJobStore, RewardJobStore
from sidekick.services.reward_scheduler import RewardScheduler
from sidekick.services.transaction_log import TransactionLogStore
from sidekick.services.transfer_executor import TransferExecutor
from sidekick.utils import setup_logging, get_logger
from sidekick.utils.observability import REQUEST_ID_HEADER, ensure_request_id

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/sidekick.log"),
    enable_console=True
)

logger = get_logger(__name__)


def build_components(app: FastAPI) -> RewardWorker:
    """Create queue, stores, signer registry, executor and scheduler on ``app.state``.

    Returns the (not yet started) worker.
    """
    queue = create_queue()
    if isinstance(queue, RedisRecurringQueue):
        store = RewardJobStore(queue.client)
    else:
        logger.warning("Schedules are kept in memory only and will not survive a restart")
        store = InMemoryJobStore()

    transaction_log = TransactionLogStore()
    attempt_ledger = AttemptLedger()
    signers = SignerRegistry()
    executor = TransferExecutor(signers, transaction_log, attempt_ledger)
    scheduler = RewardScheduler(queue, store)

    worker = RewardWorker(queue, {scheduler.task_name: executor.handle_tick})
    worker.add_listener(scheduler.handle_run_finished)

    app.state.queue = queue
    app.state.job_store = store
    app.state.transaction_log = transaction_log
    app.state.attempt_ledger = attempt_ledger
    app.state.signers = signers
    app.state.executor = executor
    app.state.scheduler = scheduler
    app.state.worker = worker
    return worker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")
    worker: RewardWorker | None = None
    try:
        logger.info("Creating database tables")
        init_db()

        worker = build_components(app)
        # repair anything a crash left between queue registration and store write
        app.state.scheduler.reconcile()
        worker.start()
        logger.info("Application startup completed successfully", queue_backend=app.state.queue.backend)
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if worker is not None:
            worker.stop()
        queue = getattr(app.state, "queue", None)
        if queue is not None:
            queue.shutdown()
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Sidekick Reward Scheduler",
    description="""
    Recurring on-chain ERC20 reward distribution.

    ## Authentication
    Mutating requests must carry the shared secret:
    ```
    x-secret-key: <SECRET_KEY>
    ```
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
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
    Add request ID and timing; log request start and completion.
    """
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time
    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )
    return response


# Custom exception handlers
@app.exception_handler(SidekickError)
async def sidekick_exception_handler(request: Request, exc: SidekickError):
    """Domain errors carry their own status code."""
    request_id = getattr(request.state, "request_id", "unknown")
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request failed",
        error=exc.message,
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


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
            "error": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
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
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(redis.RedisError)
async def redis_exception_handler(request: Request, exc: redis.RedisError):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error("Redis operation failed", error=str(exc), request_id=request_id, url=str(request.url), exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Queue backend unavailable"})


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
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Health check endpoints
@app.get("/health", tags=["health"], summary="Basic health check")
def health_check():
    """Basic health check endpoint for load balancers."""
    queue = getattr(app.state, "queue", None)
    backend = queue.backend if queue is not None else None
    body = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "queue_backend": backend,
    }
    if isinstance(queue, RedisRecurringQueue):
        body["redis_status"] = "healthy" if queue.health_check() else "unavailable"
    elif bool(QUEUE_SETTINGS.get("use_redis", False)) and isinstance(queue, RecurringJobQueue):
        body["redis_status"] = "unavailable"
    return body


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
def detailed_health_check():
    """Detailed health check with database, redis, queue and chain configuration."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": {}
    }

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    queue = getattr(app.state, "queue", None)
    if isinstance(queue, RedisRecurringQueue):
        healthy = queue.health_check()
        health_status["checks"]["redis"] = "healthy" if healthy else "unavailable"
        if not healthy:
            health_status["status"] = "degraded"
    if queue is not None:
        health_status["checks"]["queue"] = queue.snapshot()

    worker = getattr(app.state, "worker", None)
    if worker is not None:
        health_status["checks"]["worker"] = "running" if worker.running else "stopped"

    signers = getattr(app.state, "signers", None)
    if signers is not None:
        health_status["checks"]["chains"] = signers.chains

    return health_status


@app.get("/", tags=["root"])
def root():
    """API root endpoint with basic information."""
    return {
        "message": "Sidekick Reward Scheduler API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
    }


app.include_router(api_router, prefix=API_PREFIX)

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "sidekick.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_dirs=["sidekick"],
        log_level="info",
        access_log=True
    )
