"""
FastAPI application main module.
Hosts the consumer pools and scheduler for the end-of-day report service and
exposes an operator API for triggering cycles and inspecting tasks and queues.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import time
import uuid
from contextlib import asynccontextmanager
from eod_reports import __version__
from eod_reports.api.v1 import api_router
from eod_reports.utils import setup_logging, get_logger
from eod_reports.config import DispatchSettings, QUEUE_SETTINGS
from eod_reports.database import engine, Base, SessionLocal
from eod_reports.exceptions import InvalidTransition, NotFoundError, UnsupportedReportKind
from eod_reports.jobs.dispatcher import ReportDispatcher
from eod_reports.jobs.scheduler import EndOfDayScheduler
from eod_reports.jobs.worker_pool import ConsumerPool, build_router
from eod_reports.pipeline.runner import PipelineRunner
from eod_reports.reports.csv_sink import CsvReportSink
import eod_reports.models.db  # noqa: F401  (register mappers before create_all)

# Setup logging before creating the app
setup_logging()

logger = get_logger(__name__)


def check_redis_health() -> bool:
    """Check if Redis is available for queue operations."""
    try:
        import redis
        redis_url = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))
        redis_client = redis.from_url(redis_url, socket_connect_timeout=timeout)
        redis_client.ping()
        return True
    except Exception as e:
        logger.warning("Redis health check: Redis is unavailable", error=str(e))
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Builds queues, consumer pools and the scheduler on startup; stops them on shutdown.
    """
    logger.info("Application startup initiated")
    pools: dict = {}
    scheduler = None
    router = None
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)

        settings = DispatchSettings.from_config()
        router = build_router(settings)
        for _, channel in router.items():
            recovered = channel.recover()
            if recovered:
                logger.warning("Requeued unacknowledged messages from a previous run", queue=channel.name, count=recovered)

        runner = PipelineRunner(session_factory=SessionLocal, sink=CsvReportSink(settings.output_dir), settings=settings)
        for kind, channel in router.items():
            dispatcher = ReportDispatcher(kind, channel, runner, session_factory=SessionLocal, settings=settings)
            pool = ConsumerPool.from_settings(channel, dispatcher, settings)
            pool.start()
            pools[kind] = pool

        scheduler = EndOfDayScheduler(SessionLocal, router, settings)
        if settings.scheduler_enabled:
            scheduler.start()
        else:
            logger.info("Scheduler not enabled; cycles run only on demand")

        # expose components for endpoints without importing main
        app.state.settings = settings
        app.state.session_factory = SessionLocal
        app.state.queue_router = router
        app.state.consumer_pools = pools
        app.state.scheduler = scheduler
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if scheduler is not None:
            scheduler.stop()
        if router is not None:
            router.shutdown()
        for pool in pools.values():
            pool.stop()
        logger.info("Application shutdown completed")


app = FastAPI(
    title="End-of-Day Report Service",
    description="""
    Fans out daily reporting obligations to subscribers and generates CSV reports
    through queue-driven, chunked pipelines.

    ## Features
    * **Fan-out** - one tracked task and queue message per eligible subscriber
    * **At-least-once dispatch** - claim leases, backoff requeue, dead letters
    * **Chunked reports** - checkpointed per-record reports and daily summaries
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Attach a request id, echo it back and log one line per request."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms)
    logger.info(
        f"{request.method} {request.url.path}",
        status_code=response.status_code,
        process_time_ms=elapsed_ms,
        request_id=request_id,
    )
    return response


def _error_response(request: Request, status_code: int, message: str, **extra) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "request_id": request_id, **extra}
    )


# Custom exception handlers
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    logger.warning("Entity not found", entity=exc.entity, key=str(exc.key), url=str(request.url))
    return _error_response(request, 404, str(exc))


@app.exception_handler(UnsupportedReportKind)
async def unsupported_kind_handler(request: Request, exc: UnsupportedReportKind):
    logger.warning("Unsupported report kind", kind=str(exc.kind), url=str(request.url))
    return _error_response(request, 400, str(exc))


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    logger.warning("Invalid state transition", entity=exc.entity, current=str(exc.current), target=str(exc.target))
    return _error_response(request, 409, str(exc))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    logger.warning("Request validation failed", errors=exc.errors(), url=str(request.url), method=request.method)
    return _error_response(request, 422, "Request validation failed", details=exc.errors())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail, url=str(request.url))
    return _error_response(request, exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")


def _service_info() -> dict:
    return {"service": "eod-report-service", "version": __version__, "timestamp": time.time()}


def _redis_enabled() -> bool:
    return bool(QUEUE_SETTINGS.get("use_redis", False))


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Liveness check; reports the queue backend in use."""
    health = {"status": "healthy", **_service_info(), "queue_backend": "redis" if _redis_enabled() else "memory"}
    if _redis_enabled():
        health["redis_status"] = "healthy" if check_redis_health() else "unavailable"
    return health


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check(request: Request):
    """Database round trip, Redis ping and per-queue depth."""
    checks: dict = {}
    degraded = False

    session_factory = getattr(request.app.state, "session_factory", SessionLocal)
    db = session_factory()
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except SQLAlchemyError as e:
        checks["database"] = f"unhealthy: {e}"
        degraded = True
    finally:
        db.close()

    if _redis_enabled():
        healthy = check_redis_health()
        checks["redis"] = "healthy" if healthy else "unavailable"
        degraded = degraded or not healthy

    router = getattr(request.app.state, "queue_router", None)
    if router is not None:
        keep = {"depth", "unacked", "dead_letters", "redis_active"}
        checks["queues"] = {kind: {k: v for k, v in snap.items() if k in keep} for kind, snap in router.snapshot().items()}

    return {"status": "degraded" if degraded else "healthy", **_service_info(), "checks": checks}


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "End-of-Day Report Service API",
        "version": __version__,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1",
    }


app.include_router(api_router, prefix="/api/v1")


# Development server configuration
if __name__ == "__main__":
    import uvicorn
    logger.info("Starting development server")
    uvicorn.run(
        "eod_reports.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["eod_reports"],
        log_level="info",
        access_log=True
    )
