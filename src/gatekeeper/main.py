"""
Main FastAPI application entry point.

create_app builds every component once (stores, computation cache, rate
limiter, fan-out logger, metrics, upstream client) and attaches them to
app.state; routes reach them through dependencies.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry
from sqlalchemy.engine import Engine

from . import __version__
from .api import admin_router, healthz_router, market_router, metrics_router
from .api.dependencies import enforce_admission
from .api.middleware import RequestContextMiddleware, request_meta_from
from .config import Settings, get_settings
from .core.cache_store import CacheStore, FileCacheStore, MemoryCacheStore, SqlCacheStore
from .core.clock import Clock, SystemClock
from .core.computation_cache import ComputationCache
from .core.database import engine_from_settings
from .core.exceptions import GatekeeperException
from .core.fanout_logger import FanoutLogger, build_fanout_logger
from .core.identity import get_identity_strategy
from .core.log_record import Severity, bind_request_meta, reset_request_meta
from .core.maintenance import ExpiryPurger
from .core.metrics import MetricsCollector
from .core.rate_limiter import MemoryRateWindowStore, RateLimiter, RateWindowStore, SqlRateWindowStore
from .core.upstream import UpstreamClient


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the application."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    # Silence the verbose watchfiles logger
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _needs_database(settings: Settings) -> bool:
    return (
        settings.cache.backend == "sql"
        or settings.rate_limit.backend == "sql"
        or settings.logging.database_enabled
    )


def build_cache_store(settings: Settings, engine: Optional[Engine], clock: Optional[Clock] = None) -> CacheStore:
    config = settings.cache
    if config.backend == "file":
        return FileCacheStore(config.directory, namespace_version=config.namespace_version, clock=clock)
    if config.backend == "sql":
        return SqlCacheStore(engine, namespace_version=config.namespace_version, clock=clock)
    return MemoryCacheStore(
        max_entries=config.max_entries,
        namespace_version=config.namespace_version,
        clock=clock,
    )


def build_window_store(settings: Settings, engine: Optional[Engine]) -> RateWindowStore:
    if settings.rate_limit.backend == "sql":
        return SqlRateWindowStore(engine)
    return MemoryRateWindowStore()


def create_lifespan_handler(settings: Settings) -> Any:
    """Create a lifespan handler with access to settings."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger = structlog.get_logger(__name__)
        logger.info("Starting Gatekeeper service", version=app.version, environment=settings.environment)

        fanout: FanoutLogger = app.state.fanout_logger
        await app.state.upstream.start()
        await app.state.purger.start()
        await fanout.info("Service started", version=app.version)

        try:
            yield
        finally:
            logger.info("Shutting down Gatekeeper service")
            await app.state.purger.stop()
            await app.state.upstream.stop()
            await fanout.aclose()
            engine = getattr(app.state, "engine", None)
            if engine is not None:
                engine.dispose()
            logger.info("Gatekeeper service shutdown complete")

    return lifespan


async def gatekeeper_exception_handler(request: Request, exc: GatekeeperException) -> JSONResponse:
    """Render GatekeeperException subclasses as {"error", "message", "details"}."""
    logger = structlog.get_logger(__name__)
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request failed",
        error=str(exc),
        error_code=exc.error_code,
        status_code=exc.status_code,
        path=request.url.path,
        method=request.method,
    )

    headers = {}
    if exc.status_code == 429 and "retry_after" in exc.details:
        headers["Retry-After"] = str(exc.details["retry_after"])

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": str(exc),
            "details": exc.details,
        },
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = structlog.get_logger(__name__)
    logger.error(
        "Unexpected exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )

    # Runs outside the request context middleware, so bind the request here
    fanout = getattr(request.app.state, "fanout_logger", None)
    if fanout is not None:
        token = bind_request_meta(request_meta_from(request))
        try:
            await fanout.log(Severity.ERROR, "Unhandled exception", {"error_type": type(exc).__name__})
        finally:
            reset_request_meta(token)

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    upstream: Optional[UpstreamClient] = None,
    metrics_registry: Optional[CollectorRegistry] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Explicit settings; defaults to get_settings()
        upstream: Upstream client; tests pass a fake
        metrics_registry: Prometheus registry; a fresh one per app by default
        clock: Time source for the stores and the limiter
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Gatekeeper",
        description="Request admission, computation caching and fan-out logging for the CryptInvest API",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(settings),
    )

    engine = engine_from_settings(settings.database) if _needs_database(settings) else None
    metrics = MetricsCollector(metrics_registry if metrics_registry is not None else CollectorRegistry())
    fanout = build_fanout_logger(settings, engine=engine, metrics=metrics)

    computation_cache = ComputationCache(
        build_cache_store(settings, engine, clock),
        logger=fanout,
        metrics=metrics,
        default_ttl=settings.cache.default_ttl,
        join_timeout=settings.cache.join_timeout,
    )
    # Windows in a shared database need wall-clock time
    if clock is None and settings.rate_limit.backend == "sql":
        limiter_clock: Optional[Clock] = SystemClock()
    else:
        limiter_clock = clock
    rate_limiter = RateLimiter(
        build_window_store(settings, engine),
        capacity=settings.rate_limit.capacity,
        window_seconds=settings.rate_limit.window_seconds,
        enabled=settings.rate_limit.enabled,
        fail_open=settings.rate_limit.fail_open,
        logger=fanout,
        metrics=metrics,
        clock=limiter_clock,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.metrics = metrics
    app.state.fanout_logger = fanout
    app.state.computation_cache = computation_cache
    app.state.rate_limiter = rate_limiter
    app.state.identify = get_identity_strategy(settings.rate_limit.identity, settings.rate_limit.api_key_header)
    app.state.upstream = upstream or UpstreamClient(settings.upstream)
    app.state.purger = ExpiryPurger(computation_cache, rate_limiter, settings.purge_interval_seconds)

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "DELETE"],
        allow_headers=["*"],
    )

    app.add_exception_handler(GatekeeperException, gatekeeper_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    admission = [Depends(enforce_admission)]
    app.include_router(market_router, prefix="/v1", tags=["market"], dependencies=admission)
    app.include_router(admin_router, prefix="/v1", tags=["admin"], dependencies=admission)
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(healthz_router, tags=["health"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        return {
            "service": "Gatekeeper",
            "version": app.version,
            "docs": "/docs",
        }

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "gatekeeper.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )
