"""WalletPass FastAPI application factory.

Two surfaces share one process: the PassKit device web service, mounted
at ``passkit_prefix`` because Wallet appends the fixed ``/v1/...`` paths to
the pass's ``webServiceURL``, and the operator API under ``api_prefix``.
"""

import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest, multiprocess
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from walletpass.config import Settings, get_settings
from walletpass.dependencies import get_session_factory, init_db, shutdown_db
from walletpass.errors import WalletPassError
from walletpass.middleware.error_handler import ErrorHandlerMiddleware
from walletpass.middleware.logging import LoggingMiddleware, redact_secrets, setup_logging
from walletpass.middleware.rate_limit import RateLimitMiddleware
from walletpass.routers import passes, passkit
from walletpass.tasks.celery_app import celery_app  # noqa: F401  configures .delay() broker

logger = logging.getLogger(__name__)

SERVICE_NAME = "walletpass-api"
UNINSTRUMENTED_PATHS = ["/health", "/health/ready", "/docs", "/redoc", "/openapi.json", "/metrics"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(debug=settings.debug)
    init_db(settings)
    logger.info("WalletPass API up (env=%s, apns=%s)", settings.app_env, "on" if settings.apns_enabled else "off")
    yield
    await shutdown_db()
    logger.info("WalletPass API stopped")


async def handle_wallet_pass_error(request: Request, exc: WalletPassError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, redact_secrets(exc.detail))
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def handle_store_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Registration store failure on %s: %s", request.url.path, redact_secrets(str(exc)))
    return JSONResponse(status_code=500, content={"detail": "Registration store failure"})


async def check_database(settings: Settings) -> str:
    try:
        async with get_session_factory(settings)() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        return f"error: {type(e).__name__}"
    return "ok"


async def check_redis(settings: Settings) -> str:
    # Redis backs both the rate limiter and the Celery broker.
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except (aioredis.RedisError, OSError) as e:
        return f"error: {type(e).__name__}"
    finally:
        await client.aclose()
    return "ok"


def render_metrics() -> bytes:
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return generate_latest(registry)
    return generate_latest()


def add_middleware_stack(app: FastAPI, settings: Settings) -> None:
    # Starlette wraps in reverse: the error guard ends up outermost.
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RateLimitMiddleware, settings=settings)

    origins = settings.cors_origins
    wildcard = origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if wildcard else origins,
        allow_origin_regex=r".*" if wildcard else None,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "If-Modified-Since"],
        max_age=600,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the API with its exception mapping, middleware and health checks."""
    settings = settings or get_settings()
    show_docs = settings.app_env != "production"

    app = FastAPI(
        title="WalletPass - Loyalty Pass Updates",
        description="PassKit web service and push update pipeline for loyalty wallet passes",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if show_docs else None,
        redoc_url="/redoc" if show_docs else None,
    )
    app.add_exception_handler(WalletPassError, handle_wallet_pass_error)
    app.add_exception_handler(SQLAlchemyError, handle_store_error)
    add_middleware_stack(app, settings)

    app.include_router(passkit.router, prefix=settings.passkit_prefix)
    app.include_router(passes.router, prefix=settings.api_prefix)

    @app.get("/")
    async def root():
        return {"status": "running", "service": SERVICE_NAME, "passTypeIdentifier": settings.pass_type_identifier}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/health/ready")
    async def health_ready():
        """Readiness: the registration store and Redis must both answer."""
        checks = {
            "database": await check_database(settings),
            "redis": await check_redis(settings),
        }
        ready = all(v == "ok" for v in checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "ready" if ready else "degraded",
                "checks": checks,
                "push": "enabled" if settings.apns_enabled else "disabled",
            },
        )

    Instrumentator(excluded_handlers=UNINSTRUMENTED_PATHS).instrument(app)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(content=render_metrics(), media_type=CONTENT_TYPE_LATEST)

    return app


# Default app instance for uvicorn
app = create_app()
