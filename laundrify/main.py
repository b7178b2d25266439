"""
Laundrify - laundry pickup booking service.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from laundrify.config import get_settings
from laundrify.api.router import api_router
from laundrify.utils.errors import LaundrifyError
from laundrify.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("laundrify")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


async def laundrify_error_handler(request: Request, exc: LaundrifyError) -> JSONResponse:
    """Render domain errors as {"success": false, "error": ..., "message": ...}."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "%s %s -> %d %s: %s", request.method, request.url.path,
        exc.status_code, exc.error_code, exc.message,
        extra={"error_code": exc.error_code},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("Laundrify starting up (env=%s)", settings.app_env)

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    if settings.referral_sweep_enabled:
        from laundrify.workers.referral_sweeper import run_referral_sweeper
        worker_tasks.append(asyncio.create_task(run_referral_sweeper()))
        logger.info("Referral sweeper started")
    else:
        logger.info("Referral sweeper disabled (REFERRAL_SWEEP_ENABLED=false)")

    yield

    logger.info("Laundrify shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)
    logger.info("Laundrify shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Laundrify",
        description="Laundry pickup booking and referral service",
        version="1.0.0",
        lifespan=lifespan,
    )

    origins = [settings.frontend_url]
    origins.extend(o.strip() for o in settings.allowed_origins.split(",") if o.strip())
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.add_exception_handler(LaundrifyError, laundrify_error_handler)
    application.include_router(api_router)

    return application


app = create_app()
