import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from jobmaster.api import endpoints
from jobmaster.core.config import Settings, get_settings
from jobmaster.core.errors import NotFoundError, QueueUnavailableError, ValidationError
from jobmaster.core.limiter import limiter
from jobmaster.core.logging import setup_logging
from jobmaster.services.job_service import JobServices
from jobmaster.utils.time import utc_now

logger = logging.getLogger(__name__)


def _error(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"error": str(exc)})
    return handler


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Optional[Settings] = None, services: Optional[JobServices] = None) -> FastAPI:
    """
    Build the API. Pass `services` to run against pre-built collaborators
    (tests); otherwise they are built from settings at startup and closed at
    shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL, settings.LOG_DIR)
        owned = services is None
        if owned:
            from jobmaster.runtime import build_services
            app.state.services = build_services(settings)
        else:
            app.state.services = services
        logger.info(f"{settings.PROJECT_NAME} ready")
        yield
        if owned:
            await app.state.services.aclose()

    app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

    # Rate Limiting
    limiter.enabled = settings.RATE_LIMIT_ENABLED
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_exception_handler(RequestValidationError, _error(400))
    app.add_exception_handler(ValidationError, _error(400))
    app.add_exception_handler(NotFoundError, _error(404))
    app.add_exception_handler(QueueUnavailableError, _error(503))
    app.add_exception_handler(Exception, _unhandled)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"{request.method} {request.url.path} {response.status_code} {elapsed_ms:.1f} ms")
        return response

    app.include_router(endpoints.router)

    @app.get("/heartbeat")
    def heartbeat():
        return {"status": True, "service": settings.PROJECT_NAME, "timestamp": utc_now()}

    return app


app = create_app()
