import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from scanguard.config import settings
from scanguard.core.async_tasks import drain_background_tasks
from scanguard.core.exceptions import NotFoundError, ValidationError
from scanguard.core.logging_config import configure_logging
from scanguard.database import async_session, dispose_engine, init_db
from scanguard.models import *  # noqa: F403

APP_VERSION = "0.1.0"
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging(settings.log_level)
    # Startup: create tables and seed agency rate limits
    await init_db()
    from scanguard.services.agency_rate_limit_service import initialize_agencies

    async with async_session() as db:
        await initialize_agencies(db)

    scheduler = None
    if settings.scheduler_enabled:
        from scanguard.jobs import build_scheduler

        scheduler = build_scheduler()
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    # Shutdown: stop jobs, let in-flight escalations finish, dispose pool
    if scheduler is not None:
        await scheduler.shutdown()
    await drain_background_tasks(timeout_seconds=5.0)
    await dispose_engine()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


async def _validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def create_app() -> FastAPI:
    app = FastAPI(
        title="ScanGuard",
        description="Product code verification, counterfeit risk scoring and regulatory escalation",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    # CORS configurable via CORS_ORIGINS env var
    allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_exception_handler(ValidationError, _validation_error_handler)
    app.add_exception_handler(NotFoundError, _not_found_handler)

    from scanguard.api import API_PREFIX, API_ROUTERS

    for router in API_ROUTERS:
        app.include_router(router, prefix=API_PREFIX)

    @app.get("/")
    async def root() -> dict[str, str]:
        return {
            "name": "ScanGuard",
            "version": APP_VERSION,
            "docs": "/docs",
            "health": f"{API_PREFIX}/health",
        }

    return app


app = create_app()
