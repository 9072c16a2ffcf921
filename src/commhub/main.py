"""
FastAPI application: provider webhooks, sync control and the event stream.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commhub import __version__
from commhub.config import get_settings
from commhub.events.router import router as events_router
from commhub.shared.database import get_database_manager
from commhub.shared.exceptions import ConflictError, NotFoundError, ValidationError
from commhub.shared.logging import get_logger, setup_logging
from commhub.sync.orchestrator import get_sync_orchestrator
from commhub.sync.router import router as sync_router
from commhub.webhooks.router import router as webhooks_router

logger = get_logger(__name__)

_DOMAIN_ERROR_STATUS: dict[type[Exception], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    ConflictError: status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    settings = get_settings()
    db = get_database_manager()

    if settings.create_tables_on_startup:
        await db.create_all()
    logger.info(
        "commhub starting",
        extra={"env": settings.app_env, "version": __version__, "public_base_url": settings.public_base_url},
    )

    yield

    # Background sync runs hold sessions; stop them before disposing the engine.
    await get_sync_orchestrator().shutdown()
    await db.close()
    logger.info("commhub stopped")


async def _domain_error(_: Request, exc: Exception) -> JSONResponse:
    code = next(s for cls, s in _DOMAIN_ERROR_STATUS.items() if isinstance(exc, cls))
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def _request_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "errors": errors,
            }
        },
    )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="commhub",
        description="OpenPhone and Twilio messaging and calls behind one canonical API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )

    for exc_class in _DOMAIN_ERROR_STATUS:
        app.add_exception_handler(exc_class, _domain_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(webhooks_router)
    app.include_router(sync_router)
    app.include_router(events_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "healthy", "version": __version__}

    return app


app = create_app()
