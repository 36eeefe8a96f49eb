"""
FastAPI application entry point for the CMS backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError

from cms_backend.clock import isoformat
from cms_backend.config import get_settings
from cms_backend.db import ensure_default_admin
from cms_backend.dependencies import get_clock, get_db_client
from cms_backend.errors import CmsError
from cms_backend.routes import router

logger = logging.getLogger(__name__)

SERVICE_NAME = "LLA Web CMS"


def error_body(message: str, error_type: str) -> dict:
    return {"error": {"message": message, "type": error_type}}


async def handle_cms_error(request: Request, exc: CmsError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.client_message(), type(exc).__name__),
    )


async def handle_db_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database error on %s", request.url.path)
    return JSONResponse(
        status_code=500, content=error_body("Database error", "DatastoreError")
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.is_development:
        ensure_default_admin(get_db_client(), settings.default_admin_email)
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="LLA Web CMS Backend", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "Cookie"],
    )
    app.add_exception_handler(CmsError, handle_cms_error)
    app.add_exception_handler(SQLAlchemyError, handle_db_error)

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return "LLA Web CMS API"

    @app.get("/healthz")
    def healthz():
        return {
            "status": "healthy",
            "timestamp": isoformat(get_clock().now()),
            "service": SERVICE_NAME,
        }

    app.include_router(router, prefix=settings.api_prefix)

    if not settings.use_in_memory_backends and not settings.s3_bucket:
        # Local development serves uploaded media itself.
        app.mount(
            "/uploads",
            StaticFiles(directory=settings.upload_dir, check_dir=False),
            name="uploads",
        )
    return app


app = create_app()
