"""
FastAPI application entry point for the blog backend.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from blogapi.config import get_settings
from blogapi.errors import BlogError, UnknownError
from blogapi.routes import router

logger = logging.getLogger(__name__)


def _error_body(exc: BlogError) -> dict:
    return {
        "error": exc.kind,
        "detail": exc.detail,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def blog_error_handler(request: Request, exc: BlogError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.detail)
    else:
        logger.info("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    wrapped = UnknownError(str(exc) or type(exc).__name__)
    return JSONResponse(status_code=wrapped.status_code, content=_error_body(wrapped))


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BlogError, blog_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
