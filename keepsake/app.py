"""
FastAPI application entry point.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from keepsake.config import Settings, get_settings
from keepsake.dependencies import build_services
from keepsake.errors import KeepsakeError
from keepsake.routes import router

logger = logging.getLogger(__name__)


def _error_body(message: str, error: Optional[str] = None) -> dict:
    body = {"success": False, "message": message}
    if error:
        body["error"] = error
    return body


async def handle_keepsake_error(request: Request, exc: KeepsakeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        body = _error_body("Internal server error", exc.message)
    else:
        body = _error_body(exc.message)
    return JSONResponse(status_code=exc.status_code, content=body)


async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def handle_request_validation(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in errors
    )
    return JSONResponse(status_code=400, content=_error_body("Invalid request", detail))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(), format="%(levelname)s:%(name)s:%(message)s"
    )

    app = FastAPI(title="Keepsake Backend (FastAPI)", version="0.1.0")
    # Fails here when the database is unreachable; no app without stores.
    app.state.services = build_services(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length", "ETag"],
    )
    app.add_exception_handler(KeepsakeError, handle_keepsake_error)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation)

    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
