from __future__ import annotations

import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from moobee.infrastructure.config import get_settings
from moobee.infrastructure.exceptions import (
    MoobeeError,
    create_user_friendly_error_message,
    log_error_details,
)
from moobee.infrastructure.logging import LogContext, get_logger
from moobee.web.routes import questionnaires, system

logger = get_logger(__name__)


def error_body(code: str, message: str, details: dict | None = None) -> dict:
    error: dict = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MoobeeError)
    async def moobee_error_handler(request: Request, exc: MoobeeError) -> JSONResponse:
        if exc.http_status >= 500:
            error_details = log_error_details(exc, {"path": request.url.path, "method": request.method})
            logger.error(f"{request.method} {request.url.path} failed with {exc.code}", extra=error_details)
        else:
            logger.info(f"{request.method} {request.url.path} -> {exc.http_status} {exc.code}")
        # Authorization failures never carry entity details.
        details = None if exc.http_status in (401, 403) else exc.details
        return JSONResponse(
            status_code=exc.http_status,
            content=error_body(exc.code, exc.user_message, details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"] if loc != "body") or "body",
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=error_body("VALIDATION_ERROR", "Request validation failed", {"errors": errors}),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body("HTTP_ERROR", str(exc.detail)),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unhandled exception: {request.method} {request.url.path} - {type(exc).__name__}: {exc}",
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("INTERNAL_ERROR", create_user_friendly_error_message(exc)),
        )


def create_application() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app.title,
        version=settings.app.version,
        debug=settings.app.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=settings.security.cors_methods,
        allow_headers=["*"],
    )

    register_error_handlers(app)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        with LogContext(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(system.router)
    app.include_router(questionnaires.assessments)
    app.include_router(questionnaires.engagement)

    return app


app = create_application()
