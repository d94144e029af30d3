"""
Error rendering and sanitization

- StorefrontError -> {"error": kind, "message": ..., "details": ...}
- Request body validation -> ValidationFailed with field-level messages
- Anything else -> logged with traceback, generic 500 with an error id
"""
import logging
import traceback
import uuid
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.core.config import settings
from storefront.core.exceptions import StorefrontError

logger = logging.getLogger(__name__)


def error_body(exc: StorefrontError) -> dict:
    return {
        "error": exc.code,
        "message": exc.message,
        "details": exc.details,
    }


def field_errors_from_pydantic(errors: List[dict]) -> Dict[str, List[str]]:
    """Flatten pydantic error dicts into {dotted.field: [messages]}."""
    field_errors: Dict[str, List[str]] = {}
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or "__root__"
        field_errors.setdefault(field, []).append(err.get("msg", "Invalid value"))
    return field_errors


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": "ValidationFailed",
            "message": "Request payload failed validation",
            "details": {"field_errors": field_errors_from_pydantic(exc.errors())},
        },
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = uuid.uuid4().hex[:12]
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            content = {
                "error": "InternalError",
                "message": "An unexpected error occurred. Please try again later.",
                "error_id": error_id,
            }
            if settings.DEBUG:
                content["message"] = str(e)
                content["type"] = type(e).__name__
            return JSONResponse(status_code=500, content=content)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_middleware(ErrorSanitizationMiddleware)
