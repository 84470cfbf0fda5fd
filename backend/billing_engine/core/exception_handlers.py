"""
FastAPI exception handlers.

WHY: Every error leaves the API in one envelope
(``error``, ``error_code``, ``message``, ``status_code``, ``details``), so
the subscription page can branch on ``error_code`` and show remediation
(for example ``add_payment_method``) without parsing messages.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_engine.core.exceptions import AppException, GatewayTimeoutError, StaleWriteError


logger = logging.getLogger(__name__)

# Errors a client may simply retry; the header tells it how soon
RETRYABLE_ERRORS = (StaleWriteError, GatewayTimeoutError)
RETRY_AFTER_SECONDS = "2"


def _envelope(
    error: str,
    error_code: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "error": error,
        "error_code": error_code,
        "message": message,
        "status_code": status_code,
        "details": details,
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Render AppException subclasses.

    Server-side and processor failures are logged with their (filtered)
    context; client errors are not, since they are expected traffic.
    """
    body = exc.to_dict()
    if exc.status_code >= 500:
        logger.error(
            f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}",
            extra={"error_code": exc.error_code, "details": body["details"]},
        )

    headers = None
    if isinstance(exc, RETRYABLE_ERRORS):
        headers = {"Retry-After": RETRY_AFTER_SECONDS}
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Request body errors, reported per field in the standard envelope."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=_envelope(
            "ValidationError",
            "VALIDATION_ERROR",
            "Request validation failed",
            400,
            {"errors": errors},
        ),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routing errors (unknown path, wrong method) and security scheme rejections."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_envelope("HTTPException", "HTTP_ERROR", str(exc.detail), exc.status_code),
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: full traceback in the log, nothing internal in the body."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=_envelope(
            "InternalServerError",
            "INTERNAL_ERROR",
            "An unexpected error occurred",
            500,
        ),
    )
