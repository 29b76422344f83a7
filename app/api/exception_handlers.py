from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from ..core.config import settings
from ..core.exceptions import InternalFailureError, ServiceError, ValidationFailedError

logger = logging.getLogger(__name__)

# Error codes for HTTP errors raised outside the service layer
HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    423: "account_locked",
    429: "rate_limited",
}


def error_response(status_code: int, error: str, detail, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": detail},
        headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as {"error": <code>, "detail": <message>}."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        return error_response(exc.status_code, exc.error_code, exc.detail)

    # Covers auth failures, rate limiting and unknown routes
    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        error = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
        return error_response(exc.status_code, error, exc.detail, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            ValidationFailedError.status_code_default,
            ValidationFailedError.error_code,
            jsonable_encoder(exc.errors())
        )

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        detail = str(exc) if settings.is_development else "Internal server error"
        return error_response(500, InternalFailureError.error_code, detail)
