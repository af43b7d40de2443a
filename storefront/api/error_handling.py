from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storefront.api.schemas import Envelope
from storefront.logging import get_logger, get_request_id
from storefront.service.errors import ServiceError
from storefront.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "validation_error" if status_code < 500 else "server_error"


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    envelope = Envelope(
        success=False,
        message=message,
        code=code or _error_code_for_status(status_code),
        details=details or None,
    )
    request_id = get_request_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json"),
        headers=dict(headers) if headers else None,
    )


def _first_validation_message(exc: RequestValidationError) -> str:
    """``field: message`` for the first failing field, pydantic's prefix removed."""
    errors = exc.errors()
    if not errors:
        return "invalid request"
    first = errors[0]
    message = str(first.get("msg") or "invalid request").removeprefix("Value error, ")
    field = ".".join(
        str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "form")
    )
    return f"{field}: {message}" if field else message


def _log(request: Request, event: str, status_code: int, **fields: Any) -> None:
    emit = logger.error if status_code >= 500 else logger.warning
    emit(event, method=request.method, path=request.url.path, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that render every failure as an error envelope."""

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log(request, "service_error", exc.status_code, code=exc.error_code, message=exc.message)
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def on_store_unavailable(request: Request, exc: StoreUnavailable):
        _log(request, "store_unavailable", 503, error=str(exc))
        return _error_response(503, "database unavailable", code="server_error")

    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError):
        message = _first_validation_message(exc)
        _log(request, "request_invalid", 400, message=message, errors=len(exc.errors()))
        return _error_response(400, message, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def on_http_exception(request: Request, exc: StarletteHTTPException):
        # routes raise HTTPException(detail={"error": {code, message, details}})
        error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if error:
            message, code, details = error.get("message"), error.get("code"), error.get("details")
        else:
            message, code, details = str(exc.detail or ""), None, None
        if exc.status_code == 404 and code is None:
            message = "not found"
        _log(request, "http_error", exc.status_code, code=code, message=message)
        return _error_response(
            exc.status_code, message or "http error", details, code=code, headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            method=request.method,
            path=request.url.path,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
