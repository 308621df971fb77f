from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ticketvault.apps.api.response import error_response
from ticketvault.core.errors import (
    ArchiveWriteError,
    DatabaseError,
    ImportValidationError,
    SnapshotExportError,
    TenantAccessError,
    TenantNotFoundError,
    TicketVaultError,
)
from ticketvault.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors surface with stable codes; anything unlisted is an internal error.
_DOMAIN_ERRORS: tuple[tuple[type[TicketVaultError], int, str], ...] = (
    (TenantNotFoundError, status.HTTP_404_NOT_FOUND, "TENANT_NOT_FOUND"),
    (TenantAccessError, status.HTTP_403_FORBIDDEN, "TENANT_ACCESS_DENIED"),
    (ImportValidationError, status.HTTP_400_BAD_REQUEST, "IMPORT_VALIDATION_FAILED"),
    (SnapshotExportError, status.HTTP_500_INTERNAL_SERVER_ERROR, "EXPORT_FAILED"),
    (ArchiveWriteError, status.HTTP_500_INTERNAL_SERVER_ERROR, "EXPORT_FAILED"),
    (DatabaseError, status.HTTP_503_SERVICE_UNAVAILABLE, "DATABASE_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Accept both {"code", "message", ...} dicts and plain strings.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_error_to_http(exc: TicketVaultError) -> HTTPException:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            detail: dict[str, Any] = {"code": code, "message": str(exc)}
            if isinstance(exc, ImportValidationError):
                detail["validation_errors"] = list(exc.errors)
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
    )


def _render(request: Request, status_code: int, detail: Any, headers: dict[str, str] | None = None) -> JSONResponse:
    code, message, details = _split_detail(detail, status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _render(request, exc.status_code, exc.detail, exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _render(request, exc.status_code, exc.detail, exc.headers)


async def ticketvault_exception_handler(request: Request, exc: TicketVaultError) -> JSONResponse:
    http_exc = domain_error_to_http(exc)
    if http_exc.status_code >= 500:
        logger.error("request_failed path=%s error=%s", request.url.path, type(exc).__name__, exc_info=exc)
    return _render(request, http_exc.status_code, http_exc.detail)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    return _render(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"code": "INTERNAL_ERROR", "message": "Internal server error"},
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.error("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
