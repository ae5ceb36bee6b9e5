from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantgrid.apps.api.response import error_response, get_request_id
from tenantgrid.core.errors import TenantGridError
from tenantgrid.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _code_for_status(status_code: int) -> str:
    return _STATUS_CODES.get(status_code, "UNKNOWN_ERROR")


def _unpack_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Route code raises HTTPException(detail={"code", "message", ...}); anything else gets a status-derived code.
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in {"code", "message"}}
        return (
            str(detail.get("code") or _code_for_status(status_code)),
            str(detail.get("message") or "Request failed"),
            extra or None,
        )
    if isinstance(detail, str):
        return _code_for_status(status_code), detail, None
    return _code_for_status(status_code), "Request failed", None


def _envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _unpack_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=getattr(exc, "headers", None),
    )


async def domain_exception_handler(request: Request, exc: TenantGridError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("domain_error code=%s request_id=%s", exc.code, get_request_id(request))
    return _envelope(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details or None,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A query reached the store without its tenant filter; fail closed without detail.
    logger.error("tenant_predicate_missing request_id=%s path=%s", get_request_id(request), request.url.path)
    return _envelope(
        request,
        status_code=500,
        code="TENANT_PREDICATE_REQUIRED",
        message="Tenant scope could not be enforced",
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error request_id=%s path=%s", get_request_id(request), request.url.path)
    return _envelope(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
