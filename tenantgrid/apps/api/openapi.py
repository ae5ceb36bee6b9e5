from __future__ import annotations

from typing import Any

from tenantgrid.apps.api.response import API_VERSION, ErrorEnvelope


def _example(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"error": error, "meta": {"request_id": "req_example", "api_version": API_VERSION}}


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Invalid request or hierarchy change",
        _example("INVALID_HIERARCHY", "Parent organization does not exist in this tenant"),
    ),
    401: _response("Unauthorized", _example("AUTH_UNAUTHORIZED", "Missing or invalid bearer token")),
    402: _response(
        "Insufficient credits",
        _example(
            "INSUFFICIENT_CREDITS",
            "Insufficient credits. Available: 5.0000, Requested: 8.0000",
            {"balance": "5.0000", "requested": "8.0000", "shortfall": "3.0000"},
        ),
    ),
    403: _response("Forbidden or cross-tenant access", _example("TENANT_MISMATCH", "organization does not belong to the caller's tenant")),
    404: _response("Not found", _example("NOT_FOUND", "Organization not found")),
    409: _response(
        "Conflict",
        _example(
            "CONFIRMATION_REQUIRED",
            "A System Administrator already exists",
            {"force_transfer_required": True, "required_code": "9F3A61C2"},
        ),
    ),
    422: _response(
        "Validation error or unpriced operation",
        _example("OPERATION_COST_NOT_CONFIGURED", "No credit configuration for operation"),
    ),
    500: _response("Internal server error", _example("INTERNAL_ERROR", "Internal server error")),
}
