from __future__ import annotations

from typing import Any

from ticketvault.apps.api.response import API_VERSION, ErrorEnvelope


def _error_doc(description: str, code: str, message: str) -> dict[str, Any]:
    example = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_doc("Bad request", "IMPORT_VALIDATION_FAILED", "Invalid import data: Missing data section"),
    401: _error_doc("Unauthorized", "AUTH_UNAUTHORIZED", "Missing identity headers"),
    403: _error_doc("Forbidden", "AUTH_FORBIDDEN", "Insufficient role for this operation"),
    404: _error_doc("Not found", "TENANT_NOT_FOUND", "Tenant not found"),
    422: _error_doc("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _error_doc("Internal server error", "INTERNAL_ERROR", "Internal server error"),
}
