from __future__ import annotations

from typing import Any

from entitysync.apps.api.response import ErrorEnvelope


def _error_response(description: str, *, code: str, message: str) -> dict[str, Any]:
    # OpenAPI response entry with an error envelope example.
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": {
                    "error": {"code": code, "message": message},
                    "meta": {"request_id": "req_example", "api_version": "v1"},
                }
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_response(
        "Integration or entity kind not configured",
        code="CONFIGURATION_ERROR",
        message="dattormm does not sync mailbox",
    ),
    404: _error_response(
        "Sync job or alert not found", code="SYNC_JOB_NOT_FOUND", message="Sync job 01J0 not found"
    ),
    422: _error_response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _error_response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}
