from __future__ import annotations

from typing import Any

from labledger.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Role ANALYST does not have permission to FINALIZE REPORT"),
    404: _response("Not found", code="NOT_FOUND", message="Sample not found", details={"sample_id": "smp_123"}),
    409: _response(
        "Conflict",
        code="CONFLICT",
        message="Lost the race for the next report version",
        details={"sample_id": "smp_123", "attempts": 2},
    ),
    422: _response(
        "Validation error",
        code="VALIDATION_ERROR",
        message="Only DRAFT report versions can be finalized",
        details={"report_id": "rpt_123", "status": "FINAL"},
    ),
    502: _response("Upstream failure", code="UPSTREAM_FAILURE", message="convert failed", details={"step": "convert"}),
}
