"""
Response envelopes for the patient-facing API.

Success:  {"success": true,  "data": {...}, "schemaVersion": "v1"}
Error:    {"success": false, "error": {"code", "message", "details"?}, "requestId"}

Handlers return an ApiResponse rather than a framework response so the
idempotency guard can cache and replay it verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

CORRELATION_HEADER = "X-Correlation-Id"

PATIENT_ASSESSMENT_SCHEMA_VERSION = "v1"


class ErrorCode(str, Enum):
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_OPERATION = "DUPLICATE_OPERATION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class ApiResponse:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


def _headers(correlation_id: str | None) -> dict[str, str]:
    return {CORRELATION_HEADER: correlation_id} if correlation_id else {}


def versioned_success_response(
    data: dict[str, Any] | None,
    schema_version: str,
    status_code: int = 200,
    correlation_id: str | None = None,
) -> ApiResponse:
    return ApiResponse(
        status_code=status_code,
        body={"success": True, "data": data, "schemaVersion": schema_version},
        headers=_headers(correlation_id),
    )


def error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> ApiResponse:
    error: dict[str, Any] = {"code": code.value, "message": message}
    if details is not None:
        error["details"] = details
    body: dict[str, Any] = {"success": False, "error": error}
    if correlation_id:
        body["requestId"] = correlation_id
    return ApiResponse(status_code=status_code, body=body, headers=_headers(correlation_id))


def missing_fields_response(
    message: str = "Required fields are missing.", correlation_id: str | None = None
) -> ApiResponse:
    return error_response(ErrorCode.MISSING_REQUIRED_FIELDS, message, 400, correlation_id=correlation_id)


def unauthorized_response(
    message: str = "Authentication required.", correlation_id: str | None = None
) -> ApiResponse:
    return error_response(ErrorCode.UNAUTHORIZED, message, 401, correlation_id=correlation_id)


def forbidden_response(
    message: str = "Access denied.", correlation_id: str | None = None
) -> ApiResponse:
    return error_response(ErrorCode.FORBIDDEN, message, 403, correlation_id=correlation_id)


def not_found_response(
    resource: str, message: str | None = None, correlation_id: str | None = None
) -> ApiResponse:
    return error_response(
        ErrorCode.NOT_FOUND,
        message or f"{resource} not found.",
        404,
        correlation_id=correlation_id,
    )


def validation_error_response(
    message: str, details: dict[str, Any] | None = None, correlation_id: str | None = None
) -> ApiResponse:
    return error_response(
        ErrorCode.VALIDATION_FAILED, message, 400, details=details, correlation_id=correlation_id
    )


def duplicate_operation_response(
    message: str = "A request with this idempotency key is already being processed.",
    correlation_id: str | None = None,
) -> ApiResponse:
    return error_response(ErrorCode.DUPLICATE_OPERATION, message, 409, correlation_id=correlation_id)


def internal_error_response(
    message: str = "An internal error occurred.", correlation_id: str | None = None
) -> ApiResponse:
    return error_response(ErrorCode.INTERNAL_ERROR, message, 500, correlation_id=correlation_id)
