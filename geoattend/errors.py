from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    status_code = 400
    code = "API_ERROR"
    retryable = False

    def __init__(self, status_code: int | None = None, code: str | None = None, message: str = ""):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.message = message


class InvalidCoordinateError(ApiError):
    status_code = 422
    code = "INVALID_COORDINATE"

    def __init__(self, message: str = "Coordinate is out of range."):
        super().__init__(message=message)


class InvalidGeofenceError(ApiError):
    status_code = 422
    code = "INVALID_GEOFENCE"

    def __init__(self, message: str):
        super().__init__(message=message)


class TenancyViolationError(ApiError):
    status_code = 403
    code = "TENANCY_VIOLATION"

    def __init__(self, message: str = "Cross-organization access is not allowed."):
        super().__init__(message=message)


class MissingTenantContextError(ApiError):
    status_code = 500
    code = "MISSING_TENANT_CONTEXT"

    def __init__(self, message: str = "Organization context is required."):
        super().__init__(message=message)


class NotFoundError(ApiError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found.", *, code: str | None = None):
        super().__init__(code=code, message=message)


class InvalidTransitionError(ApiError):
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(code=code, message=message)


class ConcurrentModificationError(ApiError):
    status_code = 409
    code = "CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, message: str = "Attendance state changed concurrently. Please retry."):
        super().__init__(message=message)


class EmployeeInactiveError(ApiError):
    status_code = 403
    code = "EMPLOYEE_INACTIVE"

    def __init__(self, message: str = "Inactive employee cannot perform attendance actions."):
        super().__init__(message=message)


class StorageTimeoutError(ApiError):
    status_code = 503
    code = "STORAGE_TIMEOUT"
    retryable = True

    def __init__(self, message: str = "Storage did not respond in time. Please retry."):
        super().__init__(message=message)


class EmployeeIdConflictError(ApiError):
    status_code = 409
    code = "EMPLOYEE_ID_CONFLICT"

    def __init__(self, message: str = "Employee id is already in use."):
        super().__init__(message=message)


class CodeGenerationError(ApiError):
    status_code = 409
    code = "CODE_GENERATION_FAILED"

    def __init__(self, message: str = "Could not generate a unique code."):
        super().__init__(message=message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    retryable: bool = False,
) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    headers = {"Retry-After": "1"} if retryable else None
    return JSONResponse(status_code=status_code, content=payload, headers=headers)
