from typing import Any, Dict, List, Optional

from fastapi import HTTPException


class AppError(HTTPException):
    """HTTPException carrying an optional list of field-level details."""

    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None, details: Optional[List[Dict[str, Any]]] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=type(self).status_code, detail=detail or self.default_detail, headers=headers)
        self.details = details


class ValidationFailed(AppError):
    status_code = 400
    default_detail = "Validation failed"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationFailed":
        return cls(details=[{"field": field, "message": message}])


class Unauthenticated(AppError):
    status_code = 401
    default_detail = "Not authenticated"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class PermissionDenied(AppError):
    status_code = 403
    default_detail = "Access denied"


class NotFound(AppError):
    status_code = 404
    default_detail = "Not found"


class Conflict(AppError):
    status_code = 409
    default_detail = "Already exists"
