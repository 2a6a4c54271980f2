"""
Error taxonomy for the API.

Every error is an HTTPException so handlers can simply ``raise`` them the
same way they raise plain HTTPExceptions; main.py renders all of them in the
``{"success": false, "error": ...}`` envelope.
"""
from typing import List, Optional

from fastapi import HTTPException


class AppError(HTTPException):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None, details: Optional[List[dict]] = None):
        super().__init__(status_code=self.status_code, detail=message or self.default_message)
        self.details = details


class ValidationFailed(AppError):
    status_code = 400
    default_message = "Validation failed"


class Unauthenticated(AppError):
    status_code = 401
    default_message = "Not authorized"


class Forbidden(AppError):
    status_code = 403
    default_message = "Access denied"


class NotFound(AppError):
    status_code = 404
    default_message = "Resource not found"


class Conflict(AppError):
    status_code = 409
    default_message = "Conflict"


class InsufficientStock(Conflict):
    default_message = "Insufficient stock"


class ServerError(AppError):
    status_code = 500
    default_message = "Server error"
