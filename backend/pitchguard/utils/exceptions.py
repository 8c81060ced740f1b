"""
Custom exceptions
"""

from typing import Optional, Dict, Any
from fastapi import HTTPException, status


class CustomHTTPException(HTTPException):
    """Base custom HTTP exception"""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        detail: str,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.details = details or {}


class AuthenticationError(CustomHTTPException):
    """Authentication error"""

    def __init__(self, detail: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="AUTHENTICATION_ERROR",
            detail=detail,
            details=details,
        )


class SecurityError(CustomHTTPException):
    """Security error"""

    def __init__(self, detail: str = "Security violation", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="SECURITY_ERROR",
            detail=detail,
            details=details,
        )


class ValidationError(CustomHTTPException):
    """Validation error"""

    def __init__(self, detail: str = "Invalid data", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_ERROR",
            detail=detail,
            details=details,
        )


class ConfigurationError(Exception):
    """Missing or inconsistent configuration, raised at startup only"""
    pass


class StoreUnavailable(Exception):
    """Transient failure talking to the shared state store"""

    def __init__(self, operation: str, key: Optional[str] = None, cause: Optional[BaseException] = None):
        message = f"State store unavailable during {operation}"
        if key:
            message += f" ({key})"
        if cause is not None:
            message += f": {cause!r}"
        super().__init__(message)
        self.operation = operation
        self.key = key
        self.cause = cause


class DurableSinkFailure(Exception):
    """Audit sink could not persist or query security events"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
