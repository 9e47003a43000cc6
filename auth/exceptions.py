"""
Custom exceptions for authentication module.
Provides consistent error responses across the API.
"""
from fastapi import HTTPException, status


class AuthException(HTTPException):
    """Base exception for authentication errors."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: str = None,
        headers: dict = None
    ):
        super().__init__(
            status_code=status_code,
            detail=detail,
            headers=headers
        )
        self.error_code = error_code


class NotAuthenticatedException(AuthException):
    """Exception when no bearer token is sent."""

    def __init__(self):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            error_code="AUTH_001",
            headers={"WWW-Authenticate": "Bearer"}
        )


class InvalidTokenException(AuthException):
    """Exception for invalid JWT token."""

    def __init__(self):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            error_code="AUTH_009",
            headers={"WWW-Authenticate": "Bearer"}
        )
