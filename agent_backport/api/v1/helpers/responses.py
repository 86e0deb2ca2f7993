"""
Standardized response helpers for consistent API errors.
"""

from fastapi import HTTPException, status
from pydantic import BaseModel


class APIResponse(BaseModel):
    """Standard API response model"""

    success: bool
    message: str
    errors: list[str] | None = None


def error_response(
    message: str = "An error occurred",
    errors: list[str] | None = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> HTTPException:
    """Create an error response"""
    response_data = APIResponse(success=False, message=message, errors=errors or [])
    return HTTPException(status_code=status_code, detail=response_data.model_dump())


def not_found_response(message: str = "Resource not found") -> HTTPException:
    """Create a not found error response"""
    return error_response(message=message, status_code=status.HTTP_404_NOT_FOUND)


def unauthorized_response(message: str = "Authentication required") -> HTTPException:
    """Create an unauthorized error response"""
    return error_response(message=message, status_code=status.HTTP_401_UNAUTHORIZED)
