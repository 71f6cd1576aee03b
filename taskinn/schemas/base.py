from pydantic import BaseModel
from typing import Any, Dict, Optional, Generic, TypeVar

T = TypeVar('T')


class BaseResponse(BaseModel, Generic[T]):
    """Base response model with success field"""
    success: bool
    data: Optional[T] = None
    message: Optional[str] = None
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def success_response(cls, data: T = None, message: str = None):
        """Create a successful response"""
        return cls(success=True, data=data, message=message)

    @classmethod
    def error_response(cls, error: str, message: str = None, details: Dict[str, Any] = None):
        """Create an error response; error is the machine-readable code"""
        return cls(success=False, error=error, message=message, details=details)

