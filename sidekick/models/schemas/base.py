"""
Base schemas used across the application.
"""
from typing import Any, Generic, Optional, TypeVar
from pydantic import BaseModel

T = TypeVar("T")


class ResultResponse(BaseModel, Generic[T]):
    """Success envelope: every 2xx body is ``{"result": ...}``."""
    result: T


class ErrorResponse(BaseModel):
    """Error envelope rendered by the exception handlers."""
    error: str
    details: Optional[Any] = None
