"""
Response Envelope

Every API response uses ``{success, data, error, timestamp}``.
"""

from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

DataT = TypeVar("DataT")


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: Any = None


class APIResponse(BaseModel, Generic[DataT]):
    success: bool = True
    data: DataT | None = None
    error: ErrorInfo | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


def ok(data: Any) -> dict[str, Any]:
    """Successful envelope; FastAPI validates ``data`` against response_model."""
    return {"success": True, "data": data, "error": None, "timestamp": datetime.now(UTC)}


def error_body(code: str, message: str, details: Any = None) -> dict[str, Any]:
    """JSON-ready error envelope."""
    return APIResponse[Any](
        success=False,
        error=ErrorInfo(code=code, message=message, details=details),
    ).model_dump(mode="json")
