"""Response schemas for the control API."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error body returned by every failing route."""
    error: str = Field(description="Error code")
    message: str = Field(description="Human readable message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Extra context")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CommandResponse(BaseModel):
    """Command outcome as returned over HTTP."""
    command: str
    ok: bool = True
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
