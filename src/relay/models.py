#File: src/relay/models.py

# Pydantic models for relay requests/responses. Wire names are camelCase.
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Union

from pydantic import BaseModel, Field

from relay.state import LastError


class LastErrorModel(BaseModel):
    code: Optional[Union[int, str]] = None
    message: str
    timestamp: str  # ISO-8601 UTC

    @classmethod
    def from_error(cls, error: Optional[LastError]) -> Optional["LastErrorModel"]:
        if error is None:
            return None
        return cls(
            code=error.code,
            message=error.message,
            timestamp=datetime.fromtimestamp(error.timestamp, tz=timezone.utc).isoformat(),
        )


class LoginResponse(BaseModel):
    success: bool = True
    status: str  # connected | pending | disconnected
    qr: Optional[str] = None  # PNG data URL
    last_error: Optional[LastErrorModel] = Field(default=None, alias="lastError")

    class Config:
        populate_by_name = True


class StatusResponse(LoginResponse):
    retry_count: Optional[int] = Field(default=None, alias="retryCount")


class SendMessageRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    number: Optional[Union[str, int]] = None
    message: Optional[str] = None

    class Config:
        populate_by_name = True


class SendMessageResponse(BaseModel):
    success: bool = True
    message: str
    to: str
    response: Optional[Dict[str, Any]] = None


class ActionResponse(BaseModel):
    success: bool = True
    message: str


class HealthResponse(BaseModel):
    success: bool = True
    status: str
    active_sessions: int = Field(alias="activeSessions")
    uptime: float  # seconds

    class Config:
        populate_by_name = True
