"""Session state, completion and credential schemas."""
from typing import Any

from app.schemas.common import CamelModel, SessionFlags


class SessionIdRequest(CamelModel):
    session_id: str


class StepRequest(CamelModel):
    session_id: str
    step_number: int


class SessionStateResponse(CamelModel):
    session_id: str
    user_id: str | None = None
    status: str
    step_number: int
    is_first_time: bool
    auth_method: str
    session_flags: SessionFlags
    can_complete: bool
    created_at: str | None = None
    expires_at: str | None = None
    completed_at: str | None = None


class TokenResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class CompleteResponse(TokenResponse):
    session_id: str
    user: dict[str, Any]
    missing_enrollment: list[str] = []
    message: str


class LogoutRequest(CamelModel):
    session_id: str | None = None
    user_id: str | None = None


class LogoutResponse(CamelModel):
    message: str
    revoked: int


class RefreshRequest(CamelModel):
    refresh_token: str | None = None
