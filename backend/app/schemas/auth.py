"""Identity check and SSO schemas."""
from typing import Any

from app.schemas.common import CamelModel, SessionFlags


class IdentityCheckRequest(CamelModel):
    """Direct identity claim; at least one of email or phone."""

    email: str | None = None
    phone: str | None = None


class SessionStartResponse(CamelModel):
    session_id: str
    user_id: str
    email: str | None = None
    phone: str | None = None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_first_time: bool
    next_step: int
    session_flags: SessionFlags
    message: str


class SsoTokenRequest(CamelModel):
    token: str | None = None


class SsoStartResponse(SessionStartResponse):
    is_new_user: bool
    prefill_data: dict[str, Any]
    sso_user: dict[str, Any]


class SsoVerifyResponse(CamelModel):
    valid: bool = True
    user: dict[str, Any]
    expires_at: int | None = None
