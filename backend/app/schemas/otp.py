"""One-time code schemas."""
from datetime import datetime

from pydantic import EmailStr

from app.services.common import Channel
from app.schemas.common import CamelModel, SessionFlags


class OtpEmailRequest(CamelModel):
    session_id: str
    email: EmailStr


class OtpSmsRequest(CamelModel):
    session_id: str
    phone: str


class OtpIssueResponse(CamelModel):
    session_id: str
    channel: Channel
    sent: bool
    delegated: bool = False
    expires_at: datetime
    message: str
    code: str | None = None  # Debug mode only


class OtpVerifyRequest(CamelModel):
    session_id: str
    channel: Channel
    code: str


class OtpVerifyResponse(CamelModel):
    verified: bool
    channel: Channel
    session_flags: SessionFlags
    next_step: int
