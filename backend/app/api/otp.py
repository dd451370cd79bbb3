"""One-time code endpoints."""
from fastapi import APIRouter, Depends

from app.api.deps import get_otp_engine, get_settings
from app.config import Settings
from app.schemas.otp import (
    OtpEmailRequest,
    OtpIssueResponse,
    OtpSmsRequest,
    OtpVerifyRequest,
    OtpVerifyResponse,
)
from app.services.common import Channel
from app.services.errors import NotFound, RateLimited, ValidationError
from app.services.otp import IssuedCode, OtpEngine, OtpFailure

router = APIRouter(prefix="/otp", tags=["otp"])

FAILURE_MESSAGES = {
    OtpFailure.NOT_FOUND: "No pending code for this session. Request a new one.",
    OtpFailure.EXPIRED: "Code has expired. Request a new one.",
    OtpFailure.TOO_MANY_ATTEMPTS: "Too many failed attempts. Request a new code.",
    OtpFailure.MISMATCH: "Invalid code",
}


def _issue_response(session_id: str, issued: IssuedCode, settings: Settings) -> OtpIssueResponse:
    label = "Email" if issued.channel == Channel.EMAIL else "SMS"
    message = f"{label} code sent" if issued.delivery.sent else f"{label} code created but delivery failed"
    return OtpIssueResponse(
        session_id=session_id,
        channel=issued.channel,
        sent=issued.delivery.sent,
        delegated=issued.delegated,
        expires_at=issued.expires_at,
        message=message,
        code=issued.code if settings.debug else None,
    )


@router.post("/email", response_model=OtpIssueResponse)
def send_email_code(
    body: OtpEmailRequest,
    engine: OtpEngine = Depends(get_otp_engine),
    settings: Settings = Depends(get_settings),
):
    """Issue an email code. Delivery failure is reported, not raised."""
    issued = engine.issue(body.session_id, Channel.EMAIL, body.email)
    return _issue_response(body.session_id, issued, settings)


@router.post("/sms", response_model=OtpIssueResponse)
def send_sms_code(
    body: OtpSmsRequest,
    engine: OtpEngine = Depends(get_otp_engine),
    settings: Settings = Depends(get_settings),
):
    issued = engine.issue(body.session_id, Channel.SMS, body.phone)
    return _issue_response(body.session_id, issued, settings)


@router.post("/verify", response_model=OtpVerifyResponse)
def verify_code(body: OtpVerifyRequest, engine: OtpEngine = Depends(get_otp_engine)):
    result = engine.verify(body.session_id, body.channel, body.code)
    if not result.verified:
        message = FAILURE_MESSAGES[result.reason]
        detail = {"reason": result.reason.value}
        if result.reason == OtpFailure.NOT_FOUND:
            raise NotFound(message, code="OTP_NOT_FOUND", detail=detail)
        if result.reason == OtpFailure.TOO_MANY_ATTEMPTS:
            raise RateLimited(message, code="OTP_TOO_MANY_ATTEMPTS", detail=detail)
        raise ValidationError(message, code=f"OTP_{result.reason.name}", detail=detail)

    return OtpVerifyResponse(
        verified=True,
        channel=body.channel,
        session_flags=result.flags,
        next_step=result.next_step,
    )
