"""Shared FastAPI dependencies."""
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.database import get_db
from app.services.auth_flow import AuthFlow
from app.services.common import Channel, ClientMeta
from app.services.credentials import ACCESS, CredentialIssuer, TokenClaims
from app.services.enrollment import EnrollmentTracker
from app.services.errors import Unauthenticated
from app.services.notifications import (
    EmailNotifier,
    Notifier,
    PhoneVerificationService,
    TwilioSmsNotifier,
    build_phone_verifier,
)
from app.services.otp import OtpEngine

bearer_scheme = HTTPBearer(auto_error=False)

__all__ = [
    "get_db",
    "get_settings",
    "get_request_ip",
    "get_client_meta",
    "get_notifiers",
    "get_phone_verifier",
    "get_auth_flow",
    "get_otp_engine",
    "get_enrollment_tracker",
    "get_token_claims",
]


def get_request_ip(request: Request) -> str | None:
    """Extract best-effort client IP for session metadata."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def get_client_meta(request: Request) -> ClientMeta:
    return ClientMeta(
        ip_address=get_request_ip(request),
        user_agent=request.headers.get("user-agent"),
        device_id=request.headers.get("x-device-id"),
    )


def get_notifiers(settings: Settings = Depends(get_settings)) -> dict[Channel, Notifier]:
    return {
        Channel.EMAIL: EmailNotifier(settings),
        Channel.SMS: TwilioSmsNotifier(settings),
    }


def get_phone_verifier(settings: Settings = Depends(get_settings)) -> PhoneVerificationService | None:
    return build_phone_verifier(settings)


def get_auth_flow(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> AuthFlow:
    return AuthFlow(db, settings)


def get_otp_engine(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifiers: dict[Channel, Notifier] = Depends(get_notifiers),
    phone_verifier: PhoneVerificationService | None = Depends(get_phone_verifier),
) -> OtpEngine:
    return OtpEngine(db, settings, notifiers, phone_verifier=phone_verifier)


def get_enrollment_tracker(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> EnrollmentTracker:
    return EnrollmentTracker(db, settings)


def get_token_claims(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> TokenClaims:
    """Verify the access token from the Authorization header or the access cookie.

    Verification always checks the revocation record.
    """
    token = credentials.credentials if credentials else request.cookies.get(settings.access_cookie_name)
    if not token:
        raise Unauthenticated("Not authenticated", code="MISSING_TOKEN")
    return CredentialIssuer(db, settings).verify(token, ACCESS)
