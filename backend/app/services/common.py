"""Shared enums, value objects and helpers for the authentication flow."""
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
import hashlib
import re
import secrets

from app.services.errors import ValidationError

Clock = Callable[[], datetime]

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")


class AuthMethod(str, Enum):
    """How the identity claim entered the system."""

    DIRECT_CHECK = "direct_check"
    SSO_ASSERTION = "sso_assertion"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    LOGGED_OUT = "logged_out"
    EXPIRED = "expired"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class Step(IntEnum):
    """Step the client should render next."""

    IDENTITY_CHECK = 1
    CONTACT_VERIFICATION = 2
    PROFILE = 3
    BIOMETRIC = 4
    SECURITY_QUESTIONS = 5
    COMPLETION = 6


class SessionFlag(str, Enum):
    """Completion flags on a session; values are the column names."""

    EMAIL_VERIFIED = "email_verified"
    SMS_VERIFIED = "sms_verified"
    USER_DETAILS_COLLECTED = "user_details_collected"
    BIOMETRIC_COLLECTED = "biometric_collected"
    SECURITY_QUESTIONS_ANSWERED = "security_questions_answered"


CHANNEL_FLAGS = {
    Channel.EMAIL: SessionFlag.EMAIL_VERIFIED,
    Channel.SMS: SessionFlag.SMS_VERIFIED,
}

ENROLLMENT_FLAGS = (
    SessionFlag.USER_DETAILS_COLLECTED,
    SessionFlag.BIOMETRIC_COLLECTED,
    SessionFlag.SECURITY_QUESTIONS_ANSWERED,
)


@dataclass(frozen=True)
class ClientMeta:
    """Client metadata captured when a session is created."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_id: str | None = None


def hash_token_id(token_id: str) -> str:
    """Hash a token identifier or short code before persisting."""
    return hashlib.sha256(token_id.encode("utf-8")).hexdigest()


def generate_numeric_code(length: int) -> str:
    """Uniformly random fixed-length numeric code."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = email.strip()
    if not email:
        return None
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email format")
    return email


def normalize_phone(phone: str | None) -> str | None:
    """Strip formatting and validate an E.164-style number."""
    if phone is None:
        return None
    stripped = phone.strip()
    if not stripped:
        return None
    digits = re.sub(r"[^\d+]", "", stripped)
    if not PHONE_PATTERN.match(digits):
        raise ValidationError("Invalid phone number format")
    return digits


def redact(value: str | None) -> str:
    """Redact an email address or phone number for log lines."""
    if not value:
        return "-"
    if "@" in value:
        local, domain = value.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"***{value[-4:]}"


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
