"""Verification of externally signed SSO assertions.

Wire format: ``base64(json payload) + "." + hex(HMAC-SHA256(base64 payload, shared secret))``.
Checks run in a fixed order and each has its own rejection reason; the
signature is checked before any claim is decoded.
"""
import base64
import binascii
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import hashlib
import hmac
import json
import logging

from app.database import utcnow
from app.services.common import Clock, redact
from app.services.errors import SsoRejected

logger = logging.getLogger(__name__)


class SsoRejectReason(str, Enum):
    MALFORMED_TOKEN = "malformed_token"
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED_PAYLOAD = "malformed_payload"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SsoAssertion:
    """Identity asserted by the external provider. Never persisted."""

    email: str
    subject_id: str | None = None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    country: str | None = None
    age: int | None = None
    gender: str | None = None
    org_member: bool = False
    issued_at: int | None = None
    expires_at: int | None = None
    nonce: str | None = None

    def profile_values(self) -> dict:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "age": self.age,
            "gender": self.gender,
            "country": self.country,
        }

    def has_profile(self) -> bool:
        return any(value not in (None, "") for value in self.profile_values().values())

    def public_dict(self) -> dict:
        return {
            "subjectId": self.subject_id,
            "username": self.username,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "orgMember": self.org_member,
            "country": self.country,
            "age": self.age,
            "gender": self.gender,
        }


def _signature(payload_b64: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_assertion(claims: dict, secret: str) -> str:
    """Produce a token in the provider's wire format (used by tests and local tooling)."""
    payload_b64 = base64.b64encode(json.dumps(claims).encode("utf-8")).decode("ascii")
    return f"{payload_b64}.{_signature(payload_b64, secret)}"


def _optional_str(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _optional_int(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SsoAssertionVerifier:
    def __init__(self, shared_secret: str, clock: Clock = utcnow):
        self.shared_secret = shared_secret
        self.clock = clock

    def _reject(self, reason: SsoRejectReason) -> SsoRejected:
        logger.warning(f"SSO assertion rejected: {reason.value}")
        return SsoRejected(reason)

    def verify(self, raw_token: str | None) -> SsoAssertion:
        if not raw_token:
            raise self._reject(SsoRejectReason.MALFORMED_TOKEN)

        parts = raw_token.strip().split(".")
        if len(parts) != 2 or not all(parts):
            raise self._reject(SsoRejectReason.MALFORMED_TOKEN)
        payload_b64, received_signature = parts

        expected_signature = _signature(payload_b64, self.shared_secret)
        if not hmac.compare_digest(expected_signature.encode("ascii"), received_signature.lower().encode("utf-8")):
            raise self._reject(SsoRejectReason.INVALID_SIGNATURE)

        try:
            padded = payload_b64 + "=" * (-len(payload_b64) % 4)
            decode = base64.urlsafe_b64decode if ("-" in padded or "_" in padded) else base64.b64decode
            claims = json.loads(decode(padded))
        except (binascii.Error, ValueError):
            raise self._reject(SsoRejectReason.MALFORMED_PAYLOAD)
        if not isinstance(claims, dict):
            raise self._reject(SsoRejectReason.MALFORMED_PAYLOAD)

        exp = _optional_int(claims.get("exp"))
        if exp is None:
            raise self._reject(SsoRejectReason.MALFORMED_PAYLOAD)
        now = int((self.clock() - datetime(1970, 1, 1)).total_seconds())
        if exp < now:
            raise self._reject(SsoRejectReason.EXPIRED)

        email = _optional_str(claims.get("user_email"))
        if not email or "@" not in email:
            raise self._reject(SsoRejectReason.MALFORMED_PAYLOAD)

        assertion = SsoAssertion(
            email=email,
            subject_id=_optional_str(claims.get("user_id")),
            username=_optional_str(claims.get("username")),
            first_name=_optional_str(claims.get("user_firstname")),
            last_name=_optional_str(claims.get("user_lastname")),
            country=_optional_str(claims.get("user_country")),
            age=_optional_int(claims.get("user_age")),
            gender=_optional_str(claims.get("user_gender")),
            org_member=claims.get("org_member") in ("Yes", True),
            issued_at=_optional_int(claims.get("iat")),
            expires_at=exp,
            nonce=_optional_str(claims.get("nonce")),
        )
        logger.info(f"SSO assertion verified for {redact(email)}")
        return assertion
