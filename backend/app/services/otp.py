"""One-time code issue and verification for the email and SMS channels."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import hmac
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import Settings
from app.database import atomic, utcnow
from app.models.otp import OneTimeCode
from app.models.session import AuthSession
from app.models.user import User
from app.services.common import (
    CHANNEL_FLAGS,
    Channel,
    Clock,
    Step,
    generate_numeric_code,
    hash_token_id,
    normalize_email,
    normalize_phone,
    parse_timestamp,
    redact,
)
from app.services.errors import Conflict, Forbidden, RateLimited, ValidationError
from app.services.notifications import DeliveryResult, Notifier, PhoneVerificationService
from app.services.session_manager import SessionManager, session_flags

logger = logging.getLogger(__name__)

CHANNEL_CONTACTS = {Channel.EMAIL: "email", Channel.SMS: "phone"}


class OtpFailure(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    MISMATCH = "invalid"


@dataclass(frozen=True)
class IssuedCode:
    channel: Channel
    expires_at: datetime
    delivery: DeliveryResult
    delegated: bool = False
    code: str | None = None  # None when an external service owns the code


@dataclass(frozen=True)
class OtpVerification:
    verified: bool
    reason: OtpFailure | None = None
    flags: dict[str, bool] = field(default_factory=dict)
    next_step: int | None = None


class OtpEngine:
    """Issues codes, hands them to a notifier, and verifies them against attempt and expiry limits."""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        notifiers: dict[Channel, Notifier],
        phone_verifier: PhoneVerificationService | None = None,
        sessions: SessionManager | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.notifiers = notifiers
        self.phone_verifier = phone_verifier
        self.clock = clock
        self.sessions = sessions or SessionManager(db, settings, clock=clock)

    def _normalize_destination(self, channel: Channel, destination: str | None) -> str:
        normalized = normalize_email(destination) if channel == Channel.EMAIL else normalize_phone(destination)
        if not normalized:
            raise ValidationError(f"{'Email' if channel == Channel.EMAIL else 'Phone'} required")
        return normalized

    def _registered_contact(self, user: User, channel: Channel) -> str | None:
        if channel == Channel.EMAIL:
            email = normalize_email(user.email)
            return email.lower() if email else None
        return normalize_phone(user.phone)

    def _check_destination(self, session: AuthSession, channel: Channel, destination: str) -> None:
        user = self.db.get(User, session.user_id) if session.user_id else None
        if user is None:
            raise Forbidden("Session has no user to verify", code="USER_NOT_BOUND")

        claimed = destination.lower() if channel == Channel.EMAIL else destination
        registered = self._registered_contact(user, channel)
        if registered is None:
            column = getattr(User, CHANNEL_CONTACTS[channel])
            match = func.lower(column) == claimed if channel == Channel.EMAIL else column == claimed
            taken = self.db.query(User).filter(match, User.id != user.id).first()
            if taken:
                raise Conflict("Contact is registered to another account", code="CONTACT_IN_USE")
            return

        if registered != claimed:
            logger.warning(
                f"OTP destination mismatch: session={session.session_id[:8]} "
                f"channel={channel.value} to={redact(destination)}"
            )
            raise Forbidden("Destination does not match the contact on record", code="DESTINATION_MISMATCH")

    def _claim_contact(self, session: AuthSession, channel: Channel, destination: str | None) -> None:
        """Store a newly verified contact on a user that had none for the channel."""
        user = self.db.get(User, session.user_id) if session.user_id else None
        attribute = CHANNEL_CONTACTS[channel]
        if user is None or not destination or getattr(user, attribute):
            return
        setattr(user, attribute, destination)
        logger.info(f"Contact verified and stored: user={user.id} channel={channel.value}")

    def _delegates(self, channel: Channel) -> bool:
        return channel == Channel.SMS and self.phone_verifier is not None

    def issue(self, session_id: str, channel: Channel, destination: str | None) -> IssuedCode:
        """Persist a new code for (session, channel) and hand it to the channel's notifier.

        The destination must be the session user's contact on record; a user
        with no contact for the channel may claim an unused one. The code
        exists whether or not delivery succeeds; the delivery result is
        reported back to the caller.
        """
        destination = self._normalize_destination(channel, destination)
        delegated = self._delegates(channel)
        code = None if delegated else generate_numeric_code(self.settings.otp_length)
        now = self.clock()
        expires_at = now + timedelta(minutes=self.settings.otp_expire_minutes)

        with atomic(self.db):
            session = self.sessions.require_active(session_id)
            self._check_destination(session, channel, destination)
            issued = self.db.query(OneTimeCode).filter(
                OneTimeCode.session_id == session_id,
                OneTimeCode.channel == channel.value,
            ).count()
            if issued >= self.settings.otp_max_issues_per_session:
                logger.warning(f"OTP issue limit reached: session={session_id[:8]} channel={channel.value}")
                raise RateLimited("Too many codes requested for this session")

            self.db.add(OneTimeCode(
                session_id=session_id,
                user_id=session.user_id,
                channel=channel.value,
                sequence=issued + 1,
                code_hash=hash_token_id(code) if code else None,
                destination=destination,
                delegated=int(delegated),
                expires_at=expires_at.isoformat(),
                created_at=now.isoformat(),
            ))

        if delegated:
            delivery = self.phone_verifier.start(destination)
        else:
            delivery = self.notifiers[channel].send_code(destination, code, self.settings.otp_expire_minutes)

        logger.info(
            f"OTP issued: session={session_id[:8]} channel={channel.value} "
            f"to={redact(destination)} sent={delivery.sent} delegated={delegated}"
        )
        return IssuedCode(
            channel=channel,
            expires_at=expires_at,
            delivery=delivery,
            delegated=delegated,
            code=code,
        )

    def _latest_unused(self, session_id: str, channel: Channel) -> OneTimeCode | None:
        return self.db.query(OneTimeCode).filter(
            OneTimeCode.session_id == session_id,
            OneTimeCode.channel == channel.value,
            OneTimeCode.is_used == 0,
        ).order_by(OneTimeCode.sequence.desc()).first()

    def _matches(self, record: OneTimeCode, candidate: str) -> bool:
        if record.delegated:
            if self.phone_verifier is None:
                logger.error(f"Delegated code {record.id} but no phone verifier configured")
                return False
            return self.phone_verifier.check(record.destination, candidate)
        return hmac.compare_digest(record.code_hash or "", hash_token_id(candidate))

    def verify(self, session_id: str, channel: Channel, candidate_code: str) -> OtpVerification:
        candidate_code = (candidate_code or "").strip()
        if len(candidate_code) != self.settings.otp_length or not candidate_code.isdigit():
            raise ValidationError("Invalid OTP format")

        with atomic(self.db):
            session = self.sessions.require_active(session_id)
            record = self._latest_unused(session_id, channel)
            if not record:
                return OtpVerification(verified=False, reason=OtpFailure.NOT_FOUND)

            if self.clock() > parse_timestamp(record.expires_at):
                return OtpVerification(verified=False, reason=OtpFailure.EXPIRED)

            if record.attempt_count >= self.settings.otp_max_attempts:
                return OtpVerification(verified=False, reason=OtpFailure.TOO_MANY_ATTEMPTS)

            if not self._matches(record, candidate_code):
                # Check-and-increment in one statement so racing failures cannot undercount
                counted = self.db.query(OneTimeCode).filter(
                    OneTimeCode.id == record.id,
                    OneTimeCode.attempt_count < self.settings.otp_max_attempts,
                ).update(
                    {"attempt_count": OneTimeCode.attempt_count + 1},
                    synchronize_session=False,
                )
                logger.warning(f"OTP mismatch: session={session_id[:8]} channel={channel.value}")
                if counted == 0:
                    return OtpVerification(verified=False, reason=OtpFailure.TOO_MANY_ATTEMPTS)
                return OtpVerification(verified=False, reason=OtpFailure.MISMATCH)

            consumed = self.db.query(OneTimeCode).filter(
                OneTimeCode.id == record.id,
                OneTimeCode.is_used == 0,
            ).update(
                {"is_used": 1, "verified_at": self.clock().isoformat()},
                synchronize_session=False,
            )
            if consumed == 0:
                return OtpVerification(verified=False, reason=OtpFailure.NOT_FOUND)

            self._claim_contact(session, channel, record.destination)

            other_flag = CHANNEL_FLAGS[Channel.SMS if channel == Channel.EMAIL else Channel.EMAIL]
            if getattr(session, other_flag.value):
                next_step = Step.PROFILE if session.is_first_time else Step.COMPLETION
            else:
                next_step = Step.CONTACT_VERIFICATION
            session = self.sessions.mark_flag(session_id, CHANNEL_FLAGS[channel], int(next_step))

            result = OtpVerification(
                verified=True,
                flags=session_flags(session),
                next_step=session.step_number,
            )

        logger.info(f"OTP verified: session={session_id[:8]} channel={channel.value}")
        return result
