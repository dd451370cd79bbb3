"""Entry points that tie the identity, session, SSO and credential services together."""
from dataclasses import dataclass, field
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings
from app.database import atomic, utcnow
from app.models.session import AuthSession
from app.models.user import User
from app.services.common import (
    AuthMethod,
    ClientMeta,
    Clock,
    SessionStatus,
    Step,
    normalize_email,
    normalize_phone,
)
from app.services.credentials import ACCESS, CredentialIssuer, CredentialPair, TokenClaims
from app.services.errors import AlreadyCompleted, Forbidden, Unauthenticated, ValidationError
from app.services.identity import IdentityResolver
from app.services.session_manager import SessionManager, session_flags
from app.services.sso import SsoAssertion, SsoAssertionVerifier

logger = logging.getLogger(__name__)

NEW_USER_MESSAGE = "Welcome! Please complete your profile."
FIRST_TIME_MESSAGE = "Welcome! Please confirm your details to finish setting up your account."
RETURNING_MESSAGE = "Welcome back! Please verify your identity."


@dataclass(frozen=True)
class SessionStart:
    session_id: str
    user: User
    is_first_time: bool
    next_step: int
    flags: dict[str, bool]
    message: str
    is_new_user: bool = False
    prefill: dict = field(default_factory=dict)
    assertion: SsoAssertion | None = None


@dataclass(frozen=True)
class Completion:
    session: AuthSession
    credentials: CredentialPair
    profile: dict
    missing_enrollment: list[str] = field(default_factory=list)


class AuthFlow:
    def __init__(self, db: Session, settings: Settings, clock: Clock = utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.credentials = CredentialIssuer(db, settings, clock=clock)
        self.sessions = SessionManager(db, settings, credentials=self.credentials, clock=clock)
        self.identity = IdentityResolver(db, clock=clock)
        self.sso = SsoAssertionVerifier(settings.sso_shared_secret, clock=clock)

    def check_identity(self, email: str | None, phone: str | None, client: ClientMeta) -> SessionStart:
        """Direct check: resolve a known user by contact and open a session."""
        email = normalize_email(email)
        phone = normalize_phone(phone)
        if not email and not phone:
            raise ValidationError("Email or phone number required")

        with atomic(self.db):
            user = self.identity.resolve_by_contact(email=email, phone=phone)
            self.identity.ensure_not_banned(user)
            is_first_time = self.identity.is_first_time(user.id)
            session_id = self.sessions.create_session(user.id, is_first_time, client, AuthMethod.DIRECT_CHECK)
            session = self.sessions.get_session(session_id)

        logger.info(f"Identity check passed: user={user.id} session={session_id[:8]} first_time={is_first_time}")
        return SessionStart(
            session_id=session_id,
            user=user,
            is_first_time=is_first_time,
            next_step=int(Step.CONTACT_VERIFICATION),
            flags=session_flags(session),
            message=FIRST_TIME_MESSAGE if is_first_time else RETURNING_MESSAGE,
        )

    def verify_assertion(self, raw_token: str | None) -> SsoAssertion:
        return self.sso.verify(raw_token)

    def sso_login(self, raw_token: str | None, client: ClientMeta) -> SessionStart:
        """Verify an SSO assertion, reconcile or provision the user and open a session.

        Provisioning, the profile merge, the default role and the session row
        are written in one transaction.
        """
        assertion = self.sso.verify(raw_token)

        with atomic(self.db):
            user, is_new_user = self.identity.find_or_provision(
                email=assertion.email,
                username=assertion.username,
                first_name=assertion.first_name,
                last_name=assertion.last_name,
                external_id=assertion.subject_id,
            )
            self.identity.ensure_not_banned(user)

            # Frozen before the profile merge below creates a details row
            is_first_time = self.identity.is_first_time(user.id)
            session_id = self.sessions.create_session(
                user.id,
                is_first_time,
                client,
                AuthMethod.SSO_ASSERTION,
                external_subject_id=assertion.subject_id,
            )

            if assertion.has_profile():
                self.identity.upsert_profile(user.id, session_id, assertion.profile_values(), fill_only=True)
                self.identity.assign_default_role(user.id, source="sso")
                self.db.query(AuthSession).filter(AuthSession.session_id == session_id).update(
                    {"sso_data_prefilled": 1}, synchronize_session=False,
                )

            session = self.sessions.get_session(session_id)
            self.db.refresh(session)
            prefill = self.build_prefill(assertion, user)

        if is_new_user:
            message = NEW_USER_MESSAGE
        elif is_first_time:
            message = FIRST_TIME_MESSAGE
        else:
            message = RETURNING_MESSAGE

        logger.info(
            f"SSO login: user={user.id} session={session_id[:8]} new_user={is_new_user} first_time={is_first_time}"
        )
        return SessionStart(
            session_id=session_id,
            user=user,
            is_first_time=is_first_time,
            next_step=int(Step.CONTACT_VERIFICATION),
            flags=session_flags(session),
            message=message,
            is_new_user=is_new_user,
            prefill=prefill,
            assertion=assertion,
        )

    def build_prefill(self, assertion: SsoAssertion, user: User) -> dict:
        """Form defaults: asserted values first, then stored details, then the user record."""
        details = self.identity.get_details(user.id)

        def pick(*values):
            for value in values:
                if value not in (None, ""):
                    return value
            return None

        return {
            "firstName": pick(assertion.first_name, details and details.first_name, user.first_name),
            "lastName": pick(assertion.last_name, details and details.last_name, user.last_name),
            "email": pick(assertion.email, user.email),
            "phone": user.phone,
            "age": pick(assertion.age, details and details.age),
            "gender": pick(assertion.gender, details and details.gender),
            "country": pick(assertion.country, details and details.country),
            "city": details.city if details else None,
            "timezone": pick(details and details.timezone, "UTC"),
            "language": pick(details and details.language, "en_us"),
        }

    def complete(self, session_id: str) -> Completion:
        """Finalize a session: gate check, status change and credential issuance.

        Status change and credential issuance commit together. Activating the
        user afterwards is best-effort.
        """
        with atomic(self.db):
            session = self.sessions.get_session(session_id)
            if session.status != SessionStatus.ACTIVE.value:
                raise AlreadyCompleted(f"Session is {session.status}, not active")
            session = self.sessions.require_active(session_id)

            gate = self.sessions.completion_gate(session)
            if not gate.eligible:
                if gate.missing_enrollment:
                    raise Forbidden(
                        "Enrollment steps incomplete",
                        code="ENROLLMENT_INCOMPLETE",
                        detail={"missing": gate.missing_enrollment},
                    )
                raise Unauthenticated(
                    "Email and phone verification required",
                    code="VERIFICATION_INCOMPLETE",
                    detail={"emailVerified": bool(session.email_verified), "smsVerified": bool(session.sms_verified)},
                )

            session = self.sessions.complete_session(session_id)
            pair = self.credentials.issue(session.user_id, session_id)

        try:
            self.identity.activate(session.user_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"User activation failed after completion: user={session.user_id} error={e}")

        user = self.identity.get_user(session.user_id)
        return Completion(
            session=session,
            credentials=pair,
            profile=self.identity.build_profile(user),
            missing_enrollment=gate.missing_enrollment,
        )

    def logout(
        self,
        session_id: str | None = None,
        user_id: str | None = None,
        access_token: str | None = None,
    ) -> int:
        """Terminate by session, by user, or by the session bound to a bearer token."""
        if access_token and not session_id and not user_id:
            session_id = self.credentials.verify(access_token, ACCESS).session_id
        if not session_id and not user_id:
            raise ValidationError("Session ID, user ID or bearer token required")

        with atomic(self.db):
            revoked = self.sessions.terminate_session(session_id=session_id, user_id=user_id)
        return revoked

    def refresh(self, refresh_token: str | None) -> tuple[TokenClaims, CredentialPair]:
        if not refresh_token:
            raise Unauthenticated("Refresh token required", code="INVALID_TOKEN")
        with atomic(self.db):
            return self.credentials.refresh(refresh_token)

    def current_profile(self, claims: TokenClaims) -> dict:
        return self.identity.build_profile(self.identity.get_user(claims.user_id))
