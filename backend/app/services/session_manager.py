"""Session lifecycle: creation, flags, step progression and the completion gate."""
from dataclasses import dataclass, field
from datetime import timedelta
import logging
import secrets

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings
from app.database import on_rollback, utcnow
from app.models.session import AuthSession
from app.services.common import (
    ENROLLMENT_FLAGS,
    AuthMethod,
    ClientMeta,
    Clock,
    SessionFlag,
    SessionStatus,
    Step,
    parse_timestamp,
)
from app.services.credentials import CredentialIssuer
from app.services.errors import (
    AlreadyCompleted,
    InvalidTransition,
    PersistenceError,
    SessionExpired,
    SessionNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateResult:
    eligible: bool
    missing_enrollment: list[str] = field(default_factory=list)


def session_flags(session: AuthSession) -> dict[str, bool]:
    """Current completion flags, keyed by column name."""
    return {flag.value: bool(getattr(session, flag.value)) for flag in SessionFlag}


class SessionManager:
    """Owns AuthSession rows.

    Methods flush but do not commit; callers wrap each operation in
    ``app.database.atomic`` so multi-entity writes land together.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        credentials: CredentialIssuer | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.credentials = credentials or CredentialIssuer(db, settings, clock=clock)

    def create_session(
        self,
        user_id: str | None,
        is_first_time: bool,
        client_meta: ClientMeta,
        auth_method: AuthMethod,
        external_subject_id: str | None = None,
    ) -> str:
        """Insert a fresh active session at step 1 and return its identifier."""
        if not isinstance(auth_method, AuthMethod):
            raise ValidationError(f"Unsupported auth method: {auth_method!r}")

        now = self.clock()
        session_id = secrets.token_hex(32)
        session = AuthSession(
            session_id=session_id,
            user_id=user_id,
            is_first_time=int(bool(is_first_time)),
            auth_method=auth_method.value,
            external_subject_id=external_subject_id,
            step_number=int(Step.IDENTITY_CHECK),
            status=SessionStatus.ACTIVE.value,
            ip_address=client_meta.ip_address,
            user_agent=(client_meta.user_agent or "")[:255] or None,
            device_id=client_meta.device_id or "unknown",
            created_at=now.isoformat(),
            expires_at=(now + timedelta(hours=self.settings.session_expire_hours)).isoformat(),
        )
        try:
            self.db.add(session)
            self.db.flush()
        except SQLAlchemyError as exc:
            logger.error(f"Session insert failed for user={user_id}: {exc}")
            raise PersistenceError("Failed to create session") from exc

        if session.id is None:
            raise PersistenceError("Failed to create session")

        logger.info(
            f"Session created: session={session_id[:8]} user={user_id} "
            f"first_time={bool(is_first_time)} method={auth_method.value}"
        )
        return session_id

    def get_session(self, session_id: str) -> AuthSession:
        """Single-row lookup with no side effects."""
        if not session_id:
            raise ValidationError("Session ID required")
        session = self.db.query(AuthSession).filter(AuthSession.session_id == session_id).first()
        if not session:
            raise SessionNotFound("Session not found")
        return session

    def is_expired(self, session: AuthSession) -> bool:
        return parse_timestamp(session.expires_at) <= self.clock()

    def require_active(self, session_id: str) -> AuthSession:
        """Return the session if it is active.

        A session past its deadline raises SessionExpired; the ``expired``
        status is written after the caller's ``atomic`` block rolls back.
        """
        session = self.get_session(session_id)

        if session.status == SessionStatus.ACTIVE.value and self.is_expired(session):
            on_rollback(self.db, lambda: self._persist_expiry(session_id))
            raise SessionExpired("Session has expired")

        if session.status == SessionStatus.EXPIRED.value:
            raise SessionExpired("Session has expired")
        if session.status == SessionStatus.COMPLETED.value:
            raise AlreadyCompleted("Session already completed")
        if session.status != SessionStatus.ACTIVE.value:
            raise SessionExpired("Session is no longer active", code="SESSION_CLOSED")
        return session

    def _persist_expiry(self, session_id: str) -> None:
        try:
            updated = self.db.query(AuthSession).filter(
                AuthSession.session_id == session_id,
                AuthSession.status == SessionStatus.ACTIVE.value,
            ).update({"status": SessionStatus.EXPIRED.value}, synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record expiry for session={session_id[:8]}: {e}")
            return
        if updated:
            logger.info(f"Session expired: session={session_id[:8]}")

    def advance_step(self, session_id: str, target_step: int) -> AuthSession:
        """Move the step counter forward; moving backwards is an InvalidTransition."""
        if target_step < Step.IDENTITY_CHECK or target_step > Step.COMPLETION:
            raise ValidationError(f"Step must be between {int(Step.IDENTITY_CHECK)} and {int(Step.COMPLETION)}")

        session = self.require_active(session_id)
        updated = self.db.query(AuthSession).filter(
            AuthSession.session_id == session_id,
            AuthSession.status == SessionStatus.ACTIVE.value,
            AuthSession.step_number <= target_step,
        ).update({"step_number": target_step}, synchronize_session=False)
        self.db.flush()
        self.db.refresh(session)

        if updated == 0:
            raise InvalidTransition(
                f"Cannot move from step {session.step_number} back to {target_step}",
                detail={"currentStep": session.step_number, "targetStep": target_step},
            )
        return session

    def mark_flag(self, session_id: str, flag: SessionFlag, next_step: int) -> AuthSession:
        """Set a completion flag and raise the step counter to at least ``next_step``.

        The flag is only ever written as 1, and the step uses a max() update,
        so neither can move backwards.
        """
        session = self.require_active(session_id)
        self.db.query(AuthSession).filter(
            AuthSession.session_id == session_id,
            AuthSession.status == SessionStatus.ACTIVE.value,
        ).update(
            {
                flag.value: 1,
                "step_number": case(
                    (AuthSession.step_number < next_step, next_step),
                    else_=AuthSession.step_number,
                ),
            },
            synchronize_session=False,
        )
        self.db.flush()
        self.db.refresh(session)
        return session

    def completion_gate(self, session: AuthSession) -> GateResult:
        if session.status != SessionStatus.ACTIVE.value or self.is_expired(session):
            return GateResult(eligible=False)
        if not (session.email_verified and session.sms_verified):
            return GateResult(eligible=False)

        missing = []
        if session.is_first_time:
            missing = [flag.value for flag in ENROLLMENT_FLAGS if not getattr(session, flag.value)]

        if missing and self.settings.strict_enrollment_gate:
            return GateResult(eligible=False, missing_enrollment=missing)
        if missing:
            logger.warning(
                f"First-time session {session.session_id[:8]} passing gate without enrollment: {', '.join(missing)}"
            )
        return GateResult(eligible=True, missing_enrollment=missing)

    def evaluate_completion_gate(self, session_id: str) -> bool:
        return self.completion_gate(self.get_session(session_id)).eligible

    def complete_session(self, session_id: str) -> AuthSession:
        """Move an active session to ``completed``; a second call is AlreadyCompleted."""
        updated = self.db.query(AuthSession).filter(
            AuthSession.session_id == session_id,
            AuthSession.status == SessionStatus.ACTIVE.value,
        ).update(
            {"status": SessionStatus.COMPLETED.value, "completed_at": self.clock().isoformat()},
            synchronize_session=False,
        )
        session = self.get_session(session_id)
        if updated == 0:
            raise AlreadyCompleted(f"Session is {session.status}, not active")

        self.db.flush()
        self.db.refresh(session)
        logger.info(f"Session completed: session={session_id[:8]} user={session.user_id}")
        return session

    def terminate_session(self, session_id: str | None = None, user_id: str | None = None) -> int:
        """Log out a session (or every session of a user) and revoke bound credentials.

        Only active sessions change status; completed sessions keep their
        terminal status but still lose their credentials.
        """
        if not session_id and not user_id:
            raise ValidationError("User ID or session ID required")

        query = self.db.query(AuthSession).filter(AuthSession.status == SessionStatus.ACTIVE.value)
        if session_id:
            self.get_session(session_id)
            query = query.filter(AuthSession.session_id == session_id)
        if user_id:
            query = query.filter(AuthSession.user_id == user_id)
        query.update({"status": SessionStatus.LOGGED_OUT.value}, synchronize_session=False)

        revoked = 0
        if session_id:
            revoked += self.credentials.revoke(session_id=session_id)
        if user_id:
            revoked += self.credentials.revoke(user_id=user_id)
        self.db.flush()

        logger.info(f"Terminated session={session_id[:8] if session_id else '-'} user={user_id or '-'}")
        return revoked
