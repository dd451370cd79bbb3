"""First-time enrollment steps: profile, biometric and security questions."""
from dataclasses import dataclass, field
import hashlib
import hmac
import logging
import math
import random
import secrets
from typing import Protocol

import bcrypt
from sqlalchemy.orm import Session

from app.config import Settings
from app.database import atomic, utcnow
from app.models.enrollment import (
    BackupCode,
    SecurityQuestionTemplate,
    UserBiometric,
    UserDevice,
    UserSecurityAnswer,
)
from app.models.session import AuthSession
from app.services.common import (
    AuthMethod,
    ClientMeta,
    Clock,
    SessionFlag,
    Step,
    generate_numeric_code,
)
from app.services.errors import Forbidden, NotFound, Unauthenticated, ValidationError
from app.services.identity import IdentityResolver
from app.services.session_manager import SessionManager, session_flags

logger = logging.getLogger(__name__)

BIOMETRIC_TYPES = ("fingerprint", "face_id", "iris", "voice", "palm")
BACKUP_CODE_LENGTH = 8
MIN_AGE = 13
MAX_AGE = 150
REQUIRED_DIRECT_FIELDS = ("first_name", "last_name", "age", "gender", "country")


@dataclass(frozen=True)
class EnrollmentResult:
    flags: dict[str, bool]
    next_step: int
    backup_codes: list[str] = field(default_factory=list)  # Only populated by biometric enrollment
    record_id: str | None = None


@dataclass(frozen=True)
class AnswerCheck:
    verified: bool
    correct: int
    total: int


@dataclass(frozen=True)
class DeviceInfo:
    device_id: str | None = None
    device_type: str | None = None
    device_name: str | None = None
    os_name: str | None = None
    browser_name: str | None = None


class BiometricMatcher(Protocol):
    """Opaque comparison of a presented template against an enrolled one."""

    def matches(self, template: str, enrolled: UserBiometric) -> bool:
        ...


def hash_template(template: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}:{template}".encode("utf-8")).hexdigest()


class SaltedHashMatcher:
    """Exact-match comparison against the stored salted hash."""

    def matches(self, template: str, enrolled: UserBiometric) -> bool:
        return hmac.compare_digest(hash_template(template, enrolled.template_salt), enrolled.template_hash)


def normalize_answer(answer: str) -> str:
    return " ".join(answer.split()).lower()


class EnrollmentTracker:
    """Records first-time-only steps and moves the session's flags forward.

    Each ``record_*`` call runs in a single transaction: the step's data, the
    session flag and the step counter land together or not at all.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        sessions: SessionManager | None = None,
        identity: IdentityResolver | None = None,
        matcher: BiometricMatcher | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.sessions = sessions or SessionManager(db, settings, clock=clock)
        self.identity = identity or IdentityResolver(db, clock=clock)
        self.matcher = matcher or SaltedHashMatcher()

    def _hash_secret(self, value: str) -> str:
        return bcrypt.hashpw(
            value.encode("utf-8"),
            bcrypt.gensalt(rounds=self.settings.bcrypt_rounds),
        ).decode("utf-8")

    def _first_time_session(self, session_id: str) -> AuthSession:
        session = self.sessions.require_active(session_id)
        if not session.is_first_time:
            raise Forbidden("This step is only for first-time users", code="NOT_FIRST_TIME")
        if not session.user_id:
            raise Forbidden("Session has no user", code="NO_USER")
        return session

    def _result(self, session: AuthSession, **extra) -> EnrollmentResult:
        return EnrollmentResult(flags=session_flags(session), next_step=session.step_number, **extra)

    # Profile

    def _validate_profile(self, session: AuthSession, values: dict) -> dict:
        cleaned = {}
        for key, value in values.items():
            if isinstance(value, str):
                value = value.strip()
            cleaned[key] = value

        if session.auth_method == AuthMethod.DIRECT_CHECK.value:
            missing = [name for name in REQUIRED_DIRECT_FIELDS if cleaned.get(name) in (None, "")]
            if missing:
                raise ValidationError(
                    f"Missing required fields: {', '.join(missing)}",
                    detail={"missing": missing},
                )

        age = cleaned.get("age")
        if age not in (None, ""):
            try:
                age = int(age)
            except (TypeError, ValueError):
                raise ValidationError("Age must be a number")
            if not MIN_AGE <= age <= MAX_AGE:
                raise ValidationError(f"Age must be between {MIN_AGE} and {MAX_AGE}")
            cleaned["age"] = age
        return cleaned

    def record_profile(self, session_id: str, values: dict) -> EnrollmentResult:
        with atomic(self.db):
            session = self._first_time_session(session_id)
            cleaned = self._validate_profile(session, values)
            if session.ip_address:
                cleaned.setdefault("registration_ip", session.ip_address)

            details = self.identity.upsert_profile(session.user_id, session_id, cleaned)
            self.identity.assign_default_role(session.user_id, source="profile")
            session = self.sessions.mark_flag(session_id, SessionFlag.USER_DETAILS_COLLECTED, int(Step.BIOMETRIC))
            result = self._result(session, record_id=details.id)

        logger.info(f"Profile recorded: session={session_id[:8]} user={session.user_id}")
        return result

    def get_profile(self, session_id: str):
        session = self.sessions.get_session(session_id)
        if not session.user_id:
            raise NotFound("Session has no user")
        details = self.identity.get_details(session.user_id)
        if not details:
            raise NotFound("Profile not found", code="PROFILE_NOT_FOUND")
        return details

    # Biometric

    def _upsert_device(self, user_id: str, session_id: str, client: ClientMeta, device: DeviceInfo) -> UserDevice:
        device_id = device.device_id or client.device_id or secrets.token_hex(16)
        now = self.clock().isoformat()
        existing = self.db.query(UserDevice).filter(
            UserDevice.user_id == user_id,
            UserDevice.device_id == device_id,
        ).first()
        if existing:
            existing.session_id = session_id
            existing.ip_address = client.ip_address
            existing.user_agent = client.user_agent
            existing.last_used = now
            return existing

        has_devices = self.db.query(UserDevice.id).filter(UserDevice.user_id == user_id).first() is not None
        record = UserDevice(
            user_id=user_id,
            device_id=device_id,
            session_id=session_id,
            device_type=device.device_type or "unknown",
            device_name=device.device_name or "Unknown Device",
            os_name=device.os_name or "unknown",
            browser_name=device.browser_name or "unknown",
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            is_primary=0 if has_devices else 1,
            last_used=now,
        )
        self.db.add(record)
        return record

    def _issue_backup_codes(self, user_id: str) -> list[str]:
        # New codes replace any that were never used
        self.db.query(BackupCode).filter(
            BackupCode.user_id == user_id,
            BackupCode.used_at.is_(None),
        ).delete(synchronize_session=False)

        codes = [generate_numeric_code(BACKUP_CODE_LENGTH) for _ in range(self.settings.backup_code_count)]
        self.db.add_all([BackupCode(user_id=user_id, code_hash=self._hash_secret(code)) for code in codes])
        return codes

    def record_biometric(
        self,
        session_id: str,
        biometric_type: str,
        template: str,
        client: ClientMeta | None = None,
        device: DeviceInfo | None = None,
        quality_score: int | None = None,
    ) -> EnrollmentResult:
        """Store a salted hash of the template and issue backup codes.

        The plaintext backup codes are in the returned result and nowhere else.
        """
        if biometric_type not in BIOMETRIC_TYPES:
            raise ValidationError(f"Invalid biometric type. Allowed: {', '.join(BIOMETRIC_TYPES)}")
        if not template:
            raise ValidationError("Biometric template required")

        with atomic(self.db):
            session = self._first_time_session(session_id)
            user_id = session.user_id

            self._upsert_device(user_id, session_id, client or ClientMeta(), device or DeviceInfo())

            self.db.query(UserBiometric).filter(
                UserBiometric.user_id == user_id,
                UserBiometric.is_primary == 1,
            ).update({"is_primary": 0}, synchronize_session=False)

            salt = secrets.token_hex(16)
            biometric = UserBiometric(
                user_id=user_id,
                session_id=session_id,
                biometric_type=biometric_type,
                template_salt=salt,
                template_hash=hash_template(template, salt),
                quality_score=quality_score if quality_score is not None else 95,
                is_primary=1,
            )
            self.db.add(biometric)
            backup_codes = self._issue_backup_codes(user_id)
            self.db.flush()

            session = self.sessions.mark_flag(session_id, SessionFlag.BIOMETRIC_COLLECTED, int(Step.SECURITY_QUESTIONS))
            result = self._result(session, backup_codes=backup_codes, record_id=biometric.id)

        logger.info(f"Biometric recorded: session={session_id[:8]} user={user_id} type={biometric_type}")
        return result

    def verify_biometric(self, session_id: str, template: str) -> bool:
        if not template:
            raise ValidationError("Biometric template required")

        with atomic(self.db):
            session = self.sessions.get_session(session_id)
            if not session.user_id:
                raise NotFound("Session has no user")
            enrolled = self.db.query(UserBiometric).filter(
                UserBiometric.user_id == session.user_id,
                UserBiometric.is_primary == 1,
            ).first()
            if not enrolled:
                raise NotFound("No biometric data found", code="BIOMETRIC_NOT_FOUND")

            matched = self.matcher.matches(template, enrolled)
            counters = (
                {"is_verified": 1, "verification_count": UserBiometric.verification_count + 1}
                if matched
                else {"failed_attempts": UserBiometric.failed_attempts + 1}
            )
            self.db.query(UserBiometric).filter(UserBiometric.id == enrolled.id).update(
                counters, synchronize_session=False,
            )

        if not matched:
            logger.warning(f"Biometric verification failed: user={session.user_id}")
            raise Unauthenticated("Biometric verification failed", code="BIOMETRIC_MISMATCH")
        logger.info(f"Biometric verified: user={session.user_id}")
        return True

    # Security questions

    def get_security_questions(self) -> list[SecurityQuestionTemplate]:
        """Random selection of active question templates."""
        questions = self.db.query(SecurityQuestionTemplate).filter(SecurityQuestionTemplate.active == 1).all()
        count = min(self.settings.security_question_count, len(questions))
        return random.sample(questions, count)

    def record_security_questions(self, session_id: str, answers: list[dict]) -> EnrollmentResult:
        """Persist hashed answers; ``answers`` is a list of ``{"question_id", "answer"}``."""
        if len(answers) < self.settings.security_questions_required:
            raise ValidationError(f"At least {self.settings.security_questions_required} answers required")

        question_ids = [item.get("question_id") for item in answers]
        if len(set(question_ids)) != len(question_ids):
            raise ValidationError("Each question may only be answered once")
        for item in answers:
            if not item.get("question_id") or not normalize_answer(item.get("answer") or ""):
                raise ValidationError("Each answer needs a question and a non-empty answer")

        with atomic(self.db):
            session = self._first_time_session(session_id)
            user_id = session.user_id

            known = {
                question.id
                for question in self.db.query(SecurityQuestionTemplate).filter(
                    SecurityQuestionTemplate.id.in_(question_ids),
                    SecurityQuestionTemplate.active == 1,
                )
            }
            unknown = [question_id for question_id in question_ids if question_id not in known]
            if unknown:
                raise ValidationError("Unknown security question", detail={"questionIds": unknown})

            self.db.query(UserSecurityAnswer).filter(
                UserSecurityAnswer.user_id == user_id,
            ).delete(synchronize_session=False)
            self.db.add_all([
                UserSecurityAnswer(
                    user_id=user_id,
                    question_id=item["question_id"],
                    session_id=session_id,
                    answer_hash=self._hash_secret(normalize_answer(item["answer"])),
                )
                for item in answers
            ])
            self.db.flush()

            session = self.sessions.mark_flag(session_id, SessionFlag.SECURITY_QUESTIONS_ANSWERED, int(Step.COMPLETION))
            result = self._result(session)

        logger.info(f"Security questions recorded: session={session_id[:8]} user={user_id} count={len(answers)}")
        return result

    def verify_answers(self, user_id: str, answers: list[dict]) -> AnswerCheck:
        """Pass when at least ``ceil(ratio * stored questions)`` answers match."""
        stored = {
            record.question_id: record
            for record in self.db.query(UserSecurityAnswer).filter(UserSecurityAnswer.user_id == user_id)
        }
        if not stored:
            raise NotFound("No security questions on file", code="SECURITY_QUESTIONS_NOT_FOUND")

        correct = 0
        for item in answers:
            record = stored.get(item.get("question_id"))
            candidate = normalize_answer(item.get("answer") or "")
            if record and candidate and bcrypt.checkpw(candidate.encode("utf-8"), record.answer_hash.encode("utf-8")):
                correct += 1

        total = len(stored)
        verified = correct >= math.ceil(total * self.settings.security_answer_pass_ratio)
        logger.info(f"Security answers checked: user={user_id} verified={verified} correct={correct}/{total}")
        return AnswerCheck(verified=verified, correct=correct, total=total)
