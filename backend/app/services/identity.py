"""Identity resolution: contact lookup, ban checks, first-time status and SSO reconciliation."""
import logging

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import utcnow
from app.models.enrollment import UserBiometric, UserDetails
from app.models.user import User, UserRole
from app.services.common import Clock, redact
from app.services.errors import PersistenceError, UserBanned, UserNotFound, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "Voter"

# Profile columns the SSO merge is allowed to fill
PROFILE_FIELDS = ("first_name", "last_name", "age", "gender", "country", "city", "timezone", "language")


def _is_empty(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class IdentityResolver:
    """Looks up, provisions and enriches canonical user records."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def resolve_by_contact(self, email: str | None = None, phone: str | None = None) -> User:
        """Exact match on email or phone; with both, a match on either is enough."""
        if not email and not phone:
            raise ValidationError("Email or phone number required")

        conditions = []
        if email:
            conditions.append(User.email == email)
        if phone:
            conditions.append(User.phone == phone)

        user = self.db.query(User).filter(or_(*conditions)).first()
        if not user:
            logger.warning(f"User not found for email={redact(email)} phone={redact(phone)}")
            raise UserNotFound("User not found. Please register first.")
        return user

    def get_user(self, user_id: str) -> User:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFound("User not found")
        return user

    def is_banned(self, user: User) -> bool:
        return bool(user.banned)

    def ensure_not_banned(self, user: User) -> None:
        if self.is_banned(user):
            logger.warning(f"Banned user attempted login: user={user.id}")
            raise UserBanned("Your account has been banned")

    def is_first_time(self, user_id: str) -> bool:
        """True iff no profile-detail row exists for the user."""
        return self.db.query(UserDetails.id).filter(UserDetails.user_id == user_id).first() is None

    def find_or_provision(
        self,
        email: str,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        external_id: str | None = None,
    ) -> tuple[User, bool]:
        """Return the user with this email, creating an activated, approved one if absent.

        The second element is True when the user was created here.
        """
        user = self.db.query(User).filter(User.email == email).first()
        if user:
            if external_id and not user.external_id:
                user.external_id = external_id
            return user, False

        user = User(
            email=email,
            username=username or email.split("@")[0],
            first_name=first_name or None,
            last_name=last_name or None,
            external_id=external_id,
            activated=1,
            approved=1,
        )
        try:
            self.db.add(user)
            self.db.flush()
        except SQLAlchemyError as exc:
            logger.error(f"Failed to provision user {redact(email)}: {exc}")
            raise PersistenceError("Failed to create user") from exc

        logger.info(f"Provisioned user={user.id} from SSO assertion ({redact(email)})")
        return user, True

    def upsert_profile(
        self,
        user_id: str,
        session_id: str | None,
        values: dict,
        fill_only: bool = False,
    ) -> UserDetails:
        """Write profile values.

        With ``fill_only`` an existing non-empty column is never replaced
        (the SSO merge); otherwise any supplied non-empty value replaces it.
        Empty values never overwrite anything.
        """
        details = self.db.query(UserDetails).filter(UserDetails.user_id == user_id).first()
        if not details:
            details = UserDetails(user_id=user_id, session_id=session_id)
            self.db.add(details)

        for column, value in values.items():
            if column not in PROFILE_FIELDS and column != "registration_ip":
                continue
            if _is_empty(value):
                continue
            if fill_only and not _is_empty(getattr(details, column)):
                continue
            setattr(details, column, value)

        if _is_empty(details.timezone):
            details.timezone = "UTC"
        if _is_empty(details.language):
            details.language = "en_us"

        self.db.flush()
        return details

    def assign_default_role(self, user_id: str, source: str) -> None:
        """Insert the default role unless the user already holds it."""
        existing = self.db.query(UserRole).filter(
            UserRole.user_id == user_id,
            UserRole.role_name == DEFAULT_ROLE,
        ).first()
        if existing:
            return
        self.db.add(UserRole(
            user_id=user_id,
            role_name=DEFAULT_ROLE,
            assignment_type="automatic",
            assignment_source=source,
        ))
        self.db.flush()
        logger.info(f"Assigned {DEFAULT_ROLE} role to user={user_id}")

    def activate(self, user_id: str) -> None:
        self.db.query(User).filter(User.id == user_id).update(
            {"activated": 1, "updated_at": self.clock().isoformat()},
            synchronize_session=False,
        )

    def get_details(self, user_id: str) -> UserDetails | None:
        return self.db.query(UserDetails).filter(UserDetails.user_id == user_id).first()

    def build_profile(self, user: User) -> dict:
        """Full profile returned on completion and by the current-user endpoint."""
        details = self.get_details(user.id)
        roles = [role.role_name for role in user.roles if role.active] or [DEFAULT_ROLE]
        biometric = self.db.query(UserBiometric).filter(
            UserBiometric.user_id == user.id,
            UserBiometric.is_primary == 1,
        ).first()

        return {
            "userId": user.id,
            "email": user.email,
            "phone": user.phone,
            "username": user.username,
            "firstName": (details.first_name if details else None) or user.first_name,
            "lastName": (details.last_name if details else None) or user.last_name,
            "age": details.age if details else None,
            "gender": details.gender if details else None,
            "country": details.country if details else None,
            "city": details.city if details else None,
            "timezone": details.timezone if details else None,
            "language": details.language if details else None,
            "roles": roles,
            "primaryRole": roles[0],
            "isActivated": bool(user.activated),
            "isApproved": bool(user.approved),
            "isBanned": bool(user.banned),
            "biometricEnabled": biometric is not None,
            "biometricType": biometric.biometric_type if biometric else None,
        }
