"""Access/refresh token issuance, verification and revocation."""
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import uuid

from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

from app.config import Settings
from app.database import utcnow
from app.models.auth import CredentialRecord
from app.services.common import Clock, hash_token_id, parse_timestamp
from app.services.errors import Unauthenticated, ValidationError

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class CredentialPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    session_id: str
    kind: str
    jti: str
    expires_at: datetime


class CredentialIssuer:
    """Mints token pairs bound to (user, session) and tracks them server-side.

    Every verification consults the persisted record, so a revoked token is
    rejected even though its signature and expiry are still valid.
    """

    def __init__(self, db: Session, settings: Settings, clock: Clock = utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock

    def _mint(self, user_id: str, session_id: str, kind: str, expires_at: datetime) -> tuple[str, str]:
        jti = str(uuid.uuid4())
        claims = {
            "sub": user_id,
            "sid": session_id,
            "type": kind,
            "jti": jti,
            "iat": self.clock(),
            "exp": expires_at,
        }
        return jwt.encode(claims, self.settings.secret_key, algorithm=self.settings.algorithm), jti

    def issue(self, user_id: str, session_id: str, rotated_from_id: str | None = None) -> CredentialPair:
        """Create an access + refresh token pair and persist a record for each."""
        now = self.clock()
        access_expires_at = now + timedelta(minutes=self.settings.access_token_expire_minutes)
        refresh_expires_at = now + timedelta(days=self.settings.refresh_token_expire_days)

        access_token, access_jti = self._mint(user_id, session_id, ACCESS, access_expires_at)
        refresh_token, refresh_jti = self._mint(user_id, session_id, REFRESH, refresh_expires_at)

        self.db.add_all([
            CredentialRecord(
                user_id=user_id,
                session_id=session_id,
                token_kind=ACCESS,
                jti_hash=hash_token_id(access_jti),
                created_at=now.isoformat(),
                expires_at=access_expires_at.isoformat(),
                rotated_from_id=rotated_from_id,
            ),
            CredentialRecord(
                user_id=user_id,
                session_id=session_id,
                token_kind=REFRESH,
                jti_hash=hash_token_id(refresh_jti),
                created_at=now.isoformat(),
                expires_at=refresh_expires_at.isoformat(),
                rotated_from_id=rotated_from_id,
            ),
        ])
        self.db.flush()

        logger.info(f"Issued credentials for user={user_id} session={session_id[:8]}")
        return CredentialPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def _record_for(self, jti: str) -> CredentialRecord | None:
        return self.db.query(CredentialRecord).filter(
            CredentialRecord.jti_hash == hash_token_id(jti),
        ).first()

    def verify(self, token: str, expected_kind: str) -> TokenClaims:
        """Check signature, kind, expiry and the revocation record."""
        if expected_kind not in (ACCESS, REFRESH):
            raise ValidationError(f"Unknown token kind: {expected_kind}")

        try:
            payload = jwt.decode(
                token,
                self.settings.secret_key,
                algorithms=[self.settings.algorithm],
            )
        except ExpiredSignatureError:
            raise Unauthenticated("Token expired", code="TOKEN_EXPIRED")
        except JWTError:
            raise Unauthenticated("Invalid token", code="INVALID_TOKEN")

        if payload.get("type") != expected_kind:
            logger.warning(f"Token kind mismatch: expected {expected_kind}, got {payload.get('type')}")
            raise Unauthenticated("Invalid token type", code="INVALID_TOKEN")

        user_id = payload.get("sub")
        session_id = payload.get("sid")
        jti = payload.get("jti")
        if not user_id or not session_id or not jti:
            raise Unauthenticated("Invalid token", code="INVALID_TOKEN")

        record = self._record_for(jti)
        if not record or record.user_id != user_id or record.session_id != session_id:
            raise Unauthenticated("Unknown credential", code="INVALID_TOKEN")
        if record.revoked:
            raise Unauthenticated("Credential has been revoked", code="TOKEN_REVOKED")

        expires_at = parse_timestamp(record.expires_at)
        if expires_at <= self.clock():
            raise Unauthenticated("Token expired", code="TOKEN_EXPIRED")

        return TokenClaims(
            user_id=user_id,
            session_id=session_id,
            kind=expected_kind,
            jti=jti,
            expires_at=expires_at,
        )

    def is_revoked(self, jti: str) -> bool:
        record = self._record_for(jti)
        return record is None or bool(record.revoked)

    def revoke(self, session_id: str | None = None, user_id: str | None = None) -> int:
        """Revoke every live record for a session, a user, or both. Returns rows changed."""
        if not session_id and not user_id:
            raise ValidationError("Session ID or user ID required")

        query = self.db.query(CredentialRecord).filter(CredentialRecord.revoked == 0)
        if session_id:
            query = query.filter(CredentialRecord.session_id == session_id)
        if user_id:
            query = query.filter(CredentialRecord.user_id == user_id)

        revoked = query.update(
            {"revoked": 1, "revoked_at": self.clock().isoformat()},
            synchronize_session="fetch",
        )
        logger.info(f"Revoked {revoked} credential records (session={bool(session_id)}, user={bool(user_id)})")
        return revoked

    def refresh(self, refresh_token: str) -> tuple[TokenClaims, CredentialPair]:
        """Rotate a refresh token: revoke its record and issue a new pair for the same session."""
        claims = self.verify(refresh_token, REFRESH)

        # Conditional update so two racing refreshes cannot both rotate
        rotated = self.db.query(CredentialRecord).filter(
            CredentialRecord.jti_hash == hash_token_id(claims.jti),
            CredentialRecord.revoked == 0,
        ).update(
            {"revoked": 1, "revoked_at": self.clock().isoformat()},
            synchronize_session="fetch",
        )
        if rotated != 1:
            raise Unauthenticated("Credential has been revoked", code="TOKEN_REVOKED")

        record = self._record_for(claims.jti)
        pair = self.issue(claims.user_id, claims.session_id, rotated_from_id=record.id)
        return claims, pair
