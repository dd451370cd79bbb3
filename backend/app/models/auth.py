"""Credential issuance/revocation models."""
import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String

from app.database import Base, utcnow


class CredentialRecord(Base):
    """Server-side record of an issued access or refresh token."""

    __tablename__ = "credential_records"
    __table_args__ = (
        Index("ix_credential_records_user_active", "user_id", "revoked"),
        Index("ix_credential_records_session", "session_id", "revoked"),
        Index("ix_credential_records_expires_at", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(64), ForeignKey("auth_sessions.session_id", ondelete="CASCADE"), nullable=False)
    token_kind = Column(String(10), nullable=False)  # access, refresh
    jti_hash = Column(String(64), unique=True, nullable=False, index=True)
    created_at = Column(String(26), default=lambda: utcnow().isoformat())
    expires_at = Column(String(26), nullable=False)
    revoked = Column(Integer, default=0)  # SQLite boolean
    revoked_at = Column(String(26))
    rotated_from_id = Column(String(36), ForeignKey("credential_records.id", ondelete="SET NULL"))
