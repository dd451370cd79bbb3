"""Authentication session model."""
import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String

from app.database import Base, utcnow


class AuthSession(Base):
    """One authentication attempt: progress flags, step counter and status."""

    __tablename__ = "auth_sessions"
    __table_args__ = (
        Index("ix_auth_sessions_user_status", "user_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"))

    # Frozen at creation
    is_first_time = Column(Integer, nullable=False)  # SQLite boolean
    auth_method = Column(String(20), nullable=False)  # direct_check, sso_assertion
    external_subject_id = Column(String(64))

    step_number = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="active")  # active, completed, logged_out, expired

    # Completion flags: 0 -> 1 only
    email_verified = Column(Integer, default=0)
    sms_verified = Column(Integer, default=0)
    user_details_collected = Column(Integer, default=0)
    biometric_collected = Column(Integer, default=0)
    security_questions_answered = Column(Integer, default=0)
    sso_data_prefilled = Column(Integer, default=0)

    # Client metadata
    ip_address = Column(String(45))
    user_agent = Column(String(255))
    device_id = Column(String(64))

    created_at = Column(String(26), default=lambda: utcnow().isoformat())
    expires_at = Column(String(26), nullable=False)
    completed_at = Column(String(26))
    updated_at = Column(String(26), default=lambda: utcnow().isoformat(), onupdate=lambda: utcnow().isoformat())
