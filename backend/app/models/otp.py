"""One-time code model."""
import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String, UniqueConstraint

from app.database import Base, utcnow


class OneTimeCode(Base):
    """A short numeric code proving control of an email address or phone."""

    __tablename__ = "one_time_codes"
    __table_args__ = (
        UniqueConstraint("session_id", "channel", "sequence", name="uq_one_time_codes_sequence"),
        Index("ix_one_time_codes_lookup", "session_id", "channel", "is_used", "sequence"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(64), ForeignKey("auth_sessions.session_id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"))
    channel = Column(String(10), nullable=False)  # email, sms
    sequence = Column(Integer, nullable=False)  # 1, 2, ... per (session, channel); highest is newest

    # NULL when an external verification service owns the code
    code_hash = Column(String(64))
    destination = Column(String(255))  # Address the code was sent to
    delegated = Column(Integer, default=0)  # SQLite boolean

    is_used = Column(Integer, default=0)  # SQLite boolean
    attempt_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(String(26), nullable=False)
    verified_at = Column(String(26))
    created_at = Column(String(26), default=lambda: utcnow().isoformat())
