"""First-time enrollment models."""
import uuid

from sqlalchemy import Column, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base, utcnow


class UserDetails(Base):
    """Profile details. The presence of this row is what makes a user returning."""

    __tablename__ = "user_details"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    session_id = Column(String(64))  # Session that first wrote the row
    first_name = Column(String(100))
    last_name = Column(String(100))
    age = Column(Integer)
    gender = Column(String(20))
    country = Column(String(100))
    city = Column(String(100))
    timezone = Column(String(50))
    language = Column(String(20))
    registration_ip = Column(String(45))
    created_at = Column(String(26), default=lambda: utcnow().isoformat())
    updated_at = Column(String(26), default=lambda: utcnow().isoformat(), onupdate=lambda: utcnow().isoformat())

    user = relationship("User", back_populates="details")


class UserBiometric(Base):
    """Salted one-way hash of an enrolled biometric template."""

    __tablename__ = "user_biometrics"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(String(64))
    biometric_type = Column(String(20), nullable=False)
    template_salt = Column(String(32), nullable=False)
    template_hash = Column(String(64), nullable=False)
    quality_score = Column(Integer)
    is_primary = Column(Integer, default=1)  # SQLite boolean
    is_verified = Column(Integer, default=0)  # SQLite boolean
    verification_count = Column(Integer, nullable=False, default=0)
    failed_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(String(26), default=lambda: utcnow().isoformat())


class BackupCode(Base):
    """One-time recovery code issued alongside biometric enrollment."""

    __tablename__ = "backup_codes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash = Column(String(60), nullable=False)  # bcrypt
    used_at = Column(String(26))
    created_at = Column(String(26), default=lambda: utcnow().isoformat())


class SecurityQuestionTemplate(Base):
    """Challenge question offered during enrollment (seeded from YAML)."""

    __tablename__ = "security_question_templates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slug = Column(String(50), unique=True, nullable=False, index=True)
    question_text = Column(Text, nullable=False)
    category = Column(String(50))
    active = Column(Integer, default=1)  # SQLite boolean
    created_at = Column(String(26), default=lambda: utcnow().isoformat())


class UserSecurityAnswer(Base):
    """Hashed answer to one challenge question."""

    __tablename__ = "user_security_answers"
    __table_args__ = (
        UniqueConstraint("user_id", "question_id", name="uq_user_security_answer"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(String(36), ForeignKey("security_question_templates.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(64))
    answer_hash = Column(String(60), nullable=False)  # bcrypt
    created_at = Column(String(26), default=lambda: utcnow().isoformat())

    question = relationship("SecurityQuestionTemplate")


class UserDevice(Base):
    """Device seen during enrollment."""

    __tablename__ = "user_devices"
    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_user_device"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    device_id = Column(String(64), nullable=False)
    session_id = Column(String(64))
    device_type = Column(String(20), default="unknown")
    device_name = Column(String(100), default="Unknown Device")
    os_name = Column(String(50), default="unknown")
    browser_name = Column(String(50), default="unknown")
    ip_address = Column(String(45))
    user_agent = Column(String(255))
    is_primary = Column(Integer, default=0)  # SQLite boolean
    last_used = Column(String(26), default=lambda: utcnow().isoformat())
    created_at = Column(String(26), default=lambda: utcnow().isoformat())
