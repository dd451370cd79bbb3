"""User model."""
import uuid

from sqlalchemy import Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base, utcnow


class User(Base):
    """Canonical user account (registered externally or auto-provisioned from SSO)."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(50), index=True)
    email = Column(String(255), unique=True, index=True)
    phone = Column(String(32), unique=True, index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    external_id = Column(String(64), index=True)  # Subject id asserted by the SSO provider
    banned = Column(Integer, default=0)  # SQLite boolean
    activated = Column(Integer, default=0)  # SQLite boolean
    approved = Column(Integer, default=0)  # SQLite boolean
    created_at = Column(String(26), default=lambda: utcnow().isoformat())
    updated_at = Column(String(26), default=lambda: utcnow().isoformat(), onupdate=lambda: utcnow().isoformat())

    # Relationships
    roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan")
    details = relationship("UserDetails", back_populates="user", uselist=False, cascade="all, delete-orphan")


class UserRole(Base):
    """Role assignment for a user."""

    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role_name", name="uq_user_role"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_name = Column(String(50), nullable=False)
    assignment_type = Column(String(20), default="automatic")  # automatic, manual
    assignment_source = Column(String(50))
    active = Column(Integer, default=1)  # SQLite boolean
    assigned_at = Column(String(26), default=lambda: utcnow().isoformat())

    user = relationship("User", back_populates="roles")
