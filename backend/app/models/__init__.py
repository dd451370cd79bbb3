"""SQLAlchemy models package."""
from app.models.user import User, UserRole
from app.models.session import AuthSession
from app.models.otp import OneTimeCode
from app.models.auth import CredentialRecord
from app.models.enrollment import (
    BackupCode,
    SecurityQuestionTemplate,
    UserBiometric,
    UserDetails,
    UserDevice,
    UserSecurityAnswer,
)

__all__ = [
    "User",
    "UserRole",
    "AuthSession",
    "OneTimeCode",
    "CredentialRecord",
    "UserDetails",
    "UserBiometric",
    "BackupCode",
    "SecurityQuestionTemplate",
    "UserSecurityAnswer",
    "UserDevice",
]
