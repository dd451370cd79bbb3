"""Application configuration."""
from collections import Counter
from functools import lru_cache
import math
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


def _check_secret_strength(value: str, env_name: str) -> str:
    if not value:
        raise ValueError(f"{env_name} must be set.")

    if len(value) < 32:
        raise ValueError(f"{env_name} must be at least 32 characters.")

    weak_values = {"changeme", "changeme-in-production", "secret", "password", "test"}
    lowered = value.lower()
    if lowered in weak_values or "changeme" in lowered:
        raise ValueError(f"{env_name} must not be a placeholder value.")

    counts = Counter(value)
    entropy_per_char = -sum((count / len(value)) * math.log2(count / len(value)) for count in counts.values())
    estimated_entropy_bits = entropy_per_char * len(value)
    if estimated_entropy_bits < 100:
        raise ValueError(f"{env_name} entropy is too low; use a cryptographically random value.")

    return value


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Ballot Auth"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./data/ballot_auth.db"

    # Credentials
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 7
    access_cookie_name: str = "access_token"
    refresh_cookie_name: str = "refresh_token"
    session_cookie_name: str = "auth_session"
    cookie_path: str = "/"
    cookie_samesite: str = "strict"
    cookie_secure: bool = True

    # Sessions
    session_expire_hours: int = 24
    strict_enrollment_gate: bool = False

    # One-time codes
    otp_length: int = 6
    otp_expire_minutes: int = 10
    otp_max_attempts: int = 5
    otp_max_issues_per_session: int = 5

    # External identity provider
    sso_shared_secret: str
    sso_login_url: str = "http://localhost:8080/login"
    frontend_url: str = "http://localhost:3000"

    # Enrollment
    backup_code_count: int = 10
    security_question_count: int = 5
    security_questions_required: int = 3
    security_answer_pass_ratio: float = 0.6
    bcrypt_rounds: int = 10

    # Paths
    base_dir: Path = Path(__file__).parent
    security_questions_file: Path = base_dir / "configs" / "security_questions.yaml"

    # Delivery
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from_email: str = "noreply@ballot-auth.local"
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    twilio_verify_service_sid: str | None = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        frozen = True

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, value: str) -> str:
        """Fail closed if SECRET_KEY is weak or placeholder quality."""
        return _check_secret_strength(value, "SECRET_KEY")

    @field_validator("sso_shared_secret")
    @classmethod
    def validate_sso_shared_secret(cls, value: str) -> str:
        """The identity provider secret is the SSO trust boundary; same rules."""
        return _check_secret_strength(value, "SSO_SHARED_SECRET")

    @field_validator("security_answer_pass_ratio")
    @classmethod
    def validate_pass_ratio(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("SECURITY_ANSWER_PASS_RATIO must be in (0, 1].")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
