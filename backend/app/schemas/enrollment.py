"""Enrollment step schemas."""
from typing import Any

from pydantic import Field

from app.schemas.common import CamelModel, SessionFlags


class ProfileRequest(CamelModel):
    session_id: str
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    age: int | None = None
    gender: str | None = Field(None, max_length=20)
    country: str | None = Field(None, max_length=100)
    city: str | None = Field(None, max_length=100)
    timezone: str | None = Field(None, max_length=50)
    language: str | None = Field(None, max_length=20)


class ProfileResponse(CamelModel):
    user_id: str
    first_name: str | None = None
    last_name: str | None = None
    age: int | None = None
    gender: str | None = None
    country: str | None = None
    city: str | None = None
    timezone: str | None = None
    language: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    class Config:
        from_attributes = True


class EnrollmentResponse(CamelModel):
    session_id: str
    session_flags: SessionFlags
    next_step: int
    message: str


class DeviceInfoRequest(CamelModel):
    device_id: str | None = None
    device_type: str | None = None
    device_name: str | None = None
    os: str | None = None
    browser: str | None = None


class BiometricRequest(CamelModel):
    session_id: str
    biometric_type: str
    biometric_data: Any
    quality_score: int | None = Field(None, ge=0, le=100)
    device_info: DeviceInfoRequest | None = None


class BiometricResponse(EnrollmentResponse):
    biometric_id: str
    backup_codes: list[str]


class BiometricVerifyRequest(CamelModel):
    session_id: str
    biometric_data: Any


class BiometricVerifyResponse(CamelModel):
    session_id: str
    verified: bool
    message: str


class SecurityQuestionResponse(CamelModel):
    id: str
    question_text: str
    category: str | None = None

    class Config:
        from_attributes = True


class SecurityAnswer(CamelModel):
    question_id: str
    answer: str = Field(..., max_length=255)


class SecurityAnswersRequest(CamelModel):
    session_id: str
    answers: list[SecurityAnswer]


class AnswerCheckResponse(CamelModel):
    verified: bool
    correct_count: int
    total_questions: int
