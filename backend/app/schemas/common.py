"""Shared schema bases."""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys; snake_case names also accepted on input."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class SessionFlags(CamelModel):
    email_verified: bool = False
    sms_verified: bool = False
    user_details_collected: bool = False
    biometric_collected: bool = False
    security_questions_answered: bool = False
