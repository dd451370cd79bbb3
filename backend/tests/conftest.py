import os
import sys
from datetime import timedelta

os.environ.setdefault("SECRET_KEY", "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef")
os.environ.setdefault("SSO_SHARED_SECRET", "fedcba9876543210fedcba9876543210fedcba9876543210fedcba9876543210")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.api import deps, enrollment, identity, otp, session, sso
from app.api.errors import register_exception_handlers
from app.config import get_settings
from app.database import Base, utcnow
from app.models.enrollment import SecurityQuestionTemplate, UserDetails
from app.models.user import User
from app.services.common import Channel
from app.services.notifications import DeliveryResult


class FakeClock:
    def __init__(self, now=None):
        self.now = now or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeNotifier:
    def __init__(self, sent=True):
        self.sent = sent
        self.outbox = []

    def send_code(self, destination, code, expires_minutes):
        self.outbox.append((destination, code))
        return DeliveryResult(sent=self.sent, detail="" if self.sent else "delivery failed")

    @property
    def last_code(self):
        return self.outbox[-1][1]


class FakePhoneVerifier:
    """Stands in for Twilio Verify: approves one fixed code per phone."""

    def __init__(self, approved_code="424242"):
        self.approved_code = approved_code
        self.started = []

    def start(self, phone):
        self.started.append(phone)
        return DeliveryResult(sent=True, detail="pending")

    def check(self, phone, code):
        return phone in self.started and code == self.approved_code


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def session_local():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_local):
    db = session_local()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifiers():
    return {Channel.EMAIL: FakeNotifier(), Channel.SMS: FakeNotifier()}


def make_user(db, email="a@example.com", phone="+15550001111", returning=False, **fields):
    user = User(email=email, phone=phone, username=email.split("@")[0], **fields)
    db.add(user)
    db.flush()
    if returning:
        db.add(UserDetails(user_id=user.id, first_name="Ada", last_name="Lovelace", age=36, timezone="UTC", language="en_us"))
    db.commit()
    return user


def seed_questions(db, count=6):
    questions = [
        SecurityQuestionTemplate(slug=f"question_{i}", question_text=f"Question {i}?", category="personal")
        for i in range(count)
    ]
    db.add_all(questions)
    db.commit()
    return questions


def build_app(session_local, notifiers, settings_override=None):
    app = FastAPI()
    register_exception_handlers(app)
    for module in (identity, sso, otp, enrollment, session):
        app.include_router(module.router, prefix="/api/v1")

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_notifiers] = lambda: notifiers
    app.dependency_overrides[deps.get_phone_verifier] = lambda: None
    if settings_override is not None:
        app.dependency_overrides[deps.get_settings] = lambda: settings_override
    return app


@pytest.fixture
def client(session_local, notifiers):
    return TestClient(build_app(session_local, notifiers))
