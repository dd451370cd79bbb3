import pytest

from conftest import FakeNotifier, FakePhoneVerifier, make_user

from app.models.otp import OneTimeCode
from app.services.common import AuthMethod, Channel, ClientMeta, Step
from app.services.errors import (
    AlreadyCompleted,
    Conflict,
    Forbidden,
    RateLimited,
    SessionExpired,
    ValidationError,
)
from app.services.otp import OtpEngine, OtpFailure
from app.services.session_manager import SessionManager


@pytest.fixture
def returning_user(db):
    return make_user(db, email="back@example.com", phone="+15550002222", returning=True)


def start(db, settings, clock, notifiers, user, first_time=True, phone_verifier=None):
    manager = SessionManager(db, settings, clock=clock)
    session_id = manager.create_session(user.id, first_time, ClientMeta(), AuthMethod.DIRECT_CHECK)
    db.commit()
    engine = OtpEngine(db, settings, notifiers, phone_verifier=phone_verifier, sessions=manager, clock=clock)
    return engine, session_id


def test_issue_persists_hashed_code_and_notifies(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))

    issued = engine.issue(session_id, Channel.EMAIL, "a@example.com")

    assert issued.delivery.sent is True
    assert len(issued.code) == settings.otp_length and issued.code.isdigit()
    assert notifiers[Channel.EMAIL].outbox == [("a@example.com", issued.code)]
    record = db.query(OneTimeCode).filter(OneTimeCode.session_id == session_id).one()
    assert record.code_hash != issued.code
    assert record.attempt_count == 0


def test_delivery_failure_still_leaves_a_usable_code(db, settings, clock):
    notifiers = {Channel.EMAIL: FakeNotifier(sent=False), Channel.SMS: FakeNotifier()}
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))

    issued = engine.issue(session_id, Channel.EMAIL, "a@example.com")

    assert issued.delivery.sent is False
    assert engine.verify(session_id, Channel.EMAIL, issued.code).verified is True


def test_issue_rejects_bad_destination(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))

    with pytest.raises(ValidationError):
        engine.issue(session_id, Channel.SMS, "not-a-phone")


def test_issue_limit_per_channel(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))
    for _ in range(settings.otp_max_issues_per_session):
        engine.issue(session_id, Channel.SMS, "+1 (555) 000-1111")
        clock.advance(seconds=1)

    with pytest.raises(RateLimited):
        engine.issue(session_id, Channel.SMS, "+15550001111")
    # The other channel has its own budget
    engine.issue(session_id, Channel.EMAIL, "a@example.com")


def test_verify_without_code_is_not_found(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))

    result = engine.verify(session_id, Channel.EMAIL, "123456")

    assert result.verified is False
    assert result.reason == OtpFailure.NOT_FOUND


def test_verify_rejects_malformed_code(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))

    with pytest.raises(ValidationError):
        engine.verify(session_id, Channel.EMAIL, "12ab56")
    with pytest.raises(ValidationError):
        engine.verify(session_id, Channel.EMAIL, "1234567")


def test_used_code_never_verifies_again(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))
    code = engine.issue(session_id, Channel.EMAIL, "a@example.com").code

    assert engine.verify(session_id, Channel.EMAIL, code).verified is True
    replay = engine.verify(session_id, Channel.EMAIL, code)

    assert replay.verified is False
    assert replay.reason == OtpFailure.NOT_FOUND


def test_sixth_attempt_is_rejected_even_when_correct(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))
    code = engine.issue(session_id, Channel.EMAIL, "a@example.com").code
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(settings.otp_max_attempts):
        assert engine.verify(session_id, Channel.EMAIL, wrong).reason == OtpFailure.MISMATCH

    result = engine.verify(session_id, Channel.EMAIL, code)
    assert result.verified is False
    assert result.reason == OtpFailure.TOO_MANY_ATTEMPTS
    record = db.query(OneTimeCode).filter(OneTimeCode.session_id == session_id).one()
    assert record.attempt_count == settings.otp_max_attempts
    assert record.is_used == 0


def test_expiry_boundary(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))
    code = engine.issue(session_id, Channel.EMAIL, "a@example.com").code
    clock.advance(seconds=601)

    assert engine.verify(session_id, Channel.EMAIL, code).reason == OtpFailure.EXPIRED


def test_code_valid_just_before_expiry(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))
    code = engine.issue(session_id, Channel.EMAIL, "a@example.com").code
    clock.advance(seconds=599)

    assert engine.verify(session_id, Channel.EMAIL, code).verified is True


def test_most_recent_code_wins(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))
    first = engine.issue(session_id, Channel.EMAIL, "a@example.com").code
    clock.advance(seconds=5)
    second = engine.issue(session_id, Channel.EMAIL, "a@example.com").code

    if first != second:
        assert engine.verify(session_id, Channel.EMAIL, first).reason == OtpFailure.MISMATCH
    assert engine.verify(session_id, Channel.EMAIL, second).verified is True


def test_first_time_session_moves_to_profile_after_both_channels(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db), first_time=True)

    email_code = engine.issue(session_id, Channel.EMAIL, "a@example.com").code
    sms_code = engine.issue(session_id, Channel.SMS, "+15550001111").code

    after_email = engine.verify(session_id, Channel.EMAIL, email_code)
    assert after_email.flags["email_verified"] is True
    assert after_email.flags["sms_verified"] is False
    assert after_email.next_step == Step.CONTACT_VERIFICATION

    after_sms = engine.verify(session_id, Channel.SMS, sms_code)
    assert after_sms.flags["sms_verified"] is True
    assert after_sms.next_step == Step.PROFILE


def test_returning_session_moves_to_completion(db, settings, clock, notifiers, returning_user):
    engine, session_id = start(db, settings, clock, notifiers, returning_user, first_time=False)

    sms_code = engine.issue(session_id, Channel.SMS, returning_user.phone).code
    email_code = engine.issue(session_id, Channel.EMAIL, returning_user.email).code
    engine.verify(session_id, Channel.SMS, sms_code)

    assert engine.verify(session_id, Channel.EMAIL, email_code).next_step == Step.COMPLETION


def test_delegated_phone_channel(db, settings, clock, notifiers):
    verifier = FakePhoneVerifier(approved_code="424242")
    engine, session_id = start(db, settings, clock, notifiers, make_user(db), phone_verifier=verifier)

    issued = engine.issue(session_id, Channel.SMS, "+15550001111")

    assert issued.delegated is True
    assert issued.code is None
    assert notifiers[Channel.SMS].outbox == []
    assert verifier.started == ["+15550001111"]
    record = db.query(OneTimeCode).filter(OneTimeCode.channel == "sms").one()
    assert record.code_hash is None

    assert engine.verify(session_id, Channel.SMS, "111111").reason == OtpFailure.MISMATCH
    result = engine.verify(session_id, Channel.SMS, "424242")
    assert result.verified is True
    assert result.flags["sms_verified"] is True


def test_issue_on_expired_session_fails(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))
    clock.advance(hours=settings.session_expire_hours + 1)

    with pytest.raises(SessionExpired):
        engine.issue(session_id, Channel.EMAIL, "a@example.com")


def test_verify_on_completed_session_fails(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))
    code = engine.issue(session_id, Channel.EMAIL, "a@example.com").code
    engine.sessions.complete_session(session_id)
    db.commit()

    with pytest.raises(AlreadyCompleted):
        engine.verify(session_id, Channel.EMAIL, code)


def test_codes_only_go_to_the_contact_on_record(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))

    with pytest.raises(Forbidden) as email_error:
        engine.issue(session_id, Channel.EMAIL, "attacker@evil.com")
    with pytest.raises(Forbidden):
        engine.issue(session_id, Channel.SMS, "+15559999999")

    assert email_error.value.code == "DESTINATION_MISMATCH"
    assert notifiers[Channel.EMAIL].outbox == []
    assert notifiers[Channel.SMS].outbox == []
    assert db.query(OneTimeCode).count() == 0


def test_contact_on_record_matches_after_normalization(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))

    assert engine.issue(session_id, Channel.EMAIL, " A@Example.com ").delivery.sent is True
    assert engine.issue(session_id, Channel.SMS, "+1 (555) 000-1111").delivery.sent is True
    assert notifiers[Channel.SMS].outbox[0][0] == "+15550001111"


def test_user_without_phone_claims_number_on_verification(db, settings, clock, notifiers):
    user = make_user(db, email="sso@example.com", phone=None)
    engine, session_id = start(db, settings, clock, notifiers, user)

    code = engine.issue(session_id, Channel.SMS, "+15550004444").code
    db.refresh(user)
    assert user.phone is None

    assert engine.verify(session_id, Channel.SMS, code).verified is True
    db.refresh(user)
    assert user.phone == "+15550004444"


def test_unclaimed_contact_cannot_take_another_users_number(db, settings, clock, notifiers):
    make_user(db)
    user = make_user(db, email="sso@example.com", phone=None)
    engine, session_id = start(db, settings, clock, notifiers, user)

    with pytest.raises(Conflict) as error:
        engine.issue(session_id, Channel.SMS, "+15550001111")

    assert error.value.code == "CONTACT_IN_USE"


def test_newest_code_wins_within_the_same_instant(db, settings, clock, notifiers):
    engine, session_id = start(db, settings, clock, notifiers, make_user(db))

    codes = [engine.issue(session_id, Channel.EMAIL, "a@example.com").code for _ in range(3)]

    sequences = [
        record.sequence
        for record in db.query(OneTimeCode).order_by(OneTimeCode.sequence).all()
    ]
    assert sequences == [1, 2, 3]
    assert engine.verify(session_id, Channel.EMAIL, codes[-1]).verified is True
