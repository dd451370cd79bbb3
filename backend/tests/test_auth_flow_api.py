import time

from fastapi.testclient import TestClient

from conftest import build_app, make_user, seed_questions

from app.models.user import User
from app.services.common import Channel
from app.services.sso import sign_assertion

API = "/api/v1"


def check(client, email="a@example.com"):
    response = client.post(f"{API}/identity/check", json={"email": email})
    assert response.status_code == 200, response.text
    return response.json()


def verify_both_channels(client, notifiers, session_id, email="a@example.com", phone="+15550001111"):
    assert client.post(f"{API}/otp/email", json={"sessionId": session_id, "email": email}).status_code == 200
    assert client.post(f"{API}/otp/sms", json={"sessionId": session_id, "phone": phone}).status_code == 200

    email_response = client.post(
        f"{API}/otp/verify",
        json={"sessionId": session_id, "channel": "email", "code": notifiers[Channel.EMAIL].last_code},
    )
    assert email_response.status_code == 200, email_response.text
    sms_response = client.post(
        f"{API}/otp/verify",
        json={"sessionId": session_id, "channel": "sms", "code": notifiers[Channel.SMS].last_code},
    )
    assert sms_response.status_code == 200, sms_response.text
    return sms_response.json()


def sso_token(settings, **overrides):
    claims = {
        "user_id": "ext-9",
        "username": "newvoter",
        "user_email": "new@example.com",
        "user_firstname": "Grace",
        "user_lastname": "Hopper",
        "user_country": "US",
        "user_age": "45",
        "iat": int(time.time()),
        "exp": int(time.time()) + 300,
    }
    claims.update(overrides)
    return sign_assertion(claims, settings.sso_shared_secret)


def test_first_time_user_completes_exactly_once(client, db, notifiers):
    make_user(db)

    started = check(client)
    assert started["isFirstTime"] is True
    assert started["nextStep"] == 2
    assert started["sessionFlags"]["emailVerified"] is False
    session_id = started["sessionId"]

    verified = verify_both_channels(client, notifiers, session_id)
    assert verified["nextStep"] == 3
    assert verified["sessionFlags"] == {
        "emailVerified": True,
        "smsVerified": True,
        "userDetailsCollected": False,
        "biometricCollected": False,
        "securityQuestionsAnswered": False,
    }

    state = client.get(f"{API}/session/{session_id}").json()
    assert state["canComplete"] is True

    completed = client.post(f"{API}/session/complete", json={"sessionId": session_id})
    assert completed.status_code == 200, completed.text
    body = completed.json()
    assert body["accessToken"] and body["refreshToken"]
    assert body["user"]["email"] == "a@example.com"
    assert body["user"]["isActivated"] is True
    assert set(body["missingEnrollment"]) == {
        "user_details_collected",
        "biometric_collected",
        "security_questions_answered",
    }
    cookies = " ".join(completed.headers.get_list("set-cookie"))
    assert "access_token=" in cookies
    assert "refresh_token=" in cookies
    assert "HttpOnly" in cookies

    again = client.post(f"{API}/session/complete", json={"sessionId": session_id})
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_COMPLETED"

    db.expire_all()
    assert db.query(User).one().activated == 1


def test_complete_requires_both_otp_channels(client, db, notifiers):
    make_user(db)
    session_id = check(client)["sessionId"]
    client.post(f"{API}/otp/email", json={"sessionId": session_id, "email": "a@example.com"})
    client.post(
        f"{API}/otp/verify",
        json={"sessionId": session_id, "channel": "email", "code": notifiers[Channel.EMAIL].last_code},
    )

    response = client.post(f"{API}/session/complete", json={"sessionId": session_id})

    assert response.status_code == 401
    assert response.json()["code"] == "VERIFICATION_INCOMPLETE"


def test_strict_gate_blocks_unenrolled_first_time_user(session_local, db, notifiers, settings):
    strict = settings.model_copy(update={"strict_enrollment_gate": True})
    client = TestClient(build_app(session_local, notifiers, settings_override=strict))
    make_user(db)
    session_id = check(client)["sessionId"]
    verify_both_channels(client, notifiers, session_id)

    response = client.post(f"{API}/session/complete", json={"sessionId": session_id})

    assert response.status_code == 403
    assert response.json()["code"] == "ENROLLMENT_INCOMPLETE"


def test_returning_user_skips_enrollment(client, db, notifiers):
    make_user(db, returning=True)

    started = check(client)
    assert started["isFirstTime"] is False
    assert started["message"] == "Welcome back! Please verify your identity."
    assert verify_both_channels(client, notifiers, started["sessionId"])["nextStep"] == 6

    profile = client.post(
        f"{API}/enrollment/profile",
        json={"sessionId": started["sessionId"], "firstName": "X", "lastName": "Y", "age": 30, "gender": "m", "country": "US"},
    )
    assert profile.status_code == 403


def test_identity_check_errors(client, db):
    make_user(db, email="banned@example.com", phone="+15550007777", banned=1)

    missing = client.post(f"{API}/identity/check", json={"email": "ghost@example.com"})
    assert missing.status_code == 404
    assert missing.json()["code"] == "USER_NOT_FOUND"

    banned = client.post(f"{API}/identity/check", json={"phone": "+15550007777"})
    assert banned.status_code == 403
    assert banned.json()["code"] == "USER_BANNED"

    empty = client.post(f"{API}/identity/check", json={})
    assert empty.status_code == 400


def test_otp_failures_map_to_reasons(client, db, notifiers, settings):
    make_user(db)
    session_id = check(client)["sessionId"]

    none_pending = client.post(f"{API}/otp/verify", json={"sessionId": session_id, "channel": "email", "code": "123456"})
    assert none_pending.status_code == 404
    assert none_pending.json()["details"]["reason"] == "not_found"

    client.post(f"{API}/otp/email", json={"sessionId": session_id, "email": "a@example.com"})
    code = notifiers[Channel.EMAIL].last_code
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(settings.otp_max_attempts):
        response = client.post(f"{API}/otp/verify", json={"sessionId": session_id, "channel": "email", "code": wrong})
        assert response.status_code == 400
        assert response.json()["details"]["reason"] == "invalid"

    locked = client.post(f"{API}/otp/verify", json={"sessionId": session_id, "channel": "email", "code": code})
    assert locked.status_code == 429
    assert locked.json()["details"]["reason"] == "too_many_attempts"

    malformed = client.post(f"{API}/otp/verify", json={"sessionId": session_id, "channel": "email", "code": "12"})
    assert malformed.status_code == 400


def test_otp_issue_reports_delivery_and_hides_code(client, db, notifiers):
    make_user(db)
    session_id = check(client)["sessionId"]
    notifiers[Channel.SMS].sent = False

    response = client.post(f"{API}/otp/sms", json={"sessionId": session_id, "phone": "+15550001111"})

    assert response.status_code == 200
    assert response.json()["sent"] is False
    assert response.json()["code"] is None


def test_debug_mode_echoes_code(session_local, db, notifiers, settings):
    client = TestClient(build_app(session_local, notifiers, settings_override=settings.model_copy(update={"debug": True})))
    make_user(db)
    session_id = check(client)["sessionId"]

    response = client.post(f"{API}/otp/email", json={"sessionId": session_id, "email": "a@example.com"})

    assert response.json()["code"] == notifiers[Channel.EMAIL].last_code


def test_unknown_session_is_not_found(client):
    response = client.post(f"{API}/otp/email", json={"sessionId": "nope", "email": "a@example.com"})

    assert response.status_code == 404
    assert response.json()["code"] == "SESSION_NOT_FOUND"


def test_sso_callback_provisions_new_user(client, db, settings):
    response = client.post(f"{API}/sso/callback", json={"token": sso_token(settings)})

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["isNewUser"] is True
    assert body["isFirstTime"] is True
    assert body["nextStep"] == 2
    assert body["prefillData"]["firstName"] == "Grace"
    assert body["prefillData"]["country"] == "US"
    assert body["ssoUser"]["email"] == "new@example.com"
    assert db.query(User).filter(User.email == "new@example.com").one().activated == 1


def test_sso_callback_rejections(client, settings):
    token = sso_token(settings)
    payload, signature = token.split(".")

    tampered = client.post(f"{API}/sso/callback", json={"token": f"x{payload[1:]}.{signature}"})
    assert tampered.status_code == 401
    assert tampered.json()["code"] == "INVALID_SIGNATURE"

    expired = client.post(f"{API}/sso/callback", json={"token": sso_token(settings, exp=int(time.time()) - 5)})
    assert expired.status_code == 401
    assert expired.json()["code"] == "EXPIRED"

    malformed = client.post(f"{API}/sso/callback", json={"token": "garbage"})
    assert malformed.status_code == 401
    assert malformed.json()["code"] == "MALFORMED_TOKEN"


def test_sso_browser_redirects(client, settings):
    success = client.get(f"{API}/sso/callback", params={"token": sso_token(settings)}, follow_redirects=False)
    assert success.status_code == 302
    assert success.headers["location"].startswith(f"{settings.frontend_url}/auth/sso/callback?sessionId=")

    failure = client.get(f"{API}/sso/callback", params={"token": "bad.token"}, follow_redirects=False)
    assert failure.status_code == 302
    assert failure.headers["location"] == f"{settings.sso_login_url}?error=invalid_signature"


def test_sso_verify_does_not_create_session(client, db, settings):
    response = client.post(f"{API}/sso/verify", json={"token": sso_token(settings)})

    assert response.status_code == 200
    assert response.json()["user"]["email"] == "new@example.com"
    assert db.query(User).count() == 0


def test_enrollment_over_http(client, db, notifiers):
    questions = seed_questions(db, count=6)
    make_user(db)
    session_id = check(client)["sessionId"]
    verify_both_channels(client, notifiers, session_id)

    profile = client.post(
        f"{API}/enrollment/profile",
        json={
            "sessionId": session_id,
            "firstName": "Ada",
            "lastName": "Lovelace",
            "age": 36,
            "gender": "female",
            "country": "GB",
        },
    )
    assert profile.status_code == 200, profile.text
    assert profile.json()["nextStep"] == 4

    stored = client.get(f"{API}/enrollment/profile/{session_id}")
    assert stored.json()["firstName"] == "Ada"

    biometric = client.post(
        f"{API}/enrollment/biometric",
        json={"sessionId": session_id, "biometricType": "fingerprint", "biometricData": {"minutiae": [4, 8, 15]}},
        headers={"x-device-id": "device-42"},
    )
    assert biometric.status_code == 200, biometric.text
    assert len(biometric.json()["backupCodes"]) == 10
    assert biometric.json()["nextStep"] == 5

    verify = client.post(
        f"{API}/enrollment/biometric/verify",
        json={"sessionId": session_id, "biometricData": {"minutiae": [4, 8, 15]}},
    )
    assert verify.status_code == 200
    mismatch = client.post(
        f"{API}/enrollment/biometric/verify",
        json={"sessionId": session_id, "biometricData": {"minutiae": [16, 23, 42]}},
    )
    assert mismatch.status_code == 401

    offered = client.get(f"{API}/enrollment/security-questions").json()
    assert len(offered) == 5
    assert {"id", "questionText", "category"} <= set(offered[0])

    answers = [{"questionId": q.id, "answer": f"answer {i}"} for i, q in enumerate(questions[:3])]
    saved = client.post(f"{API}/enrollment/security-questions", json={"sessionId": session_id, "answers": answers})
    assert saved.status_code == 200, saved.text
    assert saved.json()["sessionFlags"]["securityQuestionsAnswered"] is True
    assert saved.json()["nextStep"] == 6

    passed = client.post(
        f"{API}/enrollment/security-questions/verify",
        json={"sessionId": session_id, "answers": [dict(a, answer=a["answer"].upper()) for a in answers]},
    )
    assert passed.status_code == 200
    assert passed.json()["correctCount"] == 3

    completed = client.post(f"{API}/session/complete", json={"sessionId": session_id})
    assert completed.status_code == 200
    assert completed.json()["missingEnrollment"] == []
    assert completed.json()["user"]["biometricEnabled"] is True


def test_step_endpoint_never_regresses(client, db):
    make_user(db)
    session_id = check(client)["sessionId"]

    forward = client.post(f"{API}/session/step", json={"sessionId": session_id, "stepNumber": 4})
    assert forward.status_code == 200
    assert forward.json()["stepNumber"] == 4

    backward = client.post(f"{API}/session/step", json={"sessionId": session_id, "stepNumber": 2})
    assert backward.status_code == 409
    assert backward.json()["code"] == "INVALID_TRANSITION"


def complete_returning_session(client, db, notifiers):
    make_user(db, returning=True)
    session_id = check(client)["sessionId"]
    verify_both_channels(client, notifiers, session_id)
    response = client.post(f"{API}/session/complete", json={"sessionId": session_id})
    assert response.status_code == 200
    return session_id, response.json()


def test_me_and_logout_by_bearer(client, db, notifiers):
    _, body = complete_returning_session(client, db, notifiers)
    auth = {"Authorization": f"Bearer {body['accessToken']}"}

    me = client.get(f"{API}/session/me", headers=auth)
    assert me.status_code == 200
    assert me.json()["email"] == "a@example.com"
    assert me.json()["roles"] == ["Voter"]

    logout = client.post(f"{API}/session/logout", headers=auth)
    assert logout.status_code == 200
    assert logout.json()["revoked"] == 2

    after = client.get(f"{API}/session/me", headers=auth)
    assert after.status_code == 401
    assert after.json()["code"] == "TOKEN_REVOKED"


def test_logout_active_session_by_id(client, db):
    make_user(db)
    session_id = check(client)["sessionId"]

    response = client.post(f"{API}/session/logout", json={"sessionId": session_id})

    assert response.status_code == 200
    assert client.get(f"{API}/session/{session_id}").json()["status"] == "logged_out"
    follow_up = client.post(f"{API}/otp/email", json={"sessionId": session_id, "email": "a@example.com"})
    assert follow_up.status_code == 401


def test_refresh_rotates_and_rejects_replay(client, db, notifiers):
    _, body = complete_returning_session(client, db, notifiers)
    old_refresh = body["refreshToken"]

    rotated = client.post(f"{API}/session/refresh", json={"refreshToken": old_refresh})
    assert rotated.status_code == 200
    assert rotated.json()["refreshToken"] != old_refresh

    replay = client.post(f"{API}/session/refresh", json={"refreshToken": old_refresh})
    assert replay.status_code == 401
    assert replay.json()["code"] == "TOKEN_REVOKED"


def test_me_requires_token(client):
    response = client.get(f"{API}/session/me")

    assert response.status_code == 401
    assert response.json()["code"] == "MISSING_TOKEN"


def test_codes_cannot_be_redirected_to_foreign_contacts(client, db, notifiers):
    make_user(db, email="victim@example.com", phone="+15550005555")
    session_id = check(client, email="victim@example.com")["sessionId"]

    email = client.post(f"{API}/otp/email", json={"sessionId": session_id, "email": "attacker@evil.com"})
    sms = client.post(f"{API}/otp/sms", json={"sessionId": session_id, "phone": "+15559999999"})

    assert email.status_code == 403
    assert email.json()["code"] == "DESTINATION_MISMATCH"
    assert sms.status_code == 403
    assert notifiers[Channel.EMAIL].outbox == []
    assert notifiers[Channel.SMS].outbox == []

    complete = client.post(f"{API}/session/complete", json={"sessionId": session_id})
    assert complete.status_code == 401
    assert complete.json()["code"] == "VERIFICATION_INCOMPLETE"


def test_complete_after_logout_is_a_conflict(client, db):
    make_user(db)
    session_id = check(client)["sessionId"]
    client.post(f"{API}/session/logout", json={"sessionId": session_id})

    response = client.post(f"{API}/session/complete", json={"sessionId": session_id})

    assert response.status_code == 409
    assert response.json()["code"] == "ALREADY_COMPLETED"
