"""First-time enrollment endpoints."""
import json

from fastapi import APIRouter, Depends

from app.api.deps import get_client_meta, get_enrollment_tracker
from app.schemas.enrollment import (
    AnswerCheckResponse,
    BiometricRequest,
    BiometricResponse,
    BiometricVerifyRequest,
    BiometricVerifyResponse,
    EnrollmentResponse,
    ProfileRequest,
    ProfileResponse,
    SecurityAnswersRequest,
    SecurityQuestionResponse,
)
from app.services.common import ClientMeta
from app.services.enrollment import DeviceInfo, EnrollmentTracker
from app.services.errors import NotFound, Unauthenticated

router = APIRouter(prefix="/enrollment", tags=["enrollment"])


def _template(biometric_data) -> str:
    """Canonical string form of whatever template the client captured."""
    if isinstance(biometric_data, str):
        return biometric_data
    if biometric_data is None:
        return ""
    return json.dumps(biometric_data, sort_keys=True, separators=(",", ":"))


@router.post("/profile", response_model=EnrollmentResponse)
def save_profile(body: ProfileRequest, tracker: EnrollmentTracker = Depends(get_enrollment_tracker)):
    values = body.model_dump(exclude={"session_id"}, exclude_none=True)
    result = tracker.record_profile(body.session_id, values)
    return EnrollmentResponse(
        session_id=body.session_id,
        session_flags=result.flags,
        next_step=result.next_step,
        message="Profile saved",
    )


@router.get("/profile/{session_id}", response_model=ProfileResponse)
def get_profile(session_id: str, tracker: EnrollmentTracker = Depends(get_enrollment_tracker)):
    return tracker.get_profile(session_id)


@router.post("/biometric", response_model=BiometricResponse)
def collect_biometric(
    body: BiometricRequest,
    client: ClientMeta = Depends(get_client_meta),
    tracker: EnrollmentTracker = Depends(get_enrollment_tracker),
):
    """Enroll a biometric template. Backup codes appear in this response only."""
    device = body.device_info
    result = tracker.record_biometric(
        body.session_id,
        body.biometric_type,
        _template(body.biometric_data),
        client=client,
        device=DeviceInfo(
            device_id=device.device_id,
            device_type=device.device_type,
            device_name=device.device_name,
            os_name=device.os,
            browser_name=device.browser,
        ) if device else None,
        quality_score=body.quality_score,
    )
    return BiometricResponse(
        session_id=body.session_id,
        session_flags=result.flags,
        next_step=result.next_step,
        biometric_id=result.record_id,
        backup_codes=result.backup_codes,
        message="Biometric data collected. Please save your backup codes.",
    )


@router.post("/biometric/verify", response_model=BiometricVerifyResponse)
def verify_biometric(body: BiometricVerifyRequest, tracker: EnrollmentTracker = Depends(get_enrollment_tracker)):
    tracker.verify_biometric(body.session_id, _template(body.biometric_data))
    return BiometricVerifyResponse(session_id=body.session_id, verified=True, message="Biometric verified")


@router.get("/security-questions", response_model=list[SecurityQuestionResponse])
def list_security_questions(tracker: EnrollmentTracker = Depends(get_enrollment_tracker)):
    """Random selection of active questions to answer."""
    questions = tracker.get_security_questions()
    if not questions:
        raise NotFound("No security questions available", code="SECURITY_QUESTIONS_NOT_FOUND")
    return questions


@router.post("/security-questions", response_model=EnrollmentResponse)
def save_security_answers(body: SecurityAnswersRequest, tracker: EnrollmentTracker = Depends(get_enrollment_tracker)):
    result = tracker.record_security_questions(
        body.session_id,
        [{"question_id": item.question_id, "answer": item.answer} for item in body.answers],
    )
    return EnrollmentResponse(
        session_id=body.session_id,
        session_flags=result.flags,
        next_step=result.next_step,
        message="Security questions saved",
    )


@router.post("/security-questions/verify", response_model=AnswerCheckResponse)
def verify_security_answers(body: SecurityAnswersRequest, tracker: EnrollmentTracker = Depends(get_enrollment_tracker)):
    session = tracker.sessions.get_session(body.session_id)
    if not session.user_id:
        raise NotFound("Session has no user")
    check = tracker.verify_answers(
        session.user_id,
        [{"question_id": item.question_id, "answer": item.answer} for item in body.answers],
    )
    if not check.verified:
        raise Unauthenticated(
            "Security answers did not match",
            code="SECURITY_ANSWERS_MISMATCH",
            detail={"correctCount": check.correct, "totalQuestions": check.total},
        )
    return AnswerCheckResponse(verified=True, correct_count=check.correct, total_questions=check.total)
