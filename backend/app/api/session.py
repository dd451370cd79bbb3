"""Session state, completion, logout and credential endpoints."""
from fastapi import APIRouter, Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.api.deps import bearer_scheme, get_auth_flow, get_db, get_settings, get_token_claims
from app.config import Settings
from app.database import atomic
from app.schemas.session import (
    CompleteResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    SessionIdRequest,
    SessionStateResponse,
    StepRequest,
    TokenResponse,
)
from app.services.auth_flow import AuthFlow
from app.services.credentials import CredentialPair, TokenClaims
from app.services.session_manager import SessionManager, session_flags

router = APIRouter(prefix="/session", tags=["session"])


def set_auth_cookies(response: Response, settings: Settings, session_id: str, pair: CredentialPair) -> None:
    """Issue HttpOnly access, refresh and session cookies."""
    cookies = (
        (settings.access_cookie_name, pair.access_token, settings.access_token_expire_minutes * 60),
        (settings.refresh_cookie_name, pair.refresh_token, settings.refresh_token_expire_days * 24 * 60 * 60),
        (settings.session_cookie_name, session_id, settings.refresh_token_expire_days * 24 * 60 * 60),
    )
    for name, value, max_age in cookies:
        response.set_cookie(
            key=name,
            value=value,
            httponly=True,
            secure=settings.cookie_secure,
            samesite=settings.cookie_samesite,
            path=settings.cookie_path,
            max_age=max_age,
        )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.access_cookie_name, settings.refresh_cookie_name, settings.session_cookie_name):
        response.delete_cookie(
            key=name,
            path=settings.cookie_path,
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _token_response(settings: Settings, pair: CredentialPair) -> dict:
    return {
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "expires_in": settings.access_token_expire_minutes * 60,
    }


@router.post("/complete", response_model=CompleteResponse)
def complete_session(
    body: SessionIdRequest,
    response: Response,
    flow: AuthFlow = Depends(get_auth_flow),
    settings: Settings = Depends(get_settings),
):
    """Finalize a verified session and issue credentials."""
    completion = flow.complete(body.session_id)
    set_auth_cookies(response, settings, body.session_id, completion.credentials)
    return CompleteResponse(
        **_token_response(settings, completion.credentials),
        session_id=body.session_id,
        user=completion.profile,
        missing_enrollment=completion.missing_enrollment,
        message="Authentication completed",
    )


@router.post("/logout", response_model=LogoutResponse)
def logout(
    response: Response,
    request: Request,
    body: LogoutRequest | None = None,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    flow: AuthFlow = Depends(get_auth_flow),
    settings: Settings = Depends(get_settings),
):
    """Terminate by session id, user id or bearer token and clear auth cookies."""
    body = body or LogoutRequest()
    session_id = body.session_id
    if not session_id and not body.user_id and not credentials:
        session_id = request.cookies.get(settings.session_cookie_name)

    revoked = flow.logout(
        session_id=session_id,
        user_id=body.user_id,
        access_token=credentials.credentials if credentials else None,
    )
    clear_auth_cookies(response, settings)
    return LogoutResponse(message="Successfully logged out", revoked=revoked)


@router.post("/refresh", response_model=TokenResponse)
def refresh_tokens(
    request: Request,
    response: Response,
    body: RefreshRequest | None = None,
    flow: AuthFlow = Depends(get_auth_flow),
    settings: Settings = Depends(get_settings),
):
    """Rotate the refresh token from the body or the refresh cookie."""
    token = (body.refresh_token if body else None) or request.cookies.get(settings.refresh_cookie_name)
    claims, pair = flow.refresh(token)
    set_auth_cookies(response, settings, claims.session_id, pair)
    return TokenResponse(**_token_response(settings, pair))


@router.get("/me")
def current_user(claims: TokenClaims = Depends(get_token_claims), flow: AuthFlow = Depends(get_auth_flow)):
    return flow.current_profile(claims)


@router.post("/step", response_model=SessionStateResponse)
def advance_step(
    body: StepRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    manager = SessionManager(db, settings)
    with atomic(db):
        session = manager.advance_step(body.session_id, body.step_number)
    return _state(manager, session)


@router.get("/{session_id}", response_model=SessionStateResponse)
def get_session_state(
    session_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Current flags and progress for UI rendering."""
    manager = SessionManager(db, settings)
    return _state(manager, manager.get_session(session_id))


def _state(manager: SessionManager, session) -> SessionStateResponse:
    return SessionStateResponse(
        session_id=session.session_id,
        user_id=session.user_id,
        status=session.status,
        step_number=session.step_number,
        is_first_time=bool(session.is_first_time),
        auth_method=session.auth_method,
        session_flags=session_flags(session),
        can_complete=manager.completion_gate(session).eligible,
        created_at=session.created_at,
        expires_at=session.expires_at,
        completed_at=session.completed_at,
    )
