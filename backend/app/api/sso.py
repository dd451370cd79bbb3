"""SSO callback endpoints for assertions signed by the external identity provider."""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from app.api.deps import get_auth_flow, get_client_meta, get_settings
from app.api.identity import session_start_fields
from app.config import Settings
from app.schemas.auth import SsoStartResponse, SsoTokenRequest, SsoVerifyResponse
from app.services.auth_flow import AuthFlow, SessionStart
from app.services.common import ClientMeta
from app.services.errors import AuthError, SsoRejected

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sso", tags=["sso"])


def _sso_response(start: SessionStart) -> SsoStartResponse:
    return SsoStartResponse(
        **session_start_fields(start),
        is_new_user=start.is_new_user,
        prefill_data=start.prefill,
        sso_user=start.assertion.public_dict(),
    )


@router.get("/callback")
def sso_callback_redirect(
    token: str | None = None,
    client: ClientMeta = Depends(get_client_meta),
    flow: AuthFlow = Depends(get_auth_flow),
    settings: Settings = Depends(get_settings),
):
    """Browser redirect from the identity provider.

    Success lands on the frontend with the new session id; any failure sends
    the browser back to the provider's login page with an error reason.
    """
    try:
        start = flow.sso_login(token, client)
    except SsoRejected as e:
        return RedirectResponse(f"{settings.sso_login_url}?{urlencode({'error': e.reason.value})}", status_code=302)
    except AuthError as e:
        logger.warning(f"SSO callback failed: {e.code}")
        return RedirectResponse(f"{settings.sso_login_url}?{urlencode({'error': e.code.lower()})}", status_code=302)

    query = urlencode({"sessionId": start.session_id, "isNewUser": str(start.is_new_user).lower()})
    return RedirectResponse(f"{settings.frontend_url}/auth/sso/callback?{query}", status_code=302)


@router.post("/callback", response_model=SsoStartResponse)
def sso_callback(
    body: SsoTokenRequest,
    client: ClientMeta = Depends(get_client_meta),
    flow: AuthFlow = Depends(get_auth_flow),
):
    """Verify an assertion, provision or reconcile the user, and open a session."""
    return _sso_response(flow.sso_login(body.token, client))


@router.post("/verify", response_model=SsoVerifyResponse)
def verify_sso_token(body: SsoTokenRequest, flow: AuthFlow = Depends(get_auth_flow)):
    """Validate an assertion without creating a session."""
    assertion = flow.verify_assertion(body.token)
    return SsoVerifyResponse(user=assertion.public_dict(), expires_at=assertion.expires_at)
