"""Direct identity check endpoint."""
from fastapi import APIRouter, Depends

from app.api.deps import get_auth_flow, get_client_meta
from app.schemas.auth import IdentityCheckRequest, SessionStartResponse
from app.services.auth_flow import AuthFlow, SessionStart
from app.services.common import ClientMeta

router = APIRouter(prefix="/identity", tags=["identity"])


def session_start_fields(start: SessionStart) -> dict:
    """Fields shared by the direct-check and SSO session responses."""
    return {
        "session_id": start.session_id,
        "user_id": start.user.id,
        "email": start.user.email,
        "phone": start.user.phone,
        "username": start.user.username,
        "first_name": start.user.first_name,
        "last_name": start.user.last_name,
        "is_first_time": start.is_first_time,
        "next_step": start.next_step,
        "session_flags": start.flags,
        "message": start.message,
    }


@router.post("/check", response_model=SessionStartResponse)
def check_identity(
    body: IdentityCheckRequest,
    client: ClientMeta = Depends(get_client_meta),
    flow: AuthFlow = Depends(get_auth_flow),
):
    """Look up a registered user by email or phone and open an authentication session."""
    start = flow.check_identity(body.email, body.phone, client)
    return SessionStartResponse(**session_start_fields(start))
