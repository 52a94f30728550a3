from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Response

from credgate.api.schemas import (
    ActionResponse,
    Envelope,
    LoginRequest,
    NewPasswordRequest,
    RegisterRequest,
    ResetRequest,
    SessionResponse,
    SettingsRequest,
    VerifyEmailRequest,
)
from credgate.logging import get_logger
from credgate.service.authz import Decision, admin_action, authorize
from credgate.service.errors import AuthenticationError, ForbiddenError
from credgate.service.outcomes import AuthResult, Messages, Reason
from credgate.service.runtime import get_runtime
from credgate.service.sessions import SessionClaims
from credgate.storage.models import UserRole

logger = get_logger(__name__)

router = APIRouter()

SESSION_COOKIE = "session_token"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_optional_session(
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Cookie(None),
) -> Optional[SessionClaims]:
    """Decode the caller's session from the bearer header or cookie, if any."""
    runtime = get_runtime()
    token = _bearer_token(authorization) or session_token
    return runtime.auth.read_session(token)


async def get_session(
    session: Optional[SessionClaims] = Depends(get_optional_session),
) -> SessionClaims:
    if session is None:
        raise AuthenticationError(Messages.UNAUTHORIZED)
    return session


def _set_session_cookie(response: Response, token: str) -> None:
    runtime = get_runtime()
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
        max_age=runtime.settings.session_ttl_minutes * 60,
        path="/",
    )


def _result_envelope(result: AuthResult, response: Optional[Response] = None) -> Envelope:
    if response is not None and result.session_token:
        _set_session_cookie(response, result.session_token)
    return Envelope(status="ok", data=ActionResponse.from_result(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Attempt a credentials sign-in.

    The result status is one of success, error, two_factor or
    email_unverified. On success the session cookie is set.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        {"email": body.email, "password": body.password},
        body.code,
        redirect_to=body.redirect_to,
    )
    return _result_envelope(result, response)


@router.post("/auth/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    result = await runtime.auth.register(body)
    return _result_envelope(result)


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    result = await runtime.auth.verify_email(body.token)
    return _result_envelope(result)


@router.post("/auth/reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: ResetRequest):
    runtime = get_runtime()
    result = await runtime.auth.request_password_reset(body)
    return _result_envelope(result)


@router.post("/auth/new-password", response_model=Envelope, tags=["auth"])
async def complete_password_reset(body: NewPasswordRequest):
    runtime = get_runtime()
    result = await runtime.auth.complete_password_reset(
        body.token,
        {"password": body.password, "confirm_password": body.confirm_password},
    )
    return _result_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    # Sessions are stateless; dropping the cookie is the whole sign-out
    response.delete_cookie(SESSION_COOKIE, path="/")
    logger.info("session_cookie_cleared")
    return Envelope(status="ok", data={"signed_out": True})


@router.get("/me", response_model=Envelope, tags=["session"])
async def current_session(session: SessionClaims = Depends(get_session)):
    return Envelope(status="ok", data=SessionResponse.from_claims(session))


@router.patch("/settings", response_model=Envelope, tags=["session"])
async def update_settings(
    body: SettingsRequest,
    response: Response,
    session: Optional[SessionClaims] = Depends(get_optional_session),
):
    runtime = get_runtime()
    result = await runtime.auth.update_settings(session, body.model_dump(exclude_none=True))
    if result.reason is Reason.UNAUTHORIZED:
        raise AuthenticationError(result.message)
    return _result_envelope(result, response)


@router.get("/admin", tags=["admin"])
async def admin_check(session: Optional[SessionClaims] = Depends(get_optional_session)):
    """Status-only gate check: 200 for admins, 403 for everyone else."""
    role = session.role if session else None
    if authorize(role, UserRole.ADMIN) is Decision.ALLOWED:
        return Response(status_code=200)
    return Response(status_code=403)


@router.post("/admin/action", response_model=Envelope, tags=["admin"])
async def run_admin_action(session: SessionClaims = Depends(get_session)):
    result = admin_action(session)
    if not result.ok:
        raise ForbiddenError(result.message)
    return Envelope(status="ok", data=ActionResponse.from_result(result))
