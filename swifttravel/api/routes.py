from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from swifttravel.api.schemas import (
    LogoutResponse,
    MagicLinkRequest,
    MagicLinkResponse,
    ProfileResponse,
    UpdateProfileRequest,
    UserResponse,
    VerifyTokenRequest,
    VerifyTokenResponse,
)
from swifttravel.logging import get_logger
from swifttravel.service.runtime import get_runtime
from swifttravel.service.sessions import (
    SESSION_COOKIE,
    AuthContext,
    IncomingAuthRequest,
    IssuedSession,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


async def get_auth_context(request: Request) -> AuthContext:
    """Resolve the caller's session from the bearer header or session cookie."""
    runtime = get_runtime()
    return await runtime.sessions.validate(
        IncomingAuthRequest.from_headers(request.headers)
    )


def _apply_session_cookie(response: Response, session: IssuedSession) -> None:
    response.set_cookie(
        key=SESSION_COOKIE,
        value=session.token,
        max_age=session.max_age_seconds,
        path="/",
        secure=True,
        httponly=True,
        samesite="strict",
    )


def _clear_session_cookie(response: Response) -> None:
    response.set_cookie(
        key=SESSION_COOKIE,
        value="",
        max_age=0,
        path="/",
        secure=True,
        httponly=True,
        samesite="strict",
    )


@router.post("/magic-link", response_model=MagicLinkResponse)
async def request_magic_link(body: MagicLinkRequest, response: Response):
    """Email a single-use sign-in link.

    Raises:
        400: If the email address is malformed
        429: If the per-email request limit for the window is exhausted
        500: If the link could not be stored or delivered
    """
    runtime = get_runtime()
    result = await runtime.magic_links.issue(body.email)
    response.headers["X-RateLimit-Limit"] = str(runtime.rate_limiter.max_per_window)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    return MagicLinkResponse()


@router.post("/verify", response_model=VerifyTokenResponse)
async def verify_magic_link(body: VerifyTokenRequest, response: Response):
    """Exchange a magic-link token for a session.

    The token is consumed on first use. The session JWT is returned in the
    body and set as an HttpOnly ``session`` cookie.
    """
    runtime = get_runtime()
    result = await runtime.verifier.verify(body.token)
    _apply_session_cookie(response, result.session)
    return VerifyTokenResponse(
        user=UserResponse.from_user(result.user),
        session_token=result.session.token,
    )


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = runtime.users.get_profile(principal.user.user_id)
    return ProfileResponse(user=UserResponse.from_user(user))


@router.put("/profile", response_model=ProfileResponse)
async def update_profile(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_auth_context)
):
    """Update the caller's name and merge preference changes."""
    runtime = get_runtime()
    user = runtime.users.update_profile(
        principal.user.user_id,
        name=body.name,
        preferences=body.preferences.as_document() if body.preferences else None,
    )
    return ProfileResponse(user=UserResponse.from_user(user))


@router.post("/logout", response_model=LogoutResponse)
async def logout(response: Response, principal: AuthContext = Depends(get_auth_context)):
    """Revoke the current session and clear its cookie."""
    runtime = get_runtime()
    await runtime.sessions.revoke_session(principal.session_token)
    _clear_session_cookie(response)
    logger.info("user_logged_out", user_id=principal.user.user_id)
    return LogoutResponse()
