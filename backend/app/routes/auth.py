import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.api_events import ApiEventRecorder
from app.core.audit import log_auth_event
from app.core.auth import (
    GoogleAuthError,
    clear_session_cookie,
    create_session_for_user,
    get_session_token,
    resolve_session,
    revoke_session,
    set_session_cookie,
    upsert_google_user,
    verify_google_credential,
)
from app.core.client_key import get_client_key
from app.core.rate_limit import rate_limit
from app.db import get_session
from app.models.schemas import AuthResponse, GoogleCredentialRequest, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post(
    "/google",
    response_model=AuthResponse,
    dependencies=[Depends(rate_limit("/api/auth/google", limit=20, action="google_sign_in"))],
)
async def google_sign_in(
    body: GoogleCredentialRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    client_key = get_client_key(request)
    recorder = ApiEventRecorder("/api/auth/google", "google_sign_in", client_key)

    if not body.credential:
        await recorder.record(status.HTTP_400_BAD_REQUEST, error_message="Google credential is required")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Google credential is required",
        )

    try:
        profile = await verify_google_credential(body.credential)
        user = await upsert_google_user(profile, session)
        raw_token, expires_at = await create_session_for_user(user.id, session)
    except GoogleAuthError as exc:
        log_auth_event("google_sign_in", client_key=client_key, success=False, detail=str(exc))
        await recorder.record(status.HTTP_401_UNAUTHORIZED, error_message=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Google sign-in failed. Please retry.",
        )
    except Exception as exc:
        logger.error("Google sign-in failed", exc_info=True)
        await recorder.record(status.HTTP_500_INTERNAL_SERVER_ERROR, error_message=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to sign in right now.",
        )

    set_session_cookie(response, raw_token, expires_at)
    log_auth_event("google_sign_in", user_id=user.id, email=user.email, client_key=client_key)
    await recorder.record(status.HTTP_200_OK, metadata={"user_id": user.id, "email": user.email})
    return AuthResponse(user=UserResponse.model_validate(user))


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    client_key = get_client_key(request)
    recorder = ApiEventRecorder("/api/auth/logout", "logout", client_key)
    raw_token = get_session_token(request)
    try:
        if raw_token:
            await revoke_session(raw_token, session)
            log_auth_event("logout", client_key=client_key)
    except Exception as exc:
        logger.error("Failed to sign out", exc_info=True)
        await recorder.record(status.HTTP_500_INTERNAL_SERVER_ERROR, error_message=str(exc))
        failed = JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Failed to sign out"},
        )
        clear_session_cookie(failed)
        return failed

    clear_session_cookie(response)
    await recorder.record(status.HTTP_200_OK, metadata={"had_session": bool(raw_token)})
    return {"success": True}


@router.get("/me", response_model=AuthResponse)
async def get_me(
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    recorder = ApiEventRecorder("/api/auth/me", "get_current_user", get_client_key(request))
    try:
        resolved = await resolve_session(get_session_token(request), session, refresh=True)
    except Exception as exc:
        await recorder.record(status.HTTP_500_INTERNAL_SERVER_ERROR, error_message=str(exc))
        raise

    if resolved is None:
        response.status_code = status.HTTP_401_UNAUTHORIZED
        clear_session_cookie(response)
        await recorder.record(status.HTTP_401_UNAUTHORIZED, error_message="No active session")
        return AuthResponse(user=None)

    user_session, user = resolved
    set_session_cookie(response, get_session_token(request), user_session.expires_at)
    await recorder.record(status.HTTP_200_OK, metadata={"user_id": user.id})
    return AuthResponse(user=UserResponse.model_validate(user))
