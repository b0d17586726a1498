import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.api_events import ApiEventRecorder
from app.core.auth import get_optional_user
from app.core.client_key import get_client_key
from app.core.rate_limit import rate_limit
from app.core.user_state import (
    get_storage_state,
    list_attempts,
    sanitize_attempts,
    sanitize_storage,
    upsert_attempts,
    upsert_storage_state,
)
from app.db import get_session
from app.models.schemas import UserStateResponse, UserStateUpdate, UserStateUpdateResponse
from app.models.user import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/user/state", tags=["user"])

ROUTE = "/api/user/state"
AUTH_REQUIRED = "Authentication required"


@router.get(
    "",
    response_model=UserStateResponse,
    dependencies=[
        Depends(
            rate_limit(
                f"{ROUTE}:get",
                limit=60,
                action="get_user_state",
                message="Too many requests. Please retry shortly.",
            )
        )
    ],
)
async def get_user_state(
    request: Request,
    user: User | None = Depends(get_optional_user),
    session: AsyncSession = Depends(get_session),
):
    recorder = ApiEventRecorder(ROUTE, "get_user_state", get_client_key(request))

    if user is None:
        await recorder.record(status.HTTP_401_UNAUTHORIZED, error_message=AUTH_REQUIRED)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=AUTH_REQUIRED)

    try:
        storage = await get_storage_state(user.id, session)
        attempts = await list_attempts(user.id, session)
    except Exception as exc:
        logger.error("Failed to fetch user state", exc_info=True)
        await recorder.record(status.HTTP_500_INTERNAL_SERVER_ERROR, error_message=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch user state",
        )

    await recorder.record(status.HTTP_200_OK, metadata={"attempts": len(attempts)})
    return UserStateResponse(storage=storage, attempts=attempts)


@router.post(
    "",
    response_model=UserStateUpdateResponse,
    dependencies=[
        Depends(
            rate_limit(
                f"{ROUTE}:post",
                limit=30,
                action="upsert_user_state",
                message="Too many updates. Please retry shortly.",
            )
        )
    ],
)
async def update_user_state(
    body: UserStateUpdate,
    request: Request,
    user: User | None = Depends(get_optional_user),
    session: AsyncSession = Depends(get_session),
):
    recorder = ApiEventRecorder(ROUTE, "upsert_user_state", get_client_key(request))

    if user is None:
        await recorder.record(status.HTTP_401_UNAUTHORIZED, error_message=AUTH_REQUIRED)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=AUTH_REQUIRED)

    try:
        storage = await upsert_storage_state(user.id, sanitize_storage(body.storage), session)
        written = await upsert_attempts(user.id, sanitize_attempts(body.attempts), session)
    except Exception as exc:
        logger.error("Failed to update user state", exc_info=True)
        await recorder.record(status.HTTP_500_INTERNAL_SERVER_ERROR, error_message=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update user state",
        )

    await recorder.record(
        status.HTTP_200_OK,
        metadata={"stored_keys": len(storage), "stored_attempts": len(written)},
    )
    return UserStateUpdateResponse(
        success=True, stored_keys=len(storage), stored_attempts=len(written)
    )
