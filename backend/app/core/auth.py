import datetime
import hashlib
import logging
import random
import secrets
from dataclasses import dataclass

import httpx
from fastapi import Depends, Request, Response
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db import get_session
from app.models.user import User, UserSession

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "selftest_session"
GOOGLE_TOKEN_INFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})
EXPIRED_SESSION_GRACE = datetime.timedelta(days=7)
SESSION_CLEANUP_PROBABILITY = 0.02


class GoogleAuthError(Exception):
    """Raised when a Google ID token cannot be verified."""


@dataclass(frozen=True)
class GoogleProfile:
    google_sub: str
    email: str
    name: str
    picture_url: str | None = None
    locale: str | None = None


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _aware(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


def hash_session_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


def session_ttl() -> datetime.timedelta:
    return datetime.timedelta(days=settings.session_ttl_days)


# ── Google credential verification ──────────────────────────────────────────


def parse_token_info(token_info: dict, expected_client_id: str) -> GoogleProfile:
    """Validate a tokeninfo payload and turn it into a profile."""
    expires_at = int(token_info.get("exp") or 0)
    if (
        token_info.get("aud") != expected_client_id
        or token_info.get("iss") not in GOOGLE_ISSUERS
        or not token_info.get("sub")
        or not expires_at
        or expires_at <= _now().timestamp()
    ):
        raise GoogleAuthError("Google credential validation failed")

    # tokeninfo returns booleans as strings
    if str(token_info.get("email_verified")).lower() != "true" or not token_info.get("email"):
        raise GoogleAuthError("Google account email is not verified")

    email = token_info["email"].lower()
    return GoogleProfile(
        google_sub=token_info["sub"],
        email=email,
        name=token_info.get("name") or token_info.get("given_name") or email,
        picture_url=token_info.get("picture"),
        locale=token_info.get("locale"),
    )


async def verify_google_credential(
    credential: str, client: httpx.AsyncClient | None = None
) -> GoogleProfile:
    if not settings.google_client_id:
        raise RuntimeError("GOOGLE_CLIENT_ID is not configured")

    if client is None:
        async with httpx.AsyncClient(timeout=10) as owned:
            resp = await owned.get(GOOGLE_TOKEN_INFO_URL, params={"id_token": credential})
    else:
        resp = await client.get(GOOGLE_TOKEN_INFO_URL, params={"id_token": credential})

    if resp.status_code != 200:
        raise GoogleAuthError("Invalid Google credential")

    return parse_token_info(resp.json(), settings.google_client_id)


# ── Users and sessions ──────────────────────────────────────────────────────


def _apply_profile(user: User, profile: GoogleProfile) -> None:
    user.google_sub = profile.google_sub
    user.email = profile.email
    user.name = profile.name
    user.picture_url = profile.picture_url
    user.locale = profile.locale
    user.last_login_at = _now()


async def _find_user(profile: GoogleProfile, session: AsyncSession) -> User | None:
    result = await session.execute(
        select(User)
        .where(or_(User.google_sub == profile.google_sub, User.email == profile.email))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def upsert_google_user(profile: GoogleProfile, session: AsyncSession) -> User:
    """Update the user matching the Google subject or email, else insert one."""
    user = await _find_user(profile, session)
    if user is not None:
        _apply_profile(user, profile)
        await session.commit()
        await session.refresh(user)
        return user

    user = User(google_sub=profile.google_sub, email=profile.email)
    _apply_profile(user, profile)
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        # Concurrent first sign-in won the unique constraint; use its row
        await session.rollback()
        user = await _find_user(profile, session)
        if user is None:
            raise
        _apply_profile(user, profile)
        await session.commit()

    await session.refresh(user)
    return user


async def _cleanup_expired_sessions_maybe(session: AsyncSession) -> None:
    if random.random() >= SESSION_CLEANUP_PROBABILITY:
        return
    try:
        await session.execute(
            delete(UserSession).where(UserSession.expires_at < _now() - EXPIRED_SESSION_GRACE)
        )
        await session.commit()
    except Exception:
        await session.rollback()
        logger.error("Failed to clean up expired auth sessions", exc_info=True)


async def create_session_for_user(
    user_id: str, session: AsyncSession
) -> tuple[str, datetime.datetime]:
    """Create a session and return the raw token (only ever held by the client)."""
    raw_token = secrets.token_urlsafe(32)
    expires_at = _now() + session_ttl()

    session.add(
        UserSession(
            user_id=user_id,
            session_token_hash=hash_session_token(raw_token),
            expires_at=expires_at,
            last_seen_at=_now(),
        )
    )
    await session.commit()
    await _cleanup_expired_sessions_maybe(session)
    return raw_token, expires_at


async def revoke_session(raw_token: str, session: AsyncSession) -> None:
    await session.execute(
        delete(UserSession).where(UserSession.session_token_hash == hash_session_token(raw_token))
    )
    await session.commit()


async def resolve_session(
    raw_token: str | None, session: AsyncSession, *, refresh: bool = False
) -> tuple[UserSession, User] | None:
    """Look up a live session by raw token, optionally sliding its expiry."""
    if not raw_token:
        return None

    result = await session.execute(
        select(UserSession, User)
        .join(User, User.id == UserSession.user_id)
        .where(
            UserSession.session_token_hash == hash_session_token(raw_token),
            UserSession.expires_at > _now(),
        )
        .limit(1)
    )
    row = result.first()
    if row is None:
        return None

    user_session, user = row
    if refresh:
        user_session.expires_at = _now() + session_ttl()
        user_session.last_seen_at = _now()
        await session.commit()
        await _cleanup_expired_sessions_maybe(session)
    return user_session, user


# ── Cookies ─────────────────────────────────────────────────────────────────


def set_session_cookie(response: Response, raw_token: str, expires_at: datetime.datetime) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        raw_token,
        expires=_aware(expires_at),
        httponly=True,
        secure=not settings.is_development,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        SESSION_COOKIE_NAME,
        httponly=True,
        secure=not settings.is_development,
        samesite="lax",
        path="/",
    )


def get_session_token(request: Request) -> str | None:
    return request.cookies.get(SESSION_COOKIE_NAME) or None


# ── Dependencies ────────────────────────────────────────────────────────────


async def get_optional_user(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> User | None:
    resolved = await resolve_session(get_session_token(request), session)
    return resolved[1] if resolved else None

