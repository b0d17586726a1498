"""Sliding-window request throttling backed by the shared database.

Every throttled request inserts one RateLimitEvent row and then counts the
rows for the same (client_key, route) inside the trailing window. The counter
lives in the database so that all API instances see the same totals.

Failures of the backing store never block a request: the limiter logs the
error and lets the request through (fail-open).
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request, Response, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.api_events import log_api_event
from app.core.audit import log_rate_limit, log_rate_limit_fail_open
from app.core.client_key import get_client_key
from app.core.config import settings
from app.db import async_session, ensure_schema
from app.models.rate_limit import RateLimitEvent

logger = logging.getLogger(__name__)

API_LIMIT_ERROR_CODE = "API_LIMIT_EXCEEDED"

DEFAULT_LIMIT = 10
DEFAULT_WINDOW_MS = 60_000


def _to_datetime(epoch_s: float) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(epoch_s, tz=datetime.timezone.utc)


def _to_epoch_ms(value: datetime.datetime) -> int:
    # SQLite hands back naive datetimes; everything is written in UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return round(value.timestamp() * 1000)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limit and window for one throttled bucket.

    ``bucket`` defaults to the request path when left unset.
    """

    bucket: str | None = None
    limit: int = DEFAULT_LIMIT
    window_ms: int = DEFAULT_WINDOW_MS

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"Rate limit must be at least 1, got {self.limit}")
        if self.window_ms < 1:
            raise ValueError(f"Rate limit window must be positive, got {self.window_ms}ms")
        if self.bucket is not None and not self.bucket.strip():
            raise ValueError("Rate limit bucket must not be blank")

    def bucket_for(self, request: Request) -> str:
        return self.bucket or request.url.path or "global"


@dataclass(frozen=True)
class WindowHit:
    count: int
    reset_time: int  # epoch ms


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    remaining: int
    reset_time: int  # epoch ms

    @property
    def state(self) -> str:
        if self.limited:
            return "over_limit"
        if self.remaining == 0:
            return "at_limit"
        return "within_limit"

    @property
    def reset_at(self) -> datetime.datetime:
        return _to_datetime(self.reset_time / 1000)


class SlidingWindowLimiter:
    """Database-backed sliding-window counter with a fail-open decision gate.

    Args:
        session_factory: Produces sessions against the shared store.
        bootstrap: Awaited before each decision to make sure tables exist.
        clock: Returns the current time in epoch seconds.
        rng: Returns a float in [0, 1); compared against ``cleanup_probability``.
        cleanup_probability: Chance per decision of pruning old events.
        retention_days: Age after which events are pruned.
        timeout_s: Upper bound for one decision; exceeding it fails open.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        bootstrap: Callable[[], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
        cleanup_probability: float = 0.02,
        retention_days: int = 2,
        timeout_s: float | None = None,
    ):
        self.session_factory = session_factory
        self.bootstrap = bootstrap
        self.clock = clock
        self.rng = rng
        self.cleanup_probability = cleanup_probability
        self.retention_days = retention_days
        self.timeout_s = timeout_s
        self._background: set[asyncio.Task] = set()

    def now_ms(self) -> int:
        return round(self.clock() * 1000)

    async def _count_window(
        self, session: AsyncSession, client_key: str, route: str, window_ms: int, now: float
    ) -> WindowHit:
        cutoff = _to_datetime(now) - datetime.timedelta(milliseconds=window_ms)
        result = await session.execute(
            select(func.count(), func.min(RateLimitEvent.created_at)).where(
                RateLimitEvent.client_key == client_key,
                RateLimitEvent.route == route,
                RateLimitEvent.created_at > cutoff,
            )
        )
        count, oldest = result.one()
        if oldest is None:
            reset_time = round(now * 1000) + window_ms
        else:
            reset_time = _to_epoch_ms(oldest) + window_ms
        return WindowHit(count=count or 0, reset_time=reset_time)

    async def hit(self, client_key: str, route: str, window_ms: int) -> WindowHit:
        """Record one attempt and count the attempts inside the trailing window."""
        now = self.clock()
        async with self.session_factory() as session:
            session.add(
                RateLimitEvent(client_key=client_key, route=route, created_at=_to_datetime(now))
            )
            await session.flush()
            window = await self._count_window(session, client_key, route, window_ms, now)
            await session.commit()
        return window

    async def peek(self, client_key: str, route: str, window_ms: int) -> WindowHit:
        """Count the attempts inside the trailing window without recording one."""
        if self.bootstrap is not None:
            await self.bootstrap()
        async with self.session_factory() as session:
            return await self._count_window(session, client_key, route, window_ms, self.clock())

    async def _decide(self, client_key: str, route: str, limit: int, window_ms: int) -> RateLimitResult:
        if self.bootstrap is not None:
            await self.bootstrap()

        window = await self.hit(client_key, route, window_ms)
        self._maybe_schedule_cleanup()

        if window.count > limit:
            return RateLimitResult(limited=True, remaining=0, reset_time=window.reset_time)
        return RateLimitResult(
            limited=False,
            remaining=max(0, limit - window.count),
            reset_time=window.reset_time,
        )

    async def check(
        self,
        client_key: str,
        route: str,
        *,
        limit: int = DEFAULT_LIMIT,
        window_ms: int = DEFAULT_WINDOW_MS,
    ) -> RateLimitResult:
        """Count this attempt and decide whether it is over the limit.

        Never raises: any storage error or timeout yields an allowing result
        with the full limit remaining.
        """
        try:
            decision = self._decide(client_key, route, limit, window_ms)
            if self.timeout_s:
                return await asyncio.wait_for(decision, self.timeout_s)
            return await decision
        except Exception as exc:
            logger.error("Rate limiter fallback (fail-open): route=%s", route, exc_info=True)
            log_rate_limit_fail_open(route=route, client_key=client_key, error=repr(exc))
            return RateLimitResult(
                limited=False,
                remaining=limit,
                reset_time=self.now_ms() + window_ms,
            )

    async def prune(self) -> int:
        """Delete events older than the retention horizon. Returns rows removed."""
        if self.bootstrap is not None:
            await self.bootstrap()
        cutoff = _to_datetime(self.clock()) - datetime.timedelta(days=self.retention_days)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(RateLimitEvent).where(RateLimitEvent.created_at < cutoff)
            )
            await session.commit()
        return result.rowcount or 0

    async def _prune_quietly(self) -> None:
        try:
            deleted = await self.prune()
            logger.debug("Pruned %d rate limit events", deleted)
        except Exception:
            logger.error("Rate limit cleanup failed", exc_info=True)

    def _maybe_schedule_cleanup(self) -> None:
        if self.rng() >= self.cleanup_probability:
            return
        task = asyncio.get_running_loop().create_task(self._prune_quietly())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for any cleanup tasks still in flight."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


_limiter: SlidingWindowLimiter | None = None


def get_rate_limiter() -> SlidingWindowLimiter:
    global _limiter
    if _limiter is None:
        _limiter = SlidingWindowLimiter(
            async_session,
            bootstrap=ensure_schema,
            cleanup_probability=settings.rate_limit_cleanup_probability,
            retention_days=settings.rate_limit_retention_days,
            timeout_s=settings.rate_limit_timeout_seconds,
        )
    return _limiter


def default_policy(bucket: str | None = None) -> RateLimitPolicy:
    return RateLimitPolicy(
        bucket=bucket,
        limit=settings.rate_limit_default_limit,
        window_ms=settings.rate_limit_default_window_ms,
    )


async def throttle(
    request: Request,
    policy: RateLimitPolicy | None = None,
    limiter: SlidingWindowLimiter | None = None,
) -> RateLimitResult:
    policy = policy or default_policy()
    limiter = limiter or get_rate_limiter()
    return await limiter.check(
        get_client_key(request),
        policy.bucket_for(request),
        limit=policy.limit,
        window_ms=policy.window_ms,
    )


def rate_limit_headers(policy: RateLimitPolicy, result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(policy.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_time),
    }


def rate_limit(
    bucket: str | None = None,
    *,
    limit: int | None = None,
    window_ms: int | None = None,
    action: str | None = None,
    message: str = "Rate limit exceeded. Please try again later.",
):
    """Build a FastAPI dependency that throttles the route it is attached to.

    Allowed requests get the X-RateLimit-* headers on their response. Limited
    requests are logged and rejected with 429 and an ``API_LIMIT_EXCEEDED``
    error code.
    """
    policy = RateLimitPolicy(
        bucket=bucket,
        limit=limit if limit is not None else settings.rate_limit_default_limit,
        window_ms=window_ms if window_ms is not None else settings.rate_limit_default_window_ms,
    )

    async def dependency(request: Request, response: Response) -> RateLimitResult:
        started = time.monotonic()
        result = await throttle(request, policy)
        headers = rate_limit_headers(policy, result)

        if result.limited:
            client_key = get_client_key(request)
            log_rate_limit(
                client_key=client_key,
                route=policy.bucket_for(request),
                limit=policy.limit,
                window_ms=policy.window_ms,
                reset_time=result.reset_time,
            )
            await log_api_event(
                request.url.path,
                action=action,
                client_key=client_key,
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": message,
                    "code": API_LIMIT_ERROR_CODE,
                    "reset_time": result.reset_at.isoformat(),
                    "remaining": result.remaining,
                },
                headers=headers,
            )

        response.headers.update(headers)
        return result

    return dependency
