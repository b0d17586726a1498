"""Tests for backend/app/core/rate_limit.py."""

from __future__ import annotations

import asyncio
import datetime
import logging

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.rate_limit import (
    RateLimitPolicy,
    RateLimitResult,
    SlidingWindowLimiter,
    rate_limit_headers,
)
from app.models.base import Base
from app.models.rate_limit import RateLimitEvent
from tests.conftest import T0, BrokenSessionFactory, FakeClock, always, never

T0_MS = round(T0 * 1000)
LIMIT = 10
WINDOW_MS = 60_000


async def count_rows(session_factory, **filters) -> int:
    stmt = select(func.count()).select_from(RateLimitEvent)
    for column, value in filters.items():
        stmt = stmt.where(getattr(RateLimitEvent, column) == value)
    async with session_factory() as session:
        return (await session.execute(stmt)).scalar_one()


# ── RateLimitPolicy ──────────────────────────────────────────────────


class TestRateLimitPolicy:
    def test_defaults(self):
        policy = RateLimitPolicy()
        assert policy.limit == 10
        assert policy.window_ms == 60_000
        assert policy.bucket is None

    @pytest.mark.parametrize("limit", [0, -1])
    def test_rejects_non_positive_limit(self, limit):
        with pytest.raises(ValueError):
            RateLimitPolicy(limit=limit)

    @pytest.mark.parametrize("window_ms", [0, -60_000])
    def test_rejects_non_positive_window(self, window_ms):
        with pytest.raises(ValueError):
            RateLimitPolicy(window_ms=window_ms)

    def test_rejects_blank_bucket(self):
        with pytest.raises(ValueError):
            RateLimitPolicy(bucket="   ")


# ── RateLimitResult ──────────────────────────────────────────────────


class TestRateLimitResult:
    def test_states(self):
        assert RateLimitResult(limited=False, remaining=3, reset_time=0).state == "within_limit"
        assert RateLimitResult(limited=False, remaining=0, reset_time=0).state == "at_limit"
        assert RateLimitResult(limited=True, remaining=0, reset_time=0).state == "over_limit"

    def test_reset_at_is_utc(self):
        result = RateLimitResult(limited=False, remaining=1, reset_time=T0_MS + WINDOW_MS)
        assert result.reset_at == datetime.datetime.fromtimestamp(T0 + 60, tz=datetime.timezone.utc)

    def test_headers(self):
        policy = RateLimitPolicy(limit=30)
        result = RateLimitResult(limited=False, remaining=29, reset_time=T0_MS + WINDOW_MS)
        assert rate_limit_headers(policy, result) == {
            "X-RateLimit-Limit": "30",
            "X-RateLimit-Remaining": "29",
            "X-RateLimit-Reset": str(T0_MS + WINDOW_MS),
        }


# ── Sliding window ───────────────────────────────────────────────────


class TestSlidingWindow:
    async def test_first_hit_counts_itself(self, limiter):
        window = await limiter.hit("abc", "/api/explain", WINDOW_MS)
        assert window.count == 1
        assert window.reset_time == T0_MS + WINDOW_MS

    async def test_every_check_writes_one_row(self, limiter, session_factory):
        for _ in range(LIMIT + 3):
            await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        assert await count_rows(session_factory, client_key="abc") == LIMIT + 3

    async def test_peek_does_not_record(self, limiter, session_factory):
        await limiter.hit("abc", "/api/explain", WINDOW_MS)
        window = await limiter.peek("abc", "/api/explain", WINDOW_MS)
        assert window.count == 1
        assert await count_rows(session_factory) == 1

    async def test_peek_on_empty_window_resets_from_now(self, limiter):
        window = await limiter.peek("nobody", "/api/explain", WINDOW_MS)
        assert window.count == 0
        assert window.reset_time == T0_MS + WINDOW_MS

    async def test_reset_tracks_oldest_row_in_window(self, limiter, clock):
        await limiter.hit("abc", "/api/explain", WINDOW_MS)
        clock.advance(20)
        window = await limiter.hit("abc", "/api/explain", WINDOW_MS)
        assert window.count == 2
        assert window.reset_time == T0_MS + WINDOW_MS

        clock.advance(45)  # first hit is now outside the window
        window = await limiter.hit("abc", "/api/explain", WINDOW_MS)
        assert window.count == 2
        assert window.reset_time == T0_MS + 20_000 + WINDOW_MS

    async def test_row_exactly_window_old_is_excluded(self, limiter, clock):
        await limiter.hit("abc", "/api/explain", WINDOW_MS)
        clock.advance_ms(WINDOW_MS)
        window = await limiter.hit("abc", "/api/explain", WINDOW_MS)
        assert window.count == 1


# ── Decision gate ────────────────────────────────────────────────────


class TestDecisionGate:
    async def test_calls_up_to_limit_are_allowed(self, limiter):
        for _ in range(LIMIT):
            result = await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
            assert result.limited is False

    async def test_remaining_counts_down_then_limits(self, limiter, clock):
        remaining = []
        for _ in range(LIMIT):
            result = await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
            remaining.append(result.remaining)
            clock.advance_ms(1)
        assert remaining == [9, 8, 7, 6, 5, 4, 3, 2, 1, 0]

        eleventh = await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        assert eleventh.limited is True
        assert eleventh.remaining == 0
        assert eleventh.state == "over_limit"
        assert eleventh.reset_time == T0_MS + WINDOW_MS

    async def test_limit_th_call_is_at_limit(self, limiter):
        for _ in range(LIMIT - 1):
            await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        result = await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        assert result.limited is False
        assert result.state == "at_limit"

    async def test_window_slides_after_reset_time(self, limiter, clock):
        first = await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        for _ in range(LIMIT):
            await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)

        clock.now = first.reset_time / 1000 + 0.001
        result = await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        assert result.limited is False
        assert result.remaining == LIMIT - 1

    async def test_denied_calls_keep_counting(self, limiter, clock):
        for _ in range(LIMIT + 1):
            await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)

        clock.advance(30)
        for _ in range(5):
            await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)

        # The original burst expires but the five denied retries are still in the window
        clock.advance(31)
        result = await limiter.check("abc", "/api/explain", limit=5, window_ms=WINDOW_MS)
        assert result.limited is True

    async def test_routes_are_independent(self, limiter):
        for _ in range(LIMIT + 1):
            await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        result = await limiter.check("abc", "/api/generate", limit=LIMIT, window_ms=WINDOW_MS)
        assert result.limited is False
        assert result.remaining == LIMIT - 1

    async def test_client_keys_are_independent(self, limiter):
        for _ in range(LIMIT):
            a = await limiter.check("client-a", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
            b = await limiter.check("client-b", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
            assert a.limited is False
            assert b.limited is False
        assert a.remaining == 0
        assert b.remaining == 0

    async def test_concurrent_clients_do_not_share_counts(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}", poolclass=NullPool)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        limiter = SlidingWindowLimiter(factory, clock=FakeClock(), rng=never)

        async def burst(client_key: str) -> list[RateLimitResult]:
            return [
                await limiter.check(client_key, "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
                for _ in range(LIMIT)
            ]

        try:
            results_a, results_b = await asyncio.gather(burst("client-a"), burst("client-b"))
        finally:
            await engine.dispose()

        assert not any(r.limited for r in results_a + results_b)
        assert sorted(r.remaining for r in results_a) == list(range(LIMIT))
        assert sorted(r.remaining for r in results_b) == list(range(LIMIT))


# ── Fail-open guard ──────────────────────────────────────────────────


class TestFailOpen:
    async def test_storage_errors_allow_every_call(self, clock, caplog):
        limiter = SlidingWindowLimiter(BrokenSessionFactory(), clock=clock, rng=never)
        with caplog.at_level(logging.ERROR, logger="app.core.rate_limit"):
            for _ in range(LIMIT * 2):
                result = await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
                assert result == RateLimitResult(
                    limited=False, remaining=LIMIT, reset_time=T0_MS + WINDOW_MS
                )
        assert "fail-open" in caplog.text

    async def test_bootstrap_failure_fails_open(self, session_factory, clock):
        async def broken_bootstrap():
            raise RuntimeError("cannot create tables")

        limiter = SlidingWindowLimiter(session_factory, bootstrap=broken_bootstrap, clock=clock, rng=never)
        result = await limiter.check("abc", "/api/explain", limit=3, window_ms=1_000)
        assert result == RateLimitResult(limited=False, remaining=3, reset_time=T0_MS + 1_000)

    async def test_hung_store_fails_open_after_timeout(self, session_factory, clock):
        async def slow_bootstrap():
            await asyncio.sleep(5)

        limiter = SlidingWindowLimiter(
            session_factory, bootstrap=slow_bootstrap, clock=clock, rng=never, timeout_s=0.05
        )
        result = await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        assert result.limited is False
        assert result.remaining == LIMIT


# ── Opportunistic cleanup ────────────────────────────────────────────


class TestCleanup:
    async def test_prune_removes_only_expired_rows(self, limiter, session_factory, clock):
        clock.advance(-3 * 86_400)
        await limiter.hit("abc", "/api/explain", WINDOW_MS)
        clock.advance(3 * 86_400)
        await limiter.hit("abc", "/api/explain", WINDOW_MS)

        assert await limiter.prune() == 1
        assert await count_rows(session_factory) == 1

    async def test_prune_respects_retention_days(self, session_factory, clock):
        limiter = SlidingWindowLimiter(session_factory, clock=clock, rng=never, retention_days=7)
        clock.advance(-3 * 86_400)
        await limiter.hit("abc", "/api/explain", WINDOW_MS)
        clock.advance(3 * 86_400)
        assert await limiter.prune() == 0

    async def test_check_schedules_background_cleanup(self, session_factory, clock):
        limiter = SlidingWindowLimiter(session_factory, clock=clock, rng=always)
        clock.advance(-3 * 86_400)
        await limiter.hit("abc", "/api/explain", WINDOW_MS)
        clock.advance(3 * 86_400)

        await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        await limiter.drain()
        assert await count_rows(session_factory) == 1

    async def test_no_cleanup_when_rng_misses(self, session_factory, clock):
        limiter = SlidingWindowLimiter(session_factory, clock=clock, rng=never)
        clock.advance(-3 * 86_400)
        await limiter.hit("abc", "/api/explain", WINDOW_MS)
        clock.advance(3 * 86_400)

        await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
        await limiter.drain()
        assert await count_rows(session_factory) == 2

    async def test_cleanup_failure_is_swallowed(self, session_factory, clock, caplog):
        limiter = SlidingWindowLimiter(session_factory, clock=clock, rng=always)

        async def broken_prune():
            raise RuntimeError("delete failed")

        limiter.prune = broken_prune
        with caplog.at_level(logging.ERROR, logger="app.core.rate_limit"):
            result = await limiter.check("abc", "/api/explain", limit=LIMIT, window_ms=WINDOW_MS)
            await limiter.drain()

        assert result.limited is False
        assert result.remaining == LIMIT - 1
        assert "Rate limit cleanup failed" in caplog.text
