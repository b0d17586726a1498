"""Shared fixtures for backend tests."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Point the app at a throwaway SQLite file before any app module builds its engine
TEST_DB_DIR = tempfile.TemporaryDirectory()
TEST_DB_PATH = Path(TEST_DB_DIR.name) / "selftest_test.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["NEON_DATABASE_URL"] = ""
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id.apps.googleusercontent.com"

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.auth import GoogleProfile  # noqa: E402
from app.core.rate_limit import SlidingWindowLimiter  # noqa: E402
from app.models.base import Base  # noqa: E402

T0 = 1_760_000_000.0  # fixed epoch seconds for deterministic windows


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_ms(self, ms: int) -> None:
        self.now += ms / 1000


class BrokenSessionFactory:
    """Session factory whose sessions fail on first use."""

    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        raise ConnectionError("database is unreachable")


def never() -> float:
    """RNG stub that never triggers opportunistic cleanup."""
    return 0.99


def always() -> float:
    """RNG stub that always triggers opportunistic cleanup."""
    return 0.0


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(session_factory, clock) -> SlidingWindowLimiter:
    return SlidingWindowLimiter(session_factory, clock=clock, rng=never)


@pytest.fixture
async def client():
    """ASGI client against the real app, on a freshly emptied database."""
    from app.core.rate_limit import get_rate_limiter
    from app.db import engine, ensure_schema
    from app.main import app

    await ensure_schema()
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    await get_rate_limiter().drain()
    await engine.dispose()


def make_paper(num_questions: int = 2, options: int = 4, topic: str = "Photosynthesis") -> dict:
    """Factory helper for a valid generated question paper."""
    questions = []
    for i in range(num_questions):
        opts = [f"Option {i}-{j}" for j in range(options)]
        questions.append({"question": f"Question {i}?", "options": opts, "answer": opts[0]})
    return {"topic": topic, "questions": questions}


def stub_google(monkeypatch, error: Exception | None = None) -> None:
    """Replace Google credential verification in the auth routes."""

    async def fake_verify(credential, client=None):
        if error is not None:
            raise error
        return GoogleProfile(google_sub="google-sub-1", email="ada@example.com", name="Ada Lovelace")

    monkeypatch.setattr("app.routes.auth.verify_google_credential", fake_verify)


def session_cookie(resp) -> str:
    """Raw session token from a sign-in response's Set-Cookie header."""
    name, _, rest = resp.headers["set-cookie"].partition("=")
    assert name == "selftest_session"
    return rest.split(";")[0]


async def sign_in(client, monkeypatch) -> dict[str, str]:
    """Sign in through the API and return headers carrying the session cookie."""
    stub_google(monkeypatch)
    resp = await client.post("/api/auth/google", json={"credential": "cred"})
    assert resp.status_code == 200
    token = session_cookie(resp)
    client.cookies.clear()
    return {"Cookie": f"selftest_session={token}"}
