"""Server-side copy of a signed-in user's storage snapshot and test attempts."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.quiz_test import QuizTest
from app.models.schemas import AttemptIn, AttemptOut
from app.models.user_state import UserStorageState, UserTestAttempt

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_PER_UPDATE = 300
MAX_ATTEMPTS_LISTED = 200


def sanitize_storage(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def sanitize_attempts(value: Any) -> list[AttemptIn]:
    """Keep at most the first 300 entries, dropping any that do not parse.

    Later entries for the same test replace earlier ones.
    """
    if not isinstance(value, list):
        return []

    by_test: dict[int, AttemptIn] = {}
    for raw in value[:MAX_ATTEMPTS_PER_UPDATE]:
        try:
            attempt = AttemptIn.model_validate(raw)
        except ValidationError:
            continue
        by_test[attempt.test_id] = attempt
    return list(by_test.values())


async def get_storage_state(user_id: str, session: AsyncSession) -> dict[str, Any]:
    row = await session.get(UserStorageState, user_id)
    return dict(row.storage or {}) if row else {}


async def upsert_storage_state(
    user_id: str, storage: dict[str, Any], session: AsyncSession
) -> dict[str, Any]:
    """Replace the stored snapshot with ``storage``."""
    row = await session.get(UserStorageState, user_id)
    if row is None:
        session.add(UserStorageState(user_id=user_id, storage=storage))
    else:
        row.storage = storage
    await session.commit()
    return storage


async def list_attempts(
    user_id: str, session: AsyncSession, *, limit: int = MAX_ATTEMPTS_LISTED
) -> list[AttemptOut]:
    """Newest submissions first, each with the stored test it belongs to."""
    result = await session.execute(
        select(UserTestAttempt, QuizTest)
        .outerjoin(QuizTest, QuizTest.id == UserTestAttempt.test_id)
        .where(UserTestAttempt.user_id == user_id)
        .order_by(UserTestAttempt.submitted_at.desc(), UserTestAttempt.test_id.desc())
        .limit(limit)
    )
    return [
        AttemptOut(
            test_id=attempt.test_id,
            user_answers=attempt.user_answers or {},
            score=attempt.score,
            total_questions=attempt.total_questions,
            time_taken=attempt.time_taken,
            submitted_at=attempt.submitted_at,
            metadata=attempt.metadata_json or {},
            test=test.test if test else None,
            test_created_at=test.created_at if test else None,
        )
        for attempt, test in result.all()
    ]


def _apply_attempt(row: UserTestAttempt, attempt: AttemptIn) -> None:
    row.user_answers = attempt.user_answers
    row.score = attempt.score
    row.total_questions = attempt.total_questions
    row.time_taken = attempt.time_taken
    row.submitted_at = attempt.submitted_at
    row.metadata_json = attempt.metadata


async def _write_attempts(
    user_id: str, attempts: list[AttemptIn], session: AsyncSession
) -> list[UserTestAttempt]:
    test_ids = [a.test_id for a in attempts]
    known = set(
        (await session.execute(select(QuizTest.id).where(QuizTest.id.in_(test_ids)))).scalars()
    )
    existing = {
        row.test_id: row
        for row in (
            await session.execute(
                select(UserTestAttempt).where(
                    UserTestAttempt.user_id == user_id,
                    UserTestAttempt.test_id.in_(test_ids),
                )
            )
        ).scalars()
    }

    written: list[UserTestAttempt] = []
    for attempt in attempts:
        if attempt.test_id not in known:
            continue
        row = existing.get(attempt.test_id)
        if row is None:
            row = UserTestAttempt(user_id=user_id, test_id=attempt.test_id)
            session.add(row)
        _apply_attempt(row, attempt)
        written.append(row)

    await session.commit()
    return written


async def upsert_attempts(
    user_id: str, attempts: list[AttemptIn], session: AsyncSession
) -> list[UserTestAttempt]:
    """Insert or update one attempt per (user, test). Attempts for unknown tests are skipped."""
    if not attempts:
        return []
    try:
        return await _write_attempts(user_id, attempts, session)
    except IntegrityError:
        # A concurrent update inserted the same (user, test) first
        await session.rollback()
        logger.warning("Retrying attempt upsert after a conflict: user_id=%s", user_id)
        return await _write_attempts(user_id, attempts, session)
