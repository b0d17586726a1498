"""Tests for backend/app/core/api_events.py."""

from __future__ import annotations

import logging

from sqlalchemy import select

from app.core.api_events import ApiEventRecorder, log_api_event
from app.models.api_event import ApiRequestEvent
from tests.conftest import BrokenSessionFactory


async def fetch_events(session_factory) -> list[ApiRequestEvent]:
    async with session_factory() as session:
        result = await session.execute(select(ApiRequestEvent))
        return list(result.scalars().all())


class TestLogApiEvent:
    async def test_writes_one_row(self, session_factory):
        await log_api_event(
            "/api/explain",
            action="explain_answer",
            client_key="abc",
            status_code=200,
            duration_ms=12,
            metadata={"model": "gemini/test"},
            session_factory=session_factory,
        )
        events = await fetch_events(session_factory)
        assert len(events) == 1
        event = events[0]
        assert event.route == "/api/explain"
        assert event.action == "explain_answer"
        assert event.client_key == "abc"
        assert event.status_code == 200
        assert event.duration_ms == 12
        assert event.metadata_json == {"model": "gemini/test"}
        assert event.error_message is None

    async def test_metadata_defaults_to_empty_object(self, session_factory):
        await log_api_event("/api/test", session_factory=session_factory)
        events = await fetch_events(session_factory)
        assert events[0].metadata_json == {}

    async def test_store_failure_is_swallowed(self, caplog):
        factory = BrokenSessionFactory()
        with caplog.at_level(logging.ERROR, logger="app.core.api_events"):
            await log_api_event("/api/explain", status_code=500, session_factory=factory)
        assert factory.calls == 1
        assert "Failed to log API event" in caplog.text


class TestApiEventRecorder:
    async def test_records_route_action_and_key(self, session_factory):
        recorder = ApiEventRecorder("/api/generate", "generate_quiz", "abc", session_factory)
        await recorder.record(400, error_message="Invalid test type")

        events = await fetch_events(session_factory)
        assert len(events) == 1
        assert events[0].route == "/api/generate"
        assert events[0].action == "generate_quiz"
        assert events[0].client_key == "abc"
        assert events[0].status_code == 400
        assert events[0].error_message == "Invalid test type"
        assert events[0].duration_ms >= 0

    def test_elapsed_is_non_negative(self):
        recorder = ApiEventRecorder("/api/test", None, None)
        assert recorder.elapsed_ms >= 0
