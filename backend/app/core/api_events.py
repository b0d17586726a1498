"""Best-effort API request event log.

One ApiRequestEvent row is written per completed handler invocation. Writes
never raise: a failing store is logged and the handler's response is
returned unchanged.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db import async_session, ensure_schema
from app.models.api_event import ApiRequestEvent

logger = logging.getLogger(__name__)


async def log_api_event(
    route: str,
    *,
    action: str | None = None,
    client_key: str | None = None,
    status_code: int | None = None,
    duration_ms: int | None = None,
    error_message: str | None = None,
    metadata: dict[str, Any] | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> None:
    try:
        if session_factory is None:
            await ensure_schema()
            session_factory = async_session
        async with session_factory() as session:
            session.add(
                ApiRequestEvent(
                    route=route,
                    action=action,
                    client_key=client_key,
                    status_code=status_code,
                    duration_ms=duration_ms,
                    error_message=error_message,
                    metadata_json=metadata or {},
                )
            )
            await session.commit()
    except Exception:
        logger.error("Failed to log API event: route=%s action=%s", route, action, exc_info=True)


class ApiEventRecorder:
    """Carries route, action, client key and start time for one handler call."""

    def __init__(
        self,
        route: str,
        action: str | None,
        client_key: str | None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.route = route
        self.action = action
        self.client_key = client_key
        self.session_factory = session_factory
        self.started = time.monotonic()

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    async def record(
        self,
        status_code: int,
        *,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await log_api_event(
            self.route,
            action=self.action,
            client_key=self.client_key,
            status_code=status_code,
            duration_ms=self.elapsed_ms,
            error_message=error_message,
            metadata=metadata,
            session_factory=self.session_factory,
        )
