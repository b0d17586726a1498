import asyncio
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings
from app.models.base import Base

logger = logging.getLogger(__name__)


def create_engine_for(url: str) -> AsyncEngine:
    """Build an async engine; pool sizing only applies to server databases."""
    kwargs: dict = {"echo": False, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10)
    return create_async_engine(url, **kwargs)


class SchemaBootstrap:
    """Create all tables once per engine.

    A failed attempt leaves the bootstrap unset so the next caller retries.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._ready = False
        self._lock: asyncio.Lock | None = None

    @property
    def ready(self) -> bool:
        return self._ready

    async def ensure(self) -> None:
        if self._ready:
            return
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._ready:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._ready = True
            logger.info("Storage schema ready")


engine = create_engine_for(settings.effective_database_url)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
schema = SchemaBootstrap(engine)

# Import all models so Base.metadata knows about them (needed for create_all and Alembic)
import app.models.user  # noqa: F401, E402
import app.models.quiz_test  # noqa: F401, E402
import app.models.rate_limit  # noqa: F401, E402
import app.models.api_event  # noqa: F401, E402
import app.models.user_state  # noqa: F401, E402


async def ensure_schema() -> None:
    await schema.ensure()


async def get_session() -> AsyncSession:  # type: ignore[misc]
    await ensure_schema()
    async with async_session() as session:
        yield session
