import datetime
import uuid

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class RateLimitEvent(Base):
    """One throttled request attempt. Rows are inserted or pruned by age, never updated."""

    __tablename__ = "api_rate_limit_events"
    __table_args__ = (
        Index("idx_api_rate_limit_events_lookup", "client_key", "route", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_key: Mapped[str] = mapped_column(String(64))
    route: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True))
