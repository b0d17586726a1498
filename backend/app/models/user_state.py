import datetime
import uuid

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.quiz_test import BigIntId


class UserStorageState(Base):
    """Opaque key/value snapshot of a signed-in user's client storage."""

    __tablename__ = "user_storage_state"

    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("app_user.id"), primary_key=True)
    storage: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserTestAttempt(Base):
    """A user's latest submission for one stored test."""

    __tablename__ = "user_test_attempts"
    __table_args__ = (
        UniqueConstraint("user_id", "test_id", name="uq_user_test_attempts_user_test"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("app_user.id"), index=True)
    test_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("ai_test.id"))
    user_answers: Mapped[dict] = mapped_column(JSON, default=dict)
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_questions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    time_taken: Mapped[int | None] = mapped_column(Integer, nullable=True)
    submitted_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
