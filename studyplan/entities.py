# studyplan/entities.py
from datetime import datetime, timezone
from uuid import uuid4
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    text,
    func,
    Index,
    Numeric,
    JSON
)

from typing import TypeAlias
Timestamp: TypeAlias = datetime
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    avatar: Mapped[str | None] = mapped_column(String)
    email_verified_at: Mapped[Timestamp | None] = mapped_column(DateTime(timezone=True))
    two_factor_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )

    # Onboarding & preferences
    onboarding_completed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    onboarding_step: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default=text("1"),
    )
    timezone: Mapped[str | None] = mapped_column(String)
    study_goal: Mapped[str | None] = mapped_column(String)
    daily_study_hours: Mapped[int | None] = mapped_column(Integer)

    # Subject data, keyed by subject name
    subjects: Mapped[list | None] = mapped_column(JSON)
    subject_difficulties: Mapped[dict | None] = mapped_column(JSON)
    subject_start_dates: Mapped[dict | None] = mapped_column(JSON)
    subject_end_dates: Mapped[dict | None] = mapped_column(JSON)

    # Generation state
    is_generating_plan: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    generating_status: Mapped[str | None] = mapped_column(String)

    # Study statistics (display only)
    study_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    total_study_hours: Mapped[float] = mapped_column(
        Numeric(precision=10, scale=2, asdecimal=False),
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    completed_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    weekly_goal: Mapped[int | None] = mapped_column(Integer)
    weekly_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    __table_args__ = (
        Index("ix_users_onboarding_completed", "onboarding_completed"),
    )


class Achievement(Base):
    __tablename__ = "achievements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    icon: Mapped[str] = mapped_column(String, nullable=False, default="")
    earned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    earned_at: Mapped[Timestamp | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_achievements_user_id", "user_id"),
    )


class StudyPlan(Base, TimestampMixin):
    __tablename__ = "study_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    # active, archived
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    # True when the AI call failed and the generic plan was stored instead
    is_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # subject -> {"1": {...day...}, "2": {...}}
    curriculum: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_study_plans_user_id_status", "user_id", "status"),
    )


class QueueMessage(Base):
    __tablename__ = "queue_messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    sender_id = Column(String, nullable=False)
    receiver_id = Column(String, nullable=False)
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
