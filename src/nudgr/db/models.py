"""ORM models.

Nudges and bets reference tasks by id without a foreign key: deleting a task
cancels its nudge and bet through the event bus instead of cascading them away.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nudgr.db.base import Base, BigIntPK, UTCDateTime, utcnow


# ---------------------------------------------------------------------------
# Users and sessions
# ---------------------------------------------------------------------------


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    last_login: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    login_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    refresh_tokens: Mapped[list[RefreshToken]] = relationship(
        "RefreshToken", back_populates="user", cascade="all, delete-orphan"
    )


class RefreshToken(Base):
    """Refresh token tracking. A user with no live token has no active session."""

    __tablename__ = "refresh_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    replaced_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    user: Mapped[User] = relationship("User", back_populates="refresh_tokens")

    __table_args__ = (Index("ix_refresh_tokens_user_live", "user_id", "is_revoked"),)


# ---------------------------------------------------------------------------
# Tasks and emotion journaling
# ---------------------------------------------------------------------------


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    due_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_tasks_user", "user_id"),)


class EmotionLog(Base):
    __tablename__ = "emotion_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    task_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    phase: Mapped[str] = mapped_column(String(8), nullable=False)  # before | after
    emotion: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("task_id", "phase", name="emotion_logs_task_phase_key"),
        Index("ix_emotion_logs_user_created", "user_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Nudges (reminders)
# ---------------------------------------------------------------------------


class Nudge(Base):
    """A scheduled motivational message, triggered at most once.

    ``triggered_at`` and ``message`` are written together by a single
    conditional UPDATE; ``canceled`` and ``triggered_at`` are mutually exclusive.
    """

    __tablename__ = "nudges"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    task_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    delivery_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    canceled: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "task_id", name="nudges_user_id_task_id_key"),
        Index("ix_nudges_user_delivery", "user_id", "delivery_time"),
    )

    @property
    def status(self) -> str:
        if self.triggered_at is not None:
            return "triggered"
        if self.canceled:
            return "canceled"
        return "pending"


# ---------------------------------------------------------------------------
# Micro-bets
# ---------------------------------------------------------------------------


class LedgerEntry(Base):
    """Per-user points balance and bet streak."""

    __tablename__ = "ledger_entries"

    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Bet(Base):
    """A wager on starting a task before ``deadline``. Resolution is terminal."""

    __tablename__ = "bets"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    task_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    wager: Mapped[int] = mapped_column(Integer, nullable=False)
    deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    task_due_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    success: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reward: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "task_id", name="bets_user_id_task_id_key"),
        Index("ix_bets_user_deadline", "user_id", "deadline"),
        Index("ix_bets_user_resolved", "user_id", "resolved_at"),
    )

    @property
    def status(self) -> str:
        if self.success is None:
            return "pending"
        return "success" if self.success else "failure"


# ---------------------------------------------------------------------------
# Event stream checkpoints
# ---------------------------------------------------------------------------


class StreamCheckpoint(Base):
    """Per-user cursor of the newest nudge and bet event already delivered.

    Each cursor is a ``(timestamp, id)`` position; the id orders events that
    share a timestamp.
    """

    __tablename__ = "stream_checkpoints"

    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    last_seen_nudge_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_seen_nudge_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_seen_bet_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_seen_bet_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
