"""Initial schema: users, sessions, tasks, emotion logs, nudges, bets, stream checkpoints.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create all tables."""
    # --- Users and sessions ---
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(256), nullable=False),
        sa.Column("display_name", sa.String(64), nullable=True),
        _ts("created_at", nullable=False),
        _ts("last_login"),
        sa.Column("login_count", sa.Integer(), server_default="0", nullable=False),
    )

    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token_hash", sa.String(128), nullable=False),
        _ts("issued_at", nullable=False),
        _ts("expires_at", nullable=False),
        _ts("revoked_at"),
        sa.Column("is_revoked", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("replaced_by", sa.String(36), nullable=True),
    )
    op.create_index("ix_refresh_tokens_user_live", "refresh_tokens", ["user_id", "is_revoked"])

    # --- Tasks and emotion journaling ---
    op.create_table(
        "tasks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), server_default="", nullable=False),
        _ts("due_date"),
        _ts("started_at"),
        sa.Column("completed", sa.Boolean(), server_default="false", nullable=False),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_tasks_user", "tasks", ["user_id"])

    op.create_table(
        "emotion_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("task_id", sa.BigInteger(), sa.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("phase", sa.String(8), nullable=False),
        sa.Column("emotion", sa.String(32), nullable=False),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("task_id", "phase", name="emotion_logs_task_phase_key"),
    )
    op.create_index("ix_emotion_logs_user_created", "emotion_logs", ["user_id", "created_at"])

    # --- Nudges ---
    op.create_table(
        "nudges",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("task_id", sa.BigInteger(), nullable=False),
        _ts("delivery_time", nullable=False),
        _ts("triggered_at"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("canceled", sa.Boolean(), server_default="false", nullable=False),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("user_id", "task_id", name="nudges_user_id_task_id_key"),
    )
    op.create_index("ix_nudges_user_delivery", "nudges", ["user_id", "delivery_time"])

    # --- Micro-bets ---
    op.create_table(
        "ledger_entries",
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("points", sa.Integer(), server_default="0", nullable=False),
        sa.Column("streak", sa.Integer(), server_default="0", nullable=False),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "bets",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("task_id", sa.BigInteger(), nullable=False),
        sa.Column("wager", sa.Integer(), nullable=False),
        _ts("deadline", nullable=False),
        _ts("task_due_time"),
        sa.Column("success", sa.Boolean(), nullable=True),
        _ts("resolved_at"),
        sa.Column("reward", sa.Integer(), nullable=True),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("user_id", "task_id", name="bets_user_id_task_id_key"),
    )
    op.create_index("ix_bets_user_deadline", "bets", ["user_id", "deadline"])
    op.create_index("ix_bets_user_resolved", "bets", ["user_id", "resolved_at"])

    # --- Event stream checkpoints ---
    op.create_table(
        "stream_checkpoints",
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        _ts("last_seen_nudge_at"),
        _ts("last_seen_bet_at"),
        _ts("updated_at", nullable=False),
    )


def downgrade() -> None:
    """Drop all tables."""
    for table in (
        "stream_checkpoints",
        "bets",
        "ledger_entries",
        "nudges",
        "emotion_logs",
        "tasks",
        "refresh_tokens",
        "users",
    ):
        op.drop_table(table)
