"""Stream checkpoints record the id of the last delivered event.

Events that share a timestamp (a sweep resolves a whole batch at one instant)
are ordered by id, so the cursor needs both halves.

Revision ID: 002_checkpoint_event_ids
Revises: 001_initial
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "002_checkpoint_event_ids"
down_revision: str | None = "001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add the id half of each stream cursor."""
    op.add_column("stream_checkpoints", sa.Column("last_seen_nudge_id", sa.BigInteger(), nullable=True))
    op.add_column("stream_checkpoints", sa.Column("last_seen_bet_id", sa.BigInteger(), nullable=True))


def downgrade() -> None:
    """Drop the id columns."""
    op.drop_column("stream_checkpoints", "last_seen_bet_id")
    op.drop_column("stream_checkpoints", "last_seen_nudge_id")
