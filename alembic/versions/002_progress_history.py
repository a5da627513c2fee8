"""Progress history on user achievements.

Adds the bounded per-record progress_history audit column.

Revision ID: 002_progress_history
Revises: 001_achievement_tables
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "002_progress_history"
down_revision: str | None = "001_achievement_tables"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("""
        ALTER TABLE user_achievements
        ADD COLUMN IF NOT EXISTS progress_history JSONB NOT NULL DEFAULT '[]'
    """)


def downgrade() -> None:
    op.execute("ALTER TABLE user_achievements DROP COLUMN IF EXISTS progress_history")
