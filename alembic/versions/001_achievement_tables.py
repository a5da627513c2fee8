"""Achievement tables.

Creates achievement_templates, user_achievements, achievement_stats,
achievement_stats_breakdown and achievement_recent_unlocks.

Revision ID: 001_achievement_tables
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_achievement_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Templates ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_templates (
            id VARCHAR(36) PRIMARY KEY,
            name VARCHAR(100) UNIQUE NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            condition_type VARCHAR(16) NOT NULL,
            metric VARCHAR(64) NOT NULL,
            target INTEGER NOT NULL CHECK (target > 0),
            timeframe VARCHAR(8),
            params JSONB NOT NULL DEFAULT '{}',
            points INTEGER NOT NULL DEFAULT 0 CHECK (points BETWEEN 0 AND 10000),
            difficulty VARCHAR(16) NOT NULL DEFAULT 'easy',
            category VARCHAR(32) NOT NULL DEFAULT 'moments',
            tags JSONB NOT NULL DEFAULT '[]',
            prerequisites JSONB NOT NULL DEFAULT '[]',
            is_hidden BOOLEAN NOT NULL DEFAULT false,
            is_repeatable BOOLEAN NOT NULL DEFAULT false,
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            is_limited BOOLEAN NOT NULL DEFAULT false,
            valid_from TIMESTAMPTZ,
            valid_to TIMESTAMPTZ,
            created_by VARCHAR(64),
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_achievement_templates_metric_status
        ON achievement_templates(metric, status)
    """)

    # --- Per-user progress ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_achievements (
            id SERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            template_id VARCHAR(36) NOT NULL REFERENCES achievement_templates(id) ON DELETE CASCADE,
            status VARCHAR(16) NOT NULL DEFAULT 'not_started',
            progress_current INTEGER NOT NULL DEFAULT 0 CHECK (progress_current >= 0),
            progress_target INTEGER NOT NULL,
            progress_percentage INTEGER NOT NULL DEFAULT 0 CHECK (progress_percentage BETWEEN 0 AND 100),
            current_streak INTEGER NOT NULL DEFAULT 0,
            best_streak INTEGER NOT NULL DEFAULT 0,
            last_streak_date DATE,
            started_at TIMESTAMPTZ,
            unlocked_at TIMESTAMPTZ,
            last_unlocked_at TIMESTAMPTZ,
            unlock_count INTEGER NOT NULL DEFAULT 0,
            points_awarded BIGINT NOT NULL DEFAULT 0,
            milestones JSONB NOT NULL DEFAULT '[]',
            grant_reason VARCHAR(200),
            granted_by VARCHAR(64),
            last_activity_at TIMESTAMPTZ,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT user_achievements_user_template_key UNIQUE(user_id, template_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_achievements_user_status
        ON user_achievements(user_id, status)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_achievements_unlocked
        ON user_achievements(unlocked_at)
        WHERE unlock_count > 0
    """)

    # --- Aggregate stats ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_stats (
            user_id VARCHAR(64) PRIMARY KEY,
            total_points BIGINT NOT NULL DEFAULT 0,
            achieved_count INTEGER NOT NULL DEFAULT 0,
            rank INTEGER,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_stats_breakdown (
            user_id VARCHAR(64) NOT NULL,
            dimension VARCHAR(16) NOT NULL,
            bucket VARCHAR(32) NOT NULL,
            count INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (user_id, dimension, bucket)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_recent_unlocks (
            id BIGSERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            template_id VARCHAR(36) NOT NULL,
            template_name VARCHAR(100) NOT NULL,
            points INTEGER NOT NULL DEFAULT 0,
            unlocked_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_recent_unlocks_user_time
        ON achievement_recent_unlocks(user_id, unlocked_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS achievement_recent_unlocks CASCADE")
    op.execute("DROP TABLE IF EXISTS achievement_stats_breakdown CASCADE")
    op.execute("DROP TABLE IF EXISTS achievement_stats CASCADE")
    op.execute("DROP TABLE IF EXISTS user_achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS achievement_templates CASCADE")
