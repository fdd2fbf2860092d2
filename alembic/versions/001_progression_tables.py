"""Progression tables.

Creates users, levels, xp_ledger, activity_facts, user_streaks,
badge_definitions, user_badges, challenge_definitions, user_challenges,
leaderboard_entries and notifications.

Revision ID: 001_progression_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_progression_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            username VARCHAR(64) UNIQUE NOT NULL,
            email VARCHAR(320) UNIQUE,
            total_xp BIGINT NOT NULL DEFAULT 0 CHECK (total_xp >= 0),
            current_level INTEGER NOT NULL DEFAULT 1 CHECK (current_level BETWEEN 1 AND 100),
            current_streak INTEGER NOT NULL DEFAULT 0 CHECK (current_streak >= 0),
            best_streak INTEGER NOT NULL DEFAULT 0 CHECK (best_streak >= 0),
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_users_total_xp ON users(total_xp DESC)")

    # --- Levels ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS levels (
            level_number INTEGER PRIMARY KEY CHECK (level_number BETWEEN 1 AND 100),
            xp_required_cumulative INTEGER NOT NULL,
            xp_for_next_level INTEGER NOT NULL
        )
    """)

    # --- XP Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS xp_ledger (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            amount INTEGER NOT NULL,
            source VARCHAR(32) NOT NULL,
            source_id VARCHAR(128),
            description VARCHAR(256),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            idempotency_key VARCHAR(256) UNIQUE
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_xp_ledger_user
        ON xp_ledger(user_id, created_at DESC)
    """)

    # --- Activity Facts ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS activity_facts (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            activity_id VARCHAR(64),
            kind VARCHAR(16) NOT NULL CHECK (kind IN ('created', 'completed')),
            activity_type VARCHAR(64) NOT NULL,
            activity_name VARCHAR(128),
            occurred_at TIMESTAMPTZ NOT NULL,
            duration_minutes INTEGER NOT NULL DEFAULT 0,
            distance_km DOUBLE PRECISION,
            is_host BOOLEAN NOT NULL DEFAULT false,
            participants_count INTEGER,
            xp_earned INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_activity_facts_user_kind
        ON activity_facts(user_id, kind)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_activity_facts_activity
        ON activity_facts(activity_id)
        WHERE activity_id IS NOT NULL
    """)

    # --- User Streaks ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_streaks (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT UNIQUE NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            last_activity_day DATE NOT NULL,
            current_streak INTEGER NOT NULL DEFAULT 0,
            best_streak INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ
        )
    """)

    # --- Badge Definitions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS badge_definitions (
            id SERIAL PRIMARY KEY,
            slug VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            icon VARCHAR(64),
            category VARCHAR(32) NOT NULL,
            rarity VARCHAR(16) NOT NULL
                CHECK (rarity IN ('common', 'uncommon', 'rare', 'epic', 'legendary')),
            unlock_criteria JSONB NOT NULL DEFAULT '{}',
            xp_reward INTEGER NOT NULL DEFAULT 0 CHECK (xp_reward >= 0),
            is_active BOOLEAN NOT NULL DEFAULT true,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # --- User Badges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_badges (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            badge_id INTEGER NOT NULL REFERENCES badge_definitions(id),
            earned_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            metadata JSONB NOT NULL DEFAULT '{}',
            CONSTRAINT user_badges_user_id_badge_id_key UNIQUE (user_id, badge_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_user_badges_user
        ON user_badges(user_id, earned_at DESC)
    """)

    # --- Challenge Definitions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS challenge_definitions (
            id SERIAL PRIMARY KEY,
            name VARCHAR(160) NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            challenge_type VARCHAR(16) NOT NULL
                CHECK (challenge_type IN ('daily', 'weekly', 'monthly', 'limited_time')),
            start_date TIMESTAMPTZ NOT NULL,
            end_date TIMESTAMPTZ NOT NULL,
            target_count INTEGER NOT NULL,
            unlock_criteria JSONB NOT NULL DEFAULT '{}',
            xp_reward INTEGER NOT NULL DEFAULT 0,
            badge_reward_id INTEGER REFERENCES badge_definitions(id),
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT challenge_definitions_name_type_key UNIQUE (name, challenge_type)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_challenge_definitions_window
        ON challenge_definitions(start_date, end_date)
        WHERE is_active = true
    """)

    # --- User Challenges ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_challenges (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            challenge_id INTEGER NOT NULL REFERENCES challenge_definitions(id) ON DELETE CASCADE,
            current_progress DOUBLE PRECISION NOT NULL DEFAULT 0,
            target_count INTEGER NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'completed', 'expired')),
            started_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ,
            expires_at TIMESTAMPTZ NOT NULL,
            progress_metadata JSONB NOT NULL DEFAULT '{}',
            CONSTRAINT user_challenges_user_id_challenge_id_key UNIQUE (user_id, challenge_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_user_challenges_status_expires
        ON user_challenges(status, expires_at)
    """)

    # --- Leaderboard ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_entries (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT UNIQUE NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            username VARCHAR(64) NOT NULL,
            total_xp BIGINT NOT NULL DEFAULT 0,
            rank INTEGER NOT NULL CHECK (rank >= 1),
            updated_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_leaderboard_entries_rank
        ON leaderboard_entries(rank)
    """)

    # --- Notifications ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            kind VARCHAR(32) NOT NULL,
            title VARCHAR(256) NOT NULL,
            message TEXT,
            metadata JSONB NOT NULL DEFAULT '{}',
            read BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_user
        ON notifications(user_id, created_at DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notifications_unread
        ON notifications(user_id)
        WHERE read = false
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS notifications CASCADE")
    op.execute("DROP TABLE IF EXISTS leaderboard_entries CASCADE")
    op.execute("DROP TABLE IF EXISTS user_challenges CASCADE")
    op.execute("DROP TABLE IF EXISTS challenge_definitions CASCADE")
    op.execute("DROP TABLE IF EXISTS user_badges CASCADE")
    op.execute("DROP TABLE IF EXISTS badge_definitions CASCADE")
    op.execute("DROP TABLE IF EXISTS user_streaks CASCADE")
    op.execute("DROP TABLE IF EXISTS activity_facts CASCADE")
    op.execute("DROP TABLE IF EXISTS xp_ledger CASCADE")
    op.execute("DROP TABLE IF EXISTS levels CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
