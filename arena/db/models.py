"""Database schema and initialization."""
from typing import Optional

from arena.db.connection import Database, db
from arena.utils.logger import get_logger

logger = get_logger(__name__)

# SQL schema for all tables (for fresh installs)
SCHEMA = """
-- Users table
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    username VARCHAR(50) NOT NULL,
    email VARCHAR(255) NOT NULL,
    password_hash VARCHAR(255) NOT NULL,
    phone VARCHAR(30),
    role VARCHAR(20) NOT NULL DEFAULT 'player',
    is_banned BOOLEAN NOT NULL DEFAULT FALSE,
    referral_code VARCHAR(16) NOT NULL,
    referred_by UUID REFERENCES users(id) ON DELETE SET NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT users_role_valid CHECK (role IN ('player', 'admin')),
    CONSTRAINT users_referral_code_key UNIQUE (referral_code)
);

CREATE UNIQUE INDEX IF NOT EXISTS users_username_lower_idx ON users(LOWER(username));
CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_idx ON users(LOWER(email));

-- Wallets (one per user, same lifecycle)
CREATE TABLE IF NOT EXISTS wallets (
    user_id UUID PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    balance NUMERIC(12, 2) NOT NULL DEFAULT 0,
    bonus_balance NUMERIC(12, 2) NOT NULL DEFAULT 0,
    total_deposited NUMERIC(12, 2) NOT NULL DEFAULT 0,
    total_withdrawn NUMERIC(12, 2) NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT wallets_non_negative CHECK (
        balance >= 0 AND bonus_balance >= 0
        AND total_deposited >= 0 AND total_withdrawn >= 0
    )
);

-- Money movements (append-only; status leaves 'pending' once)
CREATE TABLE IF NOT EXISTS transactions (
    id BIGSERIAL PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    type VARCHAR(20) NOT NULL,  -- deposit, withdrawal, join_fee, refund, redeem_code, signup_bonus, referral_bonus
    amount NUMERIC(12, 2) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',  -- pending, completed, rejected
    payment_method VARCHAR(50),
    payment_proof_url TEXT,
    reference VARCHAR(100),
    admin_note TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ,
    CONSTRAINT transactions_amount_positive CHECK (amount > 0),
    CONSTRAINT transactions_status_valid CHECK (status IN ('pending', 'completed', 'rejected'))
);

CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id);
CREATE INDEX IF NOT EXISTS idx_transactions_pending ON transactions(created_at) WHERE status = 'pending';

-- Tournaments
CREATE TABLE IF NOT EXISTS tournaments (
    id BIGSERIAL PRIMARY KEY,
    title VARCHAR(200) NOT NULL,
    game_type VARCHAR(50),
    map_type VARCHAR(50),
    entry_fee NUMERIC(12, 2) NOT NULL DEFAULT 0,
    prize_pool NUMERIC(12, 2) NOT NULL DEFAULT 0,
    per_kill NUMERIC(12, 2) NOT NULL DEFAULT 0,
    start_time TIMESTAMPTZ,
    max_players INTEGER NOT NULL,
    current_players INTEGER NOT NULL DEFAULT 0,
    status VARCHAR(20) NOT NULL DEFAULT 'upcoming',  -- upcoming, ongoing, completed, cancelled
    room_id VARCHAR(100),
    room_password VARCHAR(100),
    created_by UUID REFERENCES users(id) ON DELETE SET NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT tournaments_fees_non_negative CHECK (entry_fee >= 0 AND prize_pool >= 0 AND per_kill >= 0),
    CONSTRAINT tournaments_capacity CHECK (max_players > 0 AND current_players >= 0 AND current_players <= max_players)
);

-- Tournament roster
CREATE TABLE IF NOT EXISTS tournament_participants (
    id BIGSERIAL PRIMARY KEY,
    tournament_id BIGINT NOT NULL REFERENCES tournaments(id) ON DELETE CASCADE,
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    game_username VARCHAR(100),
    joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT participants_unique UNIQUE (tournament_id, user_id)
);

CREATE INDEX IF NOT EXISTS idx_participants_user ON tournament_participants(user_id);

-- Promo codes
CREATE TABLE IF NOT EXISTS redeem_codes (
    id BIGSERIAL PRIMARY KEY,
    code VARCHAR(50) NOT NULL,
    amount NUMERIC(12, 2) NOT NULL,
    max_uses INTEGER NOT NULL DEFAULT 1,
    current_uses INTEGER NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    expires_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT redeem_codes_code_key UNIQUE (code),
    CONSTRAINT redeem_codes_amount_positive CHECK (amount > 0),
    CONSTRAINT redeem_codes_uses CHECK (max_uses > 0 AND current_uses >= 0 AND current_uses <= max_uses)
);

-- One redemption per (user, code)
CREATE TABLE IF NOT EXISTS redeem_history (
    id BIGSERIAL PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    code_id BIGINT NOT NULL REFERENCES redeem_codes(id) ON DELETE CASCADE,
    redeemed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT redeem_history_unique UNIQUE (user_id, code_id)
);

-- Operator settings (read-only to the application)
CREATE TABLE IF NOT EXISTS settings (
    key VARCHAR(100) PRIMARY KEY,
    value TEXT NOT NULL
);

INSERT INTO settings (key, value) VALUES
    ('signup_bonus', '0'),
    ('referral_bonus_percent', '5')
ON CONFLICT (key) DO NOTHING;
"""

# Migrations for existing databases
MIGRATIONS = [
    # Migration 1: Add manual payment reference column to transactions
    """
    DO $$
    BEGIN
        IF NOT EXISTS (
            SELECT 1 FROM information_schema.columns
            WHERE table_name = 'transactions' AND column_name = 'reference'
        ) THEN
            ALTER TABLE transactions ADD COLUMN reference VARCHAR(100);
        END IF;
    END $$;
    """,
]


async def init_db(database: Optional[Database] = None) -> None:
    """Initialize database schema and run migrations."""
    database = database or db
    logger.info("Initializing database schema...")
    await database.execute(SCHEMA)

    logger.info("Running migrations...")
    for i, migration in enumerate(MIGRATIONS, 1):
        try:
            await database.execute(migration)
            logger.info(f"Migration {i} completed")
        except Exception as e:
            logger.warning(f"Migration {i} skipped or failed: {e}")

    logger.info("Database schema initialized")
