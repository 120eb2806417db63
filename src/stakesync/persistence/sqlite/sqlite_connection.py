from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_ledger_schema(conn: sqlite3.Connection) -> None:
    # Amounts are canonical decimal strings; never store them as REAL.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS stake_opened (
            network TEXT NOT NULL,
            stake_id TEXT NOT NULL,
            owner_address TEXT NOT NULL,
            principal_amount TEXT NOT NULL,
            share_amount TEXT NOT NULL,
            derived_share_amount TEXT NOT NULL,
            staked_duration_days INTEGER NOT NULL,
            start_day_index INTEGER NOT NULL,
            end_day_index INTEGER NOT NULL,
            opened_at_epoch_seconds INTEGER NOT NULL,
            is_auto_renewed INTEGER NOT NULL DEFAULT 0,
            source_tx_hash TEXT NOT NULL,
            source_block_number INTEGER NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            days_served INTEGER NOT NULL DEFAULT 0,
            days_left INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (network, stake_id)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_stake_opened_active ON stake_opened(network, is_active)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_stake_opened_owner ON stake_opened(network, owner_address)"
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_stake_opened_opened_at
        ON stake_opened(network, opened_at_epoch_seconds)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS stake_closed (
            network TEXT NOT NULL,
            stake_id TEXT NOT NULL,
            owner_address TEXT NOT NULL,
            payout_amount TEXT NOT NULL,
            principal_amount_at_close TEXT NOT NULL,
            penalty_amount TEXT NOT NULL,
            served_days INTEGER NOT NULL,
            closed_at_epoch_seconds INTEGER NOT NULL,
            source_tx_hash TEXT NOT NULL,
            source_block_number INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (network, stake_id)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_stake_closed_owner ON stake_closed(network, owner_address)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS global_counters (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            network TEXT NOT NULL,
            day_index INTEGER NOT NULL,
            total_shares TEXT NOT NULL,
            total_penalty TEXT NOT NULL,
            total_locked TEXT NOT NULL,
            latest_stake_id TEXT,
            captured_at_epoch_seconds INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (network, day_index)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_cursor (
            network TEXT PRIMARY KEY,
            last_synced_stake_id TEXT NOT NULL DEFAULT '0',
            last_synced_block_number INTEGER,
            last_synced_at_epoch_seconds INTEGER,
            total_opened_synced INTEGER NOT NULL DEFAULT 0,
            total_closed_synced INTEGER NOT NULL DEFAULT 0,
            sync_in_progress INTEGER NOT NULL DEFAULT 0,
            sync_started_at INTEGER,
            sync_completed_at INTEGER,
            last_error_message TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS owner_aggregates (
            network TEXT NOT NULL,
            owner_address TEXT NOT NULL,
            total_stakes INTEGER NOT NULL,
            active_stakes INTEGER NOT NULL,
            ended_stakes INTEGER NOT NULL,
            total_principal TEXT NOT NULL,
            total_shares TEXT NOT NULL,
            total_payouts TEXT NOT NULL,
            total_penalties TEXT NOT NULL,
            average_duration_days REAL NOT NULL,
            first_stake_at INTEGER,
            last_stake_at INTEGER,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (network, owner_address)
        )
        """
    )
