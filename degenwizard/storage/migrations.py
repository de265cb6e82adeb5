"""Database migrations — create and upgrade schema."""

from __future__ import annotations

import sqlite3

from degenwizard.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 3

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY NOT NULL,
            display_name TEXT,
            wallet_address TEXT,
            reputation_weight REAL NOT NULL DEFAULT 0.1,
            current_streak INTEGER NOT NULL DEFAULT 0 CHECK (current_streak >= 0),
            best_streak INTEGER NOT NULL DEFAULT 0 CHECK (best_streak >= 0)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS settlements (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            status TEXT NOT NULL DEFAULT 'pending',
            triggered_at TEXT NOT NULL,
            error_message TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS trades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            settlement_id INTEGER REFERENCES settlements(id),
            asset TEXT NOT NULL,
            market_id TEXT NOT NULL,
            proposal_message_ref TEXT,
            order_id TEXT,
            executed_direction TEXT,
            pnl REAL,
            resolution_time TEXT,
            voting_ends_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'voting',
            executed_at TEXT,
            resolved_at TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS predictions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL REFERENCES users(id),
            trade_id INTEGER NOT NULL REFERENCES trades(id) ON DELETE CASCADE,
            direction TEXT NOT NULL,
            was_correct INTEGER,
            snapshot_at TEXT,
            UNIQUE(user_id, trade_id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS payouts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL REFERENCES users(id),
            settlement_id INTEGER NOT NULL REFERENCES settlements(id),
            amount REAL NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            tx_hash TEXT,
            tx_request TEXT,
            rank INTEGER NOT NULL CHECK (rank BETWEEN 1 AND 3),
            retry_count INTEGER NOT NULL DEFAULT 0,
            last_retry_at TEXT,
            error_message TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS runtime_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            emergency_stopped INTEGER NOT NULL DEFAULT 0,
            last_daily_trade_date TEXT NOT NULL DEFAULT '1970-01-01',
            next_hourly_trade_at TEXT NOT NULL DEFAULT '1970-01-01T00:00:00.000000+00:00',
            last_weekly_payout_date TEXT NOT NULL DEFAULT '1970-01-01'
        );
        """,
        "INSERT OR IGNORE INTO runtime_state (id, emergency_stopped) VALUES (1, 0);",
        "CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status);",
        "CREATE INDEX IF NOT EXISTS idx_trades_settlement ON trades(settlement_id);",
        "CREATE INDEX IF NOT EXISTS idx_trades_resolved_at ON trades(resolved_at);",
        "CREATE INDEX IF NOT EXISTS idx_trades_message ON trades(proposal_message_ref);",
        "CREATE INDEX IF NOT EXISTS idx_predictions_user ON predictions(user_id);",
        "CREATE INDEX IF NOT EXISTS idx_predictions_trade ON predictions(trade_id);",
        "CREATE INDEX IF NOT EXISTS idx_payouts_settlement ON payouts(settlement_id);",
        "CREATE INDEX IF NOT EXISTS idx_payouts_status ON payouts(status);",
        "CREATE INDEX IF NOT EXISTS idx_settlements_status ON settlements(status);",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_users_wallet_ci
            ON users(LOWER(wallet_address)) WHERE wallet_address IS NOT NULL;
        """,
    ],
    2: [
        # Every outward notification, kept for audit
        """
        CREATE TABLE IF NOT EXISTS alerts_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            level TEXT NOT NULL,
            channel TEXT DEFAULT 'system',
            message TEXT NOT NULL,
            created_at TEXT
        );
        """,
        "CREATE INDEX IF NOT EXISTS idx_alerts_created ON alerts_log(created_at);",
    ],
    3: [
        # Last metrics snapshot written by the running scheduler
        "ALTER TABLE runtime_state ADD COLUMN metrics_snapshot TEXT;",
        "ALTER TABLE runtime_state ADD COLUMN metrics_saved_at TEXT;",
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        conn.execute("BEGIN")
        try:
            for sql in _MIGRATIONS[version]:
                conn.execute(sql)
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (version,),
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        log.info("migrations.applied", version=version)

    final = _get_current_version(conn)
    log.info("migrations.complete", version=final)


def _get_current_version(conn: sqlite3.Connection) -> int:
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row and row[0] else 0
    except sqlite3.Error:
        return 0
