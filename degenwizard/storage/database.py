"""Database — SQLite persistence layer.

Manages connections, runs migrations, and provides CRUD operations.

The connection runs in autocommit mode; multi-statement invariants are
grouped with ``transaction()``, which issues ``BEGIN IMMEDIATE`` and may be
nested. Callers never ``await`` inside a transaction, so each one is atomic
with respect to every other coroutine on the loop.
"""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from degenwizard.config import StorageConfig
from degenwizard.errors import WalletInUseError
from degenwizard.storage.migrations import run_migrations
from degenwizard.storage.models import (
    Direction,
    LeaderboardRow,
    PayoutRecord,
    PayoutStatus,
    PredictionRecord,
    RuntimeStateRecord,
    SettlementRecord,
    SettlementStatus,
    TradeRecord,
    TradeStatus,
    UserRecord,
    UserStats,
    VoteCounts,
    WinnerRow,
    to_iso,
    utcnow,
)
from degenwizard.observability.logger import get_logger

log = get_logger(__name__)

_ACTIVE = (TradeStatus.VOTING.value, TradeStatus.EXECUTED.value)


class Database:
    """SQLite database for the bot."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0

    def connect(self) -> None:
        """Open database connection and run migrations."""
        path = self._config.sqlite_path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        run_migrations(self._conn)
        log.info("database.connected", path=path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically. Nested calls join the outer one."""
        conn = self.conn
        if self._tx_depth == 0:
            conn.execute("BEGIN IMMEDIATE")
        self._tx_depth += 1
        try:
            yield conn
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                conn.execute("ROLLBACK")
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                conn.execute("COMMIT")

    # ── Users ────────────────────────────────────────────────────────

    def get_user(self, user_id: str) -> UserRecord | None:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row:
            return UserRecord(**dict(row))
        return None

    def ensure_user(
        self, user_id: str, display_name: str | None = None, initial_weight: float = 0.1,
    ) -> UserRecord:
        """Create the user on first sight; the latest display name wins."""
        self.conn.execute(
            """
            INSERT INTO users (id, display_name, reputation_weight)
            VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                display_name = COALESCE(excluded.display_name, users.display_name)
            """,
            (user_id, display_name, initial_weight),
        )
        user = self.get_user(user_id)
        if user is None:
            raise RuntimeError(f"User {user_id} missing after upsert")
        return user

    def get_user_by_wallet(self, address: str) -> UserRecord | None:
        row = self.conn.execute(
            "SELECT * FROM users WHERE LOWER(wallet_address) = LOWER(?)", (address,)
        ).fetchone()
        if row:
            return UserRecord(**dict(row))
        return None

    def set_wallet(
        self,
        user_id: str,
        address: str,
        display_name: str | None = None,
        initial_weight: float = 0.1,
    ) -> UserRecord:
        """Attach a (checksummed) wallet to a user.

        Raises WalletInUseError if another user already holds the address,
        compared case-insensitively.
        """
        with self.transaction():
            owner = self.get_user_by_wallet(address)
            if owner is not None and owner.id != user_id:
                raise WalletInUseError(f"Wallet {address} is already registered")
            self.ensure_user(user_id, display_name, initial_weight)
            try:
                self.conn.execute(
                    "UPDATE users SET wallet_address = ? WHERE id = ?", (address, user_id)
                )
            except sqlite3.IntegrityError as e:
                raise WalletInUseError(f"Wallet {address} is already registered") from e
            user = self.get_user(user_id)
        if user is None:
            raise RuntimeError(f"User {user_id} missing after wallet update")
        return user

    def update_streaks(self, trade_id: int) -> None:
        """Correct snapshotted predictors extend their streak; others reset to zero."""
        self.conn.execute(
            """
            UPDATE users SET
                current_streak = current_streak + 1,
                best_streak = MAX(best_streak, current_streak + 1)
            WHERE id IN (
                SELECT user_id FROM predictions
                WHERE trade_id = ? AND snapshot_at IS NOT NULL AND was_correct = 1
            )
            """,
            (trade_id,),
        )
        self.conn.execute(
            """
            UPDATE users SET current_streak = 0
            WHERE id IN (
                SELECT user_id FROM predictions
                WHERE trade_id = ? AND snapshot_at IS NOT NULL AND was_correct = 0
            )
            """,
            (trade_id,),
        )

    def increase_reputation(self, trade_id: int, increase: float, max_weight: float) -> None:
        self.conn.execute(
            """
            UPDATE users SET reputation_weight = MIN(?, reputation_weight + ?)
            WHERE reputation_weight < ?
              AND id IN (
                SELECT user_id FROM predictions
                WHERE trade_id = ? AND snapshot_at IS NOT NULL
              )
            """,
            (max_weight, increase, max_weight, trade_id),
        )

    def get_user_stats(self, user_id: str) -> UserStats:
        pred = self.conn.execute(
            """
            SELECT COUNT(*) AS total_predictions,
                   COUNT(CASE WHEN was_correct = 1 THEN 1 END) AS correct_predictions
            FROM predictions
            WHERE user_id = ? AND snapshot_at IS NOT NULL
            """,
            (user_id,),
        ).fetchone()
        earned = self.conn.execute(
            "SELECT COALESCE(SUM(amount), 0) FROM payouts WHERE user_id = ? AND status = ?",
            (user_id, PayoutStatus.SENT.value),
        ).fetchone()
        return UserStats(
            total_predictions=pred["total_predictions"] or 0,
            correct_predictions=pred["correct_predictions"] or 0,
            total_earned=float(earned[0] or 0.0),
        )

    def get_leaderboard(self, limit: int = 10) -> list[LeaderboardRow]:
        rows = self.conn.execute(
            """
            SELECT u.id AS user_id, u.display_name, u.reputation_weight, u.current_streak,
                   COUNT(CASE WHEN p.was_correct = 1 THEN 1 END) AS correct_predictions,
                   COUNT(*) AS total_predictions
            FROM users u
            JOIN predictions p ON u.id = p.user_id
            WHERE p.snapshot_at IS NOT NULL
            GROUP BY u.id
            HAVING total_predictions > 0
            ORDER BY
                (CAST(correct_predictions AS REAL) / total_predictions) * u.reputation_weight DESC,
                total_predictions DESC,
                u.id ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [LeaderboardRow(**dict(r)) for r in rows]

    # ── Trades ───────────────────────────────────────────────────────

    def insert_trade(
        self,
        asset: str,
        market_id: str,
        voting_ends_at: dt.datetime,
        resolution_time: dt.datetime | None,
    ) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO trades (asset, market_id, voting_ends_at, resolution_time, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                asset, market_id, to_iso(voting_ends_at), to_iso(resolution_time),
                TradeStatus.VOTING.value,
            ),
        )
        return int(cur.lastrowid)

    def get_trade(self, trade_id: int) -> TradeRecord | None:
        row = self.conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        if row:
            return TradeRecord(**dict(row))
        return None

    def get_trade_by_message_ref(self, message_ref: str) -> TradeRecord | None:
        row = self.conn.execute(
            "SELECT * FROM trades WHERE proposal_message_ref = ?", (message_ref,)
        ).fetchone()
        if row:
            return TradeRecord(**dict(row))
        return None

    def get_active_trade(self) -> TradeRecord | None:
        row = self.conn.execute(
            "SELECT * FROM trades WHERE status IN (?, ?) ORDER BY id LIMIT 1", _ACTIVE
        ).fetchone()
        if row:
            return TradeRecord(**dict(row))
        return None

    def get_last_resolved_trade(self) -> TradeRecord | None:
        row = self.conn.execute(
            "SELECT * FROM trades WHERE status = ? ORDER BY resolved_at DESC LIMIT 1",
            (TradeStatus.RESOLVED.value,),
        ).fetchone()
        if row:
            return TradeRecord(**dict(row))
        return None

    def set_trade_message_ref(self, trade_id: int, message_ref: str) -> None:
        self.conn.execute(
            "UPDATE trades SET proposal_message_ref = ? WHERE id = ?", (message_ref, trade_id)
        )

    def delete_trade(self, trade_id: int) -> None:
        """Abort a round. Predictions go with it."""
        self.conn.execute("DELETE FROM trades WHERE id = ?", (trade_id,))

    def mark_trade_executed(
        self,
        trade_id: int,
        direction: Direction,
        order_id: str,
        executed_at: dt.datetime,
        market_id: str | None = None,
        resolution_time: dt.datetime | None = None,
    ) -> bool:
        """VOTING -> EXECUTED, recording the market the order actually went to.

        ``market_id`` and ``resolution_time`` default to the values stored at
        proposal time.
        """
        cur = self.conn.execute(
            """
            UPDATE trades SET
                status = ?, executed_direction = ?, order_id = ?, executed_at = ?,
                market_id = COALESCE(?, market_id),
                resolution_time = COALESCE(?, resolution_time)
            WHERE id = ? AND status = ?
            """,
            (
                TradeStatus.EXECUTED.value, Direction(direction).value, order_id,
                to_iso(executed_at), market_id,
                to_iso(resolution_time),
                trade_id, TradeStatus.VOTING.value,
            ),
        )
        return cur.rowcount == 1

    def mark_trade_resolved(self, trade_id: int, pnl: float, resolved_at: dt.datetime) -> bool:
        cur = self.conn.execute(
            "UPDATE trades SET status = ?, pnl = ?, resolved_at = ? WHERE id = ? AND status = ?",
            (
                TradeStatus.RESOLVED.value, pnl, to_iso(resolved_at),
                trade_id, TradeStatus.EXECUTED.value,
            ),
        )
        return cur.rowcount == 1

    def get_voting_trades_due(self, now: dt.datetime) -> list[TradeRecord]:
        rows = self.conn.execute(
            "SELECT * FROM trades WHERE status = ? AND voting_ends_at <= ? ORDER BY id",
            (TradeStatus.VOTING.value, to_iso(now)),
        ).fetchall()
        return [TradeRecord(**dict(r)) for r in rows]

    def get_trades_ready_for_resolution(self, now: dt.datetime) -> list[TradeRecord]:
        rows = self.conn.execute(
            """
            SELECT * FROM trades
            WHERE status = ? AND resolution_time IS NOT NULL AND resolution_time <= ?
            ORDER BY resolution_time ASC
            """,
            (TradeStatus.EXECUTED.value, to_iso(now)),
        ).fetchall()
        return [TradeRecord(**dict(r)) for r in rows]

    def get_recent_resolved_trades(self, limit: int = 20) -> list[TradeRecord]:
        rows = self.conn.execute(
            "SELECT * FROM trades WHERE status = ? ORDER BY resolved_at DESC LIMIT ?",
            (TradeStatus.RESOLVED.value, limit),
        ).fetchall()
        return [TradeRecord(**dict(r)) for r in rows]

    def get_unsettled_trades(self) -> list[TradeRecord]:
        rows = self.conn.execute(
            """
            SELECT * FROM trades
            WHERE status = ? AND settlement_id IS NULL
            ORDER BY resolved_at ASC
            """,
            (TradeStatus.RESOLVED.value,),
        ).fetchall()
        return [TradeRecord(**dict(r)) for r in rows]

    def get_unsettled_pnl(self) -> float:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(pnl), 0) FROM trades WHERE status = ? AND settlement_id IS NULL",
            (TradeStatus.RESOLVED.value,),
        ).fetchone()
        return float(row[0]) if row else 0.0

    def get_total_pnl(self) -> float:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(pnl), 0) FROM trades WHERE status = ?",
            (TradeStatus.RESOLVED.value,),
        ).fetchone()
        return float(row[0]) if row else 0.0

    def get_trade_counts(self) -> dict[str, int]:
        rows = self.conn.execute(
            "SELECT status, COUNT(*) AS n FROM trades GROUP BY status"
        ).fetchall()
        counts = {s.value: 0 for s in TradeStatus}
        counts.update({r["status"]: r["n"] for r in rows})
        return counts

    def link_trades_to_settlement(self, trade_ids: list[int], settlement_id: int) -> None:
        if not trade_ids:
            return
        placeholders = ",".join("?" for _ in trade_ids)
        self.conn.execute(
            f"UPDATE trades SET settlement_id = ? WHERE id IN ({placeholders})",
            (settlement_id, *trade_ids),
        )

    # ── Predictions ──────────────────────────────────────────────────

    def upsert_live_vote(self, user_id: str, trade_id: int, direction: Direction) -> bool:
        """Record or change a live vote. A snapshotted prediction is never touched."""
        cur = self.conn.execute(
            """
            INSERT INTO predictions (user_id, trade_id, direction)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id, trade_id) DO UPDATE SET direction = excluded.direction
            WHERE predictions.snapshot_at IS NULL
            """,
            (user_id, trade_id, Direction(direction).value),
        )
        return cur.rowcount == 1

    def get_predictions(
        self, trade_id: int, snapshotted: bool | None = None,
    ) -> list[PredictionRecord]:
        sql = "SELECT * FROM predictions WHERE trade_id = ?"
        if snapshotted is True:
            sql += " AND snapshot_at IS NOT NULL"
        elif snapshotted is False:
            sql += " AND snapshot_at IS NULL"
        rows = self.conn.execute(sql + " ORDER BY id", (trade_id,)).fetchall()
        return [PredictionRecord(**dict(r)) for r in rows]

    def snapshot_predictions(
        self, trade_id: int, user_ids: list[str], snapshot_at: dt.datetime,
    ) -> None:
        """Freeze the given users' live votes, then drop every vote left live."""
        stamp = to_iso(snapshot_at)
        for user_id in user_ids:
            self.conn.execute(
                """
                UPDATE predictions SET snapshot_at = ?
                WHERE trade_id = ? AND user_id = ? AND snapshot_at IS NULL
                """,
                (stamp, trade_id, user_id),
            )
        self.conn.execute(
            "DELETE FROM predictions WHERE trade_id = ? AND snapshot_at IS NULL", (trade_id,)
        )

    def get_vote_counts(self, trade_id: int, snapshotted: bool = True) -> VoteCounts:
        clause = "snapshot_at IS NOT NULL" if snapshotted else "snapshot_at IS NULL"
        rows = self.conn.execute(
            f"SELECT direction, COUNT(*) AS n FROM predictions "
            f"WHERE trade_id = ? AND {clause} GROUP BY direction",
            (trade_id,),
        ).fetchall()
        counts = {r["direction"]: r["n"] for r in rows}
        return VoteCounts(
            up=counts.get(Direction.UP.value, 0), down=counts.get(Direction.DOWN.value, 0)
        )

    def mark_prediction_correctness(self, trade_id: int, outcome: Direction) -> None:
        self.conn.execute(
            """
            UPDATE predictions SET was_correct = CASE WHEN direction = ? THEN 1 ELSE 0 END
            WHERE trade_id = ? AND snapshot_at IS NOT NULL
            """,
            (Direction(outcome).value, trade_id),
        )

    def get_correct_predictors(self, trade_id: int) -> list[UserRecord]:
        rows = self.conn.execute(
            """
            SELECT u.* FROM users u
            JOIN predictions p ON u.id = p.user_id
            WHERE p.trade_id = ? AND p.snapshot_at IS NOT NULL AND p.was_correct = 1
            ORDER BY u.current_streak DESC, u.id ASC
            """,
            (trade_id,),
        ).fetchall()
        return [UserRecord(**dict(r)) for r in rows]

    def get_top_predictors_for_trades(self, trade_ids: list[int], limit: int = 3) -> list[WinnerRow]:
        """Rank wallet-holding snapshotted voters with at least one correct call."""
        if not trade_ids:
            return []
        placeholders = ",".join("?" for _ in trade_ids)
        rows = self.conn.execute(
            f"""
            SELECT u.id AS user_id, u.display_name, u.wallet_address, u.reputation_weight,
                   COUNT(CASE WHEN p.was_correct = 1 THEN 1 END) AS correct_count,
                   COUNT(*) AS total_count
            FROM users u
            JOIN predictions p ON u.id = p.user_id
            WHERE p.trade_id IN ({placeholders})
              AND p.snapshot_at IS NOT NULL
              AND u.wallet_address IS NOT NULL
            GROUP BY u.id
            HAVING correct_count > 0
            ORDER BY correct_count DESC, u.reputation_weight DESC, total_count DESC, u.id ASC
            LIMIT ?
            """,
            (*trade_ids, limit),
        ).fetchall()
        return [WinnerRow(**dict(r)) for r in rows]

    # ── Settlements ──────────────────────────────────────────────────

    def insert_settlement(self, triggered_at: dt.datetime) -> int:
        cur = self.conn.execute(
            "INSERT INTO settlements (status, triggered_at) VALUES (?, ?)",
            (SettlementStatus.PENDING.value, to_iso(triggered_at)),
        )
        return int(cur.lastrowid)

    def get_settlement(self, settlement_id: int) -> SettlementRecord | None:
        row = self.conn.execute(
            "SELECT * FROM settlements WHERE id = ?", (settlement_id,)
        ).fetchone()
        if row:
            return SettlementRecord(**dict(row))
        return None

    def update_settlement_status(
        self, settlement_id: int, status: SettlementStatus, error_message: str | None = None,
    ) -> None:
        self.conn.execute(
            "UPDATE settlements SET status = ?, error_message = ? WHERE id = ?",
            (SettlementStatus(status).value, error_message, settlement_id),
        )

    def get_incomplete_settlements(self) -> list[SettlementRecord]:
        rows = self.conn.execute(
            "SELECT * FROM settlements WHERE status != ? ORDER BY triggered_at ASC, id ASC",
            (SettlementStatus.COMPLETED.value,),
        ).fetchall()
        return [SettlementRecord(**dict(r)) for r in rows]

    def has_incomplete_settlement(self) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM settlements WHERE status != ? LIMIT 1",
            (SettlementStatus.COMPLETED.value,),
        ).fetchone()
        return row is not None

    def get_recent_settlements(self, limit: int = 10) -> list[SettlementRecord]:
        rows = self.conn.execute(
            "SELECT * FROM settlements ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [SettlementRecord(**dict(r)) for r in rows]

    # ── Payouts ──────────────────────────────────────────────────────

    def insert_payout(self, user_id: str, settlement_id: int, amount: float, rank: int) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO payouts (user_id, settlement_id, amount, rank, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, settlement_id, amount, rank, PayoutStatus.PENDING.value),
        )
        return int(cur.lastrowid)

    def get_payout(self, payout_id: int) -> PayoutRecord | None:
        row = self.conn.execute("SELECT * FROM payouts WHERE id = ?", (payout_id,)).fetchone()
        if row:
            return PayoutRecord(**dict(row))
        return None

    def get_payouts_for_settlement(self, settlement_id: int) -> list[PayoutRecord]:
        rows = self.conn.execute(
            "SELECT * FROM payouts WHERE settlement_id = ? ORDER BY rank ASC, id ASC",
            (settlement_id,),
        ).fetchall()
        return [PayoutRecord(**dict(r)) for r in rows]

    def update_payout_status(self, payout_id: int, status: PayoutStatus) -> None:
        self.conn.execute(
            "UPDATE payouts SET status = ? WHERE id = ?",
            (PayoutStatus(status).value, payout_id),
        )

    def set_payout_tx_hash(self, payout_id: int, tx_hash: str | None) -> None:
        self.conn.execute("UPDATE payouts SET tx_hash = ? WHERE id = ?", (tx_hash, payout_id))

    def set_payout_tx_request(self, payout_id: int, tx_request: str | None) -> None:
        self.conn.execute(
            "UPDATE payouts SET tx_request = ? WHERE id = ?", (tx_request, payout_id)
        )

    def record_payout_failure(
        self, payout_id: int, error_message: str, at: dt.datetime | None = None,
    ) -> None:
        """Bump the retry counter and stamp the attempt time."""
        self.conn.execute(
            """
            UPDATE payouts SET retry_count = retry_count + 1, last_retry_at = ?, error_message = ?
            WHERE id = ?
            """,
            (to_iso(at or utcnow()), error_message, payout_id),
        )

    def reset_payout_retries(self, settlement_id: int) -> int:
        """Give every unsent payout of a settlement a fresh retry budget."""
        cur = self.conn.execute(
            """
            UPDATE payouts SET retry_count = 0, last_retry_at = NULL
            WHERE settlement_id = ? AND status != ?
            """,
            (settlement_id, PayoutStatus.SENT.value),
        )
        return cur.rowcount

    def get_total_distributed(self) -> float:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(amount), 0) FROM payouts WHERE status = ?",
            (PayoutStatus.SENT.value,),
        ).fetchone()
        return float(row[0]) if row else 0.0

    # ── Runtime State ────────────────────────────────────────────────

    def get_runtime_state(self) -> RuntimeStateRecord:
        row = self.conn.execute("SELECT * FROM runtime_state WHERE id = 1").fetchone()
        if row is None:
            return RuntimeStateRecord()
        data = dict(row)
        data.pop("id", None)
        data.pop("metrics_snapshot", None)
        data.pop("metrics_saved_at", None)
        return RuntimeStateRecord(**data)

    def is_emergency_stopped(self) -> bool:
        row = self.conn.execute(
            "SELECT emergency_stopped FROM runtime_state WHERE id = 1"
        ).fetchone()
        return bool(row and row[0])

    def set_emergency_stopped(self, stopped: bool) -> None:
        self.conn.execute(
            "UPDATE runtime_state SET emergency_stopped = ? WHERE id = 1", (int(stopped),)
        )

    def set_last_daily_trade_date(self, date_str: str) -> None:
        self.conn.execute(
            "UPDATE runtime_state SET last_daily_trade_date = ? WHERE id = 1", (date_str,)
        )

    def set_next_hourly_trade_at(self, when: dt.datetime) -> None:
        self.conn.execute(
            "UPDATE runtime_state SET next_hourly_trade_at = ? WHERE id = 1", (to_iso(when),)
        )

    def set_last_weekly_payout_date(self, date_str: str) -> None:
        self.conn.execute(
            "UPDATE runtime_state SET last_weekly_payout_date = ? WHERE id = 1", (date_str,)
        )

    def save_metrics_snapshot(self, snapshot: dict, saved_at: dt.datetime) -> None:
        self.conn.execute(
            "UPDATE runtime_state SET metrics_snapshot = ?, metrics_saved_at = ? WHERE id = 1",
            (json.dumps(snapshot), to_iso(saved_at)),
        )

    def get_metrics_snapshot(self) -> dict | None:
        """Last snapshot saved by ``bot run``, with its ``saved_at`` time."""
        row = self.conn.execute(
            "SELECT metrics_snapshot, metrics_saved_at FROM runtime_state WHERE id = 1"
        ).fetchone()
        if row is None or row[0] is None:
            return None
        snapshot = json.loads(row[0])
        snapshot["saved_at"] = row[1]
        return snapshot

    # ── Alerts Log ───────────────────────────────────────────────────

    def insert_alert(self, level: str, message: str, channel: str = "system") -> None:
        self.conn.execute(
            "INSERT INTO alerts_log (level, channel, message, created_at) VALUES (?,?,?,?)",
            (level, channel, message, to_iso(utcnow())),
        )

    def get_alerts(self, limit: int = 50) -> list[dict]:
        rows = self.conn.execute(
            "SELECT * FROM alerts_log ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [dict(r) for r in rows]
