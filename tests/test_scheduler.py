"""Tests for the tick scheduler: daily, hourly and weekly triggers, deferral, resolution."""

from __future__ import annotations

import asyncio
import datetime as dt
import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from degenwizard.config import StorageConfig
from degenwizard.connectors.polymarket_gamma import Resolution
from degenwizard.engine.scheduler import Scheduler
from degenwizard.engine.trade_lifecycle import TradeLifecycle
from degenwizard.observability.metrics import metrics
from degenwizard.storage.database import Database
from degenwizard.storage.models import EPOCH, Direction, TradeStatus

from fakes import T0, register, seed_resolved_trade

UTC = dt.timezone.utc
# Sunday 2026-03-01 18:00 in New York (EST)
SUNDAY_6PM = dt.datetime(2026, 3, 1, 23, 0, tzinfo=UTC)


class _LowRng(random.Random):
    """Always picks the earliest offset."""

    def uniform(self, a: float, b: float) -> float:
        return a


def _mock_settlement() -> MagicMock:
    settlement = MagicMock()
    settlement.retry_incomplete_settlements = AsyncMock()
    settlement.run_weekly_payouts = AsyncMock(return_value=None)
    return settlement


# ── Tick gating ──────────────────────────────────────────────────────

class TestTick:

    @pytest.mark.asyncio
    async def test_emergency_stop_skips_everything(self, ctx):
        ctx.db.set_emergency_stopped(True)
        settlement = _mock_settlement()
        await Scheduler(ctx, settlement=settlement).tick()
        assert ctx.db.get_active_trade() is None
        assert ctx.db.get_runtime_state().last_daily_trade_date == "1970-01-01"
        settlement.retry_incomplete_settlements.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_the_tick(self, ctx):
        before = metrics.counter("scheduler.step_errors")
        ctx.db.get_voting_trades_due = MagicMock(side_effect=RuntimeError("boom"))
        await Scheduler(ctx).tick()
        assert ctx.db.get_active_trade() is not None
        assert metrics.counter("scheduler.step_errors") == before + 1


# ── Daily trade ──────────────────────────────────────────────────────

class TestDailyTrade:

    @pytest.mark.asyncio
    async def test_fires_once_at_morning_time(self, ctx, clock):
        clock.current = dt.datetime(2026, 3, 4, 14, 29, tzinfo=UTC)  # 09:29 local
        scheduler = Scheduler(ctx)
        await scheduler.tick()
        assert ctx.db.get_active_trade() is None

        clock.advance(minutes=1)
        await scheduler.tick()
        trade = ctx.db.get_active_trade()
        assert trade is not None
        assert ctx.db.get_runtime_state().last_daily_trade_date == "2026-03-04"

        ctx.db.delete_trade(trade.id)
        clock.advance(minutes=1)
        await scheduler.tick()
        assert ctx.db.get_active_trade() is None

    @pytest.mark.asyncio
    async def test_daily_trade_is_voted_and_executed(self, ctx, clock):
        scheduler = Scheduler(ctx)
        await scheduler.tick()
        trade = ctx.db.get_active_trade()
        lifecycle = TradeLifecycle(ctx)
        for i in range(5):
            register(ctx.db, f"u{i}")
            lifecycle.record_vote(trade.id, f"u{i}", Direction.DOWN)

        clock.advance(seconds=299)
        await scheduler.tick()
        assert ctx.db.get_trade(trade.id).status == TradeStatus.VOTING

        clock.advance(seconds=1)
        await scheduler.tick()
        executed = ctx.db.get_trade(trade.id)
        assert executed.status == TradeStatus.EXECUTED
        assert executed.executed_direction == Direction.DOWN

    @pytest.mark.asyncio
    async def test_deferred_until_min_gap(self, ctx, clock):
        register(ctx.db, "u1")
        seed_resolved_trade(ctx.db, 1.0, {"u1": Direction.UP}, resolved_at=T0 - dt.timedelta(minutes=5))
        scheduler = Scheduler(ctx)

        await scheduler.tick()
        assert ctx.db.get_active_trade() is None
        [deferred] = scheduler.deferred
        assert deferred.kind == "daily"
        assert deferred.due_at == T0 + dt.timedelta(minutes=15)

        clock.advance(minutes=14)
        await scheduler.tick()
        assert ctx.db.get_active_trade() is None

        clock.advance(minutes=1)
        await scheduler.tick()
        assert ctx.db.get_active_trade() is not None
        assert scheduler.deferred == []

    @pytest.mark.asyncio
    async def test_blocked_trade_is_skipped_not_deferred(self, ctx):
        ctx.db.insert_trade("ETH", "mkt-x", T0 + dt.timedelta(minutes=5), T0 + dt.timedelta(minutes=20))
        scheduler = Scheduler(ctx)
        await scheduler.tick()
        assert scheduler.deferred == []
        assert ctx.db.get_runtime_state().last_daily_trade_date == "2026-03-04"


# ── Hourly trade ─────────────────────────────────────────────────────

class TestHourlyTrade:

    @pytest.mark.asyncio
    async def test_first_tick_only_schedules(self, ctx):
        ctx.db.set_last_daily_trade_date("2026-03-04")
        await Scheduler(ctx).tick()
        assert ctx.db.get_active_trade() is None
        next_at = ctx.db.get_runtime_state().next_hourly_trade_at
        assert T0 + dt.timedelta(minutes=50) <= next_at <= T0 + dt.timedelta(minutes=70)

    @pytest.mark.asyncio
    async def test_fires_when_due_and_reschedules(self, ctx, clock):
        ctx.db.set_last_daily_trade_date("2026-03-04")
        scheduler = Scheduler(ctx)
        await scheduler.tick()
        first = ctx.db.get_runtime_state().next_hourly_trade_at

        clock.current = first
        await scheduler.tick()
        assert ctx.db.get_active_trade() is not None
        assert ctx.db.get_runtime_state().next_hourly_trade_at > first

    @pytest.mark.asyncio
    async def test_outside_hours_does_nothing(self, ctx, clock):
        clock.current = dt.datetime(2026, 3, 5, 4, 0, tzinfo=UTC)  # 23:00 local
        ctx.db.set_last_daily_trade_date("2026-03-04")
        await Scheduler(ctx).tick()
        assert ctx.db.get_runtime_state().next_hourly_trade_at == EPOCH
        assert ctx.db.get_active_trade() is None

    def test_schedule_without_variance_is_top_of_hour(self, ctx):
        ctx.config.scheduling.interval_variance_minutes = 0
        now = T0 + dt.timedelta(minutes=17, seconds=5)
        assert Scheduler(ctx).schedule_next_hourly(now) == T0 + dt.timedelta(hours=1)

    def test_schedule_never_in_the_past(self, ctx):
        ctx.rng = _LowRng()
        now = T0 + dt.timedelta(minutes=55)
        scheduled = Scheduler(ctx).schedule_next_hourly(now)
        assert scheduled == now + dt.timedelta(minutes=1)
        assert ctx.db.get_runtime_state().next_hourly_trade_at == scheduled


# ── Weekly settlement ────────────────────────────────────────────────

class TestWeeklySettlement:

    @pytest.mark.asyncio
    async def test_runs_once_on_payout_day(self, wallet_ctx, clock):
        ctx = wallet_ctx
        clock.current = SUNDAY_6PM
        ctx.db.set_last_daily_trade_date("2026-03-01")
        register(ctx.db, "alice", 1)
        seed_resolved_trade(ctx.db, 100.0, {"alice": Direction.UP}, resolved_at=SUNDAY_6PM - dt.timedelta(days=1))
        scheduler = Scheduler(ctx)

        await scheduler.tick()
        assert len(ctx.db.get_recent_settlements()) == 1
        assert ctx.db.get_runtime_state().last_weekly_payout_date == "2026-03-01"

        clock.advance(hours=1)
        await scheduler.tick()
        assert len(ctx.db.get_recent_settlements()) == 1

    @pytest.mark.asyncio
    async def test_not_before_payout_hour(self, ctx, clock):
        clock.current = SUNDAY_6PM - dt.timedelta(minutes=1)
        settlement = _mock_settlement()
        await Scheduler(ctx, settlement=settlement).tick()
        settlement.run_weekly_payouts.assert_not_awaited()
        assert ctx.db.get_runtime_state().last_weekly_payout_date == "1970-01-01"

    @pytest.mark.asyncio
    async def test_other_weekdays_ignored(self, wallet_ctx):
        settlement = _mock_settlement()
        await Scheduler(wallet_ctx, settlement=settlement).tick()
        settlement.run_weekly_payouts.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skipped_without_wallet(self, ctx, clock):
        clock.current = SUNDAY_6PM
        settlement = _mock_settlement()
        await Scheduler(ctx, settlement=settlement).tick()
        settlement.run_weekly_payouts.assert_not_awaited()
        assert ctx.db.get_runtime_state().last_weekly_payout_date == "2026-03-01"

    @pytest.mark.asyncio
    async def test_skipped_while_settlement_incomplete(self, wallet_ctx, clock):
        clock.current = SUNDAY_6PM
        wallet_ctx.db.insert_settlement(SUNDAY_6PM - dt.timedelta(days=7))
        settlement = _mock_settlement()
        await Scheduler(wallet_ctx, settlement=settlement).tick()
        settlement.run_weekly_payouts.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_on_interval(self, ctx, clock):
        settlement = _mock_settlement()
        scheduler = Scheduler(ctx, settlement=settlement)
        await scheduler.tick()
        await scheduler.tick()
        assert settlement.retry_incomplete_settlements.await_count == 1

        clock.advance(seconds=ctx.config.payouts.retry_interval_seconds)
        await scheduler.tick()
        assert settlement.retry_incomplete_settlements.await_count == 2


# ── Resolution ───────────────────────────────────────────────────────

def _executed_trade(ctx) -> int:
    trade_id = ctx.db.insert_trade("BTC", "mkt-btc", T0 - dt.timedelta(minutes=20), T0)
    ctx.db.mark_trade_executed(trade_id, Direction.UP, "order-1", T0 - dt.timedelta(minutes=15))
    return trade_id


class TestResolution:

    @pytest.mark.asyncio
    async def test_tick_resolves_due_trade(self, ctx):
        trade_id = _executed_trade(ctx)
        ctx.gateway.resolution = Resolution(resolved=True, outcome=Direction.UP, condition_id="0xc")
        scheduler = Scheduler(ctx)

        await scheduler.tick()
        await scheduler.wait_for_resolutions()

        assert ctx.db.get_trade(trade_id).status == TradeStatus.RESOLVED
        assert scheduler.resolving == frozenset()

    @pytest.mark.asyncio
    async def test_one_poll_per_trade_in_flight(self, ctx):
        _executed_trade(ctx)
        lifecycle = TradeLifecycle(ctx)
        lifecycle.resolve_trade = AsyncMock(return_value=False)
        scheduler = Scheduler(ctx, lifecycle=lifecycle)

        await scheduler.tick()
        await scheduler.tick()
        await scheduler.wait_for_resolutions()
        assert lifecycle.resolve_trade.await_count == 1

    @pytest.mark.asyncio
    async def test_restart_resumes_pending_resolution(self, ctx, tmp_path):
        trade_id = _executed_trade(ctx)
        ctx.db.close()
        ctx.db = Database(StorageConfig(sqlite_path=str(tmp_path / "test.db")))
        ctx.db.connect()
        ctx.gateway.resolution = Resolution(resolved=True, outcome=Direction.UP, condition_id="0xc")

        scheduler = Scheduler(ctx)
        await scheduler.tick()
        await scheduler.wait_for_resolutions()

        assert ctx.db.get_trade(trade_id).status == TradeStatus.RESOLVED
        assert sum(ctx.db.get_trade_counts().values()) == 1

    @pytest.mark.asyncio
    async def test_unresolved_trade_polled_again_next_tick(self, ctx):
        trade_id = _executed_trade(ctx)
        scheduler = Scheduler(ctx)
        await scheduler.tick()
        await scheduler.wait_for_resolutions()
        assert ctx.db.get_trade(trade_id).status == TradeStatus.EXECUTED

        ctx.gateway.resolution = Resolution(resolved=True, outcome=Direction.DOWN, condition_id="0xc")
        await scheduler.tick()
        await scheduler.wait_for_resolutions()
        assert ctx.db.get_trade(trade_id).status == TradeStatus.RESOLVED


# ── Run loop ─────────────────────────────────────────────────────────

class TestRunLoop:

    @pytest.mark.asyncio
    async def test_stop_ends_run(self, ctx):
        settlement = _mock_settlement()
        scheduler = Scheduler(ctx, settlement=settlement)
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        assert scheduler.is_running
        scheduler.stop()
        await asyncio.wait_for(task, timeout=2)

        assert not scheduler.is_running
        settlement.retry_incomplete_settlements.assert_awaited()
        messages = [a["message"] for a in ctx.db.get_alerts()]
        assert any("Scheduler started" in m for m in messages)
        assert any("Scheduler stopped" in m for m in messages)

    @pytest.mark.asyncio
    async def test_metrics_saved_while_running_and_on_stop(self, ctx):
        ctx.config.observability.metrics_snapshot_ticks = 1
        scheduler = Scheduler(ctx, settlement=_mock_settlement())
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        running = ctx.db.get_metrics_snapshot()
        assert running is not None
        assert "scheduler.tick" in running["timings"]

        ctx.clock.advance(seconds=60)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=2)

        final = ctx.db.get_metrics_snapshot()
        assert final["saved_at"] > running["saved_at"]
        assert set(final) >= {"uptime_secs", "counters", "gauges", "timings"}
