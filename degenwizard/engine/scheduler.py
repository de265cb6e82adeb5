"""Scheduler — the single periodic tick that drives the bot.

Each tick, unless emergency-stopped, runs in order:
  1. Close voting windows that have ended
  2. Fire deferred scheduled trades whose wait has passed
  3. Daily trade (once per local day at/after the morning time)
  4. Hourly trade (randomized offset from the hour, trading hours only)
  5. Weekly settlement (configured weekday, at/after the configured hour)
  6. Retry incomplete settlements (every ``retry_interval_seconds``)
  7. Start resolution polls for executed trades past their deadline

Daily/weekly dates and the next hourly time live in ``runtime_state`` so a
restart neither replays nor loses a trigger. The set of trades currently
being resolved is in memory only.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import signal
from dataclasses import dataclass
from typing import Awaitable

from degenwizard.config import WEEKDAYS
from degenwizard.engine.context import EngineContext
from degenwizard.engine.settlement import SettlementEngine
from degenwizard.engine.trade_lifecycle import TradeLifecycle
from degenwizard.storage.models import EPOCH
from degenwizard.observability.logger import get_logger, log_context
from degenwizard.observability.metrics import metrics

log = get_logger(__name__)


@dataclass
class DeferredTrigger:
    """A scheduled trade held back by the minimum gap."""
    kind: str
    due_at: dt.datetime


class Scheduler:
    """Tick-driven coordinator for trades, settlements and resolutions."""

    def __init__(
        self,
        ctx: EngineContext,
        lifecycle: TradeLifecycle | None = None,
        settlement: SettlementEngine | None = None,
    ):
        self.ctx = ctx
        self.lifecycle = lifecycle or TradeLifecycle(ctx)
        self.settlement = settlement or SettlementEngine(ctx)
        self._resolving: set[int] = set()
        self._resolution_tasks: set[asyncio.Task[None]] = set()
        self._deferred: dict[str, DeferredTrigger] = {}
        self._last_settlement_retry: dt.datetime | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._tick_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def resolving(self) -> frozenset[int]:
        return frozenset(self._resolving)

    @property
    def deferred(self) -> list[DeferredTrigger]:
        return list(self._deferred.values())

    # ── Tick ─────────────────────────────────────────────────────────

    async def tick(self, now: dt.datetime | None = None) -> None:
        if self.ctx.db.is_emergency_stopped():
            return
        now = now or self.ctx.now()
        self._tick_count += 1

        with metrics.timer("scheduler.tick"):
            await self._step("voting", self._check_voting_windows(now))
            await self._step("deferred", self._run_deferred(now))
            await self._step("daily", self._check_daily(now))
            await self._step("hourly", self._check_hourly(now))
            await self._step("weekly", self._check_weekly(now))
            await self._step("settlement_retry", self._check_settlement_retries(now))
            await self._step("resolution", self._check_pending_resolutions(now))

    async def _step(self, name: str, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception as e:
            metrics.incr("scheduler.step_errors")
            log.exception("scheduler.step_error", step=name, error=str(e))

    async def _check_voting_windows(self, now: dt.datetime) -> None:
        for trade in self.ctx.db.get_voting_trades_due(now):
            log.info("scheduler.voting_closed", trade_id=trade.id)
            await self.lifecycle.close_voting(trade)

    # ── Scheduled trades ─────────────────────────────────────────────

    async def _check_daily(self, now: dt.datetime) -> None:
        sched = self.ctx.config.scheduling
        local = now.astimezone(self.ctx.tz)
        today = local.date().isoformat()
        if self.ctx.db.get_runtime_state().last_daily_trade_date == today:
            return
        if (local.hour, local.minute) < (sched.morning_hour, sched.morning_minute):
            return
        self.ctx.db.set_last_daily_trade_date(today)
        await self._handle_scheduled_trade("daily", now)

    async def _check_hourly(self, now: dt.datetime) -> None:
        sched = self.ctx.config.scheduling
        local = now.astimezone(self.ctx.tz)
        if local.hour == sched.morning_hour:
            return
        if not sched.trade_hours_start <= local.hour < sched.trade_hours_end:
            return

        next_at = self.ctx.db.get_runtime_state().next_hourly_trade_at
        if next_at <= EPOCH:
            self.schedule_next_hourly(now)
            return
        if now >= next_at:
            self.schedule_next_hourly(now)
            await self._handle_scheduled_trade("hourly", now)

    def schedule_next_hourly(self, now: dt.datetime) -> dt.datetime:
        """Next local hour boundary, shifted by a random offset, never in the past."""
        local = now.astimezone(self.ctx.tz)
        into_hour = dt.timedelta(
            minutes=local.minute, seconds=local.second, microseconds=local.microsecond,
        )
        next_hour = now + dt.timedelta(hours=1) - into_hour
        variance = self.ctx.config.scheduling.interval_variance_minutes * 60
        offset = self.ctx.rng.uniform(-variance, variance) if variance else 0.0
        scheduled = next_hour + dt.timedelta(seconds=offset)
        if scheduled <= now:
            scheduled = now + dt.timedelta(minutes=1)
        self.ctx.db.set_next_hourly_trade_at(scheduled)
        log.info("scheduler.next_hourly", at=scheduled.isoformat())
        return scheduled

    async def _handle_scheduled_trade(self, kind: str, now: dt.datetime) -> None:
        check = self.lifecycle.can_start_trade(is_user_initiated=False)
        if not check.allowed and check.wait_seconds:
            due_at = now + dt.timedelta(seconds=check.wait_seconds)
            self._deferred[kind] = DeferredTrigger(kind=kind, due_at=due_at)
            log.info("scheduler.trade_deferred", kind=kind, due_at=due_at.isoformat())
            return
        if not check.allowed:
            log.info("scheduler.trade_skipped", kind=kind, reason=check.reason)
            return
        log.info("scheduler.trade_starting", kind=kind)
        await self.lifecycle.start_trade("cron")

    async def _run_deferred(self, now: dt.datetime) -> None:
        due = [d for d in self._deferred.values() if d.due_at <= now]
        for trigger in due:
            self._deferred.pop(trigger.kind, None)
            await self._handle_scheduled_trade(trigger.kind, now)

    # ── Settlements ──────────────────────────────────────────────────

    async def _check_weekly(self, now: dt.datetime) -> None:
        sched = self.ctx.config.scheduling
        local = now.astimezone(self.ctx.tz)
        if WEEKDAYS[local.weekday()] != sched.weekly_payout_weekday:
            return
        if local.hour < sched.weekly_payout_hour:
            return
        today = local.date().isoformat()
        if self.ctx.db.get_runtime_state().last_weekly_payout_date == today:
            return
        self.ctx.db.set_last_weekly_payout_date(today)

        if self.ctx.db.is_emergency_stopped():
            log.info("scheduler.weekly_skipped", reason="emergency stop")
            return
        if self.ctx.db.has_incomplete_settlement():
            log.info("scheduler.weekly_skipped", reason="settlement in progress")
            return
        if self.ctx.wallet is None:
            log.info("scheduler.weekly_skipped", reason="no payout wallet")
            return
        log.info("scheduler.weekly_payout")
        await self.settlement.run_weekly_payouts()

    async def _check_settlement_retries(self, now: dt.datetime) -> None:
        interval = self.ctx.config.payouts.retry_interval_seconds
        last = self._last_settlement_retry
        if last is not None and (now - last).total_seconds() < interval:
            return
        self._last_settlement_retry = now
        await self.settlement.retry_incomplete_settlements()

    # ── Resolution ───────────────────────────────────────────────────

    async def _check_pending_resolutions(self, now: dt.datetime) -> None:
        if self.ctx.db.is_emergency_stopped():
            return
        for trade in self.ctx.db.get_trades_ready_for_resolution(now):
            if trade.id in self._resolving:
                continue
            self._resolving.add(trade.id)
            task = asyncio.create_task(self._resolve(trade.id))
            self._resolution_tasks.add(task)
            task.add_done_callback(self._resolution_tasks.discard)

    async def _resolve(self, trade_id: int) -> None:
        try:
            with log_context(trade_id=trade_id), metrics.timer("resolution.poll"):
                await self.lifecycle.resolve_trade(trade_id)
        except Exception as e:
            log.exception("scheduler.resolution_error", trade_id=trade_id, error=str(e))
        finally:
            self._resolving.discard(trade_id)

    async def wait_for_resolutions(self) -> None:
        """Await every resolution poll currently in flight."""
        if self._resolution_tasks:
            await asyncio.gather(*list(self._resolution_tasks), return_exceptions=True)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def run(self) -> None:
        """Tick until stopped by ``stop()`` or SIGTERM/SIGINT."""
        self._running = True
        self._stop_event = asyncio.Event()
        interval = self.ctx.config.scheduling.tick_interval_seconds
        db = self.ctx.db

        if db.is_emergency_stopped():
            log.warning("scheduler.emergency_stop_restored")
        db.insert_alert("info", "\U0001f916 Scheduler started", "system")
        log.info(
            "scheduler.starting",
            tick_interval_secs=interval,
            timezone=self.ctx.config.scheduling.timezone,
            morning_trade_time=self.ctx.config.scheduling.morning_trade_time,
            trade_hours=f"{self.ctx.config.scheduling.trade_hours_start}-"
                        f"{self.ctx.config.scheduling.trade_hours_end}",
        )

        try:
            self._last_settlement_retry = self.ctx.now()
            await self.settlement.retry_incomplete_settlements()
        except Exception as e:
            log.exception("scheduler.startup_retry_error", error=str(e))

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                pass  # Windows or non-main thread

        snapshot_every = self.ctx.config.observability.metrics_snapshot_ticks
        loops = 0
        while self._running:
            loops += 1
            try:
                await self.tick()
                if loops % snapshot_every == 0:
                    self._save_metrics()
            except Exception as e:
                log.exception("scheduler.tick_error", error=str(e))
                db.insert_alert("error", f"Tick error: {e}", "system")
            if not self._running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        if self._resolution_tasks:
            await asyncio.wait(list(self._resolution_tasks), timeout=30)
        self._save_metrics()
        log.info("scheduler.stopped", ticks=self._tick_count)
        db.insert_alert("info", "\U0001f6d1 Scheduler stopped", "system")

    def stop(self) -> None:
        log.info("scheduler.stop_requested")
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle SIGTERM/SIGINT for graceful shutdown."""
        log.info("scheduler.signal_received", signal=sig.name)
        self.stop()

    def _save_metrics(self) -> None:
        """Log and persist the metrics snapshot so ``bot status`` can read it."""
        snapshot = metrics.snapshot()
        log.info(
            "scheduler.metrics",
            uptime_secs=snapshot["uptime_secs"],
            counters=snapshot["counters"],
            gauges=snapshot["gauges"],
        )
        self.ctx.db.save_metrics_snapshot(snapshot, self.ctx.now())
