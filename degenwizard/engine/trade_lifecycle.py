"""Trade lifecycle — one community-voted round from proposal to resolution.

    voting ──close_voting──▶ executed ──resolve_trade──▶ resolved
       │                        │
       └── abort (delete) ◀─────┘ (execution failure only)

Every abort deletes the trade row (its predictions cascade) and announces
the reason. Creation and resolution each commit in a single store
transaction; no ``await`` happens inside one.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import math
from dataclasses import dataclass

from degenwizard.connectors.polymarket_gamma import UpDownMarket
from degenwizard.connectors.price_feed import Candle
from degenwizard.engine.context import EngineContext
from degenwizard.errors import SignalError
from degenwizard.storage.database import Database
from degenwizard.policy.position_sizer import (
    PositionSize,
    VoteDecision,
    calculate_position_size,
    conviction_label,
    decide_direction,
)
from degenwizard.storage.models import (
    Direction,
    TradeRecord,
    TradeStatus,
    UserRecord,
    VoteCounts,
)
from degenwizard.observability.logger import get_logger
from degenwizard.observability.metrics import metrics

log = get_logger(__name__)

MAX_WIN_CALLOUTS = 8
MAX_LOSS_CALLOUTS = 5


@dataclass
class AdmissionResult:
    allowed: bool
    reason: str = ""
    wait_seconds: float | None = None


@dataclass
class VoteResult:
    accepted: bool
    reason: str = ""


def format_duration(seconds: int) -> str:
    mins, secs = divmod(int(seconds), 60)
    if mins == 0:
        return f"{secs} second{'s' if secs != 1 else ''}"
    if secs == 0:
        return f"{mins} minute{'s' if mins != 1 else ''}"
    return f"{mins}m {secs}s"


def mention(user_id: str) -> str:
    return f"<@{user_id}>"


def streak_callout(user: UserRecord) -> str | None:
    streak = user.current_streak
    if streak < 3:
        return None
    fire = "🔥🔥🔥" if streak >= 10 else "🔥🔥" if streak >= 5 else "🔥"
    return f"{fire} {mention(user.id)} on a {streak}-streak!"


class TradeLifecycle:
    """Propose, vote on, execute and resolve trades."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @property
    def db(self) -> Database:
        return self.ctx.db

    # ── Emergency stop ───────────────────────────────────────────────

    def is_emergency_stopped(self) -> bool:
        return self.db.is_emergency_stopped()

    def set_emergency_stop(self, stopped: bool) -> None:
        self.db.set_emergency_stopped(stopped)
        metrics.gauge("emergency_stopped", 1.0 if stopped else 0.0)
        log.warning("lifecycle.emergency_stop", stopped=stopped)

    # ── Admission ────────────────────────────────────────────────────

    def can_start_trade(self, is_user_initiated: bool = False) -> AdmissionResult:
        """Read-only pre-check; creation re-checks inside its transaction."""
        if self.db.is_emergency_stopped():
            return AdmissionResult(False, "Bot is in emergency stop mode.")

        if self.db.get_active_trade() is not None:
            return AdmissionResult(False, "A trade is already in progress.")

        if self.db.has_incomplete_settlement():
            return AdmissionResult(
                False,
                "Payout settlement in progress. Trading will resume after payouts complete.",
            )

        now = self.ctx.now()
        last = self.db.get_last_resolved_trade()
        if last is not None and last.resolved_at is not None:
            min_gap = dt.timedelta(minutes=self.ctx.config.scheduling.min_gap_minutes)
            gap = now - last.resolved_at
            if gap < min_gap:
                wait = (min_gap - gap).total_seconds()
                return AdmissionResult(
                    False,
                    f"Too soon after last trade. Wait {math.ceil(wait / 60)} minute(s).",
                    wait_seconds=wait,
                )

        if is_user_initiated:
            available_at = self._morning_blackout(now)
            if available_at:
                return AdmissionResult(
                    False, f"Morning trade blackout. Proposals open again at {available_at}.",
                )

        return AdmissionResult(True)

    def _morning_blackout(self, now: dt.datetime) -> str | None:
        sched = self.ctx.config.scheduling
        local = now.astimezone(self.ctx.tz)
        current = local.hour * 60 + local.minute
        target = sched.morning_hour * 60 + sched.morning_minute
        if target - sched.morning_blackout_minutes <= current < target:
            hour12 = sched.morning_hour % 12 or 12
            suffix = "PM" if sched.morning_hour >= 12 else "AM"
            return f"{hour12}:{sched.morning_minute:02d} {suffix}"
        return None

    # ── Start ────────────────────────────────────────────────────────

    async def propose_trade_now(self, triggered_by: str) -> int | None:
        """Start a round. ``triggered_by`` is ``"cron"`` or ``"user:<id>"``."""
        return await self.start_trade(triggered_by)

    async def start_trade(self, triggered_by: str) -> int | None:
        notifier = self.ctx.notifier
        if self.db.is_emergency_stopped():
            await notifier.post("⛔ Trade cancelled - emergency stop activated.")
            return None
        if self.db.has_incomplete_settlement():
            await notifier.post("⏳ Trade delayed - payout settlement in progress.")
            return None
        active = self.db.get_active_trade()
        if active is not None:
            log.info("lifecycle.trade_already_active", trade_id=active.id)
            return None

        assets = list(self.ctx.config.markets.assets)
        markets_by_asset, candles_by_asset = await self._gather_inputs(assets)

        try:
            signal = await self.ctx.signal_source.propose_trade(markets_by_asset, candles_by_asset)
        except SignalError as e:
            log.error("lifecycle.signal_failed", error=str(e))
            await notifier.post("❌ Market analysis failed. Trade cancelled.")
            return None

        asset = signal.asset
        current_price = signal.current_price
        market = markets_by_asset.get(asset) or await self._lookup_market(asset)
        if market is None:
            await notifier.post(f"❌ No active 15M market found for {asset}. Trying another asset...")
            for fallback in assets:
                if fallback == asset:
                    continue
                market = markets_by_asset.get(fallback) or await self._lookup_market(fallback)
                if market is not None:
                    asset = fallback
                    candles = candles_by_asset.get(fallback) or []
                    current_price = candles[-1].close if candles else 0.0
                    break
            if market is None:
                await notifier.post("❌ No active 15M crypto markets available. Try again later.")
                return None

        voting_ends_at = self.ctx.now() + dt.timedelta(
            seconds=self.ctx.config.trading.voting_window_seconds,
        )
        with self.db.transaction():
            blocked_by_settlement = self.db.has_incomplete_settlement()
            if blocked_by_settlement or self.db.get_active_trade() is not None:
                trade_id = None
            else:
                trade_id = self.db.insert_trade(
                    asset, market.id, voting_ends_at, market.resolution_time,
                )

        if trade_id is None:
            if blocked_by_settlement:
                await notifier.post("⚠️ Trade skipped - payout settlement in progress.")
            else:
                await notifier.post("⚠️ Another trade started. This proposal was skipped.")
            return None

        text = self._proposal_text(asset, market, signal.reasoning, current_price, triggered_by)
        message_ref = await notifier.post(text)
        if not message_ref:
            log.error("lifecycle.proposal_not_posted", trade_id=trade_id)
            self.db.delete_trade(trade_id)
            return None

        self.db.set_trade_message_ref(trade_id, message_ref)
        try:
            await notifier.add_vote_reactions(message_ref)
        except Exception as e:
            log.warning("lifecycle.reactions_failed", trade_id=trade_id, error=str(e))

        metrics.incr("trades.proposed")
        log.info(
            "lifecycle.trade_proposed",
            trade_id=trade_id,
            asset=asset,
            market_id=market.id,
            triggered_by=triggered_by,
            voting_ends_at=voting_ends_at.isoformat(),
        )
        return trade_id

    async def _gather_inputs(
        self, assets: list[str],
    ) -> tuple[dict[str, UpDownMarket | None], dict[str, list[Candle]]]:
        results = await asyncio.gather(
            self.ctx.gateway.find_tradeable_markets(),
            *(self.ctx.price_feed.get_recent_candles(a) for a in assets),
            return_exceptions=True,
        )
        markets = results[0]
        if isinstance(markets, BaseException):
            log.warning("lifecycle.markets_fetch_failed", error=str(markets))
            markets = []

        markets_by_asset: dict[str, UpDownMarket | None] = {}
        for asset in assets:
            markets_by_asset[asset] = next((m for m in markets if m.asset == asset), None)

        candles_by_asset: dict[str, list[Candle]] = {}
        for asset, candles in zip(assets, results[1:]):
            if isinstance(candles, BaseException):
                log.warning("lifecycle.candles_fetch_failed", asset=asset, error=str(candles))
                candles = []
            candles_by_asset[asset] = candles
        return markets_by_asset, candles_by_asset

    async def _lookup_market(self, asset: str) -> UpDownMarket | None:
        try:
            return await self.ctx.gateway.get_market(asset)
        except Exception as e:
            log.warning("lifecycle.market_lookup_failed", asset=asset, error=str(e))
            return None

    def _proposal_text(
        self,
        asset: str,
        market: UpDownMarket,
        reasoning: str,
        current_price: float,
        triggered_by: str,
    ) -> str:
        chat = self.ctx.config.chat
        trading = self.ctx.config.trading
        if triggered_by.startswith("user:"):
            trigger = f"Proposed by {mention(triggered_by.split(':', 1)[1])}"
        else:
            trigger = "Scheduled trade"
        return "\n".join([
            f"⚡ **{asset} 15-Minute Prediction**",
            "",
            "📊 **Quick Analysis:**",
            reasoning,
            "",
            f"Current price: ${current_price:,.2f}",
            f"Question: Will {asset} be **UP** or **DOWN** in 15 minutes?",
            "",
            f"⏰ Voting closes in {format_duration(trading.voting_window_seconds)}",
            f"React: {chat.up_emoji} UP | {chat.down_emoji} DOWN",
            "",
            f"Minimum {trading.min_votes} votes to execute",
            f"[View on Polymarket]({market.url})",
            "",
            f"_{trigger}_",
        ])

    # ── Votes ────────────────────────────────────────────────────────

    def record_vote(
        self,
        trade_id: int,
        user_id: str,
        direction: Direction,
        display_name: str | None = None,
    ) -> VoteResult:
        """Record or change a live vote while the window is open."""
        trade = self.db.get_trade(trade_id)
        if trade is None or trade.status != TradeStatus.VOTING:
            return VoteResult(False, "Voting is not open for this trade.")
        user = self.db.get_user(user_id)
        if user is None or not user.wallet_address:
            return VoteResult(False, "Register a wallet before voting.")
        if display_name and display_name != user.display_name:
            self.db.ensure_user(user_id, display_name)
        if not self.db.upsert_live_vote(user_id, trade_id, Direction(direction)):
            return VoteResult(False, "Your vote is already final.")
        log.info("lifecycle.vote", trade_id=trade_id, user_id=user_id, direction=Direction(direction).value)
        return VoteResult(True)

    def get_vote_counts(self, trade_id: int, live: bool = False) -> VoteCounts:
        return self.db.get_vote_counts(trade_id, snapshotted=not live)

    # ── Voting close ─────────────────────────────────────────────────

    async def _abort(self, trade_id: int, reason: str, text: str | None = None) -> None:
        self.db.delete_trade(trade_id)
        metrics.incr("trades.aborted")
        log.warning("lifecycle.trade_aborted", trade_id=trade_id, reason=reason)
        await self.ctx.notifier.post(text or f"❌ Trade cancelled: {reason}")

    async def _snapshot(self, trade: TradeRecord) -> None:
        """Freeze eligible live votes under one timestamp; drop the rest."""
        if trade.proposal_message_ref is None:
            raise RuntimeError(f"Trade {trade.id} has no proposal message")
        try:
            reactions = await self.ctx.vote_collector.collect_votes(trade.proposal_message_ref)
        except Exception as e:
            log.warning("lifecycle.collect_votes_failed", trade_id=trade.id, error=str(e))
            reactions = []
        for vote in reactions:
            self.record_vote(trade.id, vote.user_id, vote.direction, vote.display_name)

        eligible: list[str] = []
        for pred in self.db.get_predictions(trade.id, snapshotted=False):
            user = self.db.get_user(pred.user_id)
            if user is None or not user.wallet_address:
                continue
            if self.ctx.config.chat.holder_role_id:
                try:
                    holder = await self.ctx.vote_collector.is_holder(pred.user_id)
                except Exception as e:
                    log.warning("lifecycle.holder_check_failed", user_id=pred.user_id, error=str(e))
                    holder = False
                if not holder:
                    continue
            eligible.append(pred.user_id)

        # Re-read state after the awaits above; the round may have been aborted.
        current = self.db.get_trade(trade.id)
        if current is None or current.status != TradeStatus.VOTING:
            return
        snapshot_at = self.ctx.now()
        with self.db.transaction():
            self.db.snapshot_predictions(trade.id, eligible, snapshot_at)
        log.info("lifecycle.snapshot", trade_id=trade.id, voters=len(eligible))

    async def close_voting(self, trade: TradeRecord) -> None:
        """Snapshot, tally, size and execute; or abort."""
        trade = self.db.get_trade(trade.id)
        if trade is None or trade.status != TradeStatus.VOTING:
            return

        if not trade.proposal_message_ref:
            await self._abort(trade.id, "Proposal message unavailable")
            return

        await self._snapshot(trade)
        if self.db.get_trade(trade.id) is None:
            return

        chat = self.ctx.config.chat
        trading = self.ctx.config.trading
        counts = self.db.get_vote_counts(trade.id)
        if counts.total < trading.min_votes:
            await self._abort(
                trade.id,
                "Not enough votes",
                "\n".join([
                    "⏰ **Voting closed**",
                    "",
                    f"{chat.up_emoji} UP: {counts.up} | {chat.down_emoji} DOWN: {counts.down}",
                    "",
                    f"❌ Not enough votes (need {trading.min_votes}). Trade cancelled.",
                ]),
            )
            return

        decision = decide_direction(counts, self.ctx.rng)
        if decision.is_tie:
            log.info("lifecycle.coin_flip", trade_id=trade.id, direction=decision.direction.value)

        try:
            pool = await self.ctx.gateway.get_pool_balance()
        except Exception as e:
            log.error("lifecycle.pool_balance_failed", trade_id=trade.id, error=str(e))
            await self._abort(trade.id, "Could not read pool balance")
            return
        if pool <= 0:
            await self._abort(
                trade.id, "No pool balance", "❌ No USDC balance in wallet. Trade cancelled.",
            )
            return

        size = calculate_position_size(pool, decision.conviction, trading)
        if not size.ok:
            await self._abort(
                trade.id,
                "Pool too small",
                f"❌ Pool balance too low for minimum ${trading.min_position_usd:.0f} bet. "
                "Trade cancelled.",
            )
            return

        market = await self._lookup_market(trade.asset)
        if market is None:
            await self._abort(trade.id, "No active market")
            return

        await self.execute(trade, market, decision, counts, size)

    # ── Execution ────────────────────────────────────────────────────

    async def execute(
        self,
        trade: TradeRecord,
        market: UpDownMarket,
        decision: VoteDecision,
        counts: VoteCounts,
        size: PositionSize,
    ) -> bool:
        try:
            result = await self.ctx.gateway.execute_order(market, decision.direction, size.stake_usd)
        except Exception as e:
            log.error("lifecycle.execution_error", trade_id=trade.id, error=str(e))
            reason = str(e) or "Unknown error"
            await self._abort(trade.id, reason, f"❌ Trade execution failed: {reason}")
            return False

        if not result.success:
            reason = result.reason or "Trade execution failed"
            await self._abort(trade.id, reason, f"❌ Trade execution failed: {reason}")
            return False

        now = self.ctx.now()
        executed = self.db.mark_trade_executed(
            trade.id, decision.direction, result.order_id, now,
            market_id=market.id, resolution_time=market.resolution_time,
        )
        if not executed:
            log.error("lifecycle.execute_transition_lost", trade_id=trade.id, order_id=result.order_id)
            return False

        metrics.incr("trades.executed")
        log.info(
            "lifecycle.trade_executed",
            trade_id=trade.id,
            direction=decision.direction.value,
            stake=round(size.stake_usd, 2),
            cost=round(result.total_cost, 2),
            order_id=result.order_id,
        )

        chat = self.ctx.config.chat
        side = "LONG" if decision.direction == Direction.UP else "SHORT"
        pool_pct = result.total_cost / size.pool_balance * 100 if size.pool_balance else 0.0
        minutes = max(0, math.ceil((market.resolution_time - now).total_seconds() / 60))
        lines = [
            f"🎯 **{trade.asset} {side} LOCKED**",
            "",
            f"{chat.up_emoji} UP: {counts.up} ({decision.up_pct}%) · "
            f"{chat.down_emoji} DOWN: {counts.down} ({decision.down_pct}%)",
        ]
        if decision.is_tie:
            lines.append(f"🎲 Tie! Coin flip chose {decision.direction.value}.")
        lines += [
            "",
            f"💵 ${result.total_cost:.2f} → {result.shares_filled:.2f} shares @ ${result.avg_price:.4f}",
            f"📊 {conviction_label(decision.conviction)} conviction · {pool_pct:.1f}% of pool",
            "",
            f"⏰ Resolves in ~{minutes} min",
        ]
        await self.ctx.notifier.post("\n".join(lines))
        return True

    # ── Resolution ───────────────────────────────────────────────────

    async def resolve_trade(self, trade_id: int) -> bool:
        """Poll the market; once resolved and redeemed, settle the round's scores.

        Returns True only when the trade moved to ``resolved``.
        """
        trade = self.db.get_trade(trade_id)
        if trade is None or trade.status != TradeStatus.EXECUTED:
            return False

        try:
            resolution = await self.ctx.gateway.get_resolution(trade.market_id)
        except Exception as e:
            log.warning("lifecycle.resolution_poll_failed", trade_id=trade_id, error=str(e))
            return False

        if not resolution.resolved or resolution.outcome is None:
            log.debug("lifecycle.not_resolved", trade_id=trade_id)
            await self._check_stale(trade)
            return False

        try:
            pnl = await self.ctx.gateway.get_position_pnl(resolution.condition_id)
        except Exception as e:
            log.warning("lifecycle.pnl_unavailable", trade_id=trade_id, error=str(e))
            return False

        try:
            await self.ctx.gateway.redeem_winnings(resolution.condition_id, resolution.token_ids)
        except Exception as e:
            log.error("lifecycle.redemption_failed", trade_id=trade_id, error=str(e))
            metrics.incr("redemptions.failed")
            return False

        outcome = resolution.outcome
        cfg = self.ctx.config.reputation
        with self.db.transaction():
            if not self.db.mark_trade_resolved(trade_id, pnl.pnl, self.ctx.now()):
                return False
            self.db.mark_prediction_correctness(trade_id, outcome)
            self.db.update_streaks(trade_id)
            self.db.increase_reputation(
                trade_id, cfg.weight_increase_per_prediction, cfg.max_weight,
            )

        metrics.incr("trades.resolved")
        log.info(
            "lifecycle.trade_resolved",
            trade_id=trade_id,
            outcome=outcome.value,
            pnl=round(pnl.pnl, 2),
        )
        await self._announce_result(trade, outcome, pnl.pnl, pnl.pnl_percent)
        return True

    async def _check_stale(self, trade: TradeRecord) -> None:
        if trade.resolution_time is None:
            return
        limit = dt.timedelta(minutes=self.ctx.config.trading.resolution_stale_minutes)
        overdue = self.ctx.now() - trade.resolution_time
        if overdue < limit:
            return
        await self.ctx.notifier.alert(
            "warning",
            "Resolution overdue",
            f"Trade {trade.id} ({trade.asset}, market {trade.market_id}) is still unresolved "
            f"{int(overdue.total_seconds() // 60)} minutes after its deadline.",
            cooldown_key=f"stale_trade_{trade.id}",
        )

    async def _announce_result(
        self, trade: TradeRecord, outcome: Direction, pnl: float, pnl_percent: float,
    ) -> None:
        correct = self.db.get_correct_predictors(trade.id)
        try:
            pool = await self.ctx.gateway.get_pool_balance()
        except Exception as e:
            log.warning("lifecycle.pool_balance_failed", error=str(e))
            pool = 0.0
        progress = max(0.0, self.db.get_unsettled_pnl())

        if pnl > 0:
            lines = [
                "🚀 **WE'RE SO BACK**",
                "",
                f"{trade.asset} went **{outcome.value}** · +${pnl:.2f} (+{pnl_percent:.0f}%) 💰",
            ]
            if correct:
                lines += ["", "✅ " + ", ".join(mention(u.id) for u in correct[:MAX_WIN_CALLOUTS])]
            streaks = [s for s in (streak_callout(u) for u in correct) if s]
            if streaks:
                lines += ["", "\n".join(streaks)]
            lines += ["", f"💰 Pool: ${pool:.2f} · ${progress:.2f} toward next payout"]
        else:
            side = "long" if trade.executed_direction == Direction.UP else "short"
            lines = [
                "📉 **Down bad**",
                "",
                f"{trade.asset} went **{outcome.value}** · we were {side} · -${abs(pnl):.2f}",
            ]
            if correct:
                callers = ", ".join(mention(u.id) for u in correct[:MAX_LOSS_CALLOUTS])
                lines += ["", f"🎯 {callers} counter-called it"]
            lines += ["", f"💰 Pool: ${pool:.2f}"]
        await self.ctx.notifier.post("\n".join(lines))
