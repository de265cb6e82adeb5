"""Settlement engine — weekly profit share to the most accurate voters.

A settlement is created in one transaction that links every resolved,
unsettled trade and writes one payout row per winner with its final amount.
Everything after that is retry machinery that makes the wallet transfers
match those rows:

  - each payout persists its unsigned transaction before signing and its
    hash before broadcasting, so a resend after a crash reuses the same
    nonce and fees
  - retries follow a fixed backoff ladder measured from ``last_retry_at``
  - once every unsent payout has used up its retries the settlement fails
    and the bot enters emergency stop until a human resumes it
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

from degenwizard.chain.transactions import deserialize_tx_request
from degenwizard.engine.context import EngineContext
from degenwizard.errors import TxRequestError
from degenwizard.policy.payout_split import payout_total, split_payout
from degenwizard.storage.database import Database
from degenwizard.storage.models import PayoutRecord, PayoutStatus, SettlementStatus
from degenwizard.observability.logger import get_logger, log_context
from degenwizard.observability.metrics import metrics

log = get_logger(__name__)

MEDALS = {1: "🥇", 2: "🥈", 3: "🥉"}


class PayoutOutcome(str, Enum):
    SENT = "sent"
    ALREADY_SENT = "already_sent"
    PENDING = "pending"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"


@dataclass
class PayoutResult:
    payout_id: int
    outcome: PayoutOutcome
    error: str | None = None

    @property
    def newly_sent(self) -> bool:
        return self.outcome == PayoutOutcome.SENT


class SettlementEngine:
    """Create settlements and drive their payouts to completion."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self._lock = asyncio.Lock()

    @property
    def db(self) -> Database:
        return self.ctx.db

    # ── Creation ─────────────────────────────────────────────────────

    def get_profit_since_last_payout(self) -> float:
        return self.db.get_unsettled_pnl()

    async def run_weekly_payouts(self) -> int | None:
        """Create and distribute a settlement if the week earned enough.

        Returns the new settlement id, or None when nothing was created.
        """
        cfg = self.ctx.config.payouts
        profit = self.get_profit_since_last_payout()
        if profit <= 0:
            log.info("settlement.no_profit", profit=round(profit, 2))
            return None
        total = payout_total(profit, cfg.payout_share)
        if total < cfg.min_payout_usd:
            log.info("settlement.below_minimum", total=total, minimum=cfg.min_payout_usd)
            return None

        log.info("settlement.triggered", profit=round(profit, 2), total=total)
        settlement_id = self._create_settlement()
        if settlement_id is None:
            log.info("settlement.not_created")
            return None

        await self.execute_settlement(settlement_id)
        return settlement_id

    def _create_settlement(self) -> int | None:
        """Commit the settlement, its trades and its payouts, or nothing."""
        cfg = self.ctx.config.payouts
        with self.db.transaction():
            if self.db.is_emergency_stopped() or self.db.has_incomplete_settlement():
                return None
            profit = self.db.get_unsettled_pnl()
            if profit <= 0:
                return None
            total = payout_total(profit, cfg.payout_share)
            if total < cfg.min_payout_usd:
                return None
            trades = self.db.get_unsettled_trades()
            if not trades:
                return None
            trade_ids = [t.id for t in trades]
            winners = self.db.get_top_predictors_for_trades(trade_ids, limit=3)
            if not winners:
                return None
            amounts = split_payout(total, cfg.distribution, len(winners))
            if not amounts:
                return None

            settlement_id = self.db.insert_settlement(self.ctx.now())
            self.db.update_settlement_status(settlement_id, SettlementStatus.DISTRIBUTING)
            self.db.link_trades_to_settlement(trade_ids, settlement_id)
            for rank, (winner, amount) in enumerate(zip(winners, amounts), start=1):
                self.db.insert_payout(winner.user_id, settlement_id, amount, rank)

        metrics.incr("settlements.created")
        log.info(
            "settlement.created",
            settlement_id=settlement_id,
            trades=len(trade_ids),
            winners=len(winners),
            total=total,
            profit=round(profit, 2),
        )
        return settlement_id

    # ── Distribution ─────────────────────────────────────────────────

    async def execute_settlement(
        self, settlement_id: int, is_retry: bool = False,
    ) -> SettlementStatus | None:
        """One processing pass over a settlement's payouts, then aggregate."""
        async with self._lock:
            with log_context(settlement_id=settlement_id):
                return await self._execute_locked(settlement_id, is_retry)

    async def _execute_locked(
        self, settlement_id: int, is_retry: bool,
    ) -> SettlementStatus | None:
        settlement = self.db.get_settlement(settlement_id)
        if settlement is None:
            return None
        payouts = self.db.get_payouts_for_settlement(settlement_id)
        if not payouts:
            log.critical("settlement.no_payouts", settlement_id=settlement_id)
            await self._trigger_emergency_stop(settlement_id, "No payout records for settlement")
            return SettlementStatus.FAILED

        results: list[PayoutResult] = []
        for payout in payouts:
            if payout.status == PayoutStatus.SENT or not self._due(payout):
                continue
            with log_context(payout_id=payout.id), metrics.timer("payouts.process"):
                results.append(await self.process_payout(payout))

        status = await self._aggregate(settlement_id)
        await self._announce(settlement_id, results, is_retry)
        return status

    def _due(self, payout: PayoutRecord) -> bool:
        cfg = self.ctx.config.payouts
        if payout.retry_count >= cfg.max_retries:
            return False
        if payout.last_retry_at is None:
            return True
        delays = cfg.retry_delays_seconds
        delay = delays[min(payout.retry_count, len(delays) - 1)]
        return (self.ctx.now() - payout.last_retry_at).total_seconds() >= delay

    async def process_payout(self, payout: PayoutRecord) -> PayoutResult:
        """Reconcile or send one payout. Safe to call again after any crash."""
        if payout.status == PayoutStatus.SENT:
            return PayoutResult(payout.id, PayoutOutcome.ALREADY_SENT)

        wallet = self.ctx.wallet
        if wallet is None:
            return self._fail_attempt(payout, "No payout wallet configured")

        # a lost tx is only retired once its resend fails before a new hash exists
        resending = False

        if payout.tx_hash:
            try:
                receipt = await wallet.get_receipt(payout.tx_hash)
                known = receipt is None and await wallet.transaction_known(payout.tx_hash)
            except Exception as e:
                log.warning("payout.receipt_check_failed", payout_id=payout.id, error=str(e))
                return PayoutResult(payout.id, PayoutOutcome.PENDING, str(e))

            if receipt is not None:
                if receipt.succeeded:
                    self.db.update_payout_status(payout.id, PayoutStatus.SENT)
                    log.info("payout.confirmed", payout_id=payout.id, tx_hash=payout.tx_hash)
                    return PayoutResult(payout.id, PayoutOutcome.SENT)
                return self._record_revert(payout.id, payout.tx_hash)
            if known:
                return PayoutResult(payout.id, PayoutOutcome.PENDING)
            log.warning("payout.tx_missing", payout_id=payout.id, tx_hash=payout.tx_hash)
            resending = True

        user = self.db.get_user(payout.user_id)
        if user is None or not user.wallet_address:
            return self._fail(payout.id, "No wallet address", clear_tx=resending)

        try:
            if not await wallet.has_gas():
                return self._fail(payout.id, "Insufficient gas balance", clear_tx=resending)
            if await wallet.usdc_balance() < payout.amount:
                return self._fail(payout.id, "Insufficient USDC balance", clear_tx=resending)
        except Exception as e:
            log.warning("payout.preflight_error", payout_id=payout.id, error=str(e))
            return self._fail_attempt(payout, f"Pre-flight check failed: {e}", clear_tx=resending)

        tx_hash: str | None = None
        try:
            if payout.tx_request:
                request = deserialize_tx_request(payout.tx_request)
            else:
                request = await wallet.build_transfer(user.wallet_address, payout.amount)
                self.db.set_payout_tx_request(payout.id, request.serialize())
            signed = wallet.sign(request)
            self.db.set_payout_tx_hash(payout.id, signed.tx_hash)
            tx_hash = signed.tx_hash
            await wallet.broadcast(signed)
            receipt = await wallet.wait_for_receipt(
                tx_hash, self.ctx.config.payouts.receipt_timeout_seconds,
            )
        except TxRequestError as e:
            log.error("payout.bad_tx_request", payout_id=payout.id, error=str(e))
            return self._fail(payout.id, f"Stored tx request invalid: {e}", clear_tx=True)
        except Exception as e:
            if tx_hash is not None:
                log.warning("payout.send_unconfirmed", payout_id=payout.id, tx_hash=tx_hash, error=str(e))
                return PayoutResult(payout.id, PayoutOutcome.PENDING, str(e))
            log.error("payout.send_error", payout_id=payout.id, error=str(e))
            return self._fail_attempt(payout, str(e), clear_tx=resending)

        if receipt is None:
            log.info("payout.awaiting_receipt", payout_id=payout.id, tx_hash=tx_hash)
            return PayoutResult(payout.id, PayoutOutcome.PENDING)
        if not receipt.succeeded:
            return self._record_revert(payout.id, tx_hash)

        self.db.update_payout_status(payout.id, PayoutStatus.SENT)
        metrics.incr("payouts.sent")
        log.info(
            "payout.sent",
            payout_id=payout.id,
            amount=payout.amount,
            recipient=user.wallet_address,
            tx_hash=tx_hash,
        )
        return PayoutResult(payout.id, PayoutOutcome.SENT)

    def _fail(self, payout_id: int, error: str, clear_tx: bool = False) -> PayoutResult:
        """Definitive failure for this attempt."""
        with self.db.transaction():
            if clear_tx:
                self._clear_tx(payout_id)
            self.db.update_payout_status(payout_id, PayoutStatus.FAILED)
            self.db.record_payout_failure(payout_id, error, self.ctx.now())
        metrics.incr("payouts.failed")
        log.warning("payout.failed", payout_id=payout_id, error=error)
        return PayoutResult(payout_id, PayoutOutcome.FAILED, error)

    def _fail_attempt(
        self, payout: PayoutRecord, error: str, clear_tx: bool = False,
    ) -> PayoutResult:
        """Inconclusive attempt: status untouched, the retry still counts."""
        with self.db.transaction():
            if clear_tx:
                self._clear_tx(payout.id)
            self.db.record_payout_failure(payout.id, error, self.ctx.now())
        return PayoutResult(payout.id, PayoutOutcome.INCONCLUSIVE, error)

    def _clear_tx(self, payout_id: int) -> None:
        self.db.set_payout_tx_hash(payout_id, None)
        self.db.set_payout_tx_request(payout_id, None)

    def _record_revert(self, payout_id: int, tx_hash: str) -> PayoutResult:
        with self.db.transaction():
            self.db.update_payout_status(payout_id, PayoutStatus.FAILED)
            self._clear_tx(payout_id)
            self.db.record_payout_failure(payout_id, "Transaction reverted", self.ctx.now())
        metrics.incr("payouts.reverted")
        log.warning("payout.reverted", payout_id=payout_id, tx_hash=tx_hash)
        return PayoutResult(payout_id, PayoutOutcome.FAILED, "Transaction reverted")

    # ── Aggregation ──────────────────────────────────────────────────

    async def _aggregate(self, settlement_id: int) -> SettlementStatus:
        payouts = self.db.get_payouts_for_settlement(settlement_id)
        if not payouts:
            await self._trigger_emergency_stop(settlement_id, "No payout records for settlement")
            return SettlementStatus.FAILED

        unsent = [p for p in payouts if p.status != PayoutStatus.SENT]
        if not unsent:
            self.db.update_settlement_status(settlement_id, SettlementStatus.COMPLETED)
            metrics.incr("settlements.completed")
            log.info("settlement.completed", settlement_id=settlement_id)
            return SettlementStatus.COMPLETED

        if all(p.retry_count >= self.ctx.config.payouts.max_retries for p in unsent):
            log.critical("settlement.retries_exhausted", settlement_id=settlement_id)
            await self._trigger_emergency_stop(settlement_id, "All payout retries exhausted")
            return SettlementStatus.FAILED

        any_failed = any(p.status == PayoutStatus.FAILED for p in unsent)
        self.db.update_settlement_status(
            settlement_id,
            SettlementStatus.DISTRIBUTING,
            "Some payouts failed - will retry" if any_failed else None,
        )
        log.info(
            "settlement.distributing",
            settlement_id=settlement_id,
            unsent=len(unsent),
            failed=any_failed,
        )
        return SettlementStatus.DISTRIBUTING

    async def _trigger_emergency_stop(self, settlement_id: int, reason: str) -> None:
        with self.db.transaction():
            self.db.update_settlement_status(
                settlement_id, SettlementStatus.FAILED, f"Emergency stop triggered - {reason}",
            )
            self.db.set_emergency_stopped(True)
        metrics.gauge("emergency_stopped", 1.0)
        log.critical("settlement.emergency_stop", settlement_id=settlement_id, reason=reason)

        failed_lines = []
        for p in self.db.get_payouts_for_settlement(settlement_id):
            if p.status == PayoutStatus.SENT:
                continue
            user = self.db.get_user(p.user_id)
            name = (user.display_name if user else None) or p.user_id
            failed_lines.append(
                f"- {name}: ${p.amount:.2f} ({p.retry_count} retries, "
                f"error: {p.error_message or 'unknown'})"
            )
        await self.ctx.notifier.post("\n".join([
            "🚨 **CRITICAL: PAYOUT FAILURE - EMERGENCY STOP**",
            "",
            f"Settlement {settlement_id} could not complete payouts.",
            f"Reason: {reason}",
            "",
            "**Failed payouts:**",
            *(failed_lines or ["- none recorded"]),
            "",
            "⚠️ **Bot has entered emergency stop mode.**",
            "",
            "**MANUAL ACTION REQUIRED:**",
            "1. Check wallet balance and gas",
            "2. Verify recipient addresses",
            "3. Send payouts manually if needed",
            "4. Use `resume` to restart trading after fixing",
        ]))
        await self.ctx.notifier.alert(
            "critical",
            "Emergency stop",
            f"Settlement {settlement_id}: {reason}",
            cooldown_key=f"emergency_stop_{settlement_id}",
        )

    async def _announce(
        self, settlement_id: int, results: list[PayoutResult], is_retry: bool,
    ) -> None:
        sent = [r for r in results if r.newly_sent]
        if not sent:
            return
        by_id = {p.id: p for p in self.db.get_payouts_for_settlement(settlement_id)}
        if is_retry:
            for r in sent:
                payout = by_id[r.payout_id]
                await self.ctx.notifier.post(
                    f"✅ Payout retry succeeded: ${payout.amount:.2f} sent to "
                    f"{self._display_name(payout.user_id)}"
                )
            return

        lines = ["🎉 **PAYOUT TIME!** USDC distributed", "", "**Top 3 predictors:**"]
        for r in sent:
            payout = by_id[r.payout_id]
            medal = MEDALS.get(payout.rank, "🏅")
            lines.append(f"{medal} {self._display_name(payout.user_id)}: ${payout.amount:.2f} ✅")
        failed = sum(1 for r in results if r.outcome in (PayoutOutcome.FAILED, PayoutOutcome.INCONCLUSIVE))
        if failed:
            lines.append(f"\n⚠️ {failed} payout(s) failed - will retry")
        await self.ctx.notifier.post("\n".join(lines))

    def _display_name(self, user_id: str) -> str:
        user = self.db.get_user(user_id)
        return (user.display_name if user else None) or user_id

    # ── Retries & manual intervention ────────────────────────────────

    async def retry_incomplete_settlements(self) -> None:
        """Run a pass over every settlement that is not yet completed."""
        if self.db.is_emergency_stopped():
            return
        for settlement in self.db.get_incomplete_settlements():
            if self.db.is_emergency_stopped():
                return
            await self.execute_settlement(settlement.id, is_retry=True)

    async def mark_payout_sent(self, payout_id: int, tx_hash: str) -> SettlementStatus | None:
        """Record a payout an operator sent by hand, then re-aggregate."""
        payout = self.db.get_payout(payout_id)
        if payout is None:
            return None
        with self.db.transaction():
            self.db.set_payout_tx_hash(payout_id, tx_hash)
            self.db.update_payout_status(payout_id, PayoutStatus.SENT)
        log.info("payout.marked_sent", payout_id=payout_id, tx_hash=tx_hash)
        async with self._lock:
            return await self._aggregate(payout.settlement_id)

    def reset_payout_retries(self, settlement_id: int) -> int:
        """Fresh retry budget for a settlement after the operator fixed the cause."""
        with self.db.transaction():
            count = self.db.reset_payout_retries(settlement_id)
            settlement = self.db.get_settlement(settlement_id)
            if settlement is not None and settlement.status == SettlementStatus.FAILED:
                self.db.update_settlement_status(
                    settlement_id, SettlementStatus.DISTRIBUTING, "Retries reset manually",
                )
        log.info("settlement.retries_reset", settlement_id=settlement_id, payouts=count)
        return count
