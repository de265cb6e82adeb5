"""Tests for weekly settlements and crash-safe payout distribution."""

from __future__ import annotations

import datetime as dt

import pytest

from degenwizard.chain.wallet import TxReceipt
from degenwizard.engine.settlement import PayoutOutcome, SettlementEngine
from degenwizard.storage.models import Direction, PayoutStatus, SettlementStatus

from fakes import T0, register, seed_resolved_trade


def _seed_week(db) -> list[int]:
    """Three winners: alice and carol 2/2 correct, bob 1/2. Profit $125."""
    register(db, "alice", 1, "Alice")
    register(db, "bob", 2, "Bob")
    register(db, "carol", 3, "Carol")
    t1 = seed_resolved_trade(
        db, 100.0,
        {"alice": Direction.UP, "bob": Direction.UP, "carol": Direction.UP},
        resolved_at=T0 - dt.timedelta(days=2),
    )
    t2 = seed_resolved_trade(
        db, 25.0,
        {"alice": Direction.UP, "bob": Direction.DOWN, "carol": Direction.UP},
        resolved_at=T0 - dt.timedelta(days=1),
    )
    return [t1, t2]


def _payouts(ctx, settlement_id: int) -> dict[str, object]:
    return {p.user_id: p for p in ctx.db.get_payouts_for_settlement(settlement_id)}


# ── Creation ─────────────────────────────────────────────────────────

class TestRunWeeklyPayouts:

    @pytest.mark.asyncio
    async def test_distributes_to_top_three(self, wallet_ctx):
        ctx = wallet_ctx
        trade_ids = _seed_week(ctx.db)

        settlement_id = await SettlementEngine(ctx).run_weekly_payouts()

        assert settlement_id is not None
        assert ctx.db.get_settlement(settlement_id).status == SettlementStatus.COMPLETED
        payouts = ctx.db.get_payouts_for_settlement(settlement_id)
        # $125 × 40% = $50 split 50/30/20; alice beats carol on user id
        assert [(p.user_id, p.rank, p.amount) for p in payouts] == [
            ("alice", 1, 25.0), ("carol", 2, 15.0), ("bob", 3, 10.0),
        ]
        assert all(p.status == PayoutStatus.SENT for p in payouts)
        assert all(ctx.db.get_trade(t).settlement_id == settlement_id for t in trade_ids)
        assert ctx.db.get_unsettled_pnl() == 0.0

        text = ctx.notifier.posts[-1]
        assert text.startswith("🎉 **PAYOUT TIME!**")
        assert "🥇 Alice: $25.00 ✅" in text
        assert "🥉 Bob: $10.00 ✅" in text

    @pytest.mark.asyncio
    async def test_no_profit_no_settlement(self, wallet_ctx):
        ctx = wallet_ctx
        register(ctx.db, "alice", 1)
        seed_resolved_trade(ctx.db, -30.0, {"alice": Direction.UP})
        assert await SettlementEngine(ctx).run_weekly_payouts() is None
        assert ctx.db.get_recent_settlements() == []

    @pytest.mark.asyncio
    async def test_below_minimum_no_settlement(self, wallet_ctx):
        ctx = wallet_ctx
        register(ctx.db, "alice", 1)
        seed_resolved_trade(ctx.db, 20.0, {"alice": Direction.UP})  # $8 < $10
        assert await SettlementEngine(ctx).run_weekly_payouts() is None
        assert ctx.db.get_recent_settlements() == []
        assert ctx.db.get_unsettled_pnl() == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_no_correct_voters_no_settlement(self, wallet_ctx):
        ctx = wallet_ctx
        register(ctx.db, "alice", 1)
        seed_resolved_trade(ctx.db, 100.0, {"alice": Direction.DOWN}, outcome=Direction.UP)
        assert await SettlementEngine(ctx).run_weekly_payouts() is None
        assert not ctx.db.has_incomplete_settlement()

    @pytest.mark.asyncio
    async def test_single_winner_takes_all(self, wallet_ctx):
        ctx = wallet_ctx
        register(ctx.db, "alice", 1)
        seed_resolved_trade(ctx.db, 100.0, {"alice": Direction.UP})
        settlement_id = await SettlementEngine(ctx).run_weekly_payouts()
        payouts = ctx.db.get_payouts_for_settlement(settlement_id)
        assert [(p.rank, p.amount) for p in payouts] == [(1, 40.0)]

    @pytest.mark.asyncio
    async def test_emergency_stop_blocks_creation(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.db.set_emergency_stopped(True)
        assert await SettlementEngine(ctx).run_weekly_payouts() is None
        assert ctx.db.get_recent_settlements() == []

    @pytest.mark.asyncio
    async def test_trades_settle_once(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        engine = SettlementEngine(ctx)
        assert await engine.run_weekly_payouts() is not None
        assert await engine.run_weekly_payouts() is None
        assert len(ctx.db.get_recent_settlements()) == 1

    @pytest.mark.asyncio
    async def test_incomplete_settlement_blocks_a_new_one(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.gas = False
        engine = SettlementEngine(ctx)
        first = await engine.run_weekly_payouts()
        assert ctx.db.get_settlement(first).status == SettlementStatus.DISTRIBUTING

        register(ctx.db, "dave", 4)
        seed_resolved_trade(ctx.db, 500.0, {"dave": Direction.UP})
        assert await engine.run_weekly_payouts() is None
        assert len(ctx.db.get_recent_settlements()) == 1


# ── Payout processing ────────────────────────────────────────────────

class TestPayoutProcessing:

    @pytest.mark.asyncio
    async def test_pending_receipt_confirmed_later(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.receipt_status = None
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()

        payouts = _payouts(ctx, settlement_id)
        assert all(p.status == PayoutStatus.PENDING and p.tx_hash for p in payouts.values())
        assert all(p.retry_count == 0 for p in payouts.values())
        assert ctx.db.get_settlement(settlement_id).status == SettlementStatus.DISTRIBUTING

        for p in payouts.values():
            ctx.wallet.receipts[p.tx_hash] = TxReceipt(tx_hash=p.tx_hash, status=1)
        status = await engine.execute_settlement(settlement_id, is_retry=True)

        assert status == SettlementStatus.COMPLETED
        assert len(ctx.wallet.broadcasts) == 3
        assert "✅ Payout retry succeeded: $25.00 sent to Alice" in ctx.notifier.posts

    @pytest.mark.asyncio
    async def test_lost_tx_resent_with_same_request(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.receipt_status = None
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()
        before = {p.id: (p.tx_hash, p.tx_request) for p in ctx.db.get_payouts_for_settlement(settlement_id)}

        # the node dropped every broadcast
        ctx.wallet.known.clear()
        ctx.wallet.receipt_status = 1
        status = await engine.execute_settlement(settlement_id, is_retry=True)

        assert status == SettlementStatus.COMPLETED
        assert len(ctx.wallet.built) == 3
        for p in ctx.db.get_payouts_for_settlement(settlement_id):
            assert (p.tx_hash, p.tx_request) == before[p.id]
            assert p.retry_count == 0
            assert p.error_message is None
        assert len(ctx.wallet.broadcasts) == 6

    @pytest.mark.asyncio
    async def test_failed_resend_of_lost_tx_counts_once(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.receipt_status = None
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()
        alice = _payouts(ctx, settlement_id)["alice"]
        ctx.db.set_payout_tx_hash(alice.id, "0xdead")

        ctx.wallet.gas = False
        result = await engine.process_payout(ctx.db.get_payout(alice.id))

        assert result.outcome == PayoutOutcome.FAILED
        stored = ctx.db.get_payout(alice.id)
        assert stored.retry_count == 1
        assert stored.error_message == "Insufficient gas balance"
        assert stored.tx_hash is None and stored.tx_request is None

        # the next pass builds afresh instead of chasing the stale hash
        ctx.wallet.gas = True
        ctx.wallet.receipt_status = 1
        result = await engine.process_payout(ctx.db.get_payout(alice.id))
        assert result.outcome == PayoutOutcome.SENT
        assert ctx.db.get_payout(alice.id).retry_count == 1
        assert len(ctx.wallet.built) == 4

    @pytest.mark.asyncio
    async def test_revert_marks_failed_and_clears_request(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.receipt_status = 0
        settlement_id = await SettlementEngine(ctx).run_weekly_payouts()

        for p in ctx.db.get_payouts_for_settlement(settlement_id):
            assert p.status == PayoutStatus.FAILED
            assert p.tx_hash is None and p.tx_request is None
            assert p.retry_count == 1
            assert p.error_message == "Transaction reverted"
        settlement = ctx.db.get_settlement(settlement_id)
        assert settlement.status == SettlementStatus.DISTRIBUTING
        assert settlement.error_message == "Some payouts failed - will retry"
        assert not any("PAYOUT TIME" in post for post in ctx.notifier.posts)

    @pytest.mark.asyncio
    async def test_backoff_ladder(self, wallet_ctx, clock):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.gas = False
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()
        assert {p.retry_count for p in ctx.db.get_payouts_for_settlement(settlement_id)} == {1}

        await engine.execute_settlement(settlement_id, is_retry=True)
        assert {p.retry_count for p in ctx.db.get_payouts_for_settlement(settlement_id)} == {1}

        clock.advance(seconds=119)
        await engine.execute_settlement(settlement_id, is_retry=True)
        assert {p.retry_count for p in ctx.db.get_payouts_for_settlement(settlement_id)} == {1}

        clock.advance(seconds=1)
        await engine.execute_settlement(settlement_id, is_retry=True)
        assert {p.retry_count for p in ctx.db.get_payouts_for_settlement(settlement_id)} == {2}

    @pytest.mark.asyncio
    async def test_partial_failure_then_recovery(self, wallet_ctx, clock):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.usdc = 20.0  # covers carol and bob, not alice
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()

        payouts = _payouts(ctx, settlement_id)
        assert payouts["alice"].status == PayoutStatus.FAILED
        assert payouts["alice"].error_message == "Insufficient USDC balance"
        assert payouts["carol"].status == PayoutStatus.SENT
        assert "1 payout(s) failed - will retry" in ctx.notifier.posts[-1]

        ctx.wallet.usdc = 1000.0
        clock.advance(seconds=120)
        status = await engine.execute_settlement(settlement_id, is_retry=True)
        assert status == SettlementStatus.COMPLETED
        assert len(ctx.wallet.broadcasts) == 3

    @pytest.mark.asyncio
    async def test_invalid_stored_request_cleared(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.gas = False
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()
        alice = _payouts(ctx, settlement_id)["alice"]
        ctx.db.set_payout_tx_request(alice.id, '{"type": 0, "to": "0x1"}')

        ctx.wallet.gas = True
        result = await engine.process_payout(ctx.db.get_payout(alice.id))

        assert result.outcome == PayoutOutcome.FAILED
        stored = ctx.db.get_payout(alice.id)
        assert stored.tx_request is None
        assert stored.error_message.startswith("Stored tx request invalid")

    @pytest.mark.asyncio
    async def test_broadcast_error_after_hash_is_pending(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.broadcast_error = TimeoutError("rpc timeout")
        settlement_id = await SettlementEngine(ctx).run_weekly_payouts()
        for p in ctx.db.get_payouts_for_settlement(settlement_id):
            assert p.status == PayoutStatus.PENDING
            assert p.tx_hash is not None
            assert p.retry_count == 0

    @pytest.mark.asyncio
    async def test_sent_payout_is_never_resent(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()
        alice = _payouts(ctx, settlement_id)["alice"]
        result = await engine.process_payout(alice)
        assert result.outcome == PayoutOutcome.ALREADY_SENT
        assert len(ctx.wallet.broadcasts) == 3

    @pytest.mark.asyncio
    async def test_missing_wallet_counts_attempt(self, ctx):
        _seed_week(ctx.db)
        sid = ctx.db.insert_settlement(T0)
        pid = ctx.db.insert_payout("alice", sid, 10.0, 1)
        result = await SettlementEngine(ctx).process_payout(ctx.db.get_payout(pid))
        assert result.outcome == PayoutOutcome.INCONCLUSIVE
        payout = ctx.db.get_payout(pid)
        assert payout.status == PayoutStatus.PENDING
        assert payout.retry_count == 1


# ── Emergency stop & manual intervention ─────────────────────────────

class TestEmergencyStop:

    @pytest.mark.asyncio
    async def test_exhausted_retries_halt_the_bot(self, wallet_ctx, clock):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.gas = False
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()

        for _ in range(10):
            if ctx.db.is_emergency_stopped():
                break
            clock.advance(seconds=1000)
            await engine.execute_settlement(settlement_id, is_retry=True)

        assert ctx.db.is_emergency_stopped()
        settlement = ctx.db.get_settlement(settlement_id)
        assert settlement.status == SettlementStatus.FAILED
        assert settlement.error_message == "Emergency stop triggered - All payout retries exhausted"
        assert all(p.retry_count == 5 for p in ctx.db.get_payouts_for_settlement(settlement_id))

        report = next(p for p in ctx.notifier.posts if "EMERGENCY STOP" in p)
        assert "**MANUAL ACTION REQUIRED:**" in report
        assert "- Alice: $25.00 (5 retries, error: Insufficient gas balance)" in report
        assert ctx.notifier.alerts[-1][0] == "critical"

    @pytest.mark.asyncio
    async def test_stopped_bot_skips_retries(self, wallet_ctx, clock):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.gas = False
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()
        ctx.db.set_emergency_stopped(True)

        clock.advance(seconds=1000)
        await engine.retry_incomplete_settlements()
        assert {p.retry_count for p in ctx.db.get_payouts_for_settlement(settlement_id)} == {1}

    @pytest.mark.asyncio
    async def test_settlement_without_payouts_halts(self, wallet_ctx):
        ctx = wallet_ctx
        sid = ctx.db.insert_settlement(T0)
        status = await SettlementEngine(ctx).execute_settlement(sid)
        assert status == SettlementStatus.FAILED
        assert ctx.db.is_emergency_stopped()

    @pytest.mark.asyncio
    async def test_mark_payout_sent_completes(self, wallet_ctx):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.gas = False
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()

        for p in ctx.db.get_payouts_for_settlement(settlement_id):
            status = await engine.mark_payout_sent(p.id, f"0xmanual{p.id}")
        assert status == SettlementStatus.COMPLETED
        assert ctx.db.get_payout(p.id).tx_hash == f"0xmanual{p.id}"
        assert await engine.mark_payout_sent(9999, "0x") is None

    @pytest.mark.asyncio
    async def test_reset_retries_reopens_failed_settlement(self, wallet_ctx, clock):
        ctx = wallet_ctx
        _seed_week(ctx.db)
        ctx.wallet.gas = False
        engine = SettlementEngine(ctx)
        settlement_id = await engine.run_weekly_payouts()
        ctx.db.update_settlement_status(settlement_id, SettlementStatus.FAILED, "halted")

        assert engine.reset_payout_retries(settlement_id) == 3
        settlement = ctx.db.get_settlement(settlement_id)
        assert settlement.status == SettlementStatus.DISTRIBUTING
        assert settlement.error_message == "Retries reset manually"

        ctx.wallet.gas = True
        status = await engine.execute_settlement(settlement_id, is_retry=True)
        assert status == SettlementStatus.COMPLETED
