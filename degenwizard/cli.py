"""CLI entry point for the DegenWizard community trading bot.

Commands:
  bot run                                  — Start the tick scheduler
  bot propose [--user ID]                  — Propose a trade now
  bot vote TRADE USER UP|DOWN              — Cast or change a live vote
  bot register-wallet USER ADDRESS         — Register a payout wallet
  bot emergency-stop / bot resume          — Halt or resume trading
  bot status                               — Runtime state and active trade
  bot pool                                 — Pool balance and payout progress
  bot leaderboard / history / stats USER   — Community stats
  bot settlements                          — Recent settlements and payouts
  bot retry-payouts [--settlement ID] [--reset]
                                           — Run a payout pass now (or reopen a failed one)
  bot mark-payout-sent PAYOUT TX_HASH      — Record a manually sent payout
"""

from __future__ import annotations

import asyncio
import json
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from degenwizard.config import BotConfig, get_secret, is_live_trading_enabled, load_config, polygon_rpc_url
from degenwizard.errors import DegenWizardError, InvalidWalletError, WalletInUseError
from degenwizard.observability.logger import configure_logging, get_logger
from degenwizard.policy.payout_split import payout_total
from degenwizard.storage.database import Database
from degenwizard.storage.models import Direction, PayoutStatus

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _open_db(cfg: BotConfig) -> Database:
    db = Database(cfg.storage)
    db.connect()
    return db


@asynccontextmanager
async def _runtime(cfg: BotConfig) -> AsyncIterator[Any]:
    """Build the engine context with live adapters and close them afterwards."""
    from degenwizard.chain.wallet import ChainWallet
    from degenwizard.connectors.gateway import PolymarketGateway
    from degenwizard.connectors.polymarket_clob import CLOBClient
    from degenwizard.connectors.polymarket_data import DataAPIClient
    from degenwizard.connectors.polymarket_gamma import GammaClient
    from degenwizard.connectors.price_feed import BinancePriceFeed
    from degenwizard.engine.context import EngineContext
    from degenwizard.forecast.signal_source import LLMSignalSource
    from degenwizard.observability.alerts import DiscordNotifier

    db = _open_db(cfg)
    private_key = get_secret("WALLET_PRIVATE_KEY")
    wallet = ChainWallet(cfg.chain, polygon_rpc_url(), private_key) if private_key else None
    gateway = PolymarketGateway(
        cfg,
        GammaClient(timeout=cfg.markets.request_timeout_secs),
        CLOBClient(cfg.execution, private_key=private_key, chain_id=cfg.chain.chain_id),
        DataAPIClient(),
        wallet,
    )
    price_feed = BinancePriceFeed(cfg.markets)
    notifier = DiscordNotifier(cfg.chat, cfg.alerts, db=db)
    ctx = EngineContext(
        config=cfg,
        db=db,
        gateway=gateway,
        price_feed=price_feed,
        signal_source=LLMSignalSource(cfg.signal, interval=cfg.markets.candle_interval),
        vote_collector=notifier,
        notifier=notifier,
        wallet=wallet,
        rng=random.Random(),
    )
    try:
        yield ctx
    finally:
        await gateway.close()
        await price_feed.close()
        await notifier.close()
        db.close()


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """DegenWizard — community-voted Polymarket 15-minute trading bot."""
    ctx.ensure_object(dict)
    try:
        cfg = load_config(config_path)
    except DegenWizardError as e:
        raise click.ClickException(str(e)) from e
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt=cfg.observability.log_format,
        log_file=cfg.observability.log_file,
        force=True,
    )


# ─── RUN ─────────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the scheduler and run until interrupted."""
    cfg: BotConfig = ctx.obj["config"]
    live = not cfg.execution.dry_run and is_live_trading_enabled()

    console.print("[bold cyan]🤖 Starting DegenWizard scheduler[/bold cyan]")
    console.print(f"  Tick interval: {cfg.scheduling.tick_interval_seconds}s")
    console.print(f"  Morning trade: {cfg.scheduling.morning_trade_time} {cfg.scheduling.timezone}")
    console.print(
        f"  Hourly trades: {cfg.scheduling.trade_hours_start}:00-"
        f"{cfg.scheduling.trade_hours_end}:00"
    )
    console.print(
        f"  Weekly payouts: {cfg.scheduling.weekly_payout_weekday.title()} "
        f"{cfg.scheduling.weekly_payout_hour}:00"
    )
    console.print(f"  Live trading: {live}")
    console.print()

    async def _start() -> None:
        from degenwizard.engine.scheduler import Scheduler

        async with _runtime(cfg) as rt:
            if rt.db.is_emergency_stopped():
                console.print("[red]⛔ Emergency stop is active. Use `bot resume` to trade.[/red]")
            await Scheduler(rt).run()

    try:
        _run(_start())
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler stopped by user.[/yellow]")


# ─── TRADES & VOTES ──────────────────────────────────────────────────

@cli.command()
@click.option("--user", "user_id", default=None, help="Proposing user id (omit for a scheduled-style trade)")
@click.pass_context
def propose(ctx: click.Context, user_id: str | None) -> None:
    """Propose a trade now."""
    cfg: BotConfig = ctx.obj["config"]

    async def _propose() -> int | None:
        from degenwizard.engine.trade_lifecycle import TradeLifecycle

        async with _runtime(cfg) as rt:
            if user_id and cfg.chat.holder_role_id and not await rt.vote_collector.is_holder(user_id):
                console.print("[red]Access denied: only verified holders can propose trades.[/red]")
                return None
            lifecycle = TradeLifecycle(rt)
            check = lifecycle.can_start_trade(is_user_initiated=bool(user_id))
            if not check.allowed:
                console.print(f"[red]Cannot start trade:[/red] {check.reason}")
                return None
            console.print("⚡ Proposing trade...")
            return await lifecycle.propose_trade_now(f"user:{user_id}" if user_id else "cron")

    trade_id = _run(_propose())
    if trade_id is not None:
        console.print(f"[green]✓ Trade {trade_id} is open for voting.[/green]")


@cli.command()
@click.argument("trade_id", type=int)
@click.argument("user_id")
@click.argument("direction", type=click.Choice(["UP", "DOWN"], case_sensitive=False))
@click.option("--name", default=None, help="Display name")
@click.pass_context
def vote(ctx: click.Context, trade_id: int, user_id: str, direction: str, name: str | None) -> None:
    """Cast or change a live vote on a trade in its voting window."""
    cfg: BotConfig = ctx.obj["config"]
    from degenwizard.engine.context import EngineContext
    from degenwizard.engine.trade_lifecycle import TradeLifecycle

    db = _open_db(cfg)
    try:
        # Recording a vote touches only the store.
        rt = EngineContext(
            config=cfg, db=db, gateway=None, price_feed=None, signal_source=None,  # type: ignore[arg-type]
            vote_collector=None, notifier=None,  # type: ignore[arg-type]
        )
        result = TradeLifecycle(rt).record_vote(trade_id, user_id, Direction(direction.upper()), name)
    finally:
        db.close()
    if result.accepted:
        console.print(f"[green]✓ Vote recorded: {direction.upper()} on trade {trade_id}[/green]")
    else:
        console.print(f"[red]❌ {result.reason}[/red]")


@cli.command("register-wallet")
@click.argument("user_id")
@click.argument("address")
@click.option("--name", default=None, help="Display name")
@click.pass_context
def register_wallet(ctx: click.Context, user_id: str, address: str, name: str | None) -> None:
    """Register (or replace) a user's Polygon payout wallet."""
    cfg: BotConfig = ctx.obj["config"]
    from degenwizard.chain.wallet import format_address, normalize_address

    db = _open_db(cfg)
    try:
        checksummed = normalize_address(address)
        db.set_wallet(user_id, checksummed, name, cfg.reputation.initial_weight)
    except InvalidWalletError:
        console.print("[red]❌ Invalid address. Use a Polygon address starting with 0x.[/red]")
        return
    except WalletInUseError:
        console.print("[red]❌ That wallet is already registered to another user.[/red]")
        return
    finally:
        db.close()
    console.print(f"[green]✓ Wallet registered: {format_address(checksummed)}[/green]")


# ─── ADMIN ───────────────────────────────────────────────────────────

@cli.command("emergency-stop")
@click.pass_context
def emergency_stop(ctx: click.Context) -> None:
    """Halt all trading and settlements."""
    cfg: BotConfig = ctx.obj["config"]

    async def _stop() -> None:
        from degenwizard.engine.trade_lifecycle import TradeLifecycle

        async with _runtime(cfg) as rt:
            TradeLifecycle(rt).set_emergency_stop(True)
            await rt.notifier.post("\n".join([
                "⛔ **EMERGENCY STOP ACTIVATED**",
                "",
                "All trading has been halted.",
                "Scheduled trades paused.",
            ]))

    _run(_stop())
    console.print("[bold red]⛔ Emergency stop activated.[/bold red]")


@cli.command()
@click.pass_context
def resume(ctx: click.Context) -> None:
    """Clear the emergency stop."""
    cfg: BotConfig = ctx.obj["config"]

    async def _resume() -> None:
        from degenwizard.engine.trade_lifecycle import TradeLifecycle

        async with _runtime(cfg) as rt:
            TradeLifecycle(rt).set_emergency_stop(False)
            await rt.notifier.post("\n".join([
                "✅ **Trading Resumed**",
                "",
                "Bot is back online. Scheduled trades will resume.",
            ]))

    _run(_resume())
    console.print("[green]✓ Trading resumed.[/green]")


# ─── STATUS ──────────────────────────────────────────────────────────

@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show runtime state, active trade and incomplete settlements."""
    cfg: BotConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        state = db.get_runtime_state()
        active = db.get_active_trade()
        incomplete = db.get_incomplete_settlements()
        counts = db.get_trade_counts()
        alerts = db.get_alerts(limit=5)
        saved_metrics = db.get_metrics_snapshot()
    finally:
        db.close()

    if as_json:
        console.print_json(json.dumps({
            "runtime_state": state.model_dump(mode="json"),
            "active_trade": active.model_dump(mode="json") if active else None,
            "incomplete_settlements": [s.model_dump(mode="json") for s in incomplete],
            "trade_counts": counts,
            "metrics": saved_metrics,
        }, default=str))
        return

    color = "red" if state.emergency_stopped else "green"
    console.print("[bold]📊 Bot Status[/bold]")
    console.print(f"  Emergency stop: [{color}]{state.emergency_stopped}[/{color}]")
    console.print(f"  Live trading:   {not cfg.execution.dry_run and is_live_trading_enabled()}")
    console.print(f"  Last daily trade:  {state.last_daily_trade_date}")
    console.print(f"  Next hourly trade: {state.next_hourly_trade_at.isoformat()}")
    console.print(f"  Last weekly payout: {state.last_weekly_payout_date}")
    console.print(f"  Trades: {counts}")
    if saved_metrics:
        saved_at = saved_metrics["saved_at"][:19]
        console.print(f"  Metrics saved:  {saved_at} (uptime {saved_metrics['uptime_secs']:.0f}s)")
    if active:
        direction = active.executed_direction.value if active.executed_direction else "Voting..."
        console.print(f"  Active trade: #{active.id} {active.asset} {direction} ({active.status.value})")
    else:
        console.print("  Active trade: none")
    for s in incomplete:
        console.print(f"  [yellow]Settlement #{s.id} {s.status.value}: {s.error_message or ''}[/yellow]")
    if alerts:
        console.print("\n[bold]Recent alerts[/bold]")
        for a in alerts:
            console.print(f"  {a['level'].upper():8} {a['created_at'][:19]} {a['message'][:100]}")


@cli.command()
@click.pass_context
def pool(ctx: click.Context) -> None:
    """Pool balance, unpaid profit and payout progress."""
    cfg: BotConfig = ctx.obj["config"]

    async def _pool() -> dict[str, Any]:
        async with _runtime(cfg) as rt:
            gas = await rt.wallet.gas_balance() if rt.wallet is not None else None
            return {
                "balance": await rt.gateway.get_pool_balance(),
                "gas": gas,
                "unpaid": rt.db.get_unsettled_pnl(),
                "total_pnl": rt.db.get_total_pnl(),
                "distributed": rt.db.get_total_distributed(),
                "active": rt.db.get_active_trade(),
            }

    info = _run(_pool())
    est = payout_total(max(0.0, info["unpaid"]), cfg.payouts.payout_share)
    minimum = cfg.payouts.min_payout_usd
    progress = "Ready for payout" if est >= minimum else f"{est / minimum * 100:.0f}% to minimum"

    console.print("[bold]💰 Pool Status[/bold]\n")
    gas = f" | {info['gas']:.4f} POL" if info["gas"] is not None else ""
    console.print(f"  Balance: ${info['balance']:.2f} USDC{gas}")
    active = info["active"]
    if active:
        direction = active.executed_direction.value if active.executed_direction else "Voting..."
        console.print(f"  Current position: {direction} {active.asset}")
    else:
        console.print("  No active position")
    console.print(
        f"\n  Payouts ({cfg.scheduling.weekly_payout_weekday.title()} "
        f"{cfg.scheduling.weekly_payout_hour}:00 {cfg.scheduling.timezone}):"
    )
    console.print(f"  Unpaid profit: ${info['unpaid']:.2f} → Est. payout: ${est:.2f} ({progress})")
    console.print(f"\n  All-time: P&L ${info['total_pnl']:.2f} | Distributed ${info['distributed']:.2f}")


@cli.command()
@click.option("--limit", default=10, help="Number of users to show")
@click.pass_context
def leaderboard(ctx: click.Context, limit: int) -> None:
    """Top predictors by accuracy weighted by reputation."""
    cfg: BotConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        rows = db.get_leaderboard(limit)
    finally:
        db.close()

    table = Table(title="🏆 Leaderboard")
    table.add_column("#", justify="right")
    table.add_column("User")
    table.add_column("Accuracy", justify="right", style="green")
    table.add_column("Correct", justify="right")
    table.add_column("Reputation", justify="right", style="yellow")
    table.add_column("Streak", justify="right")
    for i, r in enumerate(rows, start=1):
        table.add_row(
            str(i),
            r.display_name or r.user_id,
            f"{r.accuracy:.0%}",
            f"{r.correct_predictions}/{r.total_predictions}",
            f"{r.reputation_weight:.2f}",
            f"🔥 {r.current_streak}" if r.current_streak >= 3 else str(r.current_streak),
        )
    console.print(table)


@cli.command()
@click.option("--limit", default=10, help="Number of trades to show")
@click.pass_context
def history(ctx: click.Context, limit: int) -> None:
    """Recently resolved trades."""
    cfg: BotConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        trades = db.get_recent_resolved_trades(limit)
    finally:
        db.close()

    if not trades:
        console.print("[dim]No trade history yet.[/dim]")
        return
    table = Table(title="📜 Recent Trades")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Asset")
    table.add_column("Side")
    table.add_column("P&L", justify="right")
    table.add_column("Resolved")
    for t in trades:
        pnl = t.pnl or 0.0
        style = "green" if pnl >= 0 else "red"
        table.add_row(
            str(t.id),
            t.asset,
            t.executed_direction.value if t.executed_direction else "-",
            f"[{style}]{'+' if pnl >= 0 else '-'}${abs(pnl):.2f}[/{style}]",
            t.resolved_at.strftime("%Y-%m-%d %H:%M") if t.resolved_at else "-",
        )
    console.print(table)


@cli.command()
@click.argument("user_id")
@click.pass_context
def stats(ctx: click.Context, user_id: str) -> None:
    """One user's prediction record and earnings."""
    cfg: BotConfig = ctx.obj["config"]
    from degenwizard.chain.wallet import format_address

    db = _open_db(cfg)
    try:
        user = db.get_user(user_id)
        user_stats = db.get_user_stats(user_id)
    finally:
        db.close()
    if user is None:
        console.print("[dim]No record for that user yet.[/dim]")
        return

    console.print(f"[bold]📊 Stats for {user.display_name or user.id}[/bold]\n")
    console.print(f"  Wallet: {format_address(user.wallet_address)}")
    console.print(
        f"  Accuracy: {user_stats.accuracy:.0%} "
        f"({user_stats.correct_predictions}/{user_stats.total_predictions})"
    )
    console.print(f"  Reputation: {user.reputation_weight:.2f}")
    console.print(f"  Streak: {user.current_streak} (best {user.best_streak})")
    console.print(f"  Total earned: ${user_stats.total_earned:.2f}")


# ─── SETTLEMENTS ─────────────────────────────────────────────────────

@cli.command()
@click.option("--limit", default=5, help="Number of settlements to show")
@click.pass_context
def settlements(ctx: click.Context, limit: int) -> None:
    """Recent settlements with their payouts."""
    cfg: BotConfig = ctx.obj["config"]
    db = _open_db(cfg)
    try:
        rows = [(s, db.get_payouts_for_settlement(s.id)) for s in db.get_recent_settlements(limit)]
    finally:
        db.close()

    if not rows:
        console.print("[dim]No settlements yet.[/dim]")
        return
    for settlement, payouts in rows:
        table = Table(
            title=f"Settlement #{settlement.id} · {settlement.status.value} · "
                  f"{settlement.triggered_at:%Y-%m-%d %H:%M}",
            caption=settlement.error_message or None,
        )
        table.add_column("Payout", justify="right", style="dim")
        table.add_column("Rank", justify="right")
        table.add_column("User")
        table.add_column("Amount", justify="right", style="green")
        table.add_column("Status")
        table.add_column("Retries", justify="right")
        table.add_column("Tx / Error", max_width=48)
        for p in payouts:
            style = {"sent": "green", "failed": "red"}.get(p.status.value, "yellow")
            table.add_row(
                str(p.id),
                str(p.rank),
                p.user_id,
                f"${p.amount:.2f}",
                f"[{style}]{p.status.value}[/{style}]",
                str(p.retry_count),
                p.tx_hash or p.error_message or "",
            )
        console.print(table)


@cli.command("retry-payouts")
@click.option("--settlement", "settlement_id", type=int, default=None, help="Only this settlement")
@click.option("--reset", is_flag=True, help="Reset retry counters first (needs --settlement)")
@click.pass_context
def retry_payouts(ctx: click.Context, settlement_id: int | None, reset: bool) -> None:
    """Run a payout pass now instead of waiting for the next retry tick."""
    cfg: BotConfig = ctx.obj["config"]
    if reset and settlement_id is None:
        raise click.UsageError("--reset requires --settlement")

    async def _retry() -> Any:
        from degenwizard.engine.settlement import SettlementEngine

        async with _runtime(cfg) as rt:
            engine = SettlementEngine(rt)
            if reset:
                count = engine.reset_payout_retries(settlement_id)
                console.print(f"Reset retries on {count} payout(s).")
            if settlement_id is not None:
                return await engine.execute_settlement(settlement_id, is_retry=True)
            if rt.db.is_emergency_stopped():
                console.print("[yellow]Emergency stop is active; name a --settlement to retry it.[/yellow]")
                return None
            await engine.retry_incomplete_settlements()
            return None

    result = _run(_retry())
    if result is not None:
        console.print(f"Settlement #{settlement_id} is now [bold]{result.value}[/bold].")


@cli.command("mark-payout-sent")
@click.argument("payout_id", type=int)
@click.argument("tx_hash")
@click.pass_context
def mark_payout_sent(ctx: click.Context, payout_id: int, tx_hash: str) -> None:
    """Record a payout that was sent manually."""
    cfg: BotConfig = ctx.obj["config"]

    async def _mark() -> Any:
        from degenwizard.engine.settlement import SettlementEngine

        async with _runtime(cfg) as rt:
            payout = rt.db.get_payout(payout_id)
            if payout is not None and payout.status == PayoutStatus.SENT:
                console.print("[yellow]Payout already marked sent.[/yellow]")
                return None
            return await SettlementEngine(rt).mark_payout_sent(payout_id, tx_hash)

    result = _run(_mark())
    if result is None:
        console.print("[red]❌ Payout not updated.[/red]")
    else:
        console.print(f"[green]✓ Payout {payout_id} marked sent; settlement is {result.value}.[/green]")


if __name__ == "__main__":
    cli()
