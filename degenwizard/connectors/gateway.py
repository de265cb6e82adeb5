"""Market gateway — the single entry point the engines use for Polymarket.

Combines Gamma (discovery, resolution), the CLOB (orders), the Data API
(realized P&L) and the chain wallet (pool balance, redemption).

Unless live trading is explicitly enabled (``execution.dry_run: false`` and
``ENABLE_LIVE_TRADING=true``) orders are simulated at the best ask against
a paper bankroll, and redemption is a no-op.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field

from degenwizard.chain.wallet import ChainWallet
from degenwizard.config import BotConfig, is_live_trading_enabled
from degenwizard.connectors.polymarket_clob import CLOBClient, OrderResult
from degenwizard.connectors.polymarket_data import DataAPIClient, PositionPnl
from degenwizard.connectors.polymarket_gamma import GammaClient, Resolution, UpDownMarket
from degenwizard.errors import GatewayError
from degenwizard.storage.models import Direction
from degenwizard.observability.logger import get_logger
from degenwizard.observability.metrics import metrics

log = get_logger(__name__)


@dataclass
class PaperPosition:
    direction: Direction
    shares: float
    cost: float


@dataclass
class PaperBook:
    """In-memory fills for dry-run mode, keyed by condition id."""
    bankroll: float
    positions: dict[str, PaperPosition] = field(default_factory=dict)
    outcomes: dict[str, Direction] = field(default_factory=dict)

    def record_fill(self, condition_id: str, direction: Direction, shares: float, cost: float) -> None:
        self.bankroll -= cost
        self.positions[condition_id] = PaperPosition(direction, shares, cost)

    def settle(self, condition_id: str, outcome: Direction) -> PositionPnl:
        pos = self.positions.get(condition_id)
        if pos is None:
            log.warning("paper.position_unknown", condition_id=condition_id)
            return PositionPnl(pnl=0.0, pnl_percent=0.0)
        payout = pos.shares if pos.direction == outcome else 0.0
        pnl = payout - pos.cost
        pct = (pnl / pos.cost * 100) if pos.cost else 0.0
        return PositionPnl(pnl=pnl, pnl_percent=pct)

    def redeem(self, condition_id: str) -> None:
        pos = self.positions.pop(condition_id, None)
        outcome = self.outcomes.pop(condition_id, None)
        if pos is not None and outcome is not None and pos.direction == outcome:
            self.bankroll += pos.shares


class PolymarketGateway:
    """Live or paper access to 15-minute Up/Down markets."""

    def __init__(
        self,
        config: BotConfig,
        gamma: GammaClient,
        clob: CLOBClient,
        data_api: DataAPIClient,
        wallet: ChainWallet | None,
    ):
        self._config = config
        self._gamma = gamma
        self._clob = clob
        self._data = data_api
        self._wallet = wallet
        self._paper = PaperBook(bankroll=config.execution.paper_bankroll)
        self._markets_by_id: dict[str, UpDownMarket] = {}

    @property
    def live(self) -> bool:
        return (
            not self._config.execution.dry_run
            and is_live_trading_enabled()
            and self._wallet is not None
        )

    def _live_wallet(self) -> ChainWallet:
        if self._wallet is None:
            raise GatewayError("Live trading requires a wallet")
        return self._wallet

    async def close(self) -> None:
        await self._gamma.close()
        await self._clob.close()
        await self._data.close()

    # ── Discovery ────────────────────────────────────────────────────

    async def find_tradeable_markets(self) -> list[UpDownMarket]:
        series = {
            a: self._config.markets.series_ids[a]
            for a in self._config.markets.assets
            if a in self._config.markets.series_ids
        }
        markets = await self._gamma.find_up_down_markets(series, dt.datetime.now(dt.timezone.utc))
        for m in markets:
            self._markets_by_id[m.id] = m
        return markets

    async def get_market(self, asset: str) -> UpDownMarket | None:
        for m in await self.find_tradeable_markets():
            if m.asset == asset:
                return m
        return None

    # ── Orders ───────────────────────────────────────────────────────

    async def execute_order(
        self, market: UpDownMarket, direction: Direction, usd_size: float,
    ) -> OrderResult:
        token_id = market.token_for(direction)
        if self.live:
            if not await self._live_wallet().has_gas():
                return OrderResult(success=False, reason="Insufficient gas balance")
            return await self._clob.buy(token_id, usd_size)

        price = market.up_price if direction == Direction.UP else market.down_price
        try:
            book = await self._clob.get_orderbook(token_id)
            if book.asks:
                price = book.best_ask
        except Exception as e:
            log.warning("gateway.paper_book_unavailable", error=str(e))
        if price <= 0 or usd_size > self._paper.bankroll:
            return OrderResult(success=False, reason="Paper bankroll too small")
        shares = usd_size / price
        self._paper.record_fill(market.condition_id, direction, shares, usd_size)
        metrics.incr("orders.simulated")
        log.info(
            "gateway.paper_fill",
            asset=market.asset,
            direction=direction.value,
            shares=round(shares, 4),
            price=round(price, 4),
        )
        return OrderResult(
            success=True,
            order_id=f"paper-{market.id}-{direction.value}",
            shares_filled=shares,
            avg_price=price,
            total_cost=usd_size,
        )

    # ── Resolution ───────────────────────────────────────────────────

    async def get_resolution(self, market_id: str) -> Resolution:
        res = await self._gamma.get_resolution(market_id)
        if res.resolved and res.outcome is not None and not self.live:
            self._paper.outcomes[res.condition_id] = res.outcome
        return res

    async def get_position_pnl(self, condition_id: str) -> PositionPnl:
        if self.live:
            return await self._data.get_position_pnl(self._live_wallet().address, condition_id)
        outcome = self._paper.outcomes.get(condition_id)
        if outcome is None:
            raise GatewayError(f"No resolution recorded for {condition_id}")
        return self._paper.settle(condition_id, outcome)

    async def redeem_winnings(self, condition_id: str, token_ids: list[str]) -> None:
        """Redeem every outcome slot; raises if the redemption does not land."""
        if not self.live:
            self._paper.redeem(condition_id)
            return
        wallet = self._live_wallet()
        index_sets = [1 << i for i in range(len(token_ids))] or [1, 2]
        await wallet.redeem_positions(condition_id, index_sets)

    async def get_pool_balance(self) -> float:
        if self.live:
            return await self._live_wallet().usdc_balance()
        return self._paper.bankroll
