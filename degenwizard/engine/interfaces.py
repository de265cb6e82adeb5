"""Collaborator interfaces the engines depend on.

The concrete adapters live in ``connectors/``, ``forecast/``, ``chain/`` and
``observability/alerts.py``; tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Protocol

from degenwizard.chain.transactions import FeeMarketTxRequest, LegacyTxRequest
from degenwizard.chain.wallet import SignedTx, TxReceipt
from degenwizard.connectors.polymarket_clob import OrderResult
from degenwizard.connectors.polymarket_data import PositionPnl
from degenwizard.connectors.polymarket_gamma import Resolution, UpDownMarket
from degenwizard.connectors.price_feed import Candle
from degenwizard.forecast.signal_source import TradeSignal
from degenwizard.observability.alerts import CollectedVote
from degenwizard.storage.models import Direction


class MarketGateway(Protocol):
    async def find_tradeable_markets(self) -> list[UpDownMarket]: ...

    async def get_market(self, asset: str) -> UpDownMarket | None: ...

    async def execute_order(
        self, market: UpDownMarket, direction: Direction, usd_size: float,
    ) -> OrderResult: ...

    async def get_resolution(self, market_id: str) -> Resolution: ...

    async def get_position_pnl(self, condition_id: str) -> PositionPnl: ...

    async def redeem_winnings(self, condition_id: str, token_ids: list[str]) -> None: ...

    async def get_pool_balance(self) -> float: ...


class PriceFeed(Protocol):
    async def get_recent_candles(self, asset: str) -> list[Candle]: ...


class SignalSource(Protocol):
    async def propose_trade(
        self,
        markets_by_asset: dict[str, UpDownMarket | None],
        candles_by_asset: dict[str, list[Candle]],
    ) -> TradeSignal: ...


class VoteCollector(Protocol):
    async def collect_votes(self, message_ref: str) -> list[CollectedVote]: ...

    async def is_holder(self, user_id: str) -> bool: ...


class Notifier(Protocol):
    async def post(self, text: str) -> str | None: ...

    async def add_vote_reactions(self, message_ref: str) -> None: ...

    async def alert(
        self, level: str, title: str, message: str, cooldown_key: str | None = None,
    ) -> bool: ...


class PayoutWallet(Protocol):
    async def has_gas(self) -> bool: ...

    async def usdc_balance(self, address: str | None = None) -> float: ...

    async def build_transfer(
        self, recipient: str, amount_usd: float,
    ) -> LegacyTxRequest | FeeMarketTxRequest: ...

    def sign(self, request: LegacyTxRequest | FeeMarketTxRequest) -> SignedTx: ...

    async def broadcast(self, signed: SignedTx) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt | None: ...

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None: ...

    async def transaction_known(self, tx_hash: str) -> bool: ...
