"""Polymarket CLOB (Central-Limit Order Book) connector.

Handles:
  - Fetching real-time orderbooks (bids/asks)
  - Buying an outcome token via py-clob-client (signed GTC limit order
    priced just through the best ask)
  - Waiting for the fill with a bounded timeout and cancelling leftovers
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from degenwizard.config import ExecutionConfig
from degenwizard.observability.logger import get_logger
from degenwizard.observability.metrics import metrics

log = get_logger(__name__)

CLOB_BASE = "https://clob.polymarket.com"

MIN_ORDER_SIZE_USD = 1.0
_FILL_POLL_SECS = 2.0


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class OrderBookLevel:
    price: float
    size: float


@dataclass
class OrderBook:
    """Snapshot of an order book for one token."""
    token_id: str
    bids: list[OrderBookLevel] = field(default_factory=list)
    asks: list[OrderBookLevel] = field(default_factory=list)

    @property
    def best_bid(self) -> float:
        return self.bids[0].price if self.bids else 0.0

    @property
    def best_ask(self) -> float:
        return self.asks[0].price if self.asks else 0.5


@dataclass
class OrderResult:
    """Result of an order: either a fill or a reason it did not happen."""
    success: bool
    order_id: str = ""
    shares_filled: float = 0.0
    avg_price: float = 0.0
    total_cost: float = 0.0
    partial: bool = False
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


# ── Client ───────────────────────────────────────────────────────────

class CLOBClient:
    """Async client for the Polymarket CLOB REST API."""

    def __init__(
        self,
        config: ExecutionConfig,
        private_key: str = "",
        chain_id: int = 137,
        base_url: str = CLOB_BASE,
        timeout: float = 15.0,
    ):
        self._config = config
        self._private_key = private_key
        self._chain_id = chain_id
        self._base = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )
        self._signing_client: Any = None

    async def close(self) -> None:
        await self._client.aclose()

    def _ensure_signing_client(self) -> Any:
        """Lazy-load the py-clob-client with API creds derived from the wallet key."""
        if self._signing_client is not None:
            return self._signing_client

        from py_clob_client.client import ClobClient

        if not self._private_key:
            raise RuntimeError("CLOB signing requires WALLET_PRIVATE_KEY")

        client = ClobClient(self._base, key=self._private_key, chain_id=self._chain_id)
        client.set_api_creds(client.create_or_derive_api_creds())
        log.info("clob.init_signing_client", chain_id=self._chain_id)
        self._signing_client = client
        return client

    # ── Public read endpoints ────────────────────────────────────────

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_orderbook(self, token_id: str) -> OrderBook:
        data = await self._get("/book", params={"token_id": token_id})
        return parse_orderbook(token_id, data)

    # ── Orders ───────────────────────────────────────────────────────

    async def buy(self, token_id: str, usd_size: float) -> OrderResult:
        """Buy ``usd_size`` worth of ``token_id`` and wait for the fill."""
        if usd_size < MIN_ORDER_SIZE_USD:
            return OrderResult(
                success=False, reason=f"Order size below minimum (${MIN_ORDER_SIZE_USD:.0f})",
            )

        book = await self.get_orderbook(token_id)
        best_ask = book.best_ask or 0.5
        shares = usd_size / best_ask
        limit_price = round(min(0.99, best_ask * (1 + self._config.slippage_tolerance)), 2)

        from py_clob_client.clob_types import OrderArgs, OrderType
        from py_clob_client.order_builder.constants import BUY

        signing = self._ensure_signing_client()

        def _post() -> dict[str, Any]:
            order = signing.create_order(
                OrderArgs(token_id=token_id, price=limit_price, size=round(shares, 2), side=BUY)
            )
            return signing.post_order(order, OrderType.GTC)

        resp = await asyncio.to_thread(_post)
        order_id = (resp or {}).get("orderID", "")
        if not order_id:
            log.error("clob.order_rejected", token_id=token_id[:12], response=str(resp)[:200])
            metrics.incr("orders.failed")
            return OrderResult(success=False, reason="Order creation failed")

        log.info(
            "clob.order_posted",
            order_id=order_id[:12],
            price=limit_price,
            shares=round(shares, 2),
        )
        fill = await self._wait_for_fill(order_id, token_id)
        if not fill.success or fill.partial:
            await self._cancel(order_id)
        if fill.success:
            metrics.incr("orders.filled")
        else:
            metrics.incr("orders.unfilled")
        return fill

    async def _cancel(self, order_id: str) -> None:
        signing = self._ensure_signing_client()
        try:
            await asyncio.to_thread(signing.cancel, order_id)
            log.info("clob.order_cancelled", order_id=order_id[:12])
        except Exception as e:
            log.warning("clob.cancel_failed", order_id=order_id[:12], error=str(e))

    async def _wait_for_fill(self, order_id: str, token_id: str) -> OrderResult:
        signing = self._ensure_signing_client()
        deadline = time.monotonic() + self._config.fill_timeout_secs
        while True:
            try:
                order = await asyncio.to_thread(signing.get_order, order_id)
            except Exception as e:
                log.warning("clob.order_status_error", order_id=order_id[:12], error=str(e))
                order = None

            if order:
                matched = float(order.get("size_matched") or 0)
                original = float(order.get("original_size") or 0)
                price = float(order.get("price") or 0)
                if matched > 0:
                    return await self._fill_from_trades(
                        order_id, token_id, matched, price,
                        partial=original > 0 and matched < original,
                    )
                if order.get("status") in ("CANCELLED", "EXPIRED"):
                    return OrderResult(success=False, order_id=order_id, reason="Order cancelled")

            if time.monotonic() >= deadline:
                return OrderResult(
                    success=False, order_id=order_id,
                    reason="Order did not fill within timeout",
                )
            await asyncio.sleep(_FILL_POLL_SECS)

    async def _fill_from_trades(
        self, order_id: str, token_id: str, matched: float, fallback_price: float, partial: bool,
    ) -> OrderResult:
        """Average fill price from the order's trades, else the order's limit price."""
        from py_clob_client.clob_types import TradeParams

        signing = self._ensure_signing_client()
        shares = cost = 0.0
        try:
            trades = await asyncio.to_thread(signing.get_trades, TradeParams(asset_id=token_id))
            for t in trades or []:
                makers = [m.get("order_id") for m in t.get("maker_orders", [])]
                if t.get("taker_order_id") != order_id and order_id not in makers:
                    continue
                size = float(t.get("size") or 0)
                shares += size
                cost += size * float(t.get("price") or 0)
        except Exception as e:
            log.warning("clob.fill_trades_error", order_id=order_id[:12], error=str(e))

        if shares <= 0:
            shares, cost = matched, matched * fallback_price
        avg = cost / shares if shares else fallback_price
        log.info(
            "clob.order_filled",
            order_id=order_id[:12],
            shares=round(shares, 4),
            avg_price=round(avg, 4),
            partial=partial,
        )
        return OrderResult(
            success=True, order_id=order_id, shares_filled=shares,
            avg_price=avg, total_cost=cost, partial=partial,
        )


# ── Parsing helpers ──────────────────────────────────────────────────

def parse_orderbook(token_id: str, data: dict[str, Any]) -> OrderBook:
    """Parse raw CLOB orderbook JSON into an OrderBook."""
    bids = [
        OrderBookLevel(price=float(b.get("price", 0)), size=float(b.get("size", 0)))
        for b in data.get("bids", [])
    ]
    asks = [
        OrderBookLevel(price=float(a.get("price", 0)), size=float(a.get("size", 0)))
        for a in data.get("asks", [])
    ]
    # Sort: bids descending, asks ascending
    bids.sort(key=lambda x: x.price, reverse=True)
    asks.sort(key=lambda x: x.price)
    return OrderBook(token_id=token_id, bids=bids, asks=asks)
