"""Spot price feed — recent Binance klines for the traded assets."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from degenwizard.config import MarketsConfig
from degenwizard.observability.logger import get_logger

log = get_logger(__name__)

BINANCE_BASE = "https://api.binance.com"

BINANCE_SYMBOLS = {
    "BTC": "BTCUSDT",
    "ETH": "ETHUSDT",
    "SOL": "SOLUSDT",
    "XRP": "XRPUSDT",
}


@dataclass
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int


class BinancePriceFeed:
    """Async kline reader."""

    def __init__(self, config: MarketsConfig, base_url: str = BINANCE_BASE):
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=config.request_timeout_secs,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_recent_candles(self, asset: str) -> list[Candle]:
        symbol = BINANCE_SYMBOLS.get(asset.upper())
        if not symbol:
            log.warning("price_feed.unknown_asset", asset=asset)
            return []
        limit = max(1, min(1000, self._config.candle_limit))
        data = await self._get(
            "/api/v3/klines",
            {"symbol": symbol, "interval": self._config.candle_interval, "limit": limit},
        )
        if not isinstance(data, list):
            return []
        return [parse_kline(row) for row in data]

    async def get_current_price(self, asset: str) -> float:
        symbol = BINANCE_SYMBOLS.get(asset.upper())
        if not symbol:
            return 0.0
        data = await self._get("/api/v3/ticker/price", {"symbol": symbol})
        return float(data.get("price") or 0)


def parse_kline(row: list[Any]) -> Candle:
    return Candle(
        open_time=int(row[0]),
        open=float(row[1] or 0),
        high=float(row[2] or 0),
        low=float(row[3] or 0),
        close=float(row[4] or 0),
        volume=float(row[5] or 0),
        close_time=int(row[6]),
    )
