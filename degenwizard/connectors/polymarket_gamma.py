"""Polymarket Gamma (REST) API connector.

Gamma is Polymarket's public market-listing API. We use it to discover the
rolling 15-minute crypto "Up or Down" markets (one series per asset) and to
poll a market until it resolves.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import re
from typing import Any

import httpx
from pydantic import BaseModel, Field
from tenacity import retry, stop_after_attempt, wait_exponential

from degenwizard.storage.models import Direction
from degenwizard.observability.logger import get_logger

log = get_logger(__name__)

GAMMA_BASE = "https://gamma-api.polymarket.com"

# Markets that open further out than this are not tradeable yet
MAX_START_AHEAD = dt.timedelta(minutes=20)

_SLUG_START = re.compile(r"-(\d{10})$")

_ASSET_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("BTC", ("btc", "bitcoin")),
    ("ETH", ("eth", "ethereum")),
    ("SOL", ("sol", "solana")),
    ("XRP", ("xrp",)),
]


# ── Data Models ──────────────────────────────────────────────────────

class UpDownMarket(BaseModel):
    """One 15-minute Up/Down market."""
    id: str
    slug: str = ""
    question: str = ""
    asset: str
    condition_id: str = ""
    up_token_id: str
    down_token_id: str
    up_price: float = 0.5
    down_price: float = 0.5
    volume: float = 0.0
    liquidity: float = 0.0
    start_time: dt.datetime
    resolution_time: dt.datetime

    @property
    def url(self) -> str:
        return f"https://polymarket.com/event/{self.slug}"

    def token_for(self, direction: Direction) -> str:
        return self.up_token_id if direction == Direction.UP else self.down_token_id


class Resolution(BaseModel):
    """Outcome of a market, once Gamma reports it closed."""
    resolved: bool = False
    outcome: Direction | None = None
    condition_id: str = ""
    token_ids: list[str] = Field(default_factory=list)


# ── Client ───────────────────────────────────────────────────────────

class GammaClient:
    """Async client for the Polymarket Gamma API."""

    def __init__(self, base_url: str = GAMMA_BASE, timeout: float = 15.0):
        self._base = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def list_series_events(self, series_id: int, limit: int = 10) -> list[dict[str, Any]]:
        data = await self._get(
            "/events",
            params={"series_id": series_id, "closed": "false", "limit": limit},
        )
        return data if isinstance(data, list) else data.get("data", [])

    async def find_up_down_markets(
        self,
        series_ids: dict[str, int],
        now: dt.datetime | None = None,
    ) -> list[UpDownMarket]:
        """Upcoming markets across all series, soonest start first."""
        now = now or dt.datetime.now(dt.timezone.utc)
        assets = list(series_ids)
        results = await asyncio.gather(
            *(self.list_series_events(series_ids[a]) for a in assets),
            return_exceptions=True,
        )
        markets: list[UpDownMarket] = []
        for asset, events in zip(assets, results):
            if isinstance(events, BaseException):
                log.warning("gamma.series_fetch_failed", asset=asset, error=str(events))
                continue
            for event in events:
                market = parse_up_down_event(event, now)
                if market is not None:
                    markets.append(market)
        markets.sort(key=lambda m: m.start_time)
        log.info("gamma.find_up_down_markets", count=len(markets))
        return markets

    async def get_resolution(self, market_id: str) -> Resolution:
        data = await self._get(f"/markets/{market_id}")
        res = parse_resolution(data)
        if res.resolved:
            log.info(
                "gamma.resolved",
                market_id=market_id,
                outcome=res.outcome.value if res.outcome else None,
                condition_id=res.condition_id,
            )
        return res


# ── Parsing helpers ──────────────────────────────────────────────────

def _parse_json_str(val: Any) -> list[Any]:
    """Parse a JSON-encoded string or return as-is if already a list."""
    if isinstance(val, list):
        return val
    if isinstance(val, str):
        try:
            parsed = json.loads(val)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, TypeError):
            pass
    return []


def _parse_dt(raw: Any) -> dt.datetime | None:
    if not raw:
        return None
    try:
        parsed = dt.datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def detect_asset(text: str) -> str | None:
    lower = text.lower()
    for asset, keywords in _ASSET_KEYWORDS:
        if any(k in lower for k in keywords):
            return asset
    return None


def parse_up_down_event(event: dict[str, Any], now: dt.datetime) -> UpDownMarket | None:
    """Convert a Gamma series event into a tradeable market, or None.

    The event slug ends in the market's unix start time. Markets that have
    already started, start too far ahead, or are missing token ids are
    skipped.
    """
    slug = str(event.get("slug") or "")
    asset = detect_asset(slug)
    if not asset:
        return None
    raw_markets = event.get("markets") or []
    if not raw_markets:
        return None
    raw = raw_markets[0]

    match = _SLUG_START.search(slug.lower())
    if not match:
        return None
    start_time = dt.datetime.fromtimestamp(int(match.group(1)), tz=dt.timezone.utc)
    if start_time < now or start_time > now + MAX_START_AHEAD:
        return None

    end_time = _parse_dt(raw.get("endDate") or event.get("endDate"))
    if end_time is None or end_time < now:
        return None

    token_ids = _parse_json_str(raw.get("clobTokenIds"))
    if len(token_ids) < 2:
        return None

    prices = _parse_json_str(raw.get("outcomePrices"))
    up_price, down_price = 0.5, 0.5
    if len(prices) >= 2:
        try:
            up_price = float(prices[0]) or 0.5
            down_price = float(prices[1]) or 0.5
        except (TypeError, ValueError):
            pass

    return UpDownMarket(
        id=str(raw.get("id", "")),
        slug=str(event.get("slug", "")),
        question=raw.get("question") or event.get("title", ""),
        asset=asset,
        condition_id=str(raw.get("conditionId", "")),
        up_token_id=str(token_ids[0]),
        down_token_id=str(token_ids[1]),
        up_price=up_price,
        down_price=down_price,
        volume=float(raw.get("volumeNum") or raw.get("volume") or 0),
        liquidity=float(raw.get("liquidityNum") or raw.get("liquidity") or 0),
        start_time=start_time,
        resolution_time=end_time,
    )


def parse_resolution(data: dict[str, Any]) -> Resolution:
    """A market counts as resolved once it is closed with a resolution source."""
    if not (data.get("closed") and data.get("resolutionSource")):
        return Resolution(resolved=False)
    prices = _parse_json_str(data.get("outcomePrices"))
    if not prices:
        return Resolution(resolved=False)
    up_price = float(prices[0])
    return Resolution(
        resolved=True,
        outcome=Direction.UP if up_price > 0.5 else Direction.DOWN,
        condition_id=str(data.get("conditionId", "")),
        token_ids=[str(t) for t in _parse_json_str(data.get("clobTokenIds"))],
    )
