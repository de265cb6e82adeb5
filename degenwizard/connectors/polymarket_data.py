"""Polymarket Data API connector.

The Data API provides user-level position data. We read the bot wallet's
own positions to get the realized P&L of a resolved round, which already
accounts for fees.

Base URL: https://data-api.polymarket.com
Endpoints:
  - GET /positions?user={address}&sizeThreshold=0
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from degenwizard.errors import GatewayError
from degenwizard.observability.logger import get_logger

log = get_logger(__name__)

DATA_API_BASE = "https://data-api.polymarket.com"

_TIMEOUT = httpx.Timeout(15.0, connect=10.0)
_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "degenwizard/1.0",
}


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class WalletPosition:
    """A single position held by a wallet on Polymarket."""
    token_id: str = ""
    condition_id: str = ""
    outcome: str = ""
    size: float = 0.0
    cash_pnl: float = 0.0
    percent_pnl: float = 0.0
    redeemable: bool = False


@dataclass
class PositionPnl:
    pnl: float
    pnl_percent: float


# ── Client ───────────────────────────────────────────────────────────

class DataAPIClient:
    """Async client for Polymarket's Data API."""

    def __init__(self, base_url: str = DATA_API_BASE):
        self._base = base_url.rstrip("/")
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base,
                timeout=_TIMEOUT,
                headers=_HEADERS,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=8))
    async def get_positions(self, address: str) -> list[WalletPosition]:
        """Every position the wallet holds, including zero-size ones."""
        client = await self._ensure_client()
        resp = await client.get(
            "/positions", params={"user": address, "sizeThreshold": 0},
        )
        resp.raise_for_status()
        data = resp.json()
        items = data if isinstance(data, list) else data.get("positions", data.get("data", []))
        positions = [_parse_position(item) for item in items]
        log.debug("data_api.positions_fetched", address=address[:10], count=len(positions))
        return positions

    async def get_position_pnl(self, address: str, condition_id: str) -> PositionPnl:
        positions = await self.get_positions(address)
        for pos in positions:
            if pos.condition_id == condition_id:
                log.info(
                    "data_api.position_pnl",
                    condition_id=condition_id,
                    cash_pnl=pos.cash_pnl,
                    percent_pnl=pos.percent_pnl,
                )
                return PositionPnl(pnl=pos.cash_pnl, pnl_percent=pos.percent_pnl)
        raise GatewayError(f"Position not found for condition {condition_id}")


# ── Parsers ──────────────────────────────────────────────────────────

def _parse_position(raw: dict[str, Any]) -> WalletPosition:
    return WalletPosition(
        token_id=str(raw.get("asset", "")),
        condition_id=str(raw.get("conditionId", raw.get("condition_id", ""))),
        outcome=str(raw.get("outcome", "")),
        size=float(raw.get("size") or 0),
        cash_pnl=float(raw.get("cashPnl") or 0),
        percent_pnl=float(raw.get("percentPnl") or 0),
        redeemable=bool(raw.get("redeemable", False)),
    )
