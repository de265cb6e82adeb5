"""Signal source — asks an LLM which asset to propose and in which direction.

The model sees the upcoming market timing for each asset plus a compact
summary of recent candles, and must answer with strict JSON naming one
asset, a direction and a short rationale. Any failure raises SignalError;
the caller aborts the round.
"""

from __future__ import annotations

import datetime as dt
import json
from dataclasses import dataclass
from typing import Any

from openai import AsyncOpenAI

from degenwizard.config import SignalConfig
from degenwizard.connectors.polymarket_gamma import UpDownMarket
from degenwizard.connectors.price_feed import Candle
from degenwizard.errors import SignalError
from degenwizard.storage.models import Direction
from degenwizard.observability.logger import get_logger

log = get_logger(__name__)


@dataclass
class TradeSignal:
    asset: str
    direction: Direction
    reasoning: str
    current_price: float
    confidence: float = 0.5


_PROPOSAL_PROMPT = """You are a crypto market analyst for a community trading bot.
We bet on 15-minute UP/DOWN markets that open near 50/50 odds, so focus on
short-horizon price action, not market odds.

Market definition:
- T0 is the market start time. P0 is the spot price at T0.
- "UP" means the price 15 minutes after T0 is above P0, "DOWN" means below.
- We enter before T0, so if a market starts in N minutes you are forecasting
  roughly N+15 minutes from now.

Current time (UTC): {now}

Upcoming markets (UTC):
{timing}

Recent price action per asset ({interval} candles):
{candles}

Pick the ONE asset with the clearest short-term signal among: {assets}.

Return ONLY valid JSON:
{{
  "asset": one of {assets},
  "direction": "UP" or "DOWN",
  "confidence": 0.0 to 1.0,
  "reasoning": "2-3 sentences"
}}"""


def summarize_candles(candles: list[Candle]) -> dict[str, Any] | None:
    """Price, change over the window, and the last few closes."""
    if not candles:
        return None
    closes = [c.close for c in candles]
    first, last = closes[0], closes[-1]
    return {
        "price": last,
        "window_change_pct": round((last - first) / first * 100, 4) if first else None,
        "high": max(c.high for c in candles),
        "low": min(c.low for c in candles),
        "last_closes": closes[-5:],
    }


def _strip_fences(raw_text: str) -> str:
    raw_text = raw_text.strip()
    if raw_text.startswith("```"):
        raw_text = raw_text.split("\n", 1)[1] if "\n" in raw_text else raw_text[3:]
    if raw_text.endswith("```"):
        raw_text = raw_text[:-3]
    return raw_text.strip()


class LLMSignalSource:
    """Propose a trade using an LLM."""

    def __init__(self, config: SignalConfig, interval: str = "1m"):
        self._config = config
        self._interval = interval
        self._llm = AsyncOpenAI(timeout=config.timeout_secs)

    async def propose_trade(
        self,
        markets_by_asset: dict[str, UpDownMarket | None],
        candles_by_asset: dict[str, list[Candle]],
    ) -> TradeSignal:
        summaries = {a: summarize_candles(c) for a, c in candles_by_asset.items()}
        usable = [a for a, s in summaries.items() if s is not None]
        if not usable:
            raise SignalError("No candle data for any asset")

        now = dt.datetime.now(dt.timezone.utc)
        timing = {
            a: None if m is None else {
                "start_time_utc": m.start_time.isoformat(),
                "end_time_utc": m.resolution_time.isoformat(),
                "minutes_to_start": round((m.start_time - now).total_seconds() / 60),
            }
            for a, m in markets_by_asset.items()
        }
        prompt = _PROPOSAL_PROMPT.format(
            now=now.isoformat(),
            timing=json.dumps(timing, indent=2),
            interval=self._interval,
            candles=json.dumps({a: summaries[a] for a in usable}, indent=2),
            assets=", ".join(usable),
        )

        try:
            resp = await self._llm.chat.completions.create(
                model=self._config.llm_model,
                temperature=self._config.llm_temperature,
                max_tokens=self._config.llm_max_tokens,
                messages=[
                    {"role": "system", "content": "You are a concise market analyst. Return only valid JSON."},
                    {"role": "user", "content": prompt},
                ],
            )
            parsed = json.loads(_strip_fences(resp.choices[0].message.content or "{}"))
        except Exception as e:
            log.error("signal_source.failed", error=str(e))
            raise SignalError(f"LLM proposal failed: {e}") from e

        return parse_signal(parsed, summaries)


def parse_signal(parsed: dict[str, Any], summaries: dict[str, dict[str, Any] | None]) -> TradeSignal:
    asset = str(parsed.get("asset", "")).upper()
    summary = summaries.get(asset)
    if summary is None:
        raise SignalError(f"LLM picked an asset without data: {asset!r}")
    try:
        direction = Direction(str(parsed.get("direction", "")).upper())
    except ValueError as e:
        raise SignalError(f"LLM returned an invalid direction: {parsed.get('direction')!r}") from e
    try:
        confidence = max(0.0, min(1.0, float(parsed.get("confidence", 0.5))))
    except (TypeError, ValueError):
        confidence = 0.5
    signal = TradeSignal(
        asset=asset,
        direction=direction,
        reasoning=str(parsed.get("reasoning", "")).strip() or "No reasoning given.",
        current_price=float(summary["price"]),
        confidence=confidence,
    )
    log.info(
        "signal_source.proposal",
        asset=signal.asset,
        direction=signal.direction.value,
        confidence=signal.confidence,
    )
    return signal
