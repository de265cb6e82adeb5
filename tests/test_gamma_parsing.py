"""Tests for Gamma series event and resolution parsing."""

from __future__ import annotations

import datetime as dt
import json
from typing import Any

import pytest

from degenwizard.connectors.polymarket_gamma import (
    detect_asset,
    parse_resolution,
    parse_up_down_event,
)
from degenwizard.storage.models import Direction

NOW = dt.datetime(2026, 3, 4, 15, 0, tzinfo=dt.timezone.utc)


def _event(start: dt.datetime, asset: str = "btc", **market: Any) -> dict[str, Any]:
    end = start + dt.timedelta(minutes=15)
    raw = {
        "id": "55501",
        "question": "Bitcoin Up or Down?",
        "conditionId": "0xabc",
        "clobTokenIds": json.dumps(["111", "222"]),
        "outcomePrices": json.dumps(["0.52", "0.48"]),
        "endDate": end.isoformat().replace("+00:00", "Z"),
        "volumeNum": 1234.5,
        "liquidityNum": "800",
    }
    raw.update(market)
    return {
        "slug": f"{asset}-updown-15m-{int(start.timestamp())}",
        "title": "Bitcoin Up or Down",
        "markets": [raw],
    }


class TestDetectAsset:

    @pytest.mark.parametrize("text,asset", [
        ("btc-updown-15m-1", "BTC"),
        ("Ethereum Up or Down", "ETH"),
        ("sol-updown", "SOL"),
        ("XRP Up or Down", "XRP"),
        ("doge-updown", None),
    ])
    def test_keywords(self, text, asset):
        assert detect_asset(text) == asset


class TestParseEvent:

    def test_upcoming_market(self):
        start = NOW + dt.timedelta(minutes=5)
        market = parse_up_down_event(_event(start), NOW)
        assert market is not None
        assert market.asset == "BTC"
        assert (market.up_token_id, market.down_token_id) == ("111", "222")
        assert market.up_price == pytest.approx(0.52)
        assert market.start_time == start
        assert market.resolution_time == start + dt.timedelta(minutes=15)
        assert market.liquidity == pytest.approx(800.0)
        assert market.token_for(Direction.DOWN) == "222"
        assert market.url.endswith(f"btc-updown-15m-{int(start.timestamp())}")

    def test_already_started_skipped(self):
        assert parse_up_down_event(_event(NOW - dt.timedelta(minutes=1)), NOW) is None

    def test_too_far_ahead_skipped(self):
        assert parse_up_down_event(_event(NOW + dt.timedelta(minutes=45)), NOW) is None

    def test_missing_tokens_skipped(self):
        event = _event(NOW + dt.timedelta(minutes=5), clobTokenIds="[]")
        assert parse_up_down_event(event, NOW) is None

    def test_unknown_asset_skipped(self):
        assert parse_up_down_event(_event(NOW + dt.timedelta(minutes=5), asset="doge"), NOW) is None

    def test_bad_prices_default_to_even(self):
        event = _event(NOW + dt.timedelta(minutes=5), outcomePrices="not json")
        market = parse_up_down_event(event, NOW)
        assert (market.up_price, market.down_price) == (0.5, 0.5)

    def test_list_fields_accepted(self):
        event = _event(NOW + dt.timedelta(minutes=5), clobTokenIds=["9", "8"])
        assert parse_up_down_event(event, NOW).up_token_id == "9"


class TestParseResolution:

    def test_open_market_unresolved(self):
        assert parse_resolution({"closed": False}).resolved is False

    def test_closed_without_source_unresolved(self):
        assert parse_resolution({"closed": True, "outcomePrices": '["1", "0"]'}).resolved is False

    def test_up_wins(self):
        res = parse_resolution({
            "closed": True,
            "resolutionSource": "https://data.chain.link",
            "outcomePrices": '["1", "0"]',
            "conditionId": "0xdef",
            "clobTokenIds": '["1", "2"]',
        })
        assert res.resolved is True
        assert res.outcome == Direction.UP
        assert res.condition_id == "0xdef"
        assert res.token_ids == ["1", "2"]

    def test_down_wins(self):
        res = parse_resolution({
            "closed": True, "resolutionSource": "x", "outcomePrices": '["0", "1"]',
        })
        assert res.outcome == Direction.DOWN
