"""Tests for the console-mode notifier and alert handling."""

from __future__ import annotations

import pytest

from degenwizard.config import AlertsConfig, ChatConfig
from degenwizard.observability.alerts import DiscordNotifier

from fakes import make_db


def _notifier(db=None, **alerts) -> DiscordNotifier:
    return DiscordNotifier(ChatConfig(), AlertsConfig(**alerts), db=db, token="")


class TestConsoleMode:

    @pytest.mark.asyncio
    async def test_post_returns_local_ref(self):
        notifier = _notifier()
        assert not notifier.connected
        first = await notifier.post("hello")
        second = await notifier.post("again")
        assert first.startswith("local-")
        assert first != second

    @pytest.mark.asyncio
    async def test_local_refs_have_no_reactions(self):
        notifier = _notifier()
        ref = await notifier.post("proposal")
        await notifier.add_vote_reactions(ref)
        assert await notifier.collect_votes(ref) == []

    @pytest.mark.asyncio
    async def test_holder_without_role_configured(self):
        assert await _notifier().is_holder("123") is True

    @pytest.mark.asyncio
    async def test_holder_role_without_guild_denies(self):
        notifier = DiscordNotifier(
            ChatConfig(holder_role_id="999"), AlertsConfig(), token="",
        )
        assert await notifier.is_holder("123") is False


class TestAlerts:

    @pytest.mark.asyncio
    async def test_alert_persisted(self, tmp_path):
        db = make_db(tmp_path)
        notifier = _notifier(db=db)
        assert await notifier.alert("warning", "Low gas", "0.01 MATIC left")
        [row] = db.get_alerts()
        assert row["level"] == "warning"
        assert row["message"] == "Low gas: 0.01 MATIC left"
        assert row["channel"] == "console"
        db.close()

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_repeats(self):
        notifier = _notifier()
        assert await notifier.alert("warning", "Stale", "x", cooldown_key="stale:1")
        assert not await notifier.alert("warning", "Stale", "x", cooldown_key="stale:1")
        assert await notifier.alert("warning", "Stale", "x", cooldown_key="stale:2")

    @pytest.mark.asyncio
    async def test_zero_cooldown_never_suppresses(self):
        notifier = _notifier()
        for _ in range(3):
            assert await notifier.alert("info", "t", "m", cooldown_key="k", cooldown_secs=0)

    @pytest.mark.asyncio
    async def test_below_min_level_dropped(self):
        notifier = _notifier(min_alert_level="warning")
        assert not await notifier.alert("info", "t", "m")
        assert await notifier.alert("critical", "t", "m")

    @pytest.mark.asyncio
    async def test_disabled(self):
        assert not await _notifier(enabled=False).alert("critical", "t", "m")
