"""Notifier — outward messages to the community channel.

Posts go to a Discord channel through the REST API (bot token from
``DISCORD_BOT_TOKEN``). Without a token or channel every message is logged
to the console instead and gets a local message ref, so paper runs work
end to end with votes cast from the CLI.

Nothing here raises: a failed post is logged and reported as ``None``;
state transitions never wait on a notification succeeding.

Also answers the holder-role question for vote eligibility, since it
already holds the guild credentials.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import aiohttp

from degenwizard.config import AlertsConfig, ChatConfig, get_secret
from degenwizard.storage.models import Direction
from degenwizard.observability.logger import get_logger

log = get_logger(__name__)

DISCORD_API = "https://discord.com/api/v10"

_LEVELS = {"info": 0, "warning": 1, "critical": 2}
_LEVEL_EMOJI = {"info": "ℹ️", "warning": "⚠️", "critical": "🚨"}


@dataclass
class CollectedVote:
    user_id: str
    display_name: str | None
    direction: Direction


class DiscordNotifier:
    """Send messages and alerts to the trading channel."""

    def __init__(
        self,
        chat: ChatConfig,
        alerts: AlertsConfig,
        db: Any | None = None,
        token: str | None = None,
        api_base: str = DISCORD_API,
    ):
        self._chat = chat
        self._alerts = alerts
        self._db = db
        self._token = token if token is not None else get_secret("DISCORD_BOT_TOKEN")
        self._api = api_base.rstrip("/")
        self._cooldowns: dict[str, float] = {}
        self._http_session: aiohttp.ClientSession | None = None
        self._local_refs = itertools.count(1)

    @property
    def connected(self) -> bool:
        return bool(self._token and self._chat.trading_channel_id)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Return a reusable aiohttp.ClientSession (created lazily)."""
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._chat.request_timeout_secs),
                headers={
                    "Authorization": f"Bot {self._token}",
                    "User-Agent": "DiscordBot (degenwizard, 1.0)",
                },
            )
        return self._http_session

    async def close(self) -> None:
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
            self._http_session = None

    # ── Channel messages ─────────────────────────────────────────────

    async def post(self, text: str) -> str | None:
        """Post to the trading channel; returns the message ref or None."""
        if not self.connected:
            ref = f"local-{int(time.time())}-{next(self._local_refs)}"
            log.info("notifier.console", message_ref=ref, text=text)
            return ref
        url = f"{self._api}/channels/{self._chat.trading_channel_id}/messages"
        try:
            session = await self._get_session()
            async with session.post(
                url, json={"content": text[:2000], "allowed_mentions": {"parse": ["users"]}},
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    log.error("notifier.post_failed", status=resp.status, body=body[:200])
                    return None
                data = await resp.json()
        except Exception as e:
            log.error("notifier.post_error", error=str(e))
            return None
        return str(data.get("id")) if data.get("id") else None

    async def add_vote_reactions(self, message_ref: str) -> None:
        """Seed the UP/DOWN reactions under a proposal."""
        if not self.connected:
            return
        for emoji in (self._chat.up_emoji, self._chat.down_emoji):
            url = (
                f"{self._api}/channels/{self._chat.trading_channel_id}"
                f"/messages/{message_ref}/reactions/{quote(emoji)}/@me"
            )
            try:
                session = await self._get_session()
                async with session.put(url) as resp:
                    if resp.status >= 400:
                        log.warning("notifier.reaction_failed", emoji=emoji, status=resp.status)
            except Exception as e:
                log.warning("notifier.reaction_error", emoji=emoji, error=str(e))

    # ── Votes ────────────────────────────────────────────────────────

    async def collect_votes(self, message_ref: str) -> list[CollectedVote]:
        """Read the UP/DOWN reactions under a proposal, skipping bots.

        A user who reacted both ways counts as DOWN, the later of the two reads.
        """
        if not self.connected or message_ref.startswith("local-"):
            return []
        votes: list[CollectedVote] = []
        for emoji, direction in (
            (self._chat.up_emoji, Direction.UP),
            (self._chat.down_emoji, Direction.DOWN),
        ):
            url = (
                f"{self._api}/channels/{self._chat.trading_channel_id}"
                f"/messages/{message_ref}/reactions/{quote(emoji)}"
            )
            try:
                session = await self._get_session()
                async with session.get(url, params={"limit": 100}) as resp:
                    if resp.status >= 400:
                        log.warning("notifier.reactions_failed", emoji=emoji, status=resp.status)
                        continue
                    users = await resp.json()
            except Exception as e:
                log.warning("notifier.reactions_error", emoji=emoji, error=str(e))
                continue
            for u in users or []:
                if u.get("bot"):
                    continue
                votes.append(CollectedVote(
                    user_id=str(u.get("id")),
                    display_name=u.get("global_name") or u.get("username"),
                    direction=direction,
                ))
        return votes

    async def is_holder(self, user_id: str) -> bool:
        """True when no holder role is configured or the member has it."""
        role = self._chat.holder_role_id
        if not role:
            return True
        if not (self._token and self._chat.guild_id):
            log.warning("notifier.holder_check_unavailable", user_id=user_id)
            return False
        url = f"{self._api}/guilds/{self._chat.guild_id}/members/{user_id}"
        try:
            session = await self._get_session()
            async with session.get(url) as resp:
                if resp.status == 404:
                    return False
                if resp.status >= 400:
                    log.warning("notifier.member_fetch_failed", user_id=user_id, status=resp.status)
                    return False
                member = await resp.json()
        except Exception as e:
            log.warning("notifier.member_fetch_error", user_id=user_id, error=str(e))
            return False
        return role in (member.get("roles") or [])

    # ── Alerts ───────────────────────────────────────────────────────

    async def alert(
        self,
        level: str,
        title: str,
        message: str,
        cooldown_key: str | None = None,
        cooldown_secs: float | None = None,
    ) -> bool:
        """Log, persist and post an operator alert. Returns False if suppressed."""
        if not self._alerts.enabled:
            return False

        if cooldown_key:
            window = self._alerts.default_cooldown_secs if cooldown_secs is None else cooldown_secs
            last_sent = self._cooldowns.get(cooldown_key, 0)
            if time.time() - last_sent < window:
                log.debug("alerts.cooldown", key=cooldown_key)
                return False
            self._cooldowns[cooldown_key] = time.time()

        if _LEVELS.get(level, 0) < _LEVELS.get(self._alerts.min_alert_level, 0):
            return False

        log_fn = log.info if level == "info" else (
            log.warning if level == "warning" else log.critical
        )
        log_fn("alert.sent", level=level, title=title, message=message[:200])

        if self._db is not None:
            try:
                channel = "discord" if self.connected else "console"
                self._db.insert_alert(level, f"{title}: {message}", channel=channel)
            except Exception as e:
                log.error("alert.persist_error", error=str(e))

        if self.connected:
            emoji = _LEVEL_EMOJI.get(level, "📢")
            await self.post(f"{emoji} **{title}**\n{message}")
        return True
