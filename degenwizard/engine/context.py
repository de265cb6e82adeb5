"""Engine context — everything a tick needs, passed explicitly."""

from __future__ import annotations

import datetime as dt
import random
from dataclasses import dataclass, field
from typing import Callable
from zoneinfo import ZoneInfo

from degenwizard.config import BotConfig
from degenwizard.engine.interfaces import (
    MarketGateway,
    Notifier,
    PayoutWallet,
    PriceFeed,
    SignalSource,
    VoteCollector,
)
from degenwizard.storage.database import Database
from degenwizard.storage.models import utcnow


@dataclass
class EngineContext:
    """Shared collaborators for the lifecycle, settlement and scheduler engines."""
    config: BotConfig
    db: Database
    gateway: MarketGateway
    price_feed: PriceFeed
    signal_source: SignalSource
    vote_collector: VoteCollector
    notifier: Notifier
    wallet: PayoutWallet | None = None
    clock: Callable[[], dt.datetime] = utcnow
    rng: random.Random = field(default_factory=random.Random)

    def now(self) -> dt.datetime:
        return self.clock()

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.config.scheduling.timezone)
