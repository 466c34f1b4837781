"""
Market session and holding-period classification.

Pure functions of timestamps and the configured market-hours table.
"""
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo

from tradebook.config.config import MarketHoursConfig
from tradebook.domain.models import HoldingPeriod, MarketSession


@lru_cache(maxsize=16)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def classify_market_session(opened_at: datetime, hours: MarketHoursConfig) -> MarketSession:
    """
    Session of the exchange-local wall-clock time a trade was opened.

    Before the regular open is pre-market; at or after the regular close is
    after-hours. Weekends and holidays are not distinguished.
    """
    local = opened_at.astimezone(_zone(hours.timezone)).time()
    if local < hours.regular_open:
        return MarketSession.PRE_MARKET
    if local < hours.regular_close:
        return MarketSession.REGULAR
    return MarketSession.AFTER_HOURS


def classify_holding_period(
    opened_at: datetime,
    closed_at: Optional[datetime],
    swing_threshold_hours: float,
) -> HoldingPeriod:
    # Open trades are reported intraday until they close
    if closed_at is None:
        return HoldingPeriod.INTRADAY
    if closed_at - opened_at <= timedelta(hours=swing_threshold_hours):
        return HoldingPeriod.INTRADAY
    return HoldingPeriod.SWING
