"""
Tests for TradeAggregator pricing and market-hours classification.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tradebook.config.config import MarketHoursConfig, TradeConfig
from tradebook.domain.models import (
    GroupKey,
    HoldingPeriod,
    MarketSession,
    Order,
    OrderSide,
    Side,
    TradeStatus,
)
from tradebook.matching.market_hours import classify_holding_period, classify_market_session
from tradebook.matching.position_tracker import PositionTracker
from tradebook.matching.trade_aggregator import TradeAggregator

# 10:00 New York time (EST)
T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
GROUP = GroupKey("user-1", "AAPL", "ACC-1")


def _make_order(order_id, side, qty, price, at=None, commission="0", fees="0", batch="batch-1"):
    return Order(
        order_id=order_id,
        user_id="user-1",
        account_key="ACC-1",
        symbol="AAPL",
        side=OrderSide(side),
        executed_quantity=Decimal(str(qty)),
        executed_price=Decimal(str(price)),
        executed_time=at or T0,
        commission=Decimal(commission),
        fees=Decimal(fees),
        import_batch_id=batch,
    )


def _replay(*orders):
    """Feed orders through a tracker; return (finished instances, open instance)."""
    tracker = PositionTracker(GROUP)
    finished = []
    for order in orders:
        finished.extend(tracker.apply(order))
    return finished, tracker.open_instance()


@pytest.fixture
def aggregator():
    return TradeAggregator(id_factory=lambda: "trade-1")


class TestTradeAggregator:
    """Prices, PnL and classification of aggregated trades."""

    def test_scaled_exit_uses_weighted_exit_price(self, aggregator):
        finished, _ = _replay(
            _make_order("o1", "BUY", 100, 10, commission="1"),
            _make_order("o2", "SELL", 60, 12, at=T0 + timedelta(minutes=5), commission="1"),
            _make_order("o3", "SELL", 40, 11, at=T0 + timedelta(minutes=9), commission="1"),
        )
        trade = aggregator.aggregate(finished[0])

        assert trade.status == TradeStatus.CLOSED
        assert trade.side == Side.LONG
        assert trade.entry_price == Decimal("10")
        assert trade.exit_price == Decimal("11.6")
        assert trade.quantity == Decimal("100")
        assert trade.exit_quantity == Decimal("100")
        assert trade.remaining_quantity == Decimal("0")
        # (11.6 - 10) * 100 - 3 commission
        assert trade.pnl == Decimal("157.00")
        assert trade.commission == Decimal("3")
        assert trade.closed_at == T0 + timedelta(minutes=9)
        assert trade.holding_seconds == 540
        assert trade.orders_count == 3
        assert trade.executions == 3
        assert trade.trade_key == "AAPL|ACC-1|o1"

    def test_short_pnl_is_entry_minus_exit(self, aggregator):
        finished, _ = _replay(
            _make_order("o1", "SELL", 10, 20, fees="0.5"),
            _make_order("o2", "BUY", 10, 15, at=T0 + timedelta(hours=1), fees="0.5"),
        )
        trade = aggregator.aggregate(finished[0])

        assert trade.side == Side.SHORT
        assert trade.cost_basis == Decimal("200")
        assert trade.proceeds == Decimal("150")
        assert trade.pnl == Decimal("49.00")
        assert trade.fees == Decimal("1")

    def test_flip_prices_each_side_with_its_cost_share(self, aggregator):
        finished, still_open = _replay(
            _make_order("o1", "BUY", 50, 10, commission="1"),
            _make_order("o2", "SELL", 80, 12, at=T0 + timedelta(minutes=1), commission="1.6"),
        )
        closed = aggregator.aggregate(finished[0])
        opened = aggregator.aggregate(still_open)

        # (12 - 10) * 50 - (1 + 50/80 of 1.6)
        assert closed.pnl == Decimal("98.00")
        assert closed.quantity == Decimal("50")
        assert opened.status == TradeStatus.OPEN
        assert opened.side == Side.SHORT
        assert opened.entry_price == Decimal("12")
        assert opened.quantity == Decimal("30")
        assert opened.commission == Decimal("0.6")
        assert opened.trade_key == "AAPL|ACC-1|o2"

    def test_open_trade_has_no_exit_price_or_pnl(self, aggregator):
        _, still_open = _replay(
            _make_order("o1", "BUY", 100, 10),
            _make_order("o2", "SELL", 40, 12, at=T0 + timedelta(minutes=1)),
        )
        trade = aggregator.aggregate(still_open)

        assert trade.status == TradeStatus.OPEN
        assert trade.exit_price is None
        assert trade.pnl is None
        assert trade.closed_at is None
        assert trade.holding_seconds is None
        assert trade.exit_quantity == Decimal("40")
        assert trade.remaining_quantity == Decimal("60")
        assert trade.holding_period == HoldingPeriod.INTRADAY

    def test_weighted_entry_price_is_quantized(self, aggregator):
        _, still_open = _replay(
            _make_order("o1", "BUY", 1, 10),
            _make_order("o2", "BUY", 2, 11, at=T0 + timedelta(minutes=1)),
        )
        trade = aggregator.aggregate(still_open)

        assert trade.entry_price == Decimal("10.66666667")
        assert trade.cost_basis == Decimal("32")

    def test_multi_day_trade_is_swing(self, aggregator):
        finished, _ = _replay(
            _make_order("o1", "BUY", 1, 10),
            _make_order("o2", "SELL", 1, 10, at=T0 + timedelta(days=2)),
        )
        trade = aggregator.aggregate(finished[0])

        assert trade.holding_period == HoldingPeriod.SWING
        assert trade.holding_seconds == 2 * 86400

    def test_import_batches_are_collected_sorted(self, aggregator):
        finished, _ = _replay(
            _make_order("o1", "BUY", 1, 10, batch="b-2"),
            _make_order("o2", "SELL", 1, 10, at=T0 + timedelta(minutes=1), batch="b-1"),
        )
        trade = aggregator.aggregate(finished[0])

        assert trade.import_batch_ids == ["b-1", "b-2"]

    def test_pnl_places_are_configurable(self):
        aggregator = TradeAggregator(trades=TradeConfig(pnl_places=4))
        finished, _ = _replay(
            _make_order("o1", "BUY", 3, "10.00015"),
            _make_order("o2", "SELL", 3, "10.5", at=T0 + timedelta(minutes=1)),
        )
        trade = aggregator.aggregate(finished[0])

        assert trade.pnl == Decimal("1.4996")

    def test_ids_come_from_factory(self, aggregator):
        _, still_open = _replay(_make_order("o1", "BUY", 1, 10))

        assert aggregator.aggregate(still_open).trade_id == "trade-1"


class TestMarketHours:
    """Session and holding-period classification."""

    @pytest.fixture
    def hours(self):
        return MarketHoursConfig()

    @pytest.mark.parametrize(
        "utc_time, expected",
        [
            # Winter (EST, UTC-5)
            (datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc), MarketSession.PRE_MARKET),
            (datetime(2026, 1, 15, 14, 30, tzinfo=timezone.utc), MarketSession.REGULAR),
            (datetime(2026, 1, 15, 20, 59, tzinfo=timezone.utc), MarketSession.REGULAR),
            (datetime(2026, 1, 15, 21, 0, tzinfo=timezone.utc), MarketSession.AFTER_HOURS),
            # Summer (EDT, UTC-4)
            (datetime(2026, 7, 15, 13, 29, tzinfo=timezone.utc), MarketSession.PRE_MARKET),
            (datetime(2026, 7, 15, 13, 30, tzinfo=timezone.utc), MarketSession.REGULAR),
            (datetime(2026, 7, 15, 20, 0, tzinfo=timezone.utc), MarketSession.AFTER_HOURS),
        ],
    )
    def test_session_follows_exchange_local_time(self, hours, utc_time, expected):
        assert classify_market_session(utc_time, hours) == expected

    def test_custom_market_hours(self):
        hours = MarketHoursConfig(timezone="Europe/London", regular_open="08:00", regular_close="16:30")

        assert classify_market_session(datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc), hours) == MarketSession.REGULAR
        assert classify_market_session(datetime(2026, 1, 15, 7, 59, tzinfo=timezone.utc), hours) == MarketSession.PRE_MARKET

    def test_open_must_precede_close(self):
        with pytest.raises(ValueError):
            MarketHoursConfig(regular_open="16:00", regular_close="09:30")

    def test_holding_period_threshold_is_inclusive(self):
        closed = T0 + timedelta(hours=24)

        assert classify_holding_period(T0, closed, 24) == HoldingPeriod.INTRADAY
        assert classify_holding_period(T0, closed + timedelta(seconds=1), 24) == HoldingPeriod.SWING
        assert classify_holding_period(T0, None, 24) == HoldingPeriod.INTRADAY
