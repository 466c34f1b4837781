"""
Tests for MatchingEngine - grouping, ordering, validation and emission.
"""
import random
import pytest
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tradebook.config.config import MatchingConfig
from tradebook.domain.models import Order, OrderSide, OutcomeStatus, Side, TradeStatus
from tradebook.matching.matching_engine import MatchingEngine, validate_order

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _make_order(
    order_id,
    side,
    qty,
    price,
    minutes=0,
    *,
    symbol="AAPL",
    account_key="ACC-1",
    sequence=0,
    commission="0",
    at=None,
):
    return Order(
        order_id=order_id,
        user_id="user-1",
        account_key=account_key,
        symbol=symbol,
        side=OrderSide(side),
        executed_quantity=None if qty is None else Decimal(str(qty)),
        executed_price=None if price is None else Decimal(str(price)),
        executed_time=at if at is not None else T0 + timedelta(minutes=minutes),
        import_sequence=sequence,
        commission=Decimal(commission),
        import_batch_id="batch-1",
    )


@pytest.fixture
def engine():
    return MatchingEngine()


class TestMatchingEngine:
    """End-to-end replay of order streams into trades."""

    def test_scaled_exit_yields_one_closed_trade(self, engine):
        result = engine.match([
            _make_order("o1", "BUY", 100, 10, 0),
            _make_order("o2", "SELL", 60, 12, 1),
            _make_order("o3", "SELL", 40, 11, 2),
        ])

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.status == TradeStatus.CLOSED
        assert trade.entry_price == Decimal("10")
        assert trade.exit_price == Decimal("11.6")
        assert trade.quantity == Decimal("100")
        assert trade.pnl == Decimal("160")

    def test_flip_yields_closed_long_and_open_short(self, engine):
        result = engine.match([
            _make_order("o1", "BUY", 50, 10, 0, commission="1"),
            _make_order("o2", "SELL", 80, 12, 1, commission="1.6"),
        ])

        assert len(result.trades) == 2
        first, second = result.trades
        assert first.status == TradeStatus.CLOSED
        assert first.side == Side.LONG
        assert first.entry_price == Decimal("10")
        assert first.exit_price == Decimal("12")
        assert first.quantity == Decimal("50")
        assert first.pnl == Decimal("98")

        assert second.status == TradeStatus.OPEN
        assert second.side == Side.SHORT
        assert second.entry_price == Decimal("12")
        assert second.quantity == Decimal("30")
        assert second.exit_price is None
        assert "o2" in first.order_ids and "o2" in second.order_ids

    def test_input_order_does_not_matter(self, engine):
        orders = [
            _make_order("o3", "SELL", 40, 11, 2),
            _make_order("o1", "BUY", 100, 10, 0),
            _make_order("o2", "SELL", 60, 12, 1),
        ]
        result = engine.match(orders)

        assert len(result.trades) == 1
        assert result.trades[0].status == TradeStatus.CLOSED

    def test_groups_are_isolated(self, engine):
        result = engine.match([
            _make_order("a1", "BUY", 10, 10, 0, symbol="AAPL"),
            _make_order("m1", "SELL", 5, 300, 1, symbol="MSFT"),
            _make_order("a2", "SELL", 10, 11, 2, symbol="AAPL"),
            _make_order("a3", "BUY", 10, 10, 3, symbol="AAPL", account_key="ACC-2"),
        ])

        by_key = {(t.symbol, t.account_key): t for t in result.trades}
        assert by_key[("AAPL", "ACC-1")].status == TradeStatus.CLOSED
        assert by_key[("AAPL", "ACC-2")].status == TradeStatus.OPEN
        assert by_key[("MSFT", "ACC-1")].side == Side.SHORT
        assert [str(g) for g in result.groups] == [
            "user-1|AAPL|ACC-1",
            "user-1|AAPL|ACC-2",
            "user-1|MSFT|ACC-1",
        ]

    def test_malformed_orders_are_skipped_with_reason(self, engine):
        orders = [
            _make_order("o1", "BUY", 10, 10, 0),
            _make_order("bad-qty", "SELL", 0, 12, 1),
            _make_order("bad-price", "SELL", 5, None, 2),
            _make_order("neg", "SELL", -5, 12, 3),
            _make_order("naive", "SELL", 5, 12, at=datetime(2026, 3, 2, 16, 0)),
            _make_order("o2", "SELL", 10, 11, 4),
        ]
        result = engine.match(orders)

        assert len(result.trades) == 1
        assert result.trades[0].status == TradeStatus.CLOSED
        reasons = {o.order_id: o.reason for o in result.diagnostics}
        assert set(reasons) == {"bad-qty", "bad-price", "neg", "naive"}
        assert "quantity" in reasons["bad-qty"]
        assert reasons["bad-price"] == "missing price"
        assert "timezone" in reasons["naive"]
        consumed = [o.order_id for o in result.outcomes if o.status == OutcomeStatus.CONSUMED]
        assert consumed == ["o1", "o2"]

    def test_duplicate_order_id_is_skipped(self, engine):
        result = engine.match([
            _make_order("o1", "BUY", 10, 10, 0),
            _make_order("o1", "BUY", 10, 10, 0),
        ])

        assert result.trades[0].quantity == Decimal("10")
        assert result.diagnostics[0].reason == "duplicate order id"

    def test_equal_timestamps_follow_import_sequence(self, engine):
        # Without the sequence tie-break "a-sell" would sort first and open a short
        result = engine.match([
            _make_order("b-buy", "BUY", 10, 10, 0, sequence=1),
            _make_order("a-sell", "SELL", 10, 11, 0, sequence=2),
        ])

        assert len(result.trades) == 1
        assert result.trades[0].side == Side.LONG

    def test_order_id_tie_break(self):
        engine = MatchingEngine(MatchingConfig(tie_break="order_id"))
        result = engine.match([
            _make_order("b-buy", "BUY", 10, 10, 0, sequence=1),
            _make_order("a-sell", "SELL", 10, 11, 0, sequence=2),
        ])

        assert result.trades[0].side == Side.SHORT

    def test_timestamp_granularity_buckets_close_executions(self):
        engine = MatchingEngine(MatchingConfig(timestamp_granularity_seconds=60))
        result = engine.match([
            _make_order("sell", "SELL", 10, 11, at=T0 + timedelta(seconds=5), sequence=2),
            _make_order("buy", "BUY", 10, 10, at=T0 + timedelta(seconds=40), sequence=1),
        ])

        assert result.trades[0].side == Side.LONG
        assert result.trades[0].trade_key == "AAPL|ACC-1|buy"

    def test_bucketed_exit_never_closes_before_open(self):
        engine = MatchingEngine(MatchingConfig(timestamp_granularity_seconds=60))
        result = engine.match([
            _make_order("sell", "SELL", 10, 11, at=T0 + timedelta(seconds=50), sequence=1),
            _make_order("buy", "BUY", 10, 10, at=T0 + timedelta(seconds=10), sequence=2),
        ])

        (trade,) = result.trades
        assert trade.side == Side.SHORT
        assert trade.opened_at == T0 + timedelta(seconds=50)
        assert trade.closed_at == T0 + timedelta(seconds=50)
        assert trade.holding_seconds == 0

    def test_empty_input(self, engine):
        result = engine.match([])

        assert result.trades == []
        assert result.outcomes == []

    def test_random_streams_keep_quantities_balanced(self, engine):
        rng = random.Random(20260302)
        orders = []
        for i in range(400):
            orders.append(
                _make_order(
                    f"o{i:04d}",
                    rng.choice(["BUY", "SELL"]),
                    rng.randint(1, 50),
                    rng.randint(90, 110),
                    minutes=rng.randint(0, 10_000),
                    symbol=rng.choice(["AAPL", "MSFT", "TSLA"]),
                    account_key=rng.choice(["ACC-1", "ACC-2"]),
                    sequence=i,
                )
            )

        result = engine.match(orders)

        open_per_group = defaultdict(int)
        net = defaultdict(Decimal)
        for order in orders:
            signed = order.executed_quantity if order.side == OrderSide.BUY else -order.executed_quantity
            net[order.group_key] += signed
        for trade in result.trades:
            entry = sum(lot.quantity for lot in trade.entry_lots)
            exit_ = sum(lot.quantity for lot in trade.exit_lots)
            assert entry == trade.quantity
            if trade.status == TradeStatus.CLOSED:
                assert exit_ == trade.quantity
            else:
                open_per_group[trade.group_key] += 1
                direction = 1 if trade.side == Side.LONG else -1
                assert direction * trade.remaining_quantity == net[trade.group_key]
        assert all(count == 1 for count in open_per_group.values())
        for group, position in net.items():
            assert (position != 0) == (group in open_per_group)
        consumed = {lot.order_id for t in result.trades for lot in t.lots}
        assert consumed == {o.order_id for o in orders}


class TestValidateOrder:
    def test_valid_order(self):
        assert validate_order(_make_order("o1", "BUY", 1, 1)) is None

    @pytest.mark.parametrize(
        "overrides, reason",
        [
            ({"symbol": ""}, "missing symbol"),
            ({"account_key": None}, "missing account key"),
            ({"side": "HOLD"}, "unknown side 'HOLD'"),
            ({"executed_quantity": None}, "missing quantity"),
            ({"executed_time": None}, "missing execution time"),
            ({"executed_price": Decimal("NaN")}, "non-positive price NaN"),
        ],
    )
    def test_reasons(self, overrides, reason):
        order = _make_order("o1", "BUY", 1, 1)
        for name, value in overrides.items():
            setattr(order, name, value)

        assert validate_order(order) == reason
