"""
Trade Aggregator - turns a trade instance into a priced Trade.

- Entry/exit prices are quantity-weighted averages over consumed lots.
- PnL is computed from consumed values, not from the rounded averages,
  then rounded to the configured cents precision:
      LONG:  proceeds - cost_basis - costs
      SHORT: cost_basis - proceeds - costs
  which equals (exit - entry) * quantity - costs for equal quantities.
- Costs are the lots' commission and fee shares; a flip order contributes
  only the share prorated to each side of the split.
"""
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional

from tradebook.config.config import MarketHoursConfig, TradeConfig
from tradebook.domain.models import Lot, Side, Trade, TradeStatus, ZERO
from tradebook.matching.market_hours import classify_holding_period, classify_market_session
from tradebook.matching.position_tracker import TradeInstance, check_invariant


def _quantize(value: Decimal, places: int) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def _total(lots: List[Lot], attr: str) -> Decimal:
    return sum((getattr(lot, attr) for lot in lots), ZERO)


def _new_trade_id() -> str:
    return str(uuid.uuid4())


class TradeAggregator:
    """Prices and classifies trade instances."""

    def __init__(
        self,
        trades: Optional[TradeConfig] = None,
        market_hours: Optional[MarketHoursConfig] = None,
        id_factory: Callable[[], str] = _new_trade_id,
    ):
        self.trades = trades or TradeConfig()
        self.market_hours = market_hours or MarketHoursConfig()
        self.id_factory = id_factory

    def aggregate(self, instance: TradeInstance) -> Trade:
        entries = instance.entry_lots
        exits = instance.exit_lots
        group = instance.group
        context = {"user_id": group.user_id, "symbol": group.symbol, "account_key": group.account_key}

        check_invariant(bool(entries), "Trade instance has no entry lots", **context)

        quantity = _total(entries, "quantity")
        exit_quantity = _total(exits, "quantity")
        lots = entries + exits
        places = self.trades.price_places
        cost_basis = _quantize(_total(entries, "value"), places)
        proceeds = _quantize(_total(exits, "value"), places)
        commission = _quantize(_total(lots, "commission"), places)
        fees = _quantize(_total(lots, "fees"), places)

        entry_price = _quantize(cost_basis / quantity, places)
        opened_at = entries[0].executed_time

        if instance.closed:
            check_invariant(
                quantity == exit_quantity,
                f"Closed trade entry quantity {quantity} != exit quantity {exit_quantity}",
                order_ids=[lot.order_id for lot in lots],
                **context,
            )
            status = TradeStatus.CLOSED
            exit_price = _quantize(proceeds / exit_quantity, places)
            if instance.side == Side.LONG:
                gross = proceeds - cost_basis
            else:
                gross = cost_basis - proceeds
            pnl = _quantize(gross - commission - fees, self.trades.pnl_places)
            # Bucketed replay order can differ from wall-clock order
            closed_at = max(lot.executed_time for lot in lots)
            holding_seconds = int((closed_at - opened_at).total_seconds())
        else:
            # Partial exits are reported but not priced until the position closes
            status = TradeStatus.OPEN
            exit_price = None
            pnl = None
            closed_at = None
            holding_seconds = None

        return Trade(
            trade_id=self.id_factory(),
            user_id=group.user_id,
            symbol=group.symbol,
            account_key=group.account_key,
            side=instance.side,
            status=status,
            entry_price=entry_price,
            exit_price=exit_price,
            quantity=quantity,
            exit_quantity=exit_quantity,
            remaining_quantity=quantity - exit_quantity,
            pnl=pnl,
            commission=commission,
            fees=fees,
            cost_basis=cost_basis,
            proceeds=proceeds,
            opened_at=opened_at,
            closed_at=closed_at,
            holding_seconds=holding_seconds,
            holding_period=classify_holding_period(
                opened_at, closed_at, self.trades.swing_threshold_hours
            ),
            market_session=classify_market_session(opened_at, self.market_hours),
            import_batch_ids=sorted({lot.import_batch_id for lot in lots if lot.import_batch_id}),
            lots=list(lots),
        )
