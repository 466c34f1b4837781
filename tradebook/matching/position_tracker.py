"""
Position Tracker - one state machine per (user, symbol, account).

State Machine:
    FLAT  → LONG / SHORT   (first order opens a trade instance)
    LONG  → LONG           (BUY scales in, or a SELL partially exits)
    LONG  → FLAT           (SELL exactly offsets the position; instance finalized)
    LONG  → SHORT          (flip: SELL exceeds the position; the order is split)
    SHORT mirrors LONG with sides swapped.

Instances are built fresh for every rebuild and never shared between groups.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional

from tradebook.domain.models import GroupKey, Lot, LotRole, Order, OrderSide, Side, ZERO
from tradebook.exceptions import InvariantError
from tradebook.monitoring.logger import get_logger

logger = get_logger(__name__)


def check_invariant(condition: bool, message: str, **context) -> None:
    """Assert an invariant. Raises InvariantError if false."""
    if not condition:
        logger.critical("INVARIANT_VIOLATION", message=message, **context)
        raise InvariantError(message, **context)


class PositionState(str, Enum):
    FLAT = "FLAT"
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass
class TradeInstance:
    """Entry and exit lots of one position instance, in consumption order."""
    group: GroupKey
    side: Side
    entry_lots: List[Lot] = field(default_factory=list)
    exit_lots: List[Lot] = field(default_factory=list)
    closed: bool = False

    @property
    def entry_quantity(self) -> Decimal:
        return sum((lot.quantity for lot in self.entry_lots), ZERO)

    @property
    def exit_quantity(self) -> Decimal:
        return sum((lot.quantity for lot in self.exit_lots), ZERO)

    @property
    def open_quantity(self) -> Decimal:
        return self.entry_quantity - self.exit_quantity


def _slice(order: Order, role: LotRole, quantity: Decimal, commission: Decimal, fees: Decimal) -> Lot:
    return Lot(
        order_id=order.order_id,
        role=role,
        quantity=quantity,
        price=order.executed_price,
        executed_time=order.executed_time,
        commission=commission,
        fees=fees,
        import_batch_id=order.import_batch_id,
    )


# Prorated cost shares are stored at the same scale as prices
COST_QUANT = Decimal("0.00000001")


def _prorate(amount: Decimal, part: Decimal, whole: Decimal) -> Decimal:
    if part == whole:
        return amount
    return (amount * part / whole).quantize(COST_QUANT, rounding=ROUND_HALF_UP)


class PositionTracker:
    """
    Tracks the open position and the current, unfinalized trade instance
    for a single group. Orders must be fed in chronological order and must
    already be validated (positive quantity and price, aware timestamp).
    """

    def __init__(self, group: GroupKey):
        self.group = group
        self.state = PositionState.FLAT
        self.position = ZERO  # signed: > 0 long, < 0 short
        self.current: Optional[TradeInstance] = None

    def _context(self, order: Order) -> dict:
        return {
            "user_id": self.group.user_id,
            "symbol": self.group.symbol,
            "account_key": self.group.account_key,
            "order_ids": [order.order_id],
        }

    def apply(self, order: Order) -> List[TradeInstance]:
        """
        Consume one order.

        Returns the trade instances finalized by this order: empty for an
        open/scale-in/partial exit, one for an exact close or a flip.
        """
        check_invariant(
            order.group_key == self.group,
            f"Order {order.order_id} routed to wrong tracker {self.group}",
            **self._context(order),
        )
        qty = order.executed_quantity
        direction = Side.for_order(order.side)

        if self.state == PositionState.FLAT:
            self._open(order, direction, qty, order.commission, order.fees)
            return []

        if direction == self.current.side:
            self.current.entry_lots.append(
                _slice(order, LotRole.ENTRY, qty, order.commission, order.fees)
            )
            self._move(order, qty)
            self._check_balance(order)
            return []

        return self._reduce(order, qty)

    def _reduce(self, order: Order, qty: Decimal) -> List[TradeInstance]:
        open_qty = abs(self.position)

        if qty < open_qty:
            self.current.exit_lots.append(
                _slice(order, LotRole.EXIT, qty, order.commission, order.fees)
            )
            self._move(order, qty)
            self._check_balance(order)
            return []

        closing_qty = open_qty
        closing_commission = _prorate(order.commission, closing_qty, qty)
        closing_fees = _prorate(order.fees, closing_qty, qty)
        self.current.exit_lots.append(
            _slice(order, LotRole.EXIT, closing_qty, closing_commission, closing_fees)
        )
        self._move(order, closing_qty)
        finished = self._finalize(order)

        remainder = qty - closing_qty
        if remainder > 0:
            logger.debug(
                "POSITION_FLIP",
                symbol=self.group.symbol,
                account_key=self.group.account_key,
                order_id=order.order_id,
                closed_qty=str(closing_qty),
                remainder_qty=str(remainder),
            )
            self._open(
                order,
                finished.side.opposite,
                remainder,
                order.commission - closing_commission,
                order.fees - closing_fees,
            )
        return [finished]

    def _open(self, order: Order, side: Side, qty: Decimal, commission: Decimal, fees: Decimal) -> None:
        self.current = TradeInstance(group=self.group, side=side)
        self.current.entry_lots.append(_slice(order, LotRole.ENTRY, qty, commission, fees))
        self.state = PositionState.LONG if side == Side.LONG else PositionState.SHORT
        self._move(order, qty)

    def _move(self, order: Order, qty: Decimal) -> None:
        self.position += qty if order.side == OrderSide.BUY else -qty

    def _finalize(self, order: Order) -> TradeInstance:
        finished = self.current
        check_invariant(
            self.position == ZERO and finished.entry_quantity == finished.exit_quantity,
            f"Closed instance unbalanced: entry={finished.entry_quantity} exit={finished.exit_quantity}",
            **self._context(order),
        )
        finished.closed = True
        self.current = None
        self.state = PositionState.FLAT
        return finished

    def _check_balance(self, order: Order) -> None:
        check_invariant(
            abs(self.position) == self.current.open_quantity and self.position != ZERO,
            f"Position {self.position} disagrees with open lots {self.current.open_quantity}",
            **self._context(order),
        )

    def open_instance(self) -> Optional[TradeInstance]:
        """The still-open instance at end-of-stream, if any."""
        return self.current
