"""
Domain models for trade reconstruction.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all amounts are Decimals.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, NamedTuple, Optional, Tuple

ZERO = Decimal("0")


class OrderSide(str, Enum):
    """Execution side of a broker order."""
    BUY = "BUY"
    SELL = "SELL"


class Side(str, Enum):
    """Trade direction."""
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def for_order(cls, order_side: OrderSide) -> "Side":
        """Direction a position takes when this order opens it."""
        return cls.LONG if order_side == OrderSide.BUY else cls.SHORT

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self == Side.LONG else Side.LONG


class TradeStatus(str, Enum):
    """Trade lifecycle status."""
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class LotRole(str, Enum):
    """Whether a lot opened (entry) or reduced (exit) the position."""
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class MarketSession(str, Enum):
    """Session the trade was opened in."""
    PRE_MARKET = "PRE_MARKET"
    REGULAR = "REGULAR"
    AFTER_HOURS = "AFTER_HOURS"


class HoldingPeriod(str, Enum):
    """Holding-period classification."""
    INTRADAY = "INTRADAY"
    SWING = "SWING"


class OutcomeStatus(str, Enum):
    """Per-order replay outcome."""
    CONSUMED = "CONSUMED"
    SKIPPED = "SKIPPED"


class GroupKey(NamedTuple):
    """Matching partition: one position per (user, symbol, account)."""
    user_id: str
    symbol: str
    account_key: str

    def __str__(self) -> str:
        return f"{self.user_id}|{self.symbol}|{self.account_key}"


@dataclass
class Order:
    """
    Normalized broker execution, as produced by ingestion.

    Quantity, price and time are Optional because malformed imports exist;
    the matching engine skips them with a diagnostic.
    """
    order_id: str
    user_id: str
    account_key: str
    symbol: str
    side: OrderSide
    executed_quantity: Optional[Decimal]
    executed_price: Optional[Decimal]
    executed_time: Optional[datetime]
    import_sequence: int = 0
    commission: Decimal = ZERO
    fees: Decimal = ZERO
    import_batch_id: Optional[str] = None

    # Linkage, maintained only by the engine and the integrity guard
    used_in_trade: bool = False
    trade_id: Optional[str] = None

    @property
    def group_key(self) -> GroupKey:
        return GroupKey(self.user_id, self.symbol, self.account_key)


@dataclass(frozen=True)
class Lot:
    """A quantity slice of an order consumed into a trade's entries or exits."""
    order_id: str
    role: LotRole
    quantity: Decimal
    price: Decimal
    executed_time: datetime
    commission: Decimal = ZERO  # prorated share of the order's commission
    fees: Decimal = ZERO        # prorated share of the order's fees
    import_batch_id: Optional[str] = None

    @property
    def value(self) -> Decimal:
        return self.quantity * self.price


@dataclass
class Trade:
    """
    Round-trip trade: one position instance from flat to flat (or to a flip).
    """
    trade_id: str
    user_id: str
    symbol: str
    account_key: str
    side: Side
    status: TradeStatus
    entry_price: Decimal
    exit_price: Optional[Decimal]  # None while OPEN
    quantity: Decimal              # total entry quantity
    exit_quantity: Decimal
    remaining_quantity: Decimal
    pnl: Optional[Decimal]         # None while OPEN
    commission: Decimal
    fees: Decimal
    cost_basis: Decimal
    proceeds: Decimal
    opened_at: datetime
    closed_at: Optional[datetime]
    holding_seconds: Optional[int]
    holding_period: HoldingPeriod
    market_session: MarketSession
    import_batch_ids: List[str] = field(default_factory=list)
    lots: List[Lot] = field(default_factory=list)

    # User annotations; survive recomputation via trade_key matching
    notes: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @property
    def entry_lots(self) -> List[Lot]:
        return [lot for lot in self.lots if lot.role == LotRole.ENTRY]

    @property
    def exit_lots(self) -> List[Lot]:
        return [lot for lot in self.lots if lot.role == LotRole.EXIT]

    @property
    def order_ids(self) -> List[str]:
        """Distinct consumed order ids, in consumption order."""
        return list(dict.fromkeys(lot.order_id for lot in self.lots))

    @property
    def orders_count(self) -> int:
        return len(self.order_ids)

    @property
    def executions(self) -> int:
        return len(self.lots)

    @property
    def group_key(self) -> GroupKey:
        return GroupKey(self.user_id, self.symbol, self.account_key)

    @property
    def trade_key(self) -> str:
        """Deterministic identity across rebuilds: symbol + account + first entry order."""
        return make_trade_key(self.symbol, self.account_key, self.entry_lots[0].order_id)

    def content(self) -> Tuple:
        """Computed content, independent of surrogate ids and annotations."""
        return (
            self.symbol,
            self.account_key,
            self.side,
            self.status,
            self.entry_price,
            self.exit_price,
            self.quantity,
            self.exit_quantity,
            self.remaining_quantity,
            self.pnl,
            self.commission,
            self.fees,
            self.opened_at,
            self.closed_at,
            self.holding_seconds,
            self.holding_period,
            self.market_session,
            tuple(self.import_batch_ids),
            tuple(self.lots),
        )


def make_trade_key(symbol: str, account_key: str, first_entry_order_id: str) -> str:
    return f"{symbol}|{account_key}|{first_entry_order_id}"


@dataclass(frozen=True)
class OrderOutcome:
    """Replay outcome for a single order."""
    order_id: str
    status: OutcomeStatus
    user_id: Optional[str] = None
    symbol: Optional[str] = None
    account_key: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class RebuildReport:
    """Result of a full or incremental rebuild."""
    user_id: str
    scope: str  # "user" or "groups"
    trades: List[Trade] = field(default_factory=list)
    diagnostics: List[OrderOutcome] = field(default_factory=list)
    groups: List[GroupKey] = field(default_factory=list)
    import_batch_id: Optional[str] = None
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0


@dataclass(frozen=True)
class DeletionValidation:
    """Outcome of a deletion pre-check."""
    can_delete: bool
    shared_order_count: int = 0
    affected_trades: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DeletionResult:
    """Rows removed and orders unlinked by a deletion."""
    trades_deleted: int
    orders_unlinked: int
