"""
Matching Engine - replays order history into round-trip trades.

For every (user, symbol, account) group:
1. Validate each order; malformed ones get a SKIPPED outcome and are left out.
2. Sort by (bucketed executed_time, tie-break field, order_id).
3. Stream through a fresh PositionTracker, aggregating each finalized instance.
4. At end-of-stream, aggregate the still-open instance (at most one per group).

Groups are independent; ordering inside a group is strictly sequential.
The engine does no I/O and keeps no state between calls.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Dict, Iterable, List, Optional, Tuple

from tradebook.config.config import MatchingConfig
from tradebook.domain.models import (
    GroupKey,
    Order,
    OrderOutcome,
    OrderSide,
    OutcomeStatus,
    Trade,
)
from tradebook.matching.position_tracker import PositionTracker
from tradebook.matching.trade_aggregator import TradeAggregator
from tradebook.monitoring.logger import get_logger

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class MatchResult:
    """Trades in emission order plus one outcome per input order."""
    trades: List[Trade] = field(default_factory=list)
    outcomes: List[OrderOutcome] = field(default_factory=list)

    @property
    def diagnostics(self) -> List[OrderOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.SKIPPED]

    @property
    def groups(self) -> List[GroupKey]:
        return sorted({t.group_key for t in self.trades})


def validate_order(order: Order) -> Optional[str]:
    """Return the reason an order cannot be matched, or None if it is usable."""
    if not order.symbol:
        return "missing symbol"
    if order.account_key is None:
        return "missing account key"
    if not isinstance(order.side, OrderSide):
        return f"unknown side {order.side!r}"
    qty = order.executed_quantity
    if qty is None:
        return "missing quantity"
    try:
        if not qty.is_finite() or qty <= 0:
            return f"non-positive quantity {qty}"
    except (AttributeError, InvalidOperation):
        return f"invalid quantity {qty!r}"
    price = order.executed_price
    if price is None:
        return "missing price"
    try:
        if not price.is_finite() or price <= 0:
            return f"non-positive price {price}"
    except (AttributeError, InvalidOperation):
        return f"invalid price {price!r}"
    if order.executed_time is None:
        return "missing execution time"
    if order.executed_time.tzinfo is None:
        return "execution time is not timezone-aware"
    return None


class MatchingEngine:
    """Stateless order replay. Construct once and call match() per rebuild."""

    def __init__(
        self,
        config: Optional[MatchingConfig] = None,
        aggregator: Optional[TradeAggregator] = None,
    ):
        self.config = config or MatchingConfig()
        self.aggregator = aggregator or TradeAggregator()

    def sort_key(self, order: Order) -> Tuple:
        """Chronological order with a configurable tie-break for equal timestamps."""
        executed = order.executed_time
        granularity = self.config.timestamp_granularity_seconds
        if granularity:
            elapsed = int((executed - _EPOCH).total_seconds())
            moment = elapsed - elapsed % granularity
        else:
            moment = executed
        if self.config.tie_break == "import_sequence":
            return (moment, order.import_sequence, order.order_id)
        return (moment, order.order_id)

    def match(self, orders: Iterable[Order]) -> MatchResult:
        result = MatchResult()
        groups: Dict[GroupKey, List[Order]] = defaultdict(list)
        seen = set()

        for order in orders:
            reason = validate_order(order)
            if reason is None and order.order_id in seen:
                reason = "duplicate order id"
            if reason is not None:
                outcome = OrderOutcome(
                    order_id=order.order_id,
                    status=OutcomeStatus.SKIPPED,
                    user_id=order.user_id,
                    symbol=order.symbol,
                    account_key=order.account_key,
                    reason=reason,
                )
                result.outcomes.append(outcome)
                logger.warning(
                    "ORDER_SKIPPED",
                    order_id=order.order_id,
                    user_id=order.user_id,
                    symbol=order.symbol,
                    account_key=order.account_key,
                    reason=reason,
                )
                continue
            seen.add(order.order_id)
            groups[order.group_key].append(order)

        for group in sorted(groups):
            result.trades.extend(self._match_group(group, groups[group], result.outcomes))

        logger.debug(
            "MATCH_COMPLETE",
            groups=len(groups),
            trades=len(result.trades),
            skipped=len(result.diagnostics),
        )
        return result

    def _match_group(
        self,
        group: GroupKey,
        orders: List[Order],
        outcomes: List[OrderOutcome],
    ) -> List[Trade]:
        tracker = PositionTracker(group)
        trades = []

        for order in sorted(orders, key=self.sort_key):
            for instance in tracker.apply(order):
                trades.append(self.aggregator.aggregate(instance))
            outcomes.append(
                OrderOutcome(
                    order_id=order.order_id,
                    status=OutcomeStatus.CONSUMED,
                    user_id=group.user_id,
                    symbol=group.symbol,
                    account_key=group.account_key,
                )
            )

        still_open = tracker.open_instance()
        if still_open is not None:
            trades.append(self.aggregator.aggregate(still_open))
        return trades
