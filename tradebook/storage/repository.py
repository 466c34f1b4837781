"""
Persistence functions for orders, trades and trade lots.

Every function takes the caller's Session so a rebuild or deletion reads and
writes inside one transaction (see Database.get_session). Datetimes are stored
as naive UTC and returned timezone-aware.
"""
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    and_,
    or_,
    text,
)
from sqlalchemy.orm import Session
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
import json

from tradebook.storage.db import Base
from tradebook.domain.models import (
    GroupKey,
    HoldingPeriod,
    Lot,
    LotRole,
    MarketSession,
    Order,
    OrderSide,
    Side,
    Trade,
    TradeStatus,
)


# ORM Models
class OrderModel(Base):
    """ORM model for normalized broker executions. Written by ingestion."""
    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_order_replay", "user_id", "symbol", "account_key", "executed_time", "import_sequence"),
        Index("idx_order_batch", "user_id", "import_batch_id"),
        Index("idx_order_trade", "trade_id"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    account_key = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    executed_quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    executed_price = Column(Numeric(precision=20, scale=8), nullable=True)
    executed_time = Column(DateTime, nullable=True)
    import_sequence = Column(Integer, nullable=False, default=0)
    commission = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    fees = Column(Numeric(precision=20, scale=8), nullable=False, default=0)
    import_batch_id = Column(String, nullable=True)

    used_in_trade = Column(Boolean, nullable=False, default=False)
    trade_id = Column(String, nullable=True)


class TradeModel(Base):
    """ORM model for calculated trades."""
    __tablename__ = "trades"
    __table_args__ = (
        UniqueConstraint("user_id", "trade_key", name="uq_trade_key"),
        Index("idx_trade_group", "user_id", "symbol", "account_key"),
        Index("idx_trade_opened", "user_id", "opened_at"),
        # At most one OPEN trade per (user, symbol, account)
        Index(
            "uq_trade_open_group",
            "user_id",
            "symbol",
            "account_key",
            unique=True,
            postgresql_where=text("status = 'OPEN'"),
            sqlite_where=text("status = 'OPEN'"),
        ),
    )

    trade_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    account_key = Column(String, nullable=False)
    trade_key = Column(String, nullable=False)
    side = Column(String, nullable=False)
    status = Column(String, nullable=False)

    entry_price = Column(Numeric(precision=20, scale=8), nullable=False)
    exit_price = Column(Numeric(precision=20, scale=8), nullable=True)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    exit_quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    remaining_quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    pnl = Column(Numeric(precision=20, scale=8), nullable=True)
    commission = Column(Numeric(precision=20, scale=8), nullable=False)
    fees = Column(Numeric(precision=20, scale=8), nullable=False)
    cost_basis = Column(Numeric(precision=20, scale=8), nullable=False)
    proceeds = Column(Numeric(precision=20, scale=8), nullable=False)

    opened_at = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    holding_seconds = Column(Integer, nullable=True)
    holding_period = Column(String, nullable=False)
    market_session = Column(String, nullable=False)
    import_batch_ids = Column(String, nullable=False, default="[]")  # JSON list

    notes = Column(String, nullable=True)
    tags = Column(String, nullable=False, default="[]")  # JSON list

    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class TradeLotModel(Base):
    """ORM model for the order slices consumed into a trade."""
    __tablename__ = "trade_lots"
    __table_args__ = (
        Index("idx_lot_trade", "trade_id", "seq"),
        Index("idx_lot_order", "order_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_id = Column(String, ForeignKey("trades.trade_id", ondelete="CASCADE"), nullable=False)
    seq = Column(Integer, nullable=False)
    order_id = Column(String, nullable=False)
    role = Column(String, nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    price = Column(Numeric(precision=20, scale=8), nullable=False)
    executed_time = Column(DateTime, nullable=False)
    commission = Column(Numeric(precision=20, scale=8), nullable=False)
    fees = Column(Numeric(precision=20, scale=8), nullable=False)
    import_batch_id = Column(String, nullable=True)


@dataclass
class ReplaceSummary:
    """Row-level effect of replacing a scope's trades."""
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _dec(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _order_side(value: str):
    # Unknown values pass through so matching can skip the order with a diagnostic
    try:
        return OrderSide(value)
    except ValueError:
        return value


def _order_from_model(om: OrderModel) -> Order:
    return Order(
        order_id=om.id,
        user_id=om.user_id,
        account_key=om.account_key,
        symbol=om.symbol,
        side=_order_side(om.side),
        executed_quantity=_dec(om.executed_quantity),
        executed_price=_dec(om.executed_price),
        executed_time=_from_db_time(om.executed_time),
        import_sequence=om.import_sequence,
        commission=_dec(om.commission),
        fees=_dec(om.fees),
        import_batch_id=om.import_batch_id,
        used_in_trade=bool(om.used_in_trade),
        trade_id=om.trade_id,
    )


def _lot_from_model(lm: TradeLotModel) -> Lot:
    return Lot(
        order_id=lm.order_id,
        role=LotRole(lm.role),
        quantity=_dec(lm.quantity),
        price=_dec(lm.price),
        executed_time=_from_db_time(lm.executed_time),
        commission=_dec(lm.commission),
        fees=_dec(lm.fees),
        import_batch_id=lm.import_batch_id,
    )


def _trade_from_model(tm: TradeModel, lots: List[Lot]) -> Trade:
    return Trade(
        trade_id=tm.trade_id,
        user_id=tm.user_id,
        symbol=tm.symbol,
        account_key=tm.account_key,
        side=Side(tm.side),
        status=TradeStatus(tm.status),
        entry_price=_dec(tm.entry_price),
        exit_price=_dec(tm.exit_price),
        quantity=_dec(tm.quantity),
        exit_quantity=_dec(tm.exit_quantity),
        remaining_quantity=_dec(tm.remaining_quantity),
        pnl=_dec(tm.pnl),
        commission=_dec(tm.commission),
        fees=_dec(tm.fees),
        cost_basis=_dec(tm.cost_basis),
        proceeds=_dec(tm.proceeds),
        opened_at=_from_db_time(tm.opened_at),
        closed_at=_from_db_time(tm.closed_at),
        holding_seconds=tm.holding_seconds,
        holding_period=HoldingPeriod(tm.holding_period),
        market_session=MarketSession(tm.market_session),
        import_batch_ids=json.loads(tm.import_batch_ids or "[]"),
        lots=lots,
        notes=tm.notes,
        tags=json.loads(tm.tags or "[]"),
    )


def _apply_trade_fields(tm: TradeModel, trade: Trade) -> None:
    tm.user_id = trade.user_id
    tm.symbol = trade.symbol
    tm.account_key = trade.account_key
    tm.trade_key = trade.trade_key
    tm.side = trade.side.value
    tm.status = trade.status.value
    tm.entry_price = trade.entry_price
    tm.exit_price = trade.exit_price
    tm.quantity = trade.quantity
    tm.exit_quantity = trade.exit_quantity
    tm.remaining_quantity = trade.remaining_quantity
    tm.pnl = trade.pnl
    tm.commission = trade.commission
    tm.fees = trade.fees
    tm.cost_basis = trade.cost_basis
    tm.proceeds = trade.proceeds
    tm.opened_at = _to_db_time(trade.opened_at)
    tm.closed_at = _to_db_time(trade.closed_at)
    tm.holding_seconds = trade.holding_seconds
    tm.holding_period = trade.holding_period.value
    tm.market_session = trade.market_session.value
    tm.import_batch_ids = json.dumps(trade.import_batch_ids)
    tm.notes = trade.notes
    tm.tags = json.dumps(trade.tags)
    tm.updated_at = datetime.now(timezone.utc).replace(tzinfo=None)


def _group_filter(model, groups: Sequence[GroupKey]):
    return or_(
        *[
            and_(
                model.user_id == g.user_id,
                model.symbol == g.symbol,
                model.account_key == g.account_key,
            )
            for g in groups
        ]
    )


# ---------------------------------------------------------------------------
# Orders (Order Source)
# ---------------------------------------------------------------------------

def save_orders(session: Session, orders: Iterable[Order]) -> int:
    """
    Insert or update normalized orders. Used by ingestion and fixtures;
    existing linkage columns are left as stored.
    """
    count = 0
    for order in orders:
        om = session.get(OrderModel, order.order_id)
        if om is None:
            om = OrderModel(id=order.order_id, used_in_trade=False, trade_id=None)
            session.add(om)
        om.user_id = order.user_id
        om.account_key = order.account_key
        om.symbol = order.symbol
        om.side = order.side.value
        om.executed_quantity = order.executed_quantity
        om.executed_price = order.executed_price
        om.executed_time = _to_db_time(order.executed_time)
        om.import_sequence = order.import_sequence
        om.commission = order.commission
        om.fees = order.fees
        om.import_batch_id = order.import_batch_id
        count += 1
    session.flush()
    return count


def get_orders(
    session: Session,
    user_id: str,
    groups: Optional[Sequence[GroupKey]] = None,
    import_batch_id: Optional[str] = None,
) -> List[Order]:
    """
    Load a user's orders, optionally restricted to groups and/or one import batch.

    Returned in (executed_time, import_sequence) order; the matching engine
    applies its own configured ordering regardless.
    """
    query = session.query(OrderModel).filter(OrderModel.user_id == user_id)
    if groups is not None:
        if not groups:
            return []
        query = query.filter(_group_filter(OrderModel, groups))
    if import_batch_id is not None:
        query = query.filter(OrderModel.import_batch_id == import_batch_id)
    query = query.order_by(
        OrderModel.executed_time.asc(),
        OrderModel.import_sequence.asc(),
        OrderModel.id.asc(),
    )
    return [_order_from_model(om) for om in query.all()]


def get_import_batch_groups(session: Session, user_id: str, import_batch_id: str) -> List[GroupKey]:
    """Distinct (user, symbol, account) groups touched by an import batch."""
    rows = (
        session.query(OrderModel.symbol, OrderModel.account_key)
        .filter(
            OrderModel.user_id == user_id,
            OrderModel.import_batch_id == import_batch_id,
        )
        .distinct()
        .all()
    )
    return sorted(GroupKey(user_id, symbol, account_key) for symbol, account_key in rows)


def relink_orders(session: Session, user_id: str, orders: List[Order], trades: List[Trade]) -> int:
    """
    Rewrite used_in_trade/trade_id for every order in scope.

    Orders not consumed by any trade are unlinked. An order consumed by two
    trades (a flip) references the later one. Returns the number of linked orders.
    """
    scope_ids = [o.order_id for o in orders]
    for chunk in _chunks(scope_ids):
        session.query(OrderModel).filter(OrderModel.id.in_(chunk)).update(
            {OrderModel.used_in_trade: False, OrderModel.trade_id: None},
            synchronize_session=False,
        )

    links: Dict[str, str] = {}
    for trade in trades:
        for order_id in trade.order_ids:
            links[order_id] = trade.trade_id

    by_trade: Dict[str, List[str]] = {}
    for order_id, trade_id in links.items():
        by_trade.setdefault(trade_id, []).append(order_id)
    for trade_id, order_ids in by_trade.items():
        for chunk in _chunks(order_ids):
            session.query(OrderModel).filter(OrderModel.id.in_(chunk)).update(
                {OrderModel.used_in_trade: True, OrderModel.trade_id: trade_id},
                synchronize_session=False,
            )

    for order in orders:
        order.trade_id = links.get(order.order_id)
        order.used_in_trade = order.trade_id is not None
    return len(links)


def _chunks(items: List[str], size: int = 500):
    for start in range(0, len(items), size):
        yield items[start:start + size]


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------

def _load_lots(session: Session, trade_ids: List[str]) -> Dict[str, List[Lot]]:
    lots: Dict[str, List[Lot]] = {tid: [] for tid in trade_ids}
    for chunk in _chunks(trade_ids):
        rows = (
            session.query(TradeLotModel)
            .filter(TradeLotModel.trade_id.in_(chunk))
            .order_by(TradeLotModel.trade_id, TradeLotModel.seq)
            .all()
        )
        for lm in rows:
            lots[lm.trade_id].append(_lot_from_model(lm))
    return lots


def get_trades(
    session: Session,
    user_id: str,
    groups: Optional[Sequence[GroupKey]] = None,
    trade_ids: Optional[Sequence[str]] = None,
) -> List[Trade]:
    """Load a user's trades with their lots, newest first."""
    query = session.query(TradeModel).filter(TradeModel.user_id == user_id)
    if groups is not None:
        if not groups:
            return []
        query = query.filter(_group_filter(TradeModel, groups))
    if trade_ids is not None:
        if not trade_ids:
            return []
        query = query.filter(TradeModel.trade_id.in_(list(trade_ids)))
    models = query.order_by(TradeModel.opened_at.desc(), TradeModel.trade_key.asc()).all()
    lots = _load_lots(session, [tm.trade_id for tm in models])
    return [_trade_from_model(tm, lots[tm.trade_id]) for tm in models]


def _write_lots(session: Session, trade: Trade) -> None:
    for seq, lot in enumerate(trade.lots):
        session.add(
            TradeLotModel(
                trade_id=trade.trade_id,
                seq=seq,
                order_id=lot.order_id,
                role=lot.role.value,
                quantity=lot.quantity,
                price=lot.price,
                executed_time=_to_db_time(lot.executed_time),
                commission=lot.commission,
                fees=lot.fees,
                import_batch_id=lot.import_batch_id,
            )
        )


def _delete_lots(session: Session, trade_ids: List[str]) -> None:
    for chunk in _chunks(trade_ids):
        session.query(TradeLotModel).filter(TradeLotModel.trade_id.in_(chunk)).delete(
            synchronize_session=False
        )


def replace_trades(
    session: Session,
    previous: List[Trade],
    computed: List[Trade],
) -> ReplaceSummary:
    """
    Replace a scope's stored trades with freshly computed ones.

    Old and new trades are matched on trade_key. A match keeps its trade_id
    and annotations and is rewritten only if its content changed. Unmatched
    old trades are deleted; unmatched new trades are inserted. Mutates the
    computed trades' ids and annotations to the stored ones.
    """
    summary = ReplaceSummary()
    remaining = {t.trade_key: t for t in previous}
    to_update: List[Trade] = []
    to_insert: List[Trade] = []

    for trade in computed:
        old = remaining.pop(trade.trade_key, None)
        if old is None:
            to_insert.append(trade)
            continue
        trade.trade_id = old.trade_id
        trade.notes = old.notes
        trade.tags = list(old.tags)
        if old.content() == trade.content():
            summary.unchanged += 1
        else:
            to_update.append(trade)

    # Deletes, then closings, then the rest: the one-OPEN-per-group index
    # must hold after every flush.
    stale_ids = [t.trade_id for t in remaining.values()]
    if stale_ids:
        _delete_lots(session, stale_ids)
        for chunk in _chunks(stale_ids):
            session.query(TradeModel).filter(TradeModel.trade_id.in_(chunk)).delete(
                synchronize_session=False
            )
        summary.deleted = len(stale_ids)
        session.flush()

    to_update.sort(key=lambda t: t.status != TradeStatus.CLOSED)
    if to_update:
        _delete_lots(session, [t.trade_id for t in to_update])
    for trade in to_update:
        tm = session.get(TradeModel, trade.trade_id)
        _apply_trade_fields(tm, trade)
        _write_lots(session, trade)
        session.flush()
    summary.updated = len(to_update)

    for trade in to_insert:
        tm = TradeModel(trade_id=trade.trade_id)
        _apply_trade_fields(tm, trade)
        session.add(tm)
        session.flush()
        _write_lots(session, trade)
    session.flush()
    summary.inserted = len(to_insert)

    return summary


# ---------------------------------------------------------------------------
# Deletion support
# ---------------------------------------------------------------------------

def get_trade_order_ids(session: Session, trade_ids: Sequence[str]) -> Set[str]:
    """Constituent order ids of the given trades: their lots plus back-references."""
    ids = list(trade_ids)
    order_ids: Set[str] = set()
    for chunk in _chunks(ids):
        order_ids.update(
            r[0]
            for r in session.query(TradeLotModel.order_id)
            .filter(TradeLotModel.trade_id.in_(chunk))
            .all()
        )
        order_ids.update(
            r[0] for r in session.query(OrderModel.id).filter(OrderModel.trade_id.in_(chunk)).all()
        )
    return order_ids


def find_order_references(
    session: Session,
    order_ids: Iterable[str],
    exclude_trade_ids: Iterable[str],
) -> Dict[str, Set[str]]:
    """
    Map each order id to the trades outside exclude_trade_ids that reference it,
    either through a lot or through the order's trade_id. Orders without
    outside references are omitted.
    """
    excluded = set(exclude_trade_ids)
    refs: Dict[str, Set[str]] = {}
    for chunk in _chunks(sorted(set(order_ids))):
        lot_rows = (
            session.query(TradeLotModel.order_id, TradeLotModel.trade_id)
            .filter(TradeLotModel.order_id.in_(chunk))
            .all()
        )
        link_rows = (
            session.query(OrderModel.id, OrderModel.trade_id)
            .filter(OrderModel.id.in_(chunk), OrderModel.trade_id.isnot(None))
            .all()
        )
        for order_id, trade_id in list(lot_rows) + list(link_rows):
            if trade_id not in excluded:
                refs.setdefault(order_id, set()).add(trade_id)
    return refs


def delete_trades_and_unlink(
    session: Session,
    user_id: str,
    trade_ids: Sequence[str],
    order_ids: Iterable[str],
) -> Tuple[int, int]:
    """Remove trade rows and lots, then reset linkage on their orders."""
    ids = list(trade_ids)
    unlinked = 0
    for chunk in _chunks(sorted(set(order_ids))):
        unlinked += (
            session.query(OrderModel)
            .filter(OrderModel.user_id == user_id, OrderModel.id.in_(chunk))
            .update(
                {OrderModel.used_in_trade: False, OrderModel.trade_id: None},
                synchronize_session=False,
            )
        )

    _delete_lots(session, ids)
    deleted = 0
    for chunk in _chunks(ids):
        deleted += (
            session.query(TradeModel)
            .filter(TradeModel.user_id == user_id, TradeModel.trade_id.in_(chunk))
            .delete(synchronize_session=False)
        )
    session.flush()
    return deleted, unlinked
