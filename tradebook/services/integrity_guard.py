"""
Integrity Guard - safe deletion of calculated trades.

A trade set may only be deleted when none of its constituent orders is also
referenced by a trade outside the set (a flip order is consumed by two
trades). Deleting such a set would leave the other trade pointing at
unlinked orders, so it is refused without touching anything.
"""
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from tradebook.config.config import Config
from tradebook.domain.models import DeletionResult, DeletionValidation, GroupKey
from tradebook.exceptions import ConcurrencyError, IntegrityConflict, ValidationError
from tradebook.monitoring.logger import get_logger
from tradebook.runtime.rebuild_locks import (
    RebuildLockRegistry,
    acquire_advisory_locks,
    get_lock_registry,
)
from tradebook.storage import repository
from tradebook.storage.db import Database

logger = get_logger(__name__)


def _unique(trade_ids: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(trade_ids))


class IntegrityGuard:
    """Validates and executes trade deletion."""

    def __init__(
        self,
        db: Database,
        config: Optional[Config] = None,
        locks: Optional[RebuildLockRegistry] = None,
    ):
        self.db = db
        self.config = config or Config()
        self.locks = locks or get_lock_registry()

    def validate_deletion(self, user_id: str, trade_ids: Sequence[str]) -> DeletionValidation:
        """Check whether the trades can be deleted without orphaning shared orders."""
        ids = _unique(trade_ids)
        if not ids:
            return DeletionValidation(can_delete=True)
        with self.db.get_session() as session:
            self._resolve_groups(session, user_id, ids)
            return self._validate(session, ids)

    def delete_trades(self, user_id: str, trade_ids: Sequence[str]) -> DeletionResult:
        """
        Delete trades and unlink their orders in one transaction.

        Raises:
            ValidationError: a trade id does not exist for this user
            IntegrityConflict: an order is shared with a trade outside the set
            ConcurrencyError: a rebuild holds one of the trades' groups
        """
        ids = _unique(trade_ids)
        if not ids:
            return DeletionResult(trades_deleted=0, orders_unlinked=0)

        with self.db.get_session() as session:
            groups = self._resolve_groups(session, user_id, ids)

        try:
            with self.locks.hold_groups(user_id, groups):
                with self.db.get_session() as session:
                    if self.config.rebuild.use_advisory_locks and self.db.is_postgres:
                        acquire_advisory_locks(session, user_id, groups)

                    # Re-check under the lock; a rebuild may have replaced the trades
                    self._resolve_groups(session, user_id, ids)
                    validation = self._validate(session, ids)
                    if not validation.can_delete:
                        logger.warning(
                            "TRADE_DELETION_BLOCKED",
                            user_id=user_id,
                            trade_ids=ids,
                            shared_order_count=validation.shared_order_count,
                            affected_trades=list(validation.affected_trades),
                        )
                        raise IntegrityConflict(
                            f"{validation.shared_order_count} order(s) shared with trades outside the deletion set",
                            shared_order_count=validation.shared_order_count,
                            affected_trades=validation.affected_trades,
                            user_id=user_id,
                            trade_ids=ids,
                        )

                    order_ids = repository.get_trade_order_ids(session, ids)
                    deleted, unlinked = repository.delete_trades_and_unlink(
                        session, user_id, ids, order_ids
                    )
        except ConcurrencyError as e:
            logger.warning("TRADE_DELETION_LOCK_REJECTED", scope=e.scope, **e.context())
            raise

        logger.info(
            "TRADES_DELETED",
            user_id=user_id,
            trade_ids=ids,
            trades_deleted=deleted,
            orders_unlinked=unlinked,
        )
        return DeletionResult(trades_deleted=deleted, orders_unlinked=unlinked)

    # ------------------------------------------------------------------

    def _resolve_groups(self, session: Session, user_id: str, ids: List[str]) -> List[GroupKey]:
        trades = repository.get_trades(session, user_id, trade_ids=ids)
        missing = sorted(set(ids) - {t.trade_id for t in trades})
        if missing:
            raise ValidationError(
                f"Unknown trade id(s) for user {user_id}: {', '.join(missing)}",
                user_id=user_id,
                trade_ids=missing,
            )
        return sorted({t.group_key for t in trades})

    def _validate(self, session: Session, ids: List[str]) -> DeletionValidation:
        order_ids = repository.get_trade_order_ids(session, ids)
        references = repository.find_order_references(session, order_ids, exclude_trade_ids=ids)
        affected = sorted({trade_id for refs in references.values() for trade_id in refs})
        return DeletionValidation(
            can_delete=not references,
            shared_order_count=len(references),
            affected_trades=tuple(affected),
        )
