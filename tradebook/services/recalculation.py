"""
Recalculation Controller - full and incremental trade rebuilds.

Each rebuild is one unit of work:

    lock scope → read orders + stored trades → match in memory →
    replace trades (keyed by trade_key) → relink orders → commit

Nothing is written before matching has finished, and any failure rolls the
whole transaction back, so a rebuild either lands completely or not at all.
"""
import time
from typing import List, Optional, Sequence

from tradebook.config.config import Config
from tradebook.domain.models import GroupKey, RebuildReport, Trade
from tradebook.exceptions import ConcurrencyError, TradebookError
from tradebook.matching.matching_engine import MatchingEngine
from tradebook.matching.trade_aggregator import TradeAggregator
from tradebook.monitoring.logger import get_logger
from tradebook.runtime.rebuild_locks import (
    RebuildLockRegistry,
    acquire_advisory_locks,
    get_lock_registry,
)
from tradebook.storage import repository
from tradebook.storage.db import Database

logger = get_logger(__name__)


class RecalculationController:
    """Entry point for building and recalculating a user's trades."""

    def __init__(
        self,
        db: Database,
        config: Optional[Config] = None,
        locks: Optional[RebuildLockRegistry] = None,
        engine: Optional[MatchingEngine] = None,
    ):
        self.db = db
        self.config = config or Config()
        self.locks = locks or get_lock_registry()
        self.engine = engine or MatchingEngine(
            self.config.matching,
            TradeAggregator(self.config.trades, self.config.market_hours),
        )

    @property
    def _use_advisory_locks(self) -> bool:
        return self.config.rebuild.use_advisory_locks and self.db.is_postgres

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def build_trades(self, user_id: str) -> List[Trade]:
        """Discard and recompute every trade of the user."""
        return self.run_full_rebuild(user_id).trades

    def recalculate_for_import_batch(self, user_id: str, batch_id: str) -> List[Trade]:
        """Recompute only the groups touched by an import batch; returns their trades."""
        return self.run_incremental_rebuild(user_id, batch_id).trades

    def get_calculated_trades(self, user_id: str) -> List[Trade]:
        """Stored trades of the user, newest first. Read-only."""
        with self.db.get_session() as session:
            return repository.get_trades(session, user_id)

    def run_full_rebuild(self, user_id: str) -> RebuildReport:
        try:
            with self.locks.hold_user(user_id):
                return self._rebuild(user_id, groups=None)
        except ConcurrencyError as e:
            logger.warning("REBUILD_LOCK_REJECTED", scope=e.scope, **e.context())
            raise

    def run_incremental_rebuild(self, user_id: str, batch_id: str) -> RebuildReport:
        """
        Replay the entire history of every group the batch touched.

        Backfilled orders can land before existing ones, so the touched groups
        are rebuilt from their first order, not from the batch onward.
        """
        with self.db.get_session() as session:
            groups = repository.get_import_batch_groups(session, user_id, batch_id)

        if not groups:
            logger.warning("IMPORT_BATCH_EMPTY", user_id=user_id, import_batch_id=batch_id)
            return RebuildReport(user_id=user_id, scope="groups", import_batch_id=batch_id)

        try:
            with self.locks.hold_groups(user_id, groups):
                return self._rebuild(user_id, groups=groups, import_batch_id=batch_id)
        except ConcurrencyError as e:
            logger.warning(
                "REBUILD_LOCK_REJECTED",
                scope=e.scope,
                import_batch_id=batch_id,
                **e.context(),
            )
            raise

    # ------------------------------------------------------------------

    def _rebuild(
        self,
        user_id: str,
        groups: Optional[Sequence[GroupKey]],
        import_batch_id: Optional[str] = None,
    ) -> RebuildReport:
        scope = "user" if groups is None else "groups"
        started = time.monotonic()
        logger.info(
            "REBUILD_STARTED",
            user_id=user_id,
            scope=scope,
            groups=[str(g) for g in groups] if groups is not None else None,
            import_batch_id=import_batch_id,
        )

        try:
            with self.db.get_session() as session:
                if self._use_advisory_locks:
                    acquire_advisory_locks(session, user_id, groups)

                orders = repository.get_orders(session, user_id, groups=groups)
                previous = repository.get_trades(session, user_id, groups=groups)
                result = self.engine.match(orders)

                summary = repository.replace_trades(session, previous, result.trades)
                linked = repository.relink_orders(session, user_id, orders, result.trades)
        except TradebookError as e:
            logger.error(
                "REBUILD_FAILED",
                scope=scope,
                error=e.message,
                error_type=type(e).__name__,
                **{**e.context(), "user_id": user_id},
            )
            raise

        report = RebuildReport(
            user_id=user_id,
            scope=scope,
            trades=result.trades,
            diagnostics=result.diagnostics,
            groups=list(groups) if groups is not None else result.groups,
            import_batch_id=import_batch_id,
            inserted=summary.inserted,
            updated=summary.updated,
            unchanged=summary.unchanged,
            deleted=summary.deleted,
        )
        logger.info(
            "REBUILD_COMPLETED",
            user_id=user_id,
            scope=scope,
            import_batch_id=import_batch_id,
            orders=len(orders),
            orders_linked=linked,
            skipped=len(report.diagnostics),
            trades=len(report.trades),
            inserted=report.inserted,
            updated=report.updated,
            unchanged=report.unchanged,
            deleted=report.deleted,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return report
