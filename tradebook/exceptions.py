"""
Custom exception hierarchy for trade reconstruction.

Hierarchy:

    TradebookError (base)
    ├── OperationalError   — transient, the caller may retry
    │   ├── ConcurrencyError   — rebuild/deletion lock already held
    │   └── PersistenceError   — transaction failed, nothing was committed
    ├── DataError          — bad input, surfaced to the caller
    │   ├── ValidationError    — malformed order or request
    │   └── IntegrityConflict  — deletion blocked by shared orders
    └── InvariantError     — internal consistency violation, abort the rebuild

Rules:
    - OperationalError: reject, log, let the caller retry later. Never retried internally.
    - DataError: surface to the caller; no mutation has been performed.
    - InvariantError: abort before persisting anything.
    - Everything else (AttributeError, TypeError, etc.): let it propagate.
"""
from typing import Iterable, List, Optional


class TradebookError(Exception):
    """Base exception carrying audit context."""

    def __init__(
        self,
        message: str,
        *,
        user_id: Optional[str] = None,
        symbol: Optional[str] = None,
        account_key: Optional[str] = None,
        order_ids: Optional[Iterable[str]] = None,
        trade_ids: Optional[Iterable[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.symbol = symbol
        self.account_key = account_key
        self.order_ids: List[str] = list(order_ids or [])
        self.trade_ids: List[str] = list(trade_ids or [])

    def context(self) -> dict:
        """Structured context for log calls."""
        return {
            "user_id": self.user_id,
            "symbol": self.symbol,
            "account_key": self.account_key,
            "order_ids": self.order_ids,
            "trade_ids": self.trade_ids,
        }


# ============ OPERATIONAL (transient, caller retries) ============

class OperationalError(TradebookError):
    """Transient error. Treatment: reject, log, caller retries."""
    pass


class ConcurrencyError(OperationalError):
    """Raised when a rebuild or deletion scope is already locked."""

    def __init__(self, message: str, *, scope: Optional[str] = None, **context):
        super().__init__(message, **context)
        self.scope = scope


class PersistenceError(OperationalError):
    """Raised when a unit of work fails to commit. Prior state is untouched."""
    pass


# ============ DATA (bad input) ============

class DataError(TradebookError):
    """Bad input data."""
    pass


class ValidationError(DataError):
    """Raised when an order or request fails validation."""
    pass


class IntegrityConflict(DataError):
    """Deletion would orphan orders shared with trades outside the deletion set."""

    def __init__(
        self,
        message: str,
        *,
        shared_order_count: int = 0,
        affected_trades: Optional[Iterable[str]] = None,
        **context,
    ):
        super().__init__(message, **context)
        self.shared_order_count = shared_order_count
        self.affected_trades: List[str] = list(affected_trades or [])


# ============ INVARIANT (internal violation) ============

class InvariantError(TradebookError):
    """Internal invariant violated. Abort; never persist the offending result."""
    pass
