"""
Rebuild exclusivity.

Two layers, both non-blocking:

- RebuildLockRegistry: in-process, threading-based. A user scope (full
  rebuild) conflicts with every group scope of the same user; a group scope
  (incremental rebuild, deletion) conflicts with itself and its user scope.
- acquire_advisory_locks: cross-process, PostgreSQL only. Transaction-scoped
  advisory locks, released automatically at commit/rollback.

A scope that is already held raises ConcurrencyError immediately; callers retry.
"""
import hashlib
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Sequence, Set, Tuple

from sqlalchemy import text
from sqlalchemy.orm import Session

from tradebook.domain.models import GroupKey
from tradebook.exceptions import ConcurrencyError
from tradebook.monitoring.logger import get_logger

logger = get_logger(__name__)


def user_scope(user_id: str) -> str:
    return f"user={user_id}"


def group_scope(group: GroupKey) -> str:
    return f"user={group.user_id}|symbol={group.symbol}|acct={group.account_key}"


def _int64_from_sha256(s: str) -> Tuple[int, str]:
    h = hashlib.sha256(s.encode("utf-8")).digest()
    raw8 = h[:8]
    u = int.from_bytes(raw8, "big", signed=False)
    # Convert to signed int64 for Postgres BIGINT.
    i = u if u < (1 << 63) else u - (1 << 64)
    return i, raw8.hex()  # short hex for logging/ops


class RebuildLockRegistry:
    """Process-wide registry of held rebuild scopes."""

    def __init__(self):
        self._mutex = threading.Lock()
        self._users: Set[str] = set()
        self._groups: Dict[str, Set[GroupKey]] = defaultdict(set)

    def is_held(self, user_id: str, group: Optional[GroupKey] = None) -> bool:
        with self._mutex:
            if user_id in self._users:
                return True
            if group is None:
                return bool(self._groups.get(user_id))
            return group in self._groups.get(user_id, ())

    @contextmanager
    def hold_user(self, user_id: str) -> Iterator[None]:
        """Hold the whole-user scope for a full rebuild."""
        with self._mutex:
            if user_id in self._users or self._groups.get(user_id):
                raise ConcurrencyError(
                    f"Rebuild already in progress for user {user_id}",
                    scope=user_scope(user_id),
                    user_id=user_id,
                )
            self._users.add(user_id)
        try:
            yield
        finally:
            with self._mutex:
                self._users.discard(user_id)

    @contextmanager
    def hold_groups(self, user_id: str, groups: Sequence[GroupKey]) -> Iterator[None]:
        """Hold several group scopes of one user, all or nothing."""
        wanted = set(groups)
        with self._mutex:
            if user_id in self._users:
                raise ConcurrencyError(
                    f"Full rebuild in progress for user {user_id}",
                    scope=user_scope(user_id),
                    user_id=user_id,
                )
            held = self._groups[user_id]
            clash = sorted(held & wanted)
            if clash:
                raise ConcurrencyError(
                    f"Rebuild already in progress for {clash[0]}",
                    scope=group_scope(clash[0]),
                    user_id=user_id,
                    symbol=clash[0].symbol,
                    account_key=clash[0].account_key,
                )
            held.update(wanted)
        try:
            yield
        finally:
            with self._mutex:
                held = self._groups.get(user_id)
                if held is not None:
                    held.difference_update(wanted)
                    if not held:
                        del self._groups[user_id]


def _try_xact_lock(session: Session, scope: str, *, shared: bool) -> bool:
    key, short_hex = _int64_from_sha256(scope)
    fn = "pg_try_advisory_xact_lock_shared" if shared else "pg_try_advisory_xact_lock"
    ok = bool(session.execute(text(f"SELECT {fn}(:k)"), {"k": key}).scalar())
    logger.debug("ADVISORY_LOCK", scope=scope, lock_key_short=short_hex, shared=shared, acquired=ok)
    return ok


def acquire_advisory_locks(
    session: Session,
    user_id: str,
    groups: Optional[Sequence[GroupKey]] = None,
) -> None:
    """
    Take transaction-scoped advisory locks for a rebuild or deletion.

    groups=None locks the user exclusively (full rebuild). Otherwise the user
    key is taken shared, so it still excludes a concurrent full rebuild, and
    each group key exclusively, in sorted order.
    """
    if groups is None:
        if not _try_xact_lock(session, user_scope(user_id), shared=False):
            raise ConcurrencyError(
                f"Rebuild lock held elsewhere for user {user_id}",
                scope=user_scope(user_id),
                user_id=user_id,
            )
        return

    if not _try_xact_lock(session, user_scope(user_id), shared=True):
        raise ConcurrencyError(
            f"Full rebuild lock held elsewhere for user {user_id}",
            scope=user_scope(user_id),
            user_id=user_id,
        )
    for group in sorted(set(groups)):
        if not _try_xact_lock(session, group_scope(group), shared=False):
            raise ConcurrencyError(
                f"Rebuild lock held elsewhere for {group}",
                scope=group_scope(group),
                user_id=user_id,
                symbol=group.symbol,
                account_key=group.account_key,
            )


# Global registry, shared by every controller and guard in the process
_lock_registry: Optional[RebuildLockRegistry] = None


def get_lock_registry() -> RebuildLockRegistry:
    """Get global rebuild lock registry."""
    global _lock_registry
    if _lock_registry is None:
        _lock_registry = RebuildLockRegistry()
    return _lock_registry
