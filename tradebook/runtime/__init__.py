"""
Runtime utilities (rebuild exclusivity, advisory locks).
"""
from tradebook.runtime.rebuild_locks import (
    RebuildLockRegistry,
    acquire_advisory_locks,
    get_lock_registry,
)

__all__ = [
    "RebuildLockRegistry",
    "acquire_advisory_locks",
    "get_lock_registry",
]
