"""
Pytest configuration and shared fixtures.
"""
import pytest

from tradebook.config.config import Config
from tradebook.runtime.rebuild_locks import RebuildLockRegistry
from tradebook.storage.db import Database


@pytest.fixture
def config():
    """Default configuration; advisory locks are a no-op on SQLite anyway."""
    return Config(environment="test")


@pytest.fixture
def db():
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps a single connection, so every session in the test sees
    the same schema and data.
    """
    database = Database("sqlite:///:memory:")
    database.create_all()
    yield database
    database.drop_all()
    database.engine.dispose()


@pytest.fixture
def locks():
    """Isolated lock registry so tests never share held scopes."""
    return RebuildLockRegistry()
