"""
Tests for the Database unit of work and the global instance.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import text

from tradebook.domain.models import Order, OrderSide
from tradebook.exceptions import PersistenceError, ValidationError
from tradebook.storage import db as db_module
from tradebook.storage import repository
from tradebook.storage.db import Database


def _make_order(order_id, at):
    return Order(
        order_id=order_id,
        user_id="user-1",
        account_key="ACC-1",
        symbol="AAPL",
        side=OrderSide.BUY,
        executed_quantity=Decimal("1.5"),
        executed_price=Decimal("187.12345678"),
        executed_time=at,
        commission=Decimal("0.35"),
        import_batch_id="batch-1",
    )


def test_rejects_unsupported_url():
    with pytest.raises(ValueError, match="Unsupported database"):
        Database("mysql://localhost/trades")


def test_sqlalchemy_failure_becomes_persistence_error(db):
    with pytest.raises(PersistenceError) as exc_info:
        with db.get_session() as session:
            session.execute(text("SELECT * FROM no_such_table"))

    assert exc_info.value.__cause__ is not None


def test_failed_unit_of_work_is_rolled_back(db):
    with pytest.raises(ValidationError):
        with db.get_session() as session:
            repository.save_orders(session, [_make_order("o1", datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))])
            raise ValidationError("abort")

    with db.get_session() as session:
        assert repository.get_orders(session, "user-1") == []


def test_orders_round_trip_as_utc(db):
    eastern = timezone(timedelta(hours=-5))
    with db.get_session() as session:
        repository.save_orders(session, [_make_order("o1", datetime(2026, 3, 2, 10, 0, tzinfo=eastern))])

    with db.get_session() as session:
        (order,) = repository.get_orders(session, "user-1")

    assert order.executed_time == datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
    assert order.executed_time.tzinfo == timezone.utc
    assert order.executed_price == Decimal("187.12345678")
    assert order.commission == Decimal("0.35")
    assert order.used_in_trade is False


def test_get_db_builds_one_instance_from_config(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setattr(db_module, "_db_instance", None)

    first = db_module.get_db()

    assert first is db_module.get_db()
    assert first.is_postgres is False
