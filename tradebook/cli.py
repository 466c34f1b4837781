"""
CLI entrypoint for tradebook.

Provides commands for database setup, full and incremental rebuilds,
listing trades, and guarded trade deletion.
"""
import typer
from typing import List, Optional, Tuple
from pathlib import Path
from decimal import Decimal

from tradebook.config.config import Config, load_config
from tradebook.domain.models import Trade, TradeStatus
from tradebook.exceptions import ConcurrencyError, IntegrityConflict, TradebookError
from tradebook.monitoring.logger import setup_logging, get_logger
from tradebook.storage.db import Database, init_db

app = typer.Typer(
    name="tradebook",
    help="Trade reconstruction from broker executions",
    add_completion=False,
)

logger = get_logger(__name__)

# Exit codes
EXIT_ERROR = 1
EXIT_LOCKED = 2
EXIT_CONFLICT = 3


def _bootstrap(config_path: Optional[Path]) -> Tuple[Config, Database]:
    config = load_config(str(config_path) if config_path else None)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        log_file=config.monitoring.log_file,
    )
    db = init_db(
        config.resolve_database_url(),
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
    )
    return config, db


def _num(value: Optional[Decimal]) -> str:
    # normalize() alone would render 100 as 1E+2
    return "-" if value is None else format(value.normalize(), "f")


def _echo_trades(trades: List[Trade]) -> None:
    if not trades:
        typer.echo("No trades.")
        return
    typer.echo(
        f"{'TRADE ID':<36}  {'SYMBOL':<10} {'ACCOUNT':<12} {'SIDE':<5} {'STATUS':<6} "
        f"{'QTY':>12} {'ENTRY':>14} {'EXIT':>14} {'PNL':>12}  OPENED"
    )
    for t in trades:
        typer.echo(
            f"{t.trade_id:<36}  {t.symbol:<10} {t.account_key:<12} {t.side.value:<5} {t.status.value:<6} "
            f"{_num(t.quantity):>12} {_num(t.entry_price):>14} {_num(t.exit_price):>14} "
            f"{_num(t.pnl):>12}  {t.opened_at.isoformat()}"
        )


def _fail(error: TradebookError) -> None:
    typer.secho(f"❌ {error.message}", fg=typer.colors.RED, err=True)
    if isinstance(error, ConcurrencyError):
        typer.echo("Another rebuild holds this scope; retry later.", err=True)
        raise typer.Exit(EXIT_LOCKED)
    if isinstance(error, IntegrityConflict):
        typer.echo(f"Affected trades: {', '.join(error.affected_trades)}", err=True)
        raise typer.Exit(EXIT_CONFLICT)
    raise typer.Exit(EXIT_ERROR)


@app.command(name="init-db")
def init_db_cmd(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Create missing tables."""
    _, db = _bootstrap(config_path)
    typer.echo(f"✅ Schema ready ({'postgresql' if db.is_postgres else 'sqlite'})")


@app.command()
def build(
    user_id: str = typer.Argument(..., help="User whose trades are rebuilt"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Rebuild every trade of a user from their full order history.

    Example:
        tradebook build user-123
    """
    from tradebook.services.recalculation import RecalculationController

    config, db = _bootstrap(config_path)
    controller = RecalculationController(db, config)
    try:
        report = controller.run_full_rebuild(user_id)
    except TradebookError as e:
        _fail(e)

    typer.echo(
        f"Rebuilt {len(report.trades)} trade(s) across {len(report.groups)} group(s): "
        f"{report.inserted} inserted, {report.updated} updated, "
        f"{report.unchanged} unchanged, {report.deleted} deleted"
    )
    for outcome in report.diagnostics:
        typer.echo(f"  skipped order {outcome.order_id}: {outcome.reason}")


@app.command()
def recalculate(
    user_id: str = typer.Argument(..., help="User who owns the import batch"),
    batch_id: str = typer.Argument(..., help="Import batch id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Rebuild only the symbol/account groups touched by an import batch."""
    from tradebook.services.recalculation import RecalculationController

    config, db = _bootstrap(config_path)
    controller = RecalculationController(db, config)
    try:
        report = controller.run_incremental_rebuild(user_id, batch_id)
    except TradebookError as e:
        _fail(e)

    if not report.groups:
        typer.echo(f"Import batch {batch_id} has no orders for {user_id}; nothing to do.")
        return
    typer.echo(f"Recalculated {len(report.groups)} group(s):")
    for group in report.groups:
        typer.echo(f"  {group.symbol} @ {group.account_key}")
    typer.echo(
        f"{report.inserted} inserted, {report.updated} updated, "
        f"{report.unchanged} unchanged, {report.deleted} deleted"
    )
    for outcome in report.diagnostics:
        typer.echo(f"  skipped order {outcome.order_id}: {outcome.reason}")


@app.command()
def trades(
    user_id: str = typer.Argument(..., help="User whose trades are listed"),
    symbol: Optional[str] = typer.Option(None, "--symbol", help="Only this symbol"),
    open_only: bool = typer.Option(False, "--open", help="Only OPEN trades"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """List calculated trades, newest first."""
    from tradebook.services.recalculation import RecalculationController

    config, db = _bootstrap(config_path)
    result = RecalculationController(db, config).get_calculated_trades(user_id)
    if symbol:
        result = [t for t in result if t.symbol == symbol]
    if open_only:
        result = [t for t in result if t.status == TradeStatus.OPEN]
    _echo_trades(result)


@app.command(name="check-delete")
def check_delete(
    user_id: str = typer.Argument(..., help="Owner of the trades"),
    trade_ids: List[str] = typer.Argument(..., help="Trade ids to check"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Report whether a set of trades can be deleted safely."""
    from tradebook.services.integrity_guard import IntegrityGuard

    config, db = _bootstrap(config_path)
    try:
        validation = IntegrityGuard(db, config).validate_deletion(user_id, trade_ids)
    except TradebookError as e:
        _fail(e)

    if validation.can_delete:
        typer.echo("✅ Safe to delete")
        return
    typer.echo(f"⚠️  Blocked: {validation.shared_order_count} shared order(s)")
    typer.echo(f"Affected trades: {', '.join(validation.affected_trades)}")
    raise typer.Exit(EXIT_CONFLICT)


@app.command()
def delete(
    user_id: str = typer.Argument(..., help="Owner of the trades"),
    trade_ids: List[str] = typer.Argument(..., help="Trade ids to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Delete trades and unlink their orders, unless an order is shared."""
    from tradebook.services.integrity_guard import IntegrityGuard

    if not yes:
        typer.confirm(f"Delete {len(trade_ids)} trade(s) for {user_id}?", abort=True)

    config, db = _bootstrap(config_path)
    try:
        result = IntegrityGuard(db, config).delete_trades(user_id, trade_ids)
    except TradebookError as e:
        _fail(e)

    typer.echo(
        f"✅ Deleted {result.trades_deleted} trade(s), unlinked {result.orders_unlinked} order(s)"
    )


if __name__ == "__main__":
    app()
