"""Maintenance commands for the certificate stock ledger."""

import json
import click
from dotenv import load_dotenv

from certledger.config import get_settings, setup_logging
from certledger.database import StockStore
from certledger.ledger import LedgerOperations
from certledger.recovery import RecoveryService
from certledger.reports import stock_summary
from certledger.retention import cleanup_old_entries


@click.group()
@click.option("--database-url", envvar="DATABASE_URL", default=None, help="Override DATABASE_URL.")
@click.pass_context
def cli(ctx, database_url):
    """Certificate stock ledger CLI."""
    # .env may not exist; variables already in the environment win
    load_dotenv()
    settings = get_settings()
    if database_url:
        settings = settings.model_copy(update={"DATABASE_URL": database_url})
    setup_logging(settings.LOG_LEVEL)
    ctx.obj = StockStore(settings)


@cli.command("init-db")
@click.pass_obj
def init_db(store: StockStore):
    """Create the ledger tables."""
    ok, message = store.test_connection()
    if not ok:
        raise click.ClickException(message)
    store.create_all()
    click.echo("✓ Tables created.")


@cli.command()
@click.pass_obj
def recover(store: StockStore):
    """Replay audit records from the fallback file."""
    result = RecoveryService(store).recover_failed_entries()
    click.echo(json.dumps(result.model_dump(), indent=2))


@cli.command("cleanup-logs")
@click.option("--days", type=int, default=None, help="Retention horizon in days.")
@click.pass_obj
def cleanup_logs(store: StockStore, days):
    """Delete ledger entries older than the retention horizon."""
    result = cleanup_old_entries(store, days)
    click.echo(f"✓ Deleted {result['deleted_count']} entries older than {result['days_threshold']} days.")


@cli.command()
@click.pass_obj
def summary(store: StockStore):
    """Print stock per branch."""
    click.echo(json.dumps(stock_summary(store).model_dump(), indent=2))


@cli.command("clear-all")
@click.option("--yes", is_flag=True, help="Confirm the irreversible delete.")
@click.option("--actor", default=None, help="Name recorded in the audit entry.")
@click.pass_obj
def clear_all(store: StockStore, yes, actor):
    """Delete every batch and its stock. Irreversible."""
    if not yes:
        raise click.ClickException("Refusing to clear all batches without --yes.")
    result = LedgerOperations(store).clear_all_batches(performed_by=actor, confirm=True)
    if not result.is_ok:
        raise click.ClickException(result.message)
    click.echo(json.dumps(result.value.model_dump(), indent=2))


if __name__ == "__main__":
    cli()
