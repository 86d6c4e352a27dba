"""
Audit retention cleanup.

The only path that deletes ledger entries. It selects on timestamp alone
and is kept apart from the ledger operations so it can be authorised on
its own.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from certledger.config import Settings
from certledger.crud.logs import crud_ledger_entry
from certledger.database import StockStore

logger = logging.getLogger(__name__)

def clamp_days(days: Optional[int], settings: Settings) -> int:
    if days is None:
        return settings.LOG_RETENTION_DAYS
    return min(max(int(days), 1), settings.MAX_RETENTION_DAYS)

def cleanup_old_entries(store: StockStore, days: Optional[int] = None,
                        settings: Optional[Settings] = None) -> dict:
    """Delete ledger entries older than the retention horizon"""
    settings = settings or store.settings
    horizon = clamp_days(days, settings)
    cutoff = datetime.now(timezone.utc) - timedelta(days=horizon)

    with store.transaction() as db:
        deleted = crud_ledger_entry.delete_older_than(db, cutoff)

    logger.info(f"Deleted {deleted} log entries older than {horizon} days")
    return {"deleted_count": deleted, "days_threshold": horizon, "cutoff": cutoff.isoformat()}
