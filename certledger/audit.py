"""
Audit log writer.

Every ledger mutation is recorded as one LedgerEntry. A failed insert into
the log table never fails or rolls back the stock mutation: the entry is
appended to a local newline-delimited JSON fallback file instead and a
warning is logged. If that append fails too the record is lost, which is
logged at ERROR severity.

Inside a managed transaction the insert runs in a SAVEPOINT, so only the
audit insert is undone on failure, and the fallback append waits until the
surrounding transaction has committed. A rolled-back operation changed no
stock and leaves nothing in the fallback file.
"""
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional
import json
import logging
import os
import threading

from certledger.config import Settings
from certledger.crud.logs import crud_ledger_entry
from certledger.database import StockStore, after_commit
from certledger.errors import AuditWriteFailure
from certledger.schemas.ledger import FailedLedgerEntry, LedgerEntryData

logger = logging.getLogger(__name__)

class RecordOutcome(str, Enum):
    PRIMARY = "PRIMARY"      # written to the log table
    DEFERRED = "DEFERRED"    # fallback append scheduled for after commit
    FALLBACK = "FALLBACK"    # written to the fallback file
    LOST = "LOST"            # both paths failed

class AuditLogWriter:
    def __init__(self, store: StockStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or store.settings
        # Serialises appends from threads of this process; each append is
        # still a single write() so other processes cannot split a line.
        self._file_lock = threading.Lock()

    @property
    def fallback_path(self) -> Path:
        return Path(self.settings.FALLBACK_LOG_DIR) / self.settings.FALLBACK_LOG_FILE

    @property
    def file_lock(self) -> threading.Lock:
        return self._file_lock

    def insert_primary(self, entry: LedgerEntryData, db: Optional[Session] = None):
        """
        Plain primary-path insert. Raises AuditWriteFailure on any store error.
        Without a session the insert commits in its own transaction.
        """
        try:
            if db is not None:
                return crud_ledger_entry.create_entry(db, entry)
            with self.store.transaction() as own_db:
                return crud_ledger_entry.create_entry(own_db, entry)
        except SQLAlchemyError as e:
            raise AuditWriteFailure(f"Audit insert failed: {e}") from e

    def record(self, entry: LedgerEntryData, db: Optional[Session] = None) -> RecordOutcome:
        """Record entry; never raises for audit-store problems"""
        try:
            if db is not None:
                with db.begin_nested():
                    self.insert_primary(entry, db)
            else:
                self.insert_primary(entry)
            logger.info(f"Log created: {entry.action.value} - {entry.batch_id}")
            return RecordOutcome.PRIMARY
        except (AuditWriteFailure, SQLAlchemyError) as e:
            error = e
            logger.warning(
                f"Audit log failed to write to database for {entry.action.value} - {entry.batch_id}: {e}"
            )

        failed = FailedLedgerEntry(
            timestamp=datetime.now(timezone.utc),
            error=str(error),
            error_type=type(error.__cause__ or error).__name__,
            entry=entry,
        )

        if db is not None and after_commit(db, lambda: self.write_fallback(failed)):
            return RecordOutcome.DEFERRED
        return self.write_fallback(failed)

    def write_fallback(self, failed: FailedLedgerEntry) -> RecordOutcome:
        """Append one record to the fallback file as a single write"""
        line = (failed.model_dump_json() + "\n").encode("utf-8")
        path = self.fallback_path
        try:
            with self._file_lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
                try:
                    written = os.write(fd, line)
                    if written != len(line):
                        raise OSError(f"short write to {path}: {written}/{len(line)} bytes")
                    os.fsync(fd)
                finally:
                    os.close(fd)
        except OSError as e:
            logger.error(
                f"DOUBLE FAILURE: audit record for {failed.entry.action.value} - "
                f"{failed.entry.batch_id} could not be saved to {path} either: {e}. "
                f"Lost record: {json.dumps(failed.entry.model_dump(mode='json'))}"
            )
            return RecordOutcome.LOST

        logger.warning(f"Failed audit log saved to fallback file: {path}")
        return RecordOutcome.FALLBACK
