"""
Replay of audit records stranded in the fallback file.

- every line is handled on its own; a bad line never stops the pass
- the file is renamed, never deleted, once at least one entry is back in
  the log table
- lines whose insert failed are written back for the next run; malformed
  lines are not, they remain readable in the archive
"""
from pydantic import ValidationError as SchemaError
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
import logging

from certledger.audit import AuditLogWriter
from certledger.config import Settings
from certledger.database import StockStore
from certledger.errors import AuditWriteFailure
from certledger.schemas.ledger import FailedLedgerEntry, RecoveryResult

logger = logging.getLogger(__name__)

class RecoveryService:
    def __init__(self, store: StockStore, audit: Optional[AuditLogWriter] = None,
                 settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or store.settings
        self.audit = audit or AuditLogWriter(store, self.settings)

    @property
    def fallback_path(self) -> Path:
        return self.audit.fallback_path

    def archive_path(self) -> Path:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        return self.fallback_path.with_name(f"recovered-{timestamp}.jsonl")

    def recover_failed_entries(self) -> RecoveryResult:
        """Replay the fallback file into the log table"""
        path = self.fallback_path

        with self.audit.file_lock:
            if not path.exists():
                logger.info(f"No failed logs to recover at {path}")
                return RecoveryResult()

            raw = path.read_bytes()
            result = RecoveryResult()
            retry_lines: List[str] = []

            for number, line in enumerate(raw.decode("utf-8", errors="replace").splitlines(), start=1):
                if not line.strip():
                    continue
                result.total_processed += 1

                try:
                    failed_entry = FailedLedgerEntry.model_validate_json(line)
                except SchemaError as e:
                    result.failed += 1
                    logger.warning(f"Skipping malformed fallback line {number}: {e.errors()[0]['msg']}")
                    continue

                try:
                    self.audit.insert_primary(failed_entry.entry)
                    result.recovered += 1
                except AuditWriteFailure as e:
                    result.failed += 1
                    retry_lines.append(line)
                    logger.error(f"Failed to recover log on line {number}: {e}")

            if result.recovered > 0:
                archive = self.archive_path()
                path.rename(archive)
                result.archived_to = str(archive)
                logger.info(f"Recovered logs backed up to: {archive}")

                # Appends that landed after the read belong to the next run
                tail = archive.read_bytes()[len(raw):]
                if retry_lines or tail:
                    with open(path, "ab") as f:
                        for line in retry_lines:
                            f.write((line + "\n").encode("utf-8"))
                        f.write(tail)
                if retry_lines:
                    logger.warning(
                        f"{len(retry_lines)} entries could not be recovered and remain in {path.name}"
                    )

        logger.info(f"Recovery complete. Recovered: {result.recovered}, Failed: {result.failed}")
        return result
