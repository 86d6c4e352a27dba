"""
Ledger operations: the only write path for certificate and medal stock.

Each operation runs in one Stock Store transaction that holds the stock
mutation and its audit entry together:
- validation and sufficiency failures abort before anything is written
- source rows are locked before the sufficiency check
- existing rows are locked in lexicographic branch-code order
- expected failures come back as Err(...), a stock mutation that cannot be
  committed raises PersistenceFailure
"""
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional
import logging

from certledger.audit import AuditLogWriter
from certledger.config import Settings
from certledger.crud.stock import crud_batch, crud_branch_stock
from certledger.database import StockStore, classify_db_error
from certledger.errors import (
    DuplicateEntry, Err, InsufficientStock, LedgerError, NotFound, Ok,
    PersistenceFailure, Result, ValidationError,
)
from certledger.models import BranchStock, LedgerAction
from certledger.schemas.ledger import (
    BatchCreate, BatchResult, BranchMovement, ClearResult, ConsumptionResult,
    LedgerEntryData, MigrationResult, StockLevel,
)
from certledger import validation

logger = logging.getLogger(__name__)

def _level(row: Optional[BranchStock]) -> StockLevel:
    if row is None:
        return StockLevel(certificates=0, medals=0)
    return StockLevel(**row.snapshot())

def _items(certificates: int, medals: int) -> str:
    items = []
    if certificates > 0:
        items.append(f"{certificates} certificate(s)")
    if medals > 0:
        items.append(f"{medals} medal(s)")
    return " and ".join(items)

def check_sufficiency(row: Optional[BranchStock], batch_id: str, branch: str,
                      certificates: int, medals: int) -> None:
    """Raise InsufficientStock unless row covers both requested amounts"""
    available = _level(row)
    if certificates > 0 and available.certificates < certificates:
        raise InsufficientStock(
            f"Insufficient {branch} certificate stock in batch {batch_id}. "
            f"Available: {available.certificates}, Requested: {certificates}",
            available=available.certificates,
            requested=certificates,
            details={"batch_id": batch_id, "branch": branch, "item": "certificates"},
        )
    if medals > 0 and available.medals < medals:
        raise InsufficientStock(
            f"Insufficient {branch} medal stock in batch {batch_id}. "
            f"Available: {available.medals}, Requested: {medals}",
            available=available.medals,
            requested=medals,
            details={"batch_id": batch_id, "branch": branch, "item": "medals"},
        )

class LedgerOperations:
    def __init__(self, store: StockStore, audit: Optional[AuditLogWriter] = None,
                 settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or store.settings
        self.audit = audit or AuditLogWriter(store, self.settings)

    def _actor(self, performed_by: Optional[str]) -> str:
        return validation.validate_actor(performed_by, self.settings.DEFAULT_ACTOR)

    def _run(self, name: str, work: Callable[[Session], Any]) -> Result:
        """
        Run work inside one transaction.

        A LedgerError raised by work rolls the transaction back and is
        returned as Err. Store errors are classified; persistence failures
        are raised, lock timeouts and duplicate keys are returned.
        """
        try:
            with self.store.transaction() as db:
                value = work(db)
            return Ok(value)
        except PersistenceFailure:
            raise
        except LedgerError as e:
            logger.info(f"{name} rejected: {e.kind.value}: {e.message}")
            return Err.from_exception(e)
        except SQLAlchemyError as e:
            error = classify_db_error(e)
            if isinstance(error, PersistenceFailure):
                logger.error(f"{name} failed, transaction rolled back: {e}")
                raise error from e
            logger.warning(f"{name} rolled back: {error.kind.value}: {error.message}")
            return Err.from_exception(error)

    def _require_batch(self, db: Session, batch_id: str) -> None:
        if not crud_batch.exists(db, batch_id):
            raise NotFound(f"Batch {batch_id} not found", {"batch_id": batch_id})

    # ====================
    # CREATE
    # ====================

    def create_batch(self, batch_id: str, per_branch_amounts: Mapping[str, Any],
                     performed_by: Optional[str] = None) -> Result[BatchResult]:
        """
        Create a batch with its initial per-branch allocation.
        Branches whose allocation is all zero get no stock row.
        """
        create_result = validation.validate_batch_create(batch_id, per_branch_amounts)
        if not create_result.is_ok:
            return create_result

        request = create_result.value
        clean_id = request.batch_id
        actor = self._actor(performed_by)

        def work(db: Session) -> BatchResult:
            if crud_batch.exists(db, clean_id):
                raise DuplicateEntry(f"Batch ID {clean_id} already exists", {"batch_id": clean_id})
            return self._create(db, request, actor)

        return self._run("create_batch", work)

    def _create(self, db: Session, request: BatchCreate, actor: str) -> BatchResult:
        batch_id = request.batch_id
        batch = crud_batch.create_batch(db, batch_id)

        funded = {code: a.model_dump() for code, a in request.funded.items()}
        for code, amounts in funded.items():
            crud_branch_stock.create_allocation(
                db, batch_id, code, amounts["certificates"], amounts["medals"]
            )

        allocations = request.allocations
        total_certificates = sum(a.certificates for a in allocations.values())
        total_medals = sum(a.medals for a in allocations.values())
        summary = " | ".join(
            f"{code}: {a.certificates} certs, {a.medals} medals"
            for code, a in sorted(allocations.items())
        )

        self.audit.record(LedgerEntryData(
            batch_id=batch_id,
            action=LedgerAction.CREATE,
            description=f"Created new certificate batch: {summary}",
            certificate_amount=total_certificates,
            medal_amount=total_medals,
            new_values={"batch_id": batch_id, "stock": funded},
            performed_by=actor,
        ), db)

        logger.info(f"Batch created: {batch_id} ({total_certificates} certificates, {total_medals} medals)")
        return BatchResult(
            batch_id=batch_id,
            created_at=batch.created_at,
            allocations={code: StockLevel(**a) for code, a in funded.items()},
            total_certificates=total_certificates,
            total_medals=total_medals,
        )

    # ====================
    # MIGRATE
    # ====================

    def migrate_stock(self, batch_id: str, source_branch: str, dest_branch: str,
                      certificate_amount: int, medal_amount: int,
                      performed_by: Optional[str] = None) -> Result[MigrationResult]:
        """
        Move certificates and/or medals of one batch between branches.

        Existing rows of both branches are locked in lock order before the
        sufficiency check; a destination without a row gets one only after
        the source has been locked and checked.
        """
        id_result = validation.validate_batch_id(batch_id)
        if not id_result.is_ok:
            return id_result
        source_result = validation.validate_branch_code(source_branch, "Source branch")
        if not source_result.is_ok:
            return source_result
        dest_result = validation.validate_branch_code(dest_branch, "Destination branch")
        if not dest_result.is_ok:
            return dest_result
        amounts_result = validation.validate_movement(certificate_amount, medal_amount)
        if not amounts_result.is_ok:
            return amounts_result

        clean_id = id_result.value
        source = source_result.value
        dest = dest_result.value
        certificates = amounts_result.value.certificates
        medals = amounts_result.value.medals
        actor = self._actor(performed_by)

        if source == dest:
            return Err.from_exception(ValidationError(
                "Source and destination branch must differ", {"branch": source}
            ))
        hub = self.settings.HUB_BRANCH
        if hub and source != hub.strip().upper():
            return Err.from_exception(ValidationError(
                f"Stock can only be migrated from hub branch {hub.upper()}",
                {"source": source, "hub": hub.upper()},
            ))

        def work(db: Session) -> MigrationResult:
            self._require_batch(db, clean_id)

            rows = crud_branch_stock.lock_stock_rows(db, clean_id, [source, dest])
            source_row = rows.get(source)
            check_sufficiency(source_row, clean_id, source, certificates, medals)

            dest_row = rows.get(dest)
            if dest_row is None:
                crud_branch_stock.ensure_row(db, clean_id, dest)
                dest_row = crud_branch_stock.lock_stock_rows(db, clean_id, [dest])[dest]

            source_before = _level(source_row)
            dest_before = _level(dest_row)

            crud_branch_stock.set_counts(
                db, source_row,
                source_before.certificates - certificates,
                source_before.medals - medals,
            )
            crud_branch_stock.set_counts(
                db, dest_row,
                dest_before.certificates + certificates,
                dest_before.medals + medals,
            )
            source_after = _level(source_row)
            dest_after = _level(dest_row)

            self.audit.record(LedgerEntryData(
                batch_id=clean_id,
                action=LedgerAction.MIGRATE,
                description=(
                    f"Migrated {_items(certificates, medals)} from {source} to {dest} "
                    f"(Batch: {clean_id})"
                ),
                from_branch=source,
                to_branch=dest,
                certificate_amount=certificates,
                medal_amount=medals,
                old_values={source: source_before.model_dump(), dest: dest_before.model_dump()},
                new_values={source: source_after.model_dump(), dest: dest_after.model_dump()},
                performed_by=actor,
            ), db)

            logger.info(f"Migrated {_items(certificates, medals)} of {clean_id} from {source} to {dest}")
            return MigrationResult(
                batch_id=clean_id,
                certificates=certificates,
                medals=medals,
                source=BranchMovement(branch=source, before=source_before, after=source_after),
                destination=BranchMovement(branch=dest, before=dest_before, after=dest_after),
            )

        return self._run("migrate_stock", work)

    # ====================
    # CONSUME (PRINT)
    # ====================

    def consume_stock(self, batch_id: str, branch: str, certificates: int, medals: int,
                      performed_by: Optional[str] = None,
                      description: Optional[str] = None) -> Result[ConsumptionResult]:
        """Decrement stock when certificates or medals are physically issued"""
        id_result = validation.validate_batch_id(batch_id)
        if not id_result.is_ok:
            return id_result
        branch_result = validation.validate_branch_code(branch)
        if not branch_result.is_ok:
            return branch_result
        amounts_result = validation.validate_movement(certificates, medals)
        if not amounts_result.is_ok:
            return amounts_result

        clean_id = id_result.value
        code = branch_result.value
        cert_amount = amounts_result.value.certificates
        medal_amount = amounts_result.value.medals
        actor = self._actor(performed_by)

        def work(db: Session) -> ConsumptionResult:
            self._require_batch(db, clean_id)

            row = crud_branch_stock.lock_stock_rows(db, clean_id, [code]).get(code)
            check_sufficiency(row, clean_id, code, cert_amount, medal_amount)

            before = _level(row)
            crud_branch_stock.set_counts(
                db, row,
                before.certificates - cert_amount,
                before.medals - medal_amount,
            )
            after = _level(row)

            self.audit.record(LedgerEntryData(
                batch_id=clean_id,
                action=LedgerAction.PRINT,
                description=description or f"Printed {_items(cert_amount, medal_amount)} at {code}",
                from_branch=code,
                certificate_amount=-cert_amount,
                medal_amount=-medal_amount,
                old_values={code: before.model_dump()},
                new_values={code: after.model_dump()},
                performed_by=actor,
            ), db)

            logger.info(f"Stock consumed: {_items(cert_amount, medal_amount)} of {clean_id} at {code}")
            return ConsumptionResult(
                batch_id=clean_id,
                certificates=cert_amount,
                medals=medal_amount,
                branch=BranchMovement(branch=code, before=before, after=after),
            )

        return self._run("consume_stock", work)

    # ====================
    # BULK CLEAR (IRREVERSIBLE)
    # ====================

    def clear_all_batches(self, performed_by: Optional[str] = None,
                          confirm: bool = False) -> Result[ClearResult]:
        """
        Delete every batch and every stock row. Irreversible.

        Meant for test and reset environments only; the caller is
        responsible for authorising it and must pass confirm=True.
        """
        if confirm is not True:
            return Err.from_exception(ValidationError(
                "Clearing all batches is irreversible and requires explicit confirmation"
            ))
        actor = self._actor(performed_by)

        def work(db: Session) -> ClearResult:
            stock_rows = crud_branch_stock.lock_all(db)
            batches = crud_batch.get_all_for_update(db)
            if not batches:
                raise NotFound("No batches to delete")

            total_certificates = sum(row.certificates for row in stock_rows)
            total_medals = sum(row.medals for row in stock_rows)

            deleted_stock_rows = crud_branch_stock.delete_all(db)
            deleted_batches = crud_batch.delete_all(db)

            self.audit.record(LedgerEntryData(
                batch_id="BULK_DELETE",
                action=LedgerAction.BULK_DELETE,
                description=(
                    f"Cleared all {deleted_batches} certificate batches. Total: "
                    f"{total_certificates} certificates, {total_medals} medals deleted"
                ),
                certificate_amount=total_certificates,
                medal_amount=total_medals,
                old_values={
                    "batches_deleted": deleted_batches,
                    "stock_rows_deleted": deleted_stock_rows,
                    "total_certificates": total_certificates,
                    "total_medals": total_medals,
                    "deleted_at": datetime.now(timezone.utc).isoformat(),
                },
                performed_by=actor,
            ), db)

            logger.warning(
                f"All batches cleared by {actor}: {deleted_batches} batches, "
                f"{total_certificates} certificates, {total_medals} medals"
            )
            return ClearResult(
                deleted_batches=deleted_batches,
                deleted_stock_rows=deleted_stock_rows,
                total_certificates_deleted=total_certificates,
                total_medals_deleted=total_medals,
            )

        return self._run("clear_all_batches", work)
