"""
Ledger entry persistence:
- append-only inserts
- filtered, paginated reads
- retention cleanup by timestamp only, the single deletion path
"""
from sqlalchemy import select, insert, delete, func, or_, exists, and_
from sqlalchemy.orm import Session
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

from certledger.crud.base import CRUDBase
from certledger.models import LedgerEntry, BranchStock, Branch
from certledger.schemas.ledger import LedgerEntryData, LogQuery

logger = logging.getLogger(__name__)

def _start_of_day(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)

def clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    if limit is None:
        return default
    return min(max(int(limit), 1), maximum)

def clamp_offset(offset: Optional[int]) -> int:
    return max(int(offset or 0), 0)

class CRUDLedgerEntry(CRUDBase[LedgerEntry]):
    def __init__(self):
        super().__init__(LedgerEntry)

    def create_entry(self, db: Session, entry: LedgerEntryData) -> LedgerEntry:
        """Append one entry (no update path exists)"""
        stmt = insert(LedgerEntry).values(**entry.to_row()).returning(LedgerEntry)
        return db.execute(stmt).scalar_one()

    def _filters(self, query: LogQuery) -> list:
        clauses = []
        if query.batch_id:
            clauses.append(LedgerEntry.batch_id == query.batch_id)
        if query.action:
            clauses.append(LedgerEntry.action == query.action)
        if query.from_date:
            clauses.append(LedgerEntry.created_at >= _start_of_day(query.from_date))
        if query.to_date:
            # Whole to_date day is included
            clauses.append(LedgerEntry.created_at < _start_of_day(query.to_date + timedelta(days=1)))
        if query.search:
            pattern = f"%{query.search.lower()}%"
            clauses.append(or_(
                func.lower(LedgerEntry.batch_id).like(pattern),
                func.lower(LedgerEntry.description).like(pattern),
            ))
        if query.regional_hub:
            clauses.append(exists().where(and_(
                BranchStock.batch_id == LedgerEntry.batch_id,
                Branch.branch_code == BranchStock.branch_code,
                Branch.regional_hub == query.regional_hub,
            )))
        return clauses

    def query_logs(self, db: Session, query: LogQuery, *, limit: int) -> Tuple[List[LedgerEntry], int]:
        """Filtered entries, newest first, plus the unpaginated total"""
        clauses = self._filters(query)

        stmt = (
            select(LedgerEntry)
            .where(*clauses)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .offset(clamp_offset(query.offset))
            .limit(limit)
        )
        rows = list(db.execute(stmt).scalars().all())

        count_stmt = select(func.count(LedgerEntry.id)).where(*clauses)
        total = db.execute(count_stmt).scalar_one()
        return rows, total

    def logs_for_batch(self, db: Session, batch_id: str, *, limit: int, offset: int = 0) -> Tuple[List[LedgerEntry], int]:
        return self.query_logs(db, LogQuery(batch_id=batch_id, offset=offset), limit=limit)

    def delete_older_than(self, db: Session, cutoff: datetime) -> int:
        """Retention cleanup; the cutoff is the only criterion"""
        stmt = delete(LedgerEntry).where(LedgerEntry.created_at < cutoff)
        result = db.execute(stmt)
        return result.rowcount

# Create instance
crud_ledger_entry = CRUDLedgerEntry()
