"""
Stock Store access layer:
- batches are inserted once and never renamed
- branch_stock rows are mutated in place, only under an explicit row lock
- locks are always taken in lexicographic branch-code order
"""
from sqlalchemy import select, insert, delete, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session
import logging
from typing import Dict, Iterable, List, Optional

from certledger.crud.base import CRUDBase
from certledger.models import Batch, BranchStock

logger = logging.getLogger(__name__)

def lock_order(branch_codes: Iterable[str]) -> List[str]:
    """Global acquisition order for branch row locks"""
    return sorted(set(branch_codes))

class CRUDBatch(CRUDBase[Batch]):
    def __init__(self):
        super().__init__(Batch)

    def get_by_batch_id(self, db: Session, batch_id: str) -> Optional[Batch]:
        stmt = select(Batch).where(Batch.batch_id == batch_id)
        return db.execute(stmt).scalar_one_or_none()

    def exists(self, db: Session, batch_id: str) -> bool:
        stmt = select(Batch.id).where(Batch.batch_id == batch_id)
        return db.execute(stmt).first() is not None

    def create_batch(self, db: Session, batch_id: str) -> Batch:
        return self.create(db, obj_in={"batch_id": batch_id})

    def get_all_for_update(self, db: Session) -> List[Batch]:
        stmt = select(Batch).order_by(Batch.id).with_for_update()
        return list(db.execute(stmt).scalars().all())

    def delete_all(self, db: Session) -> int:
        result = db.execute(delete(Batch))
        return result.rowcount

class CRUDBranchStock(CRUDBase[BranchStock]):
    def __init__(self):
        super().__init__(BranchStock)

    def get_stock(self, db: Session, batch_id: str, branch_code: str) -> Optional[BranchStock]:
        """Unlocked read, for reporting only"""
        stmt = select(BranchStock).where(
            BranchStock.batch_id == batch_id,
            BranchStock.branch_code == branch_code,
        )
        return db.execute(stmt).scalar_one_or_none()

    def get_batch_stock(self, db: Session, batch_id: str) -> List[BranchStock]:
        stmt = (
            select(BranchStock)
            .where(BranchStock.batch_id == batch_id)
            .order_by(BranchStock.branch_code)
        )
        return list(db.execute(stmt).scalars().all())

    def create_allocation(self, db: Session, batch_id: str, branch_code: str,
                          certificates: int, medals: int) -> BranchStock:
        return self.create(db, obj_in={
            "batch_id": batch_id,
            "branch_code": branch_code,
            "certificates": certificates,
            "medals": medals,
            "initial_certificates": certificates,
            "initial_medals": medals,
        })

    def ensure_row(self, db: Session, batch_id: str, branch_code: str) -> None:
        """
        Create an empty stock row if none exists yet.
        A concurrent insert of the same (batch, branch) pair is ignored
        instead of failing on the unique key.
        """
        values = {
            "batch_id": batch_id,
            "branch_code": branch_code,
            "certificates": 0,
            "medals": 0,
            "initial_certificates": 0,
            "initial_medals": 0,
        }
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(BranchStock).values(**values).on_conflict_do_nothing(
                index_elements=["batch_id", "branch_code"]
            )
        elif dialect == "sqlite":
            stmt = sqlite.insert(BranchStock).values(**values).on_conflict_do_nothing(
                index_elements=["batch_id", "branch_code"]
            )
        else:
            if self.get_stock(db, batch_id, branch_code) is not None:
                return
            stmt = insert(BranchStock).values(**values)
        db.execute(stmt)

    def lock_stock_rows(self, db: Session, batch_id: str,
                        branch_codes: Iterable[str]) -> Dict[str, BranchStock]:
        """
        Acquire the row lock for every (batch, branch) pair.

        Locks are requested one row at a time in lock_order(), so two
        operations touching the same branches can never wait on each other
        in a cycle. Rows that do not exist are absent from the result.
        """
        locked: Dict[str, BranchStock] = {}
        for code in lock_order(branch_codes):
            stmt = (
                select(BranchStock)
                .where(BranchStock.batch_id == batch_id, BranchStock.branch_code == code)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            row = db.execute(stmt).scalar_one_or_none()
            if row is not None:
                locked[code] = row
        return locked

    def lock_all(self, db: Session) -> List[BranchStock]:
        stmt = (
            select(BranchStock)
            .order_by(BranchStock.batch_id, BranchStock.branch_code)
            .with_for_update()
        )
        return list(db.execute(stmt).scalars().all())

    def set_counts(self, db: Session, row: BranchStock, certificates: int, medals: int) -> BranchStock:
        """Write new counts to a row the caller has locked"""
        if certificates < 0 or medals < 0:
            raise ValueError(
                f"Refusing negative stock for {row.batch_id}/{row.branch_code}: "
                f"certificates={certificates}, medals={medals}"
            )
        row.certificates = certificates
        row.medals = medals
        db.flush()
        return row

    def delete_all(self, db: Session) -> int:
        result = db.execute(delete(BranchStock))
        return result.rowcount

    def totals_by_branch(self, db: Session):
        stmt = (
            select(
                BranchStock.branch_code,
                func.coalesce(func.sum(BranchStock.certificates), 0),
                func.coalesce(func.sum(BranchStock.medals), 0),
            )
            .group_by(BranchStock.branch_code)
            .order_by(BranchStock.branch_code)
        )
        return db.execute(stmt).all()

# Create instances
crud_batch = CRUDBatch()
crud_branch_stock = CRUDBranchStock()
