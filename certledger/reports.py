"""
Read-only projections over the Stock Store.
Nothing here takes a lock or writes; results may trail in-flight operations.
"""
from sqlalchemy import select, func
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional
import logging

from certledger.crud.logs import clamp_limit, clamp_offset, crud_ledger_entry
from certledger.crud.stock import crud_batch, crud_branch_stock
from certledger.database import StockStore
from certledger.errors import Err, NotFound, Ok, Result
from certledger.models import Batch, Branch, BranchStock
from certledger.schemas.ledger import (
    BatchDetail, BatchTotals, BatchTotalsPage, BranchTotal, LedgerEntryResponse, LogPage,
    LogQuery, Pagination, StockLevel, StockSummary,
)

logger = logging.getLogger(__name__)

def build_pagination(total: int, limit: int, offset: int, rows: int) -> Pagination:
    return Pagination(
        total=total,
        limit=limit,
        offset=offset,
        has_more=total > offset + rows,
        current_page=offset // limit + 1,
        total_pages=(total + limit - 1) // limit,
    )

def stock_summary(store: StockStore) -> StockSummary:
    """Stock per branch across every batch, plus the grand total"""
    with store.session() as db:
        totals = crud_branch_stock.totals_by_branch(db)
        names = dict(db.execute(select(Branch.branch_code, Branch.branch_name)).all())

    branches = [
        BranchTotal(
            branch_code=code,
            branch_name=names.get(code),
            certificates=int(certificates),
            medals=int(medals),
        )
        for code, certificates, medals in totals
    ]
    return StockSummary(
        branches=branches,
        grand_total=StockLevel(
            certificates=sum(b.certificates for b in branches),
            medals=sum(b.medals for b in branches),
        ),
    )

def cumulative_totals(store: StockStore, limit: int = 50, offset: int = 0) -> BatchTotalsPage:
    """
    Batch totals with running totals in creation order.
    The page itself is returned newest first.
    """
    limit = clamp_limit(limit, 50, 1000)
    offset = clamp_offset(offset)

    batch_totals = (
        select(
            Batch.id.label("id"),
            Batch.batch_id.label("batch_id"),
            Batch.created_at.label("created_at"),
            func.coalesce(func.sum(BranchStock.certificates), 0).label("batch_total_certificates"),
            func.coalesce(func.sum(BranchStock.medals), 0).label("batch_total_medals"),
        )
        .select_from(Batch)
        .outerjoin(BranchStock, BranchStock.batch_id == Batch.batch_id)
        .group_by(Batch.id, Batch.batch_id, Batch.created_at)
        .subquery("batch_totals")
    )
    window_order = (batch_totals.c.created_at, batch_totals.c.id)
    cumulative = select(
        batch_totals,
        func.sum(batch_totals.c.batch_total_certificates)
            .over(order_by=window_order).label("cumulative_total_certificates"),
        func.sum(batch_totals.c.batch_total_medals)
            .over(order_by=window_order).label("cumulative_total_medals"),
    ).subquery("cumulative_totals")

    stmt = (
        select(cumulative)
        .order_by(cumulative.c.created_at.desc(), cumulative.c.id.desc())
        .limit(limit)
        .offset(offset)
    )
    with store.session() as db:
        total = db.execute(select(func.count(Batch.id))).scalar_one()
        rows = db.execute(stmt).mappings().all()

    batches = [
        BatchTotals(
            batch_id=row["batch_id"],
            created_at=row["created_at"],
            batch_total_certificates=int(row["batch_total_certificates"]),
            batch_total_medals=int(row["batch_total_medals"]),
            cumulative_total_certificates=int(row["cumulative_total_certificates"]),
            cumulative_total_medals=int(row["cumulative_total_medals"]),
        )
        for row in rows
    ]
    return BatchTotalsPage(batches=batches, pagination=build_pagination(total, limit, offset, len(batches)))

def get_batch(store: StockStore, batch_id: str) -> Result[BatchDetail]:
    with store.session() as db:
        batch = crud_batch.get_by_batch_id(db, batch_id)
        if batch is None:
            return Err.from_exception(NotFound(f"Batch {batch_id} not found", {"batch_id": batch_id}))
        stock = crud_branch_stock.get_batch_stock(db, batch_id)

        return Ok(BatchDetail(
            batch_id=batch.batch_id,
            created_at=batch.created_at,
            stock={row.branch_code: StockLevel(certificates=row.certificates, medals=row.medals) for row in stock},
            total_certificates=sum(row.certificates for row in stock),
            total_medals=sum(row.medals for row in stock),
        ))

def transaction_history(store: StockStore, from_date: Optional[date] = None,
                        to_date: Optional[date] = None, limit: int = 50,
                        offset: int = 0) -> List[BatchDetail]:
    """Batches created in [from_date, to_date], newest first; to_date covers the whole day"""
    limit = clamp_limit(limit, 50, 1000)
    stmt = select(Batch)
    if from_date:
        stmt = stmt.where(Batch.created_at >= datetime.combine(from_date, time.min, tzinfo=timezone.utc))
    if to_date:
        end = datetime.combine(to_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        stmt = stmt.where(Batch.created_at < end)
    stmt = stmt.order_by(Batch.created_at.desc(), Batch.id.desc()).limit(limit).offset(clamp_offset(offset))

    with store.session() as db:
        batch_ids = [batch.batch_id for batch in db.execute(stmt).scalars().all()]

    details = []
    for batch_id in batch_ids:
        result = get_batch(store, batch_id)
        # A batch cleared between the two reads is simply skipped
        if result.is_ok:
            details.append(result.value)
    return details

def query_logs(store: StockStore, query: LogQuery) -> LogPage:
    """Filtered, paginated ledger entries, newest first"""
    settings = store.settings
    limit = clamp_limit(query.limit, settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)
    offset = clamp_offset(query.offset)

    with store.session() as db:
        rows, total = crud_ledger_entry.query_logs(db, query, limit=limit)
        entries = [LedgerEntryResponse.model_validate(row) for row in rows]

    logger.info(
        f"Logs retrieved: {len(entries)}/{total} records"
        + (f" (filtered by {query.regional_hub} regional hub)" if query.regional_hub else "")
    )
    return LogPage(entries=entries, pagination=build_pagination(total, limit, offset, len(entries)))

def batch_logs(store: StockStore, batch_id: str, limit: Optional[int] = None, offset: int = 0) -> LogPage:
    """Audit trail of one batch, newest first"""
    settings = store.settings
    limit = clamp_limit(limit, settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)
    offset = clamp_offset(offset)

    with store.session() as db:
        rows, total = crud_ledger_entry.logs_for_batch(db, batch_id, limit=limit, offset=offset)
        entries = [LedgerEntryResponse.model_validate(row) for row in rows]

    return LogPage(entries=entries, pagination=build_pagination(total, limit, offset, len(entries)))
