"""Tests for stock reports, log queries and retention cleanup."""

from datetime import date, datetime, timedelta, timezone

from sqlalchemy import update

from certledger.errors import ErrorKind
from certledger.models import Branch, LedgerEntry
from certledger.reports import (
    batch_logs, cumulative_totals, get_batch, query_logs, stock_summary, transaction_history,
)
from certledger.retention import clamp_days, cleanup_old_entries
from certledger.schemas.ledger import LogQuery


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def age_entries(store, batch_id, days):
    with store.transaction() as db:
        db.execute(
            update(LedgerEntry)
            .where(LedgerEntry.batch_id == batch_id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(days=days))
        )


def add_branches(store):
    with store.transaction() as db:
        db.add_all([
            Branch(branch_code="JKT", branch_name="Jakarta", regional_hub="WEST"),
            Branch(branch_code="SBY", branch_name="Surabaya", regional_hub="EAST"),
        ])


def test_stock_summary(ledger, store, batch):
    add_branches(store)
    assert ledger.create_batch("B-002", {"JKT": {"certificates": 5, "medals": 1}}).is_ok

    summary = stock_summary(store)

    by_code = {b.branch_code: b for b in summary.branches}
    assert by_code["JKT"].certificates == 55
    assert by_code["JKT"].medals == 21
    assert by_code["JKT"].branch_name == "Jakarta"
    assert by_code["SBY"].certificates == 10
    assert summary.grand_total.certificates == 65
    assert summary.grand_total.medals == 21


def test_get_batch(ledger, store, batch):
    result = get_batch(store, "B-001")

    assert result.is_ok
    assert result.value.stock["JKT"].certificates == 50
    assert result.value.total_certificates == 60
    assert result.value.total_medals == 20

    assert get_batch(store, "B-404").kind == ErrorKind.NOT_FOUND


def test_cumulative_totals(ledger, store, batch):
    assert ledger.create_batch("B-002", {"MDN": {"certificates": 7, "medals": 3}}).is_ok

    page = cumulative_totals(store)
    totals = page.batches

    assert [t.batch_id for t in totals] == ["B-002", "B-001"]
    assert totals[0].batch_total_certificates == 7
    assert totals[0].cumulative_total_certificates == 67
    assert totals[0].cumulative_total_medals == 23
    assert totals[1].cumulative_total_certificates == 60
    assert page.pagination.total == 2
    assert page.pagination.has_more is False


def test_cumulative_totals_paginated(ledger, store, batch):
    assert ledger.create_batch("B-002", {"MDN": {"certificates": 7, "medals": 3}}).is_ok

    first = cumulative_totals(store, limit=1)
    assert [t.batch_id for t in first.batches] == ["B-002"]
    # Running totals cover every earlier batch, not only the page
    assert first.batches[0].cumulative_total_certificates == 67
    assert first.pagination.has_more is True
    assert first.pagination.total_pages == 2

    second = cumulative_totals(store, limit=1, offset=1)
    assert [t.batch_id for t in second.batches] == ["B-001"]
    assert second.pagination.current_page == 2
    assert second.pagination.has_more is False


def test_transaction_history(ledger, store, batch):
    assert ledger.create_batch("B-002", {"MDN": {"certificates": 7}}).is_ok

    history = transaction_history(store, from_date=utc_today() - timedelta(days=1), to_date=utc_today())
    assert [b.batch_id for b in history] == ["B-002", "B-001"]

    assert transaction_history(store, to_date=utc_today() - timedelta(days=2)) == []


def test_query_logs_filters(ledger, store, batch):
    assert ledger.migrate_stock("B-001", "JKT", "SBY", 5, 0).is_ok
    assert ledger.consume_stock("B-001", "SBY", 1, 0).is_ok
    assert ledger.create_batch("OTHER-7", {"MDN": {"certificates": 1}}).is_ok

    assert query_logs(store, LogQuery()).pagination.total == 4
    assert query_logs(store, LogQuery(batch_id="B-001")).pagination.total == 3
    assert query_logs(store, LogQuery(action="migrate")).entries[0].action == "MIGRATE"
    assert query_logs(store, LogQuery(search="other")).pagination.total == 1
    assert query_logs(store, LogQuery(search="MIGRATED")).pagination.total == 1
    assert query_logs(store, LogQuery(batch_id="  ")).pagination.total == 4


def test_batch_logs(ledger, store, batch):
    assert ledger.migrate_stock("B-001", "JKT", "SBY", 5, 0).is_ok
    assert ledger.create_batch("B-002", {"MDN": {"certificates": 1}}).is_ok

    page = batch_logs(store, "B-001")

    assert [e.action for e in page.entries] == ["MIGRATE", "CREATE"]
    assert page.pagination.total == 2
    assert not page.pagination.has_more


def test_query_logs_regional_hub(ledger, store, batch):
    add_branches(store)
    assert ledger.create_batch("B-002", {"MDN": {"certificates": 1}}).is_ok

    page = query_logs(store, LogQuery(regional_hub="EAST"))

    assert page.pagination.total == 1
    assert page.entries[0].batch_id == "B-001"


def test_query_logs_date_range(ledger, store, batch):
    assert ledger.create_batch("B-OLD", {"JKT": {"certificates": 1}}).is_ok
    age_entries(store, "B-OLD", 10)

    today = utc_today()
    recent = query_logs(store, LogQuery(from_date=today - timedelta(days=1), to_date=today))
    assert [e.batch_id for e in recent.entries] == ["B-001"]

    old = query_logs(store, LogQuery(to_date=today - timedelta(days=5)))
    assert [e.batch_id for e in old.entries] == ["B-OLD"]


def test_query_logs_pagination(ledger, store):
    for n in range(5):
        assert ledger.create_batch(f"B-10{n}", {"JKT": {"certificates": 1}}).is_ok

    first = query_logs(store, LogQuery(limit=2))
    assert [e.batch_id for e in first.entries] == ["B-104", "B-103"]
    assert first.pagination.total == 5
    assert first.pagination.has_more
    assert first.pagination.total_pages == 3

    last = query_logs(store, LogQuery(limit=2, offset=4))
    assert [e.batch_id for e in last.entries] == ["B-100"]
    assert not last.pagination.has_more
    assert last.pagination.current_page == 3

    capped = query_logs(store, LogQuery(limit=10_000))
    assert capped.pagination.limit == store.settings.MAX_PAGE_SIZE


def test_cleanup_old_entries(ledger, store, batch):
    assert ledger.create_batch("B-OLD", {"JKT": {"certificates": 1}}).is_ok
    age_entries(store, "B-OLD", 120)

    result = cleanup_old_entries(store, days=90)

    assert result["deleted_count"] == 1
    assert result["days_threshold"] == 90
    remaining = query_logs(store, LogQuery()).entries
    assert [e.batch_id for e in remaining] == ["B-001"]


def test_cleanup_days_clamped(settings):
    assert clamp_days(None, settings) == settings.LOG_RETENTION_DAYS
    assert clamp_days(0, settings) == 1
    assert clamp_days(10**6, settings) == settings.MAX_RETENTION_DAYS
