"""Tests for batch creation, migration, consumption and bulk clear."""

import pytest
from sqlalchemy import func, select

from certledger.crud.stock import crud_branch_stock, lock_order
from certledger.errors import ErrorKind, InsufficientStock
from certledger.ledger import LedgerOperations
from certledger.models import Batch, BranchStock, LedgerEntry
from certledger.reports import query_logs
from certledger.schemas.ledger import LogQuery


def stock_of(store, batch_id, branch):
    with store.session() as db:
        row = crud_branch_stock.get_stock(db, batch_id, branch)
        return None if row is None else (row.certificates, row.medals)


def entries(store, action=None):
    return query_logs(store, LogQuery(action=action)).entries


def count(store, model):
    with store.session() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


# ====================
# CREATE
# ====================

def test_create_batch_allocates_funded_branches_only(ledger, store):
    result = ledger.create_batch("B-100", {
        "jkt": {"certificates": 30, "medals": 5},
        "SBY": {"medals": 2},
        "MDN": {"certificates": 0, "medals": 0},
    }, performed_by="admin")

    assert result.is_ok
    assert result.value.total_certificates == 30
    assert result.value.total_medals == 7
    assert set(result.value.allocations) == {"JKT", "SBY"}
    assert stock_of(store, "B-100", "JKT") == (30, 5)
    assert stock_of(store, "B-100", "SBY") == (0, 2)
    assert stock_of(store, "B-100", "MDN") is None

    with store.session() as db:
        row = crud_branch_stock.get_stock(db, "B-100", "JKT")
        assert (row.initial_certificates, row.initial_medals) == (30, 5)

    created = entries(store, "CREATE")
    assert len(created) == 1
    assert created[0].batch_id == "B-100"
    assert created[0].performed_by == "admin"
    assert created[0].certificate_amount == 30
    assert created[0].medal_amount == 7
    assert created[0].new_values["stock"]["JKT"] == {"certificates": 30, "medals": 5}
    assert "MDN" not in created[0].new_values["stock"]
    assert created[0].description.startswith("Created new certificate batch: ")


def test_create_batch_all_zero_rejected(ledger, store):
    result = ledger.create_batch("B-101", {
        "JKT": {"certificates": 0, "medals": 0},
        "SBY": {"certificates": 0, "medals": 0},
    })

    assert not result.is_ok
    assert result.kind == ErrorKind.VALIDATION_ERROR
    assert count(store, Batch) == 0
    assert count(store, BranchStock) == 0
    assert count(store, LedgerEntry) == 0


def test_create_batch_duplicate(ledger, store, batch):
    result = ledger.create_batch("B-001", {"JKT": {"certificates": 1}})

    assert not result.is_ok
    assert result.kind == ErrorKind.DUPLICATE_ENTRY
    assert result.message == "Batch ID B-001 already exists"
    assert stock_of(store, "B-001", "JKT") == (50, 20)
    assert len(entries(store, "CREATE")) == 1


@pytest.mark.parametrize("amounts", [
    {"certificates": -1, "medals": 5},
    {"certificates": 2.5},
    {"certificates": "10"},
])
def test_create_batch_bad_amounts(ledger, store, amounts):
    result = ledger.create_batch("B-102", {"JKT": amounts})

    assert not result.is_ok
    assert result.kind == ErrorKind.VALIDATION_ERROR
    assert count(store, Batch) == 0


def test_create_batch_uses_default_actor(ledger, store):
    assert ledger.create_batch("B-103", {"JKT": {"certificates": 1}}).is_ok
    assert entries(store, "CREATE")[0].performed_by == "System"


# ====================
# MIGRATE
# ====================

def test_migrate_entire_stock(ledger, store, batch):
    result = ledger.migrate_stock("B-001", "JKT", "SBY", 50, 0, performed_by="admin")

    assert result.is_ok
    assert result.value.source.before.certificates == 50
    assert result.value.source.after.certificates == 0
    assert result.value.destination.after.certificates == 60
    assert stock_of(store, "B-001", "JKT") == (0, 20)
    assert stock_of(store, "B-001", "SBY") == (60, 0)

    migrated = entries(store, "MIGRATE")
    assert len(migrated) == 1
    assert migrated[0].from_branch == "JKT"
    assert migrated[0].to_branch == "SBY"
    assert migrated[0].certificate_amount == 50
    assert migrated[0].old_values == {
        "JKT": {"certificates": 50, "medals": 20},
        "SBY": {"certificates": 10, "medals": 0},
    }
    assert migrated[0].new_values == {
        "JKT": {"certificates": 0, "medals": 20},
        "SBY": {"certificates": 60, "medals": 0},
    }


def test_migrate_more_than_available(ledger, store, batch):
    result = ledger.migrate_stock("B-001", "JKT", "SBY", 51, 0)

    assert not result.is_ok
    assert result.kind == ErrorKind.INSUFFICIENT_STOCK
    assert result.details["available"] == 50
    assert result.details["requested"] == 51
    assert "Available: 50, Requested: 51" in result.message
    assert stock_of(store, "B-001", "JKT") == (50, 20)
    assert stock_of(store, "B-001", "SBY") == (10, 0)
    assert entries(store, "MIGRATE") == []

    with pytest.raises(InsufficientStock):
        result.unwrap()


def test_migrate_insufficient_medals(ledger, store, batch):
    result = ledger.migrate_stock("B-001", "SBY", "JKT", 5, 1)

    assert result.kind == ErrorKind.INSUFFICIENT_STOCK
    assert "medal" in result.message
    assert stock_of(store, "B-001", "SBY") == (10, 0)


def test_migrate_creates_destination_row(ledger, store, batch):
    result = ledger.migrate_stock("B-001", "JKT", "mdn", 5, 3)

    assert result.is_ok
    assert result.value.destination.branch == "MDN"
    assert result.value.destination.before.certificates == 0
    assert stock_of(store, "B-001", "MDN") == (5, 3)
    with store.session() as db:
        row = crud_branch_stock.get_stock(db, "B-001", "MDN")
        assert (row.initial_certificates, row.initial_medals) == (0, 0)


def test_migrate_from_branch_without_row(ledger, store, batch):
    result = ledger.migrate_stock("B-001", "MDN", "JKT", 1, 0)

    assert result.kind == ErrorKind.INSUFFICIENT_STOCK
    assert result.details["available"] == 0
    assert stock_of(store, "B-001", "MDN") is None


def test_migrate_conserves_totals(ledger, store, batch):
    assert ledger.migrate_stock("B-001", "JKT", "SBY", 20, 5).is_ok
    assert ledger.migrate_stock("B-001", "SBY", "MDN", 25, 5).is_ok
    assert ledger.migrate_stock("B-001", "MDN", "JKT", 3, 0).is_ok

    with store.session() as db:
        rows = crud_branch_stock.get_batch_stock(db, "B-001")
        assert sum(r.certificates for r in rows) == 60
        assert sum(r.medals for r in rows) == 20
        assert all(r.certificates >= 0 and r.medals >= 0 for r in rows)


def test_migrate_same_branch_rejected(ledger, store, batch):
    result = ledger.migrate_stock("B-001", "JKT", "jkt", 1, 0)

    assert result.kind == ErrorKind.VALIDATION_ERROR
    assert stock_of(store, "B-001", "JKT") == (50, 20)


def test_migrate_zero_amounts_rejected(ledger, batch):
    result = ledger.migrate_stock("B-001", "JKT", "SBY", 0, 0)
    assert result.kind == ErrorKind.VALIDATION_ERROR


def test_migrate_unknown_batch(ledger, batch):
    result = ledger.migrate_stock("B-404", "JKT", "SBY", 1, 0)
    assert result.kind == ErrorKind.NOT_FOUND


def test_migrate_hub_policy(store, audit, settings, batch):
    hub_settings = settings.model_copy(update={"HUB_BRANCH": "jkt"})
    hub_ledger = LedgerOperations(store, audit, hub_settings)

    rejected = hub_ledger.migrate_stock("B-001", "SBY", "JKT", 1, 0)
    assert rejected.kind == ErrorKind.VALIDATION_ERROR
    assert stock_of(store, "B-001", "SBY") == (10, 0)

    assert hub_ledger.migrate_stock("B-001", "JKT", "SBY", 1, 0).is_ok


def test_lock_order_is_lexicographic_and_unique():
    assert lock_order(["SBY", "JKT", "SBY", "BDG"]) == ["BDG", "JKT", "SBY"]
    assert lock_order(["JKT", "SBY"]) == lock_order(["SBY", "JKT"])


# ====================
# CONSUME
# ====================

def test_consume_stock(ledger, store, batch):
    result = ledger.consume_stock("B-001", "jkt", 5, 2, performed_by="cashier")

    assert result.is_ok
    assert result.value.branch.after.certificates == 45
    assert stock_of(store, "B-001", "JKT") == (45, 18)

    printed = entries(store, "PRINT")
    assert len(printed) == 1
    assert printed[0].from_branch == "JKT"
    assert printed[0].to_branch is None
    assert printed[0].certificate_amount == -5
    assert printed[0].medal_amount == -2
    assert printed[0].new_values == {"JKT": {"certificates": 45, "medals": 18}}


def test_consume_custom_description(ledger, store, batch):
    assert ledger.consume_stock("B-001", "SBY", 1, 0, description="Printed for class 7B").is_ok
    assert entries(store, "PRINT")[0].description == "Printed for class 7B"


def test_consume_more_than_available(ledger, store, batch):
    result = ledger.consume_stock("B-001", "SBY", 11, 0)

    assert result.kind == ErrorKind.INSUFFICIENT_STOCK
    assert stock_of(store, "B-001", "SBY") == (10, 0)
    assert entries(store, "PRINT") == []


def test_consume_unknown_batch(ledger):
    assert ledger.consume_stock("B-404", "JKT", 1, 0).kind == ErrorKind.NOT_FOUND


# ====================
# BULK CLEAR
# ====================

def test_clear_all_requires_confirmation(ledger, store, batch):
    result = ledger.clear_all_batches(performed_by="admin")

    assert result.kind == ErrorKind.VALIDATION_ERROR
    assert count(store, Batch) == 1
    assert count(store, BranchStock) == 2


def test_clear_all_batches(ledger, store, batch):
    assert ledger.create_batch("B-002", {"MDN": {"certificates": 5, "medals": 5}}).is_ok

    result = ledger.clear_all_batches(performed_by="admin", confirm=True)

    assert result.is_ok
    assert result.value.deleted_batches == 2
    assert result.value.deleted_stock_rows == 3
    assert result.value.total_certificates_deleted == 65
    assert result.value.total_medals_deleted == 25
    assert count(store, Batch) == 0
    assert count(store, BranchStock) == 0

    cleared = entries(store, "BULK_DELETE")
    assert len(cleared) == 1
    assert cleared[0].batch_id == "BULK_DELETE"
    assert cleared[0].old_values["batches_deleted"] == 2
    assert cleared[0].performed_by == "admin"
    # Earlier audit entries outlive their batches
    assert len(entries(store, "CREATE")) == 2


def test_clear_all_empty_store(ledger, store):
    result = ledger.clear_all_batches(confirm=True)

    assert result.kind == ErrorKind.NOT_FOUND
    assert count(store, LedgerEntry) == 0
