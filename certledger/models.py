"""
SQLAlchemy 2.x models for the certificate stock ledger.

- batches: immutable audit anchors, one per certificate/medal lot
- branch_stock: mutable per-branch counters, never negative
- ledger_entries: append-only audit trail with denormalised snapshots
- branches: branch metadata owned outside the ledger, read-only here
"""
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Text, JSON,
    UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.sql import func
from datetime import datetime, timezone
from enum import Enum

Base = declarative_base()

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# JSONB on PostgreSQL, plain JSON everywhere else
SnapshotJSON = JSON().with_variant(JSONB(), "postgresql")

class LedgerAction(str, Enum):
    CREATE = "CREATE"
    MIGRATE = "MIGRATE"
    PRINT = "PRINT"
    BULK_DELETE = "BULK_DELETE"

class Batch(Base):
    __tablename__ = "batches"

    id = Column(Integer, primary_key=True)
    batch_id = Column(String(50), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    stock = relationship(
        "BranchStock",
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BranchStock.branch_code",
    )

class BranchStock(Base):
    __tablename__ = "branch_stock"
    __table_args__ = (
        UniqueConstraint("batch_id", "branch_code", name="uq_branch_stock_batch_branch"),
        CheckConstraint("certificates >= 0", name="ck_branch_stock_certificates_non_negative"),
        CheckConstraint("medals >= 0", name="ck_branch_stock_medals_non_negative"),
        Index("ix_branch_stock_branch_code", "branch_code"),
    )

    id = Column(Integer, primary_key=True)
    batch_id = Column(String(50), ForeignKey("batches.batch_id", ondelete="CASCADE"), nullable=False)
    branch_code = Column(String(10), nullable=False)
    certificates = Column(Integer, nullable=False, default=0)
    medals = Column(Integer, nullable=False, default=0)
    # Allocation at batch creation, never changed afterwards
    initial_certificates = Column(Integer, nullable=False, default=0)
    initial_medals = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    batch = relationship("Batch", back_populates="stock")

    def snapshot(self) -> dict:
        return {"certificates": self.certificates, "medals": self.medals}

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_batch_id", "batch_id"),
        Index("ix_ledger_entries_action", "action"),
        Index("ix_ledger_entries_created_at", "created_at"),
        Index("ix_ledger_entries_performed_by", "performed_by"),
    )

    id = Column(Integer, primary_key=True)
    # Not a foreign key: audit rows outlive a bulk delete of their batch
    batch_id = Column(String(50), nullable=False)
    action = Column(String(20), nullable=False)
    description = Column(Text)
    from_branch = Column(String(10))
    to_branch = Column(String(10))
    certificate_amount = Column(Integer, nullable=False, default=0)
    medal_amount = Column(Integer, nullable=False, default=0)
    old_values = Column(SnapshotJSON)
    new_values = Column(SnapshotJSON)
    performed_by = Column(String(100), nullable=False, default="System")
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)

class Branch(Base):
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True)
    branch_code = Column(String(10), unique=True, nullable=False)
    branch_name = Column(String(100), nullable=False)
    regional_hub = Column(String(10))
    is_active = Column(Boolean, nullable=False, default=True)
