"""
Ledger schemas:
- LedgerEntryData is the payload written to the log table and, on failure,
  to the fallback file
- result models returned inside Ok(...) by the ledger operations
"""
from pydantic import (
    BaseModel, BeforeValidator, ConfigDict, Field, StrictInt, StrictStr,
    field_validator, model_validator,
)
from typing import Annotated, Optional, List, Dict, Any
from datetime import datetime, date, timezone

from certledger.models import LedgerAction

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)

# Audit entry payload
class LedgerEntryData(BaseModel):
    batch_id: str = Field(..., min_length=1, max_length=50)
    action: LedgerAction
    description: Optional[str] = None
    from_branch: Optional[str] = Field(None, max_length=10)
    to_branch: Optional[str] = Field(None, max_length=10)
    certificate_amount: int = 0
    medal_amount: int = 0
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    performed_by: str = Field("System", max_length=100)
    # Time of the mutation; replayed entries keep their original time
    occurred_at: datetime = Field(default_factory=_utc_now)

    def to_row(self) -> Dict[str, Any]:
        row = self.model_dump(mode="python", exclude={"occurred_at"})
        row["action"] = self.action.value
        row["created_at"] = self.occurred_at
        return row

class FailedLedgerEntry(BaseModel):
    """One line of the fallback file"""
    timestamp: datetime
    error: str
    error_type: Optional[str] = None
    entry: LedgerEntryData

class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    batch_id: str
    action: str
    description: Optional[str]
    from_branch: Optional[str]
    to_branch: Optional[str]
    certificate_amount: int
    medal_amount: int
    old_values: Optional[Dict[str, Any]]
    new_values: Optional[Dict[str, Any]]
    performed_by: str
    created_at: datetime

# Operation inputs
MAX_AMOUNT = 2147483647  # INTEGER column upper bound

def _strip(v: Any) -> Any:
    return v.strip() if isinstance(v, str) else v

def _normalise_code(v: Any) -> Any:
    return v.strip().upper() if isinstance(v, str) else v

def _none_to_zero(v: Any) -> Any:
    return 0 if v is None else v

BatchIdStr = Annotated[
    StrictStr,
    BeforeValidator(_strip),
    Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_-]+$"),
]
BranchCode = Annotated[
    StrictStr,
    BeforeValidator(_normalise_code),
    Field(min_length=1, max_length=10, pattern=r"^[A-Za-z0-9_-]+$"),
]
# bool is rejected: True is not a quantity
Amount = Annotated[StrictInt, BeforeValidator(_none_to_zero), Field(ge=0, le=MAX_AMOUNT)]

class BatchRef(BaseModel):
    batch_id: BatchIdStr

class BranchRef(BaseModel):
    branch_code: BranchCode

class BranchAllocation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    certificates: Amount = 0
    medals: Amount = 0

class Movement(BaseModel):
    """Amount pair for a migration or consumption"""
    certificates: Amount = 0
    medals: Amount = 0

    @model_validator(mode="after")
    def require_positive(self) -> "Movement":
        if self.certificates == 0 and self.medals == 0:
            raise ValueError("At least one amount (certificates or medals) must be greater than 0")
        return self

class BatchCreate(BaseModel):
    batch_id: BatchIdStr
    allocations: Dict[BranchCode, BranchAllocation] = Field(..., min_length=1)

    @field_validator("allocations", mode="before")
    @classmethod
    def reject_duplicate_branches(cls, v: Any) -> Any:
        # "jkt" and "JKT" would otherwise collapse into one key
        if isinstance(v, dict):
            seen = set()
            for code in v:
                normalised = _normalise_code(code)
                if normalised in seen:
                    raise ValueError(f"Branch {normalised} is listed more than once")
                seen.add(normalised)
        return v

    @model_validator(mode="after")
    def require_stock(self) -> "BatchCreate":
        if sum(a.certificates + a.medals for a in self.allocations.values()) == 0:
            raise ValueError("At least one certificate or medal must be greater than 0 for any branch")
        return self

    @property
    def funded(self) -> Dict[str, "BranchAllocation"]:
        """Allocations with a non-zero amount, in branch-code order"""
        return {code: a for code, a in sorted(self.allocations.items())
                if a.certificates > 0 or a.medals > 0}

class StockLevel(BaseModel):
    certificates: int
    medals: int

# Operation results
class BatchResult(BaseModel):
    batch_id: str
    created_at: Optional[datetime] = None
    allocations: Dict[str, StockLevel]
    total_certificates: int
    total_medals: int

class BranchMovement(BaseModel):
    branch: str
    before: StockLevel
    after: StockLevel

class MigrationResult(BaseModel):
    batch_id: str
    certificates: int
    medals: int
    source: BranchMovement
    destination: BranchMovement

class ConsumptionResult(BaseModel):
    batch_id: str
    certificates: int
    medals: int
    branch: BranchMovement

class ClearResult(BaseModel):
    deleted_batches: int
    deleted_stock_rows: int
    total_certificates_deleted: int
    total_medals_deleted: int

class RecoveryResult(BaseModel):
    recovered: int = 0
    failed: int = 0
    total_processed: int = 0
    archived_to: Optional[str] = None

# Log queries
class LogQuery(BaseModel):
    batch_id: Optional[str] = None
    action: Optional[str] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    search: Optional[str] = None
    regional_hub: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0

    @field_validator("batch_id", "action", "search", "regional_hub")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("action")
    @classmethod
    def upper_action(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool
    current_page: int
    total_pages: int

class LogPage(BaseModel):
    entries: List[LedgerEntryResponse]
    pagination: Pagination

# Reporting
class BranchTotal(BaseModel):
    branch_code: str
    branch_name: Optional[str] = None
    certificates: int
    medals: int

class StockSummary(BaseModel):
    branches: List[BranchTotal]
    grand_total: StockLevel

class BatchTotals(BaseModel):
    batch_id: str
    created_at: datetime
    batch_total_certificates: int
    batch_total_medals: int
    cumulative_total_certificates: int
    cumulative_total_medals: int

class BatchTotalsPage(BaseModel):
    batches: List[BatchTotals]
    pagination: Pagination

class BatchDetail(BaseModel):
    batch_id: str
    created_at: datetime
    stock: Dict[str, StockLevel]
    total_certificates: int
    total_medals: int
