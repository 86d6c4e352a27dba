"""
Ledger error taxonomy and result variants.

Expected business outcomes (bad input, duplicate batch, insufficient stock,
unknown reference, lock wait exceeded) are returned as Err values from the
ledger operations. Infrastructure faults that prevent a stock mutation from
committing are raised as PersistenceFailure.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar, Union

T = TypeVar("T")

class ErrorKind(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    AUDIT_WRITE_FAILURE = "AUDIT_WRITE_FAILURE"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"

class LedgerError(Exception):
    """Base class for every ledger failure"""
    kind = ErrorKind.PERSISTENCE_FAILURE

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

class ValidationError(LedgerError):
    kind = ErrorKind.VALIDATION_ERROR

class DuplicateEntry(LedgerError):
    kind = ErrorKind.DUPLICATE_ENTRY

class InsufficientStock(LedgerError):
    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, message: str, available: int = 0, requested: int = 0,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("available", available)
        details.setdefault("requested", requested)
        super().__init__(message, details)
        self.available = available
        self.requested = requested

class NotFound(LedgerError):
    kind = ErrorKind.NOT_FOUND

class Timeout(LedgerError):
    kind = ErrorKind.TIMEOUT

class AuditWriteFailure(LedgerError):
    """Primary audit insert failed. Never leaves the audit writer."""
    kind = ErrorKind.AUDIT_WRITE_FAILURE

class PersistenceFailure(LedgerError):
    kind = ErrorKind.PERSISTENCE_FAILURE

EXCEPTION_BY_KIND = {
    ErrorKind.VALIDATION_ERROR: ValidationError,
    ErrorKind.DUPLICATE_ENTRY: DuplicateEntry,
    ErrorKind.INSUFFICIENT_STOCK: InsufficientStock,
    ErrorKind.NOT_FOUND: NotFound,
    ErrorKind.TIMEOUT: Timeout,
    ErrorKind.AUDIT_WRITE_FAILURE: AuditWriteFailure,
    ErrorKind.PERSISTENCE_FAILURE: PersistenceFailure,
}

@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value

@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_ok(self) -> bool:
        return False

    def to_exception(self) -> LedgerError:
        if self.kind == ErrorKind.INSUFFICIENT_STOCK:
            return InsufficientStock(
                self.message,
                available=self.details.get("available", 0),
                requested=self.details.get("requested", 0),
                details=self.details,
            )
        return EXCEPTION_BY_KIND[self.kind](self.message, self.details)

    def unwrap(self):
        raise self.to_exception()

    @classmethod
    def from_exception(cls, exc: LedgerError) -> "Err":
        return cls(exc.kind, exc.message, dict(exc.details))

Result = Union[Ok[T], Err]
