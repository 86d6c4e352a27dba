"""
Input validation shared by every ledger operation.

The rules live on the input schemas in certledger.schemas.ledger; this module
runs them and turns a failure into Err(VALIDATION_ERROR, message) so every
operation consumes the same Ok/Err result.
"""
from pydantic import TypeAdapter, ValidationError as SchemaError
from typing import Any, Mapping, Optional

from certledger.errors import Err, ErrorKind, Ok, Result
from certledger.schemas.ledger import (
    MAX_AMOUNT, Amount, BatchCreate, BatchRef, BranchRef, Movement,
)

_amount_adapter = TypeAdapter(Amount)

def _describe(exc: SchemaError, label: Optional[str] = None) -> Err:
    """First schema error as a readable message"""
    error = exc.errors()[0]
    raised = (error.get("ctx") or {}).get("error")
    if error["type"] == "value_error" and raised is not None:
        # Raised by our own validators; the text is already user-facing
        message = str(raised)
    else:
        field = label or ".".join(str(part) for part in error["loc"])
        message = f"{field}: {error['msg']}" if field else error["msg"]
    return Err(ErrorKind.VALIDATION_ERROR, message, {
        "field": ".".join(str(part) for part in error["loc"]),
        "error_count": exc.error_count(),
    })

def validate_batch_id(batch_id: Any) -> Result[str]:
    try:
        return Ok(BatchRef(batch_id=batch_id).batch_id)
    except SchemaError as e:
        return _describe(e, "Batch ID")

def validate_branch_code(branch_code: Any, field_name: str = "Branch") -> Result[str]:
    try:
        return Ok(BranchRef(branch_code=branch_code).branch_code)
    except SchemaError as e:
        return _describe(e, f"{field_name} code")

def validate_amount(value: Any, field_name: str) -> Result[int]:
    """Non-negative integer no larger than a 32-bit column can hold; None counts as 0"""
    try:
        return Ok(_amount_adapter.validate_python(value))
    except SchemaError as e:
        return _describe(e, field_name)

def validate_movement(certificates: Any, medals: Any) -> Result[Movement]:
    try:
        return Ok(Movement(certificates=certificates, medals=medals))
    except SchemaError as e:
        return _describe(e)

def validate_batch_create(batch_id: Any, per_branch_amounts: Mapping[str, Any]) -> Result[BatchCreate]:
    """
    Batch id plus branch code -> {certificates, medals} allocations.
    Missing fields count as zero; the total must be positive.
    """
    try:
        return Ok(BatchCreate(batch_id=batch_id, allocations=per_branch_amounts))
    except SchemaError as e:
        return _describe(e)

def validate_actor(performed_by: Optional[str], default: str) -> str:
    if performed_by and performed_by.strip():
        return performed_by.strip()[:100]
    return default

__all__ = [
    "MAX_AMOUNT", "validate_actor", "validate_amount", "validate_batch_create",
    "validate_batch_id", "validate_branch_code", "validate_movement",
]
