"""
Stock Store access layer for Certificate Stock Ledger
"""

from .stock import crud_batch, crud_branch_stock, lock_order
from .logs import crud_ledger_entry

__all__ = ["crud_batch", "crud_branch_stock", "crud_ledger_entry", "lock_order"]
