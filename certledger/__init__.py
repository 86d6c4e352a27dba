"""
Certificate Stock Ledger

Per-branch certificate and medal stock, moved between branches under row
locks, with an append-only audit trail that survives audit-store outages.
"""

__version__ = "1.0.0"
