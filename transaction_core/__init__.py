"""
Transaction Core

Orchestrates deposits, withdrawals and transfers across an account ledger and
a transaction ledger that share no database transaction. Balance changes go
through version-stamped compare-and-swap updates, transfers are debit-first
with compensation, and every request is idempotent.
"""

__version__ = "1.0.0"
