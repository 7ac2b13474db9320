"""Ledger collaborators: persistence and the loan payment waterfall."""

from .store import LedgerStore, InMemoryLedgerStore
from .waterfall import (
    RowUpdate,
    WaterfallResult,
    apply_payment_waterfall,
    apply_split_allocation,
    commit_updates,
    reverse_allocations,
    schedule_is_settled,
)

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "RowUpdate",
    "WaterfallResult",
    "apply_payment_waterfall",
    "apply_split_allocation",
    "commit_updates",
    "reverse_allocations",
    "schedule_is_settled",
]
