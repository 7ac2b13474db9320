"""
Ledger persistence collaborators.

LedgerStore is the async persistence surface the orchestrator writes
through. InMemoryLedgerStore implements it over plain dicts; a record's
reconciled flag is derived from the links that reference it.
"""

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Protocol

import structlog

from ..models import (
    BankEntry,
    Borrower,
    ExpenseType,
    Investor,
    LedgerRecord,
    LedgerSnapshot,
    Loan,
    ReconciliationLink,
    utcnow,
)
from ..reconciliation.errors import PersistenceError

logger = structlog.get_logger()


class LedgerStore(Protocol):
    """Persistence operations used by the reconciliation orchestrator."""

    async def snapshot(self) -> LedgerSnapshot: ...

    async def get_bank_entry(self, entry_id: str) -> Optional[BankEntry]: ...

    async def get_record(self, record_id: str) -> Optional[LedgerRecord]: ...

    async def get_loan(self, loan_id: str) -> Optional[Loan]: ...

    async def get_investor(self, investor_id: str) -> Optional[Investor]: ...

    async def create_record(self, record: LedgerRecord) -> LedgerRecord: ...

    async def delete_record(self, record_id: str) -> None: ...

    async def save_loan(self, loan: Loan) -> None: ...

    async def save_investor(self, investor: Investor) -> None: ...

    async def set_bank_entry_reconciled(self, entry_id: str, reconciled: bool) -> None: ...

    async def create_link(self, link: ReconciliationLink) -> ReconciliationLink: ...

    async def delete_link(self, link_id: str) -> None: ...

    async def links_for_entry(self, entry_id: str) -> List[ReconciliationLink]: ...

    async def links_for_group(self, group_id: str) -> List[ReconciliationLink]: ...


class InMemoryLedgerStore:
    """
    Dict-backed LedgerStore for the HTTP layer and tests.

    Seed it with the add_* helpers or from_snapshot; everything else goes
    through the async LedgerStore methods.
    """

    def __init__(self):
        self.bank_entries: Dict[str, BankEntry] = {}
        self.records: Dict[str, LedgerRecord] = {}
        self.borrowers: Dict[str, Borrower] = {}
        self.loans: Dict[str, Loan] = {}
        self.investors: Dict[str, Investor] = {}
        self.expense_types: Dict[str, ExpenseType] = {}
        self.links: Dict[str, ReconciliationLink] = {}

    @classmethod
    def from_snapshot(cls, snapshot: LedgerSnapshot) -> "InMemoryLedgerStore":
        store = cls()
        store.add_bank_entries(snapshot.bank_entries)
        store.add_records(snapshot.records)
        for borrower in snapshot.borrowers:
            store.borrowers[borrower.id] = borrower
        for loan in snapshot.loans:
            store.loans[loan.id] = loan
        for investor in snapshot.investors:
            store.investors[investor.id] = investor
        for expense_type in snapshot.expense_types:
            store.expense_types[expense_type.id] = expense_type
        return store

    # Seeding

    def add_bank_entries(self, entries: Iterable[BankEntry]) -> None:
        for entry in entries:
            self.bank_entries[entry.id] = entry

    def add_records(self, records: Iterable[LedgerRecord]) -> None:
        for record in records:
            self.records[record.id] = record

    def add_borrower(self, borrower: Borrower) -> Borrower:
        self.borrowers[borrower.id] = borrower
        return borrower

    def add_loan(self, loan: Loan) -> Loan:
        self.loans[loan.id] = loan
        return loan

    def add_investor(self, investor: Investor) -> Investor:
        self.investors[investor.id] = investor
        return investor

    # Reads

    async def snapshot(self) -> LedgerSnapshot:
        """Copy of the current pools, safe to hand to a suggestion pass."""
        return LedgerSnapshot(
            bank_entries=[replace(e) for e in self.bank_entries.values()],
            records=[replace(r) for r in self.records.values()],
            borrowers=list(self.borrowers.values()),
            loans=list(self.loans.values()),
            investors=list(self.investors.values()),
            expense_types=list(self.expense_types.values()),
        )

    async def get_bank_entry(self, entry_id: str) -> Optional[BankEntry]:
        return self.bank_entries.get(entry_id)

    async def get_record(self, record_id: str) -> Optional[LedgerRecord]:
        return self.records.get(record_id)

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        return self.loans.get(loan_id)

    async def get_investor(self, investor_id: str) -> Optional[Investor]:
        return self.investors.get(investor_id)

    async def links_for_entry(self, entry_id: str) -> List[ReconciliationLink]:
        return [link for link in self.links.values() if link.bank_entry_id == entry_id]

    async def links_for_group(self, group_id: str) -> List[ReconciliationLink]:
        return [link for link in self.links.values() if link.group_id == group_id]

    # Writes

    async def create_record(self, record: LedgerRecord) -> LedgerRecord:
        self.records[record.id] = record
        logger.debug("Ledger record created", record_id=record.id, kind=record.kind.value)
        return record

    async def delete_record(self, record_id: str) -> None:
        if self.records.pop(record_id, None) is None:
            raise PersistenceError(f"Record {record_id} not found", refs=[record_id])
        logger.debug("Ledger record deleted", record_id=record_id)

    async def save_loan(self, loan: Loan) -> None:
        self.loans[loan.id] = loan

    async def save_investor(self, investor: Investor) -> None:
        self.investors[investor.id] = investor

    async def set_bank_entry_reconciled(self, entry_id: str, reconciled: bool) -> None:
        entry = self.bank_entries.get(entry_id)
        if entry is None:
            raise PersistenceError(f"Bank entry {entry_id} not found", refs=[entry_id])
        entry.is_reconciled = reconciled
        entry.reconciled_at = utcnow() if reconciled else None

    async def create_link(self, link: ReconciliationLink) -> ReconciliationLink:
        self.links[link.id] = link
        self._refresh_reconciled(link.record_id)
        return link

    async def delete_link(self, link_id: str) -> None:
        link = self.links.pop(link_id, None)
        if link is None:
            raise PersistenceError(f"Link {link_id} not found", refs=[link_id])
        self._refresh_reconciled(link.record_id)

    def _refresh_reconciled(self, record_id: Optional[str]) -> None:
        record = self.records.get(record_id) if record_id else None
        if record is None:
            return
        record.is_reconciled = any(link.record_id == record_id for link in self.links.values())
