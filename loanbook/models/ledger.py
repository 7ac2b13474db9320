"""Ledger-side models: bank statement lines, ledger records and their owners."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any, Iterable
from uuid import uuid4

from .enums import (
    LedgerKind,
    LedgerPool,
    LoanStatus,
    ScheduleStatus,
    TransactionDirection,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def record_key(pool: LedgerPool, record_id: str) -> str:
    """Pool-qualified identity of a ledger record."""
    return f"{pool.value}:{record_id}"


@dataclass
class BankEntry:
    """
    One line of an imported bank statement.
    Amount is signed and stored in CENTS: positive = credit, negative = debit.
    """
    # Identity
    id: str = field(default_factory=lambda: str(uuid4()))
    external_reference: Optional[str] = None
    bank_source: str = ""

    # Financial data (signed cents)
    amount_cents: int = 0
    statement_date: Optional[date] = None
    description: str = ""

    # Reconciliation state
    is_reconciled: bool = False
    reconciled_at: Optional[datetime] = None

    @property
    def direction(self) -> TransactionDirection:
        if self.amount_cents >= 0:
            return TransactionDirection.CREDIT
        return TransactionDirection.DEBIT

    @property
    def is_credit(self) -> bool:
        return self.direction == TransactionDirection.CREDIT

    @property
    def abs_cents(self) -> int:
        return abs(self.amount_cents)

    @property
    def amount(self) -> float:
        """Return signed amount in standard units."""
        return self.amount_cents / 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_reference": self.external_reference,
            "bank_source": self.bank_source,
            "amount_cents": self.amount_cents,
            "amount": self.amount,
            "statement_date": self.statement_date.isoformat() if self.statement_date else None,
            "description": self.description,
            "direction": self.direction.value,
            "is_reconciled": self.is_reconciled,
        }


@dataclass
class ScheduleAllocation:
    """Portion of a repayment applied to one schedule row."""
    row_id: str
    principal_cents: int = 0
    interest_cents: int = 0


@dataclass
class LedgerRecord:
    """
    Business-side financial record eligible to be linked to a bank entry.
    Amounts are unsigned cents; direction comes from the kind.
    """
    # Identity
    id: str = field(default_factory=lambda: str(uuid4()))
    kind: LedgerKind = LedgerKind.REPAYMENT
    reference: Optional[str] = None

    # Financial data
    amount_cents: int = 0
    record_date: Optional[date] = None
    description: str = ""

    # Owner (loan for loan transactions, investor for capital/interest)
    loan_id: Optional[str] = None
    investor_id: Optional[str] = None
    expense_type_id: Optional[str] = None

    # Repayment/withdrawal breakdown
    principal_cents: int = 0
    interest_cents: int = 0
    fees_cents: int = 0
    allocations: List[ScheduleAllocation] = field(default_factory=list)
    closed_loan: bool = False

    # State
    is_deleted: bool = False
    is_reconciled: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def pool(self) -> LedgerPool:
        return self.kind.pool

    @property
    def direction(self) -> TransactionDirection:
        return self.kind.direction

    @property
    def owner_id(self) -> Optional[str]:
        return self.loan_id or self.investor_id

    @property
    def key(self) -> str:
        return record_key(self.pool, self.id)

    @property
    def amount(self) -> float:
        return self.amount_cents / 100.0

    @property
    def is_open(self) -> bool:
        """Not deleted and not yet reconciled."""
        return not self.is_deleted and not self.is_reconciled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "pool": self.pool.value,
            "amount_cents": self.amount_cents,
            "record_date": self.record_date.isoformat() if self.record_date else None,
            "description": self.description,
            "loan_id": self.loan_id,
            "investor_id": self.investor_id,
            "expense_type_id": self.expense_type_id,
            "principal_cents": self.principal_cents,
            "interest_cents": self.interest_cents,
            "fees_cents": self.fees_cents,
            "is_deleted": self.is_deleted,
            "is_reconciled": self.is_reconciled,
        }


@dataclass
class ScheduleRow:
    """One installment of a loan repayment schedule."""
    id: str = field(default_factory=lambda: str(uuid4()))
    due_date: Optional[date] = None
    principal_due_cents: int = 0
    interest_due_cents: int = 0
    principal_paid_cents: int = 0
    interest_paid_cents: int = 0
    status: ScheduleStatus = ScheduleStatus.PENDING

    @property
    def total_due_cents(self) -> int:
        return self.principal_due_cents + self.interest_due_cents

    @property
    def total_paid_cents(self) -> int:
        return self.principal_paid_cents + self.interest_paid_cents

    @property
    def interest_outstanding_cents(self) -> int:
        return max(0, self.interest_due_cents - self.interest_paid_cents)

    @property
    def principal_outstanding_cents(self) -> int:
        return max(0, self.principal_due_cents - self.principal_paid_cents)


@dataclass
class Borrower:
    id: str = field(default_factory=lambda: str(uuid4()))
    full_name: str = ""
    business_name: str = ""
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.business_name or self.full_name


@dataclass
class Loan:
    id: str = field(default_factory=lambda: str(uuid4()))
    borrower_id: Optional[str] = None
    loan_number: str = ""
    status: LoanStatus = LoanStatus.LIVE
    principal_cents: int = 0
    disbursed_cents: int = 0
    schedule: List[ScheduleRow] = field(default_factory=list)

    @property
    def is_live(self) -> bool:
        return self.status == LoanStatus.LIVE


@dataclass
class Investor:
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    business_name: str = ""
    email: Optional[str] = None
    is_active: bool = True
    manual_interest: bool = False  # Product accrues interest by hand

    # Running balances (cents)
    current_capital_balance_cents: int = 0
    total_capital_contributed_cents: int = 0

    @property
    def display_name(self) -> str:
        return self.business_name or self.name


@dataclass
class ExpenseType:
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""


@dataclass
class Counterparty:
    """Resolved owner of a ledger record, used for name matching."""
    owner_id: str
    name: str = ""
    business_name: str = ""
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.business_name or self.name


@dataclass
class LedgerSnapshot:
    """
    Point-in-time view of the bank entries and ledger pools.
    The suggestion pass reads it and never mutates it.
    """
    bank_entries: List[BankEntry] = field(default_factory=list)
    records: List[LedgerRecord] = field(default_factory=list)
    borrowers: List[Borrower] = field(default_factory=list)
    loans: List[Loan] = field(default_factory=list)
    investors: List[Investor] = field(default_factory=list)
    expense_types: List[ExpenseType] = field(default_factory=list)

    _loans: Dict[str, Loan] = field(init=False, repr=False, default_factory=dict)
    _borrowers: Dict[str, Borrower] = field(init=False, repr=False, default_factory=dict)
    _investors: Dict[str, Investor] = field(init=False, repr=False, default_factory=dict)

    def __post_init__(self):
        self._loans = {loan.id: loan for loan in self.loans}
        self._borrowers = {b.id: b for b in self.borrowers}
        self._investors = {i.id: i for i in self.investors}

    def loan(self, loan_id: Optional[str]) -> Optional[Loan]:
        return self._loans.get(loan_id) if loan_id else None

    def borrower(self, borrower_id: Optional[str]) -> Optional[Borrower]:
        return self._borrowers.get(borrower_id) if borrower_id else None

    def investor(self, investor_id: Optional[str]) -> Optional[Investor]:
        return self._investors.get(investor_id) if investor_id else None

    def borrower_for_loan(self, loan_id: Optional[str]) -> Optional[Borrower]:
        loan = self.loan(loan_id)
        return self.borrower(loan.borrower_id) if loan else None

    def counterparty_for(self, record: LedgerRecord) -> Optional[Counterparty]:
        """Resolve a record's owner to a name-bearing counterparty."""
        if record.loan_id:
            borrower = self.borrower_for_loan(record.loan_id)
            if borrower:
                return Counterparty(
                    owner_id=borrower.id,
                    name=borrower.full_name,
                    business_name=borrower.business_name,
                    email=borrower.email,
                )
        if record.investor_id:
            investor = self.investor(record.investor_id)
            if investor:
                return Counterparty(
                    owner_id=investor.id,
                    name=investor.name,
                    business_name=investor.business_name,
                    email=investor.email,
                )
        return None

    def open_records(self, kinds: Iterable[LedgerKind]) -> List[LedgerRecord]:
        """Records of the given kinds that are neither deleted nor reconciled."""
        wanted = set(kinds)
        return [r for r in self.records if r.kind in wanted and r.is_open]

    def unreconciled_entries(self) -> List[BankEntry]:
        return [e for e in self.bank_entries if not e.is_reconciled]
