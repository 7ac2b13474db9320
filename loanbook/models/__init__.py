"""Data models for the bank reconciliation engine."""

from .enums import (
    TransactionDirection,
    LedgerPool,
    LedgerKind,
    MatchMode,
    TargetType,
    LoanStatus,
    ScheduleStatus,
    Severity,
    AmountMatch,
    OutcomeStatus,
    FailureKind,
    AuditAction,
)
from .ledger import (
    BankEntry,
    LedgerRecord,
    ScheduleAllocation,
    ScheduleRow,
    Borrower,
    Loan,
    Investor,
    ExpenseType,
    Counterparty,
    LedgerSnapshot,
    record_key,
    utcnow,
)
from .reconciliation import (
    ExplanationPart,
    ScoreExplanation,
    ScoreResult,
    SplitRatios,
    ExpenseTypeHint,
    MatchSuggestion,
    ManualChoice,
    ClaimSet,
    ReconciliationLink,
    ReconciliationOutcome,
    BulkResult,
    AuditEntry,
)
from .pattern import Pattern

__all__ = [
    # Enums
    "TransactionDirection",
    "LedgerPool",
    "LedgerKind",
    "MatchMode",
    "TargetType",
    "LoanStatus",
    "ScheduleStatus",
    "Severity",
    "AmountMatch",
    "OutcomeStatus",
    "FailureKind",
    "AuditAction",
    # Ledger
    "BankEntry",
    "LedgerRecord",
    "ScheduleAllocation",
    "ScheduleRow",
    "Borrower",
    "Loan",
    "Investor",
    "ExpenseType",
    "Counterparty",
    "LedgerSnapshot",
    "record_key",
    "utcnow",
    # Reconciliation
    "ExplanationPart",
    "ScoreExplanation",
    "ScoreResult",
    "SplitRatios",
    "ExpenseTypeHint",
    "MatchSuggestion",
    "ManualChoice",
    "ClaimSet",
    "ReconciliationLink",
    "ReconciliationOutcome",
    "BulkResult",
    "AuditEntry",
    # Patterns
    "Pattern",
]
