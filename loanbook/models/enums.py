"""Enumerations for the bank reconciliation engine."""

from enum import Enum


class TransactionDirection(str, Enum):
    """Direction of money movement on the bank statement."""
    CREDIT = "credit"      # Money in
    DEBIT = "debit"        # Money out


class LedgerPool(str, Enum):
    """Independent pool a ledger record lives in."""
    LOAN_TRANSACTIONS = "loan_transactions"
    INVESTOR_TRANSACTIONS = "investor_transactions"
    INVESTOR_INTEREST = "investor_interest"
    EXPENSES = "expenses"


class LedgerKind(str, Enum):
    """
    Kind of ledger record.

    REPAYMENT: Borrower paying back a loan (credit)
    DISBURSEMENT: Loan funds released to a borrower (debit)
    CAPITAL_IN: Investor capital contribution (credit)
    CAPITAL_OUT: Investor capital withdrawal (debit)
    INTEREST_DEBIT: Interest paid out to an investor (debit)
    INTEREST_CREDIT: Interest accrued to an investor, never seen on a statement
    EXPENSE: Business expense (debit)
    """
    REPAYMENT = "repayment"
    DISBURSEMENT = "disbursement"
    CAPITAL_IN = "capital_in"
    CAPITAL_OUT = "capital_out"
    INTEREST_DEBIT = "interest_debit"
    INTEREST_CREDIT = "interest_credit"
    EXPENSE = "expense"

    @property
    def pool(self) -> LedgerPool:
        if self in (LedgerKind.REPAYMENT, LedgerKind.DISBURSEMENT):
            return LedgerPool.LOAN_TRANSACTIONS
        if self in (LedgerKind.CAPITAL_IN, LedgerKind.CAPITAL_OUT):
            return LedgerPool.INVESTOR_TRANSACTIONS
        if self in (LedgerKind.INTEREST_DEBIT, LedgerKind.INTEREST_CREDIT):
            return LedgerPool.INVESTOR_INTEREST
        return LedgerPool.EXPENSES

    @property
    def direction(self) -> TransactionDirection:
        if self in (LedgerKind.REPAYMENT, LedgerKind.CAPITAL_IN, LedgerKind.INTEREST_CREDIT):
            return TransactionDirection.CREDIT
        return TransactionDirection.DEBIT


class MatchMode(str, Enum):
    """
    How a suggestion resolves a bank entry.

    MATCH: Link one existing record
    MATCH_GROUP: Link several existing records to one bank entry
    GROUPED_DISBURSEMENT: Link several bank entries to one disbursement
    GROUPED_INVESTOR: Link several bank entries to one investor capital movement
    CREATE: No suitable record exists, propose creating one
    """
    MATCH = "match"
    MATCH_GROUP = "match_group"
    GROUPED_DISBURSEMENT = "grouped_disbursement"
    GROUPED_INVESTOR = "grouped_investor"
    CREATE = "create"

    @property
    def is_link(self) -> bool:
        return self != MatchMode.CREATE


class TargetType(str, Enum):
    """Business meaning of a reconciliation, stored on every link."""
    LOAN_REPAYMENT = "loan_repayment"
    LOAN_DISBURSEMENT = "loan_disbursement"
    INVESTOR_CREDIT = "investor_credit"
    INVESTOR_WITHDRAWAL = "investor_withdrawal"
    INTEREST_WITHDRAWAL = "interest_withdrawal"
    EXPENSE = "expense"
    OFFSET = "offset"


class LoanStatus(str, Enum):
    """Lifecycle status of a loan."""
    PENDING = "pending"
    LIVE = "live"
    CLOSED = "closed"


class ScheduleStatus(str, Enum):
    """Payment status of a single schedule row."""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class Severity(str, Enum):
    """Display severity of an explanation fragment."""
    OK = "ok"
    WARNING = "warning"
    BAD = "bad"
    UNKNOWN = "unknown"


class AmountMatch(str, Enum):
    """Amount classification bucket."""
    EXACT = "exact"        # Within 0.1%
    CLOSE = "close"        # Within 5%
    NONE = "none"


class OutcomeStatus(str, Enum):
    """Result of a single orchestrator operation."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureKind(str, Enum):
    """Typed failure reported by the orchestrator."""
    STALE_REFERENCE = "stale_reference"
    IMBALANCED_GROUP = "imbalanced_group"
    PERSISTENCE_FAILURE = "persistence_failure"
    VALIDATION_FAILURE = "validation_failure"


class AuditAction(str, Enum):
    """Type of audit action."""
    SUGGESTION_PASS = "suggestion_pass"
    MATCH_LINKED = "match_linked"
    RECORD_CREATED = "record_created"
    OFFSET_APPLIED = "offset_applied"
    RECONCILIATION_UNDONE = "reconciliation_undone"
    RECONCILIATION_FAILED = "reconciliation_failed"
    PATTERN_LEARNED = "pattern_learned"
    PATTERN_REINFORCED = "pattern_reinforced"
    BULK_COMPLETED = "bulk_completed"
