"""Suggestion, link and outcome models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Set, Tuple
from uuid import uuid4

from .enums import (
    AmountMatch,
    AuditAction,
    FailureKind,
    LedgerPool,
    MatchMode,
    OutcomeStatus,
    Severity,
    TargetType,
)
from .ledger import BankEntry, LedgerRecord, record_key, utcnow


@dataclass(frozen=True)
class ExplanationPart:
    text: str
    severity: Severity


@dataclass(frozen=True)
class ScoreExplanation:
    """Human-readable breakdown of a pair score."""
    amount: ExplanationPart
    date: ExplanationPart
    days_apart: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": {"text": self.amount.text, "severity": self.amount.severity.value},
            "date": {"text": self.date.text, "severity": self.date.severity.value},
            "days_apart": self.days_apart,
        }


@dataclass(frozen=True)
class ScoreResult:
    score: float
    explanation: ScoreExplanation
    amount_match: AmountMatch = AmountMatch.NONE


@dataclass
class SplitRatios:
    """How an amount decomposes into capital/principal, interest and fees."""
    capital: float = 1.0
    interest: float = 0.0
    fees: float = 0.0

    def split(self, amount_cents: int) -> Tuple[int, int, int]:
        """Split an amount by ratio; rounding residue goes to capital."""
        interest = int(round(amount_cents * self.interest))
        fees = int(round(amount_cents * self.fees))
        return amount_cents - interest - fees, interest, fees

    def to_dict(self) -> Dict[str, float]:
        return {"capital": self.capital, "interest": self.interest, "fees": self.fees}


@dataclass
class ExpenseTypeHint:
    """Secondary expense-type suggestion learned from patterns."""
    expense_type_id: str
    confidence: float
    pattern_id: Optional[str] = None


@dataclass
class MatchSuggestion:
    """
    Best proposal for one bank entry, recomputed on every pass.

    For grouped modes, grouped_entries holds every bank entry in the group,
    the primary one included.
    """
    bank_entry_id: str
    mode: MatchMode
    target_type: TargetType
    confidence: float

    # Existing records to link (empty for create)
    targets: List[LedgerRecord] = field(default_factory=list)
    grouped_entries: List[BankEntry] = field(default_factory=list)

    # Explanation
    reason: str = ""
    explanation: Optional[ScoreExplanation] = None
    strategy: str = ""

    # Create hints
    loan_id: Optional[str] = None
    investor_id: Optional[str] = None
    expense_type_id: Optional[str] = None
    pattern_id: Optional[str] = None
    default_split: Optional[SplitRatios] = None
    expense_type_hint: Optional[ExpenseTypeHint] = None

    @property
    def target_ids(self) -> List[str]:
        return [t.id for t in self.targets]

    @property
    def target_keys(self) -> List[str]:
        return [t.key for t in self.targets]

    @property
    def bank_entry_ids(self) -> List[str]:
        if self.grouped_entries:
            return [e.id for e in self.grouped_entries]
        return [self.bank_entry_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank_entry_id": self.bank_entry_id,
            "mode": self.mode.value,
            "target_type": self.target_type.value,
            "confidence": round(self.confidence, 4),
            "targets": [t.to_dict() for t in self.targets],
            "bank_entry_ids": self.bank_entry_ids,
            "reason": self.reason,
            "explanation": self.explanation.to_dict() if self.explanation else None,
            "strategy": self.strategy,
            "loan_id": self.loan_id,
            "investor_id": self.investor_id,
            "expense_type_id": self.expense_type_id,
            "pattern_id": self.pattern_id,
            "default_split": self.default_split.to_dict() if self.default_split else None,
            "expense_type_hint": (
                {
                    "expense_type_id": self.expense_type_hint.expense_type_id,
                    "confidence": round(self.expense_type_hint.confidence, 4),
                }
                if self.expense_type_hint else None
            ),
        }


@dataclass
class ManualChoice:
    """
    A reviewed or hand-built reconciliation decision.

    With record_ids it links existing records (one-to-one, one bank entry to
    many records, or many bank entries to one record). Without, it creates a
    record of target_type from the bank entry.
    """
    bank_entry_ids: List[str]
    target_type: TargetType
    record_ids: List[str] = field(default_factory=list)

    # Owner for creates
    loan_id: Optional[str] = None
    investor_id: Optional[str] = None
    expense_type_id: Optional[str] = None

    # User-confirmed split (cents); None lets the engine decide
    principal_cents: Optional[int] = None
    interest_cents: Optional[int] = None
    fees_cents: Optional[int] = None
    capital_cents: Optional[int] = None

    description: str = ""
    notes: str = ""
    pattern_id: Optional[str] = None

    @property
    def bank_entry_id(self) -> str:
        return self.bank_entry_ids[0]

    @property
    def mode(self) -> MatchMode:
        if not self.record_ids:
            return MatchMode.CREATE
        if len(self.bank_entry_ids) > 1:
            if self.target_type == TargetType.LOAN_DISBURSEMENT:
                return MatchMode.GROUPED_DISBURSEMENT
            return MatchMode.GROUPED_INVESTOR
        if len(self.record_ids) > 1:
            return MatchMode.MATCH_GROUP
        return MatchMode.MATCH


@dataclass
class ClaimSet:
    """
    Records and bank entries consumed within one suggestion pass.
    Lifetime is a single pass; never shared between passes.
    """
    record_keys: Set[str] = field(default_factory=set)
    bank_entry_ids: Set[str] = field(default_factory=set)

    def is_record_claimed(self, record: LedgerRecord) -> bool:
        return record.key in self.record_keys

    def is_entry_claimed(self, bank_entry_id: str) -> bool:
        return bank_entry_id in self.bank_entry_ids

    def claim(self, suggestion: MatchSuggestion) -> None:
        self.record_keys.update(suggestion.target_keys)
        self.bank_entry_ids.update(suggestion.bank_entry_ids)


@dataclass
class ReconciliationLink:
    """Audit record tying a bank entry to one ledger record."""
    id: str = field(default_factory=lambda: str(uuid4()))
    bank_entry_id: str = ""
    record_id: Optional[str] = None
    record_pool: Optional[LedgerPool] = None
    amount_cents: int = 0
    reconciliation_type: TargetType = TargetType.LOAN_REPAYMENT
    was_created: bool = False
    notes: str = ""
    group_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def record_key(self) -> Optional[str]:
        if self.record_id is None or self.record_pool is None:
            return None
        return record_key(self.record_pool, self.record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bank_entry_id": self.bank_entry_id,
            "record_id": self.record_id,
            "record_pool": self.record_pool.value if self.record_pool else None,
            "amount_cents": self.amount_cents,
            "reconciliation_type": self.reconciliation_type.value,
            "was_created": self.was_created,
            "notes": self.notes,
            "group_id": self.group_id,
        }


@dataclass
class ReconciliationOutcome:
    """Result of one apply/undo/offset operation."""
    bank_entry_ids: List[str] = field(default_factory=list)
    status: OutcomeStatus = OutcomeStatus.SUCCEEDED
    failure: Optional[FailureKind] = None
    message: str = ""
    links: List[ReconciliationLink] = field(default_factory=list)
    created_record_ids: List[str] = field(default_factory=list)
    needs_manual_cleanup: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank_entry_ids": self.bank_entry_ids,
            "status": self.status.value,
            "failure": self.failure.value if self.failure else None,
            "message": self.message,
            "links": [link.to_dict() for link in self.links],
            "created_record_ids": self.created_record_ids,
            "needs_manual_cleanup": self.needs_manual_cleanup,
        }


@dataclass
class BulkResult:
    """Summary of a batch apply or undo."""
    outcomes: List[ReconciliationOutcome] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False

    def add(self, outcome: ReconciliationOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == OutcomeStatus.SUCCEEDED:
            self.succeeded += 1
        elif outcome.status == OutcomeStatus.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def summary(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "reasons": [
                {"bank_entry_ids": o.bank_entry_ids, "status": o.status.value, "message": o.message}
                for o in self.outcomes
                if o.status != OutcomeStatus.SUCCEEDED
            ],
        }


@dataclass
class AuditEntry:
    """An entry in the audit log."""
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    # Action
    action: AuditAction = AuditAction.SUGGESTION_PASS

    # Context
    bank_entry_ids: List[str] = field(default_factory=list)
    record_ids: List[str] = field(default_factory=list)

    # Details
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    # Outcome
    success: bool = True
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "bank_entry_ids": self.bank_entry_ids,
            "record_ids": self.record_ids,
            "message": self.message,
            "details": self.details,
            "success": self.success,
            "error_message": self.error_message,
        }
