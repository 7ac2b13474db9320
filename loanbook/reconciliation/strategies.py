"""
Match strategies evaluated in priority order by the Suggestion Builder.

Each strategy looks at one bank entry against the open ledger pools and
returns its single best suggestion, or None. Strategies never mutate the
claim set; the builder claims targets once an entry's winner is known.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from ..config import Settings
from ..models import (
    BankEntry,
    ClaimSet,
    Counterparty,
    Investor,
    LedgerKind,
    LedgerRecord,
    LedgerSnapshot,
    MatchMode,
    MatchSuggestion,
    TargetType,
    TransactionDirection,
)
from ..utils.text_similarity import keyword_similarity, normalize_name
from .grouping import CandidateGrouper, GroupCandidate
from .patterns import PatternStore
from .scoring import MatchScorer

logger = structlog.get_logger()

TARGET_TYPE_BY_KIND = {
    LedgerKind.REPAYMENT: TargetType.LOAN_REPAYMENT,
    LedgerKind.DISBURSEMENT: TargetType.LOAN_DISBURSEMENT,
    LedgerKind.CAPITAL_IN: TargetType.INVESTOR_CREDIT,
    LedgerKind.CAPITAL_OUT: TargetType.INVESTOR_WITHDRAWAL,
    LedgerKind.INTEREST_DEBIT: TargetType.INTEREST_WITHDRAWAL,
    LedgerKind.EXPENSE: TargetType.EXPENSE,
}

EXPENSE_KEYWORDS = (
    "expense", "expenses", "bill", "bills", "fee", "fees", "charge", "charges",
    "utilities", "rent", "insurance", "subscription", "office", "supplies", "maintenance",
    "professional", "legal", "accounting", "tax", "vat", "hmrc", "council", "electric", "gas", "water",
    "phone", "internet", "broadband", "software", "license", "licence",
)

# Names in these words alone say nothing about who the counterparty is
GENERIC_INVESTOR_WORDS = frozenset({
    "loan", "loans", "fund", "funding", "capital", "investment", "investments",
    "finance", "scheme", "limited", "ltd",
})

BASIC_EXPENSE_WORDS = EXPENSE_KEYWORDS[:6]


def has_keyword(description: str, keywords: Iterable[str]) -> bool:
    text = (description or "").lower()
    return any(kw in text for kw in keywords)


def _format_cents(cents: int) -> str:
    return f"{abs(cents) / 100:,.2f}"


@dataclass
class MatchContext:
    """
    Read-only view of one suggestion pass: the snapshot, the ordered bank
    entries and the open records of each kind.
    """
    snapshot: LedgerSnapshot
    entries: List[BankEntry]
    scorer: MatchScorer
    grouper: CandidateGrouper
    settings: Settings
    pattern_store: Optional[PatternStore] = None
    open_by_kind: Dict[LedgerKind, List[LedgerRecord]] = field(default_factory=dict)

    def __post_init__(self):
        if not self.open_by_kind:
            for kind in LedgerKind:
                self.open_by_kind[kind] = self.snapshot.open_records([kind])

    def available(self, kind: LedgerKind, claims: ClaimSet) -> List[LedgerRecord]:
        """Open records of a kind not yet claimed in this pass."""
        return [r for r in self.open_by_kind.get(kind, []) if not claims.is_record_claimed(r)]

    def counterparty(self, record: LedgerRecord) -> Optional[Counterparty]:
        return self.snapshot.counterparty_for(record)


class MatchStrategy:
    """
    Base class for one step of the suggestion cascade.

    ceiling: the strategy only runs while the best score so far is below it
    direction: restricts the strategy to credits or debits
    """
    name = "strategy"
    ceiling: Optional[float] = None
    direction: Optional[TransactionDirection] = None

    def applies_to(self, entry: BankEntry) -> bool:
        return self.direction is None or entry.direction == self.direction

    def try_match(
        self,
        entry: BankEntry,
        context: MatchContext,
        claims: ClaimSet,
    ) -> Optional[MatchSuggestion]:
        raise NotImplementedError


class DirectMatchStrategy(MatchStrategy):
    """One bank entry against one open record of the given kinds."""

    def __init__(self, name: str, kinds: Tuple[LedgerKind, ...]):
        self.name = name
        self.kinds = kinds

    def try_match(self, entry, context, claims):
        best: Optional[MatchSuggestion] = None
        for kind in self.kinds:
            if kind.direction != entry.direction:
                continue
            for record in context.available(kind, claims):
                counterparty = context.counterparty(record)
                result = context.scorer.score(entry, record, counterparty)
                if result.score <= 0:
                    continue
                if best is not None and result.score <= best.confidence:
                    continue
                best = MatchSuggestion(
                    bank_entry_id=entry.id,
                    mode=MatchMode.MATCH,
                    target_type=TARGET_TYPE_BY_KIND[kind],
                    confidence=result.score,
                    targets=[record],
                    reason=self._reason(record, counterparty),
                    explanation=result.explanation,
                    strategy=self.name,
                    loan_id=record.loan_id,
                    investor_id=record.investor_id,
                    expense_type_id=record.expense_type_id,
                )
        return best

    @staticmethod
    def _reason(record: LedgerRecord, counterparty: Optional[Counterparty]) -> str:
        label = TARGET_TYPE_BY_KIND[record.kind].value.replace("_", " ").capitalize()
        who = counterparty.display_name if counterparty else (record.description or "Unknown")
        return f"{label}: {who} - {_format_cents(record.amount_cents)}"


class GroupedDisbursementStrategy(MatchStrategy):
    """Several debits on the statement paying out one loan disbursement."""
    name = "grouped_disbursement"
    direction = TransactionDirection.DEBIT

    def __init__(self, ceiling: float):
        self.ceiling = ceiling

    def try_match(self, entry, context, claims):
        best: Optional[MatchSuggestion] = None
        for record in context.available(LedgerKind.DISBURSEMENT, claims):
            counterparty = context.counterparty(record)
            candidate = context.grouper.group_bank_entries(
                entry, context.entries, record, counterparty, claims
            )
            if candidate is None:
                continue
            score = context.grouper.score_bank_group(
                candidate, context.scorer.name_score(entry, counterparty)
            )
            if best is None or score > best.confidence:
                loan = context.snapshot.loan(record.loan_id)
                who = counterparty.display_name if counterparty else "Unknown"
                best = MatchSuggestion(
                    bank_entry_id=entry.id,
                    mode=MatchMode.GROUPED_DISBURSEMENT,
                    target_type=TargetType.LOAN_DISBURSEMENT,
                    confidence=score,
                    targets=[record],
                    grouped_entries=list(candidate.members),
                    reason=(
                        f"Split disbursement: {candidate.size} payments -> "
                        f"{loan.loan_number if loan else 'Unknown'} ({who})"
                    ),
                    strategy=self.name,
                    loan_id=record.loan_id,
                )
        return best


class _RecordGroupStrategy(MatchStrategy):
    """Shared plumbing for one entry settling a group of records."""

    def _suggest(
        self,
        entry: BankEntry,
        candidate: GroupCandidate,
        target_type: TargetType,
        score: float,
        reason: str,
        loan_id: Optional[str] = None,
        investor_id: Optional[str] = None,
    ) -> MatchSuggestion:
        return MatchSuggestion(
            bank_entry_id=entry.id,
            mode=MatchMode.MATCH_GROUP,
            target_type=target_type,
            confidence=score,
            targets=list(candidate.members),
            reason=reason,
            strategy=self.name,
            loan_id=loan_id,
            investor_id=investor_id,
        )


class GroupedRepaymentStrategy(_RecordGroupStrategy):
    """One credit settling several repayments of the same borrower."""
    name = "grouped_repayment"
    direction = TransactionDirection.CREDIT

    def __init__(self, ceiling: float):
        self.ceiling = ceiling

    def try_match(self, entry, context, claims):
        by_borrower: Dict[str, List[LedgerRecord]] = {}
        for record in context.available(LedgerKind.REPAYMENT, claims):
            borrower = context.snapshot.borrower_for_loan(record.loan_id)
            if borrower is None:
                continue
            by_borrower.setdefault(borrower.id, []).append(record)

        best: Optional[MatchSuggestion] = None
        for borrower_id, records in by_borrower.items():
            if len(records) < 2:
                continue
            candidate = context.grouper.group_records(
                entry, records, context.settings.repayment_group_window_days
            )
            if candidate is None:
                continue
            borrower = context.snapshot.borrower(borrower_id)
            counterparty = context.counterparty(candidate.members[0])
            score = context.grouper.with_name_bonus(
                0.92 if candidate.all_same_day else 0.85,
                context.scorer.name_score(entry, counterparty),
            )
            if best is None or score > best.confidence:
                best = self._suggest(
                    entry,
                    candidate,
                    TargetType.LOAN_REPAYMENT,
                    score,
                    f"Grouped repayments: {borrower.display_name} - {candidate.size} payments "
                    f"= {_format_cents(candidate.total_cents)}",
                )
        return best


class SharedContactRepaymentStrategy(_RecordGroupStrategy):
    """
    One credit settling repayments of distinct borrowers sharing an email.

    Kept separate from name matching so it can be switched off with
    enable_shared_contact_grouping.
    """
    name = "shared_contact_repayment"
    direction = TransactionDirection.CREDIT

    def __init__(self, ceiling: float):
        self.ceiling = ceiling

    def try_match(self, entry, context, claims):
        if not context.settings.enable_shared_contact_grouping:
            return None

        borrowers_by_email: Dict[str, List[str]] = {}
        for borrower in context.snapshot.borrowers:
            email = (borrower.email or "").strip().lower()
            if email:
                borrowers_by_email.setdefault(email, []).append(borrower.id)

        repayments = context.available(LedgerKind.REPAYMENT, claims)
        best: Optional[MatchSuggestion] = None
        for email, borrower_ids in borrowers_by_email.items():
            if len(borrower_ids) < 2:
                continue
            combined = []
            for record in repayments:
                borrower = context.snapshot.borrower_for_loan(record.loan_id)
                if borrower is not None and borrower.id in borrower_ids:
                    combined.append(record)
            if len(combined) < 2:
                continue
            candidate = context.grouper.group_records(
                entry, combined, context.settings.repayment_group_window_days
            )
            if candidate is None:
                continue
            score = 0.90 if candidate.all_same_day else 0.82
            if best is None or score > best.confidence:
                best = self._suggest(
                    entry,
                    candidate,
                    TargetType.LOAN_REPAYMENT,
                    score,
                    f"Email-grouped repayments: {email} - {candidate.size} payments "
                    f"= {_format_cents(candidate.total_cents)}",
                )
        return best


class GroupedInvestorStrategy(_RecordGroupStrategy):
    """
    Investor groupings: several same-investor capital or interest records
    settled by one entry, or several entries paying one capital movement.
    """
    name = "grouped_investor"

    def __init__(self, ceiling: float):
        self.ceiling = ceiling

    def try_match(self, entry, context, claims):
        if entry.is_credit:
            record_kinds = (LedgerKind.CAPITAL_IN,)
            capital_kind = LedgerKind.CAPITAL_IN
        else:
            record_kinds = (LedgerKind.CAPITAL_OUT, LedgerKind.INTEREST_DEBIT)
            capital_kind = LedgerKind.CAPITAL_OUT

        best: Optional[MatchSuggestion] = None
        for kind in record_kinds:
            suggestion = self._same_investor_group(entry, context, claims, kind)
            if suggestion and (best is None or suggestion.confidence > best.confidence):
                best = suggestion

        suggestion = self._multi_entry_group(entry, context, claims, capital_kind)
        if suggestion and (best is None or suggestion.confidence > best.confidence):
            best = suggestion
        return best

    def _same_investor_group(self, entry, context, claims, kind):
        by_investor: Dict[str, List[LedgerRecord]] = {}
        for record in context.available(kind, claims):
            if record.investor_id:
                by_investor.setdefault(record.investor_id, []).append(record)

        best: Optional[MatchSuggestion] = None
        for investor_id, records in by_investor.items():
            if len(records) < 2:
                continue
            candidate = context.grouper.group_records(entry, records, context.settings.group_anchor_window_days)
            if candidate is None:
                continue
            score = 0.92 if candidate.all_same_day else 0.90
            if best is None or score > best.confidence:
                investor = context.snapshot.investor(investor_id)
                best = self._suggest(
                    entry,
                    candidate,
                    TARGET_TYPE_BY_KIND[kind],
                    score,
                    f"Grouped {'interest' if kind == LedgerKind.INTEREST_DEBIT else 'capital'}: "
                    f"{investor.display_name if investor else 'Unknown'} - {candidate.size} entries "
                    f"= {_format_cents(candidate.total_cents)}",
                    investor_id=investor_id,
                )
        return best

    def _multi_entry_group(self, entry, context, claims, kind):
        best: Optional[MatchSuggestion] = None
        for record in context.available(kind, claims):
            counterparty = context.counterparty(record)
            candidate = context.grouper.group_bank_entries(
                entry, context.entries, record, counterparty, claims
            )
            if candidate is None:
                continue
            score = context.grouper.score_bank_group(
                candidate, context.scorer.name_score(entry, counterparty)
            )
            if best is None or score > best.confidence:
                best = MatchSuggestion(
                    bank_entry_id=entry.id,
                    mode=MatchMode.GROUPED_INVESTOR,
                    target_type=TARGET_TYPE_BY_KIND[kind],
                    confidence=score,
                    targets=[record],
                    grouped_entries=list(candidate.members),
                    reason=(
                        f"Split investor payment: {candidate.size} entries -> "
                        f"{counterparty.display_name if counterparty else 'Unknown'}"
                    ),
                    strategy=self.name,
                    investor_id=record.investor_id,
                )
        return best


class CrossPoolInvestorStrategy(_RecordGroupStrategy):
    """One debit paying an investor's capital withdrawal plus interest."""
    name = "cross_pool_investor"
    direction = TransactionDirection.DEBIT

    def __init__(self, ceiling: float):
        self.ceiling = ceiling

    def try_match(self, entry, context, claims):
        capital_by_investor: Dict[str, List[LedgerRecord]] = {}
        for record in context.available(LedgerKind.CAPITAL_OUT, claims):
            if record.investor_id:
                capital_by_investor.setdefault(record.investor_id, []).append(record)
        interest_by_investor: Dict[str, List[LedgerRecord]] = {}
        for record in context.available(LedgerKind.INTEREST_DEBIT, claims):
            if record.investor_id:
                interest_by_investor.setdefault(record.investor_id, []).append(record)

        for investor_id, capital in capital_by_investor.items():
            interest = interest_by_investor.get(investor_id)
            if not interest:
                continue
            candidate = context.grouper.group_cross_pool(
                entry, capital, interest, context.settings.group_anchor_window_days
            )
            if candidate is None:
                continue
            investor = context.snapshot.investor(investor_id)
            return self._suggest(
                entry,
                candidate,
                TargetType.INVESTOR_WITHDRAWAL,
                0.92,
                f"Capital + interest: {investor.display_name if investor else 'Unknown'} "
                f"= {_format_cents(candidate.total_cents)}",
                investor_id=investor_id,
            )
        return None


class LearnedPatternStrategy(MatchStrategy):
    """Create suggestion inherited from a learned description pattern."""
    name = "learned_pattern"

    def __init__(self, ceiling: float):
        self.ceiling = ceiling

    def try_match(self, entry, context, claims):
        if context.pattern_store is None:
            return None
        match = context.pattern_store.find_best(entry)
        if match is None:
            return None
        pattern = match.pattern
        return MatchSuggestion(
            bank_entry_id=entry.id,
            mode=MatchMode.CREATE,
            target_type=pattern.target_type,
            confidence=match.score,
            reason=f'Pattern: "{pattern.description_pattern}" (used {pattern.match_count}x)',
            strategy=self.name,
            loan_id=pattern.loan_id,
            investor_id=pattern.investor_id,
            expense_type_id=pattern.expense_type_id,
            pattern_id=pattern.id,
            default_split=pattern.split_ratios,
        )


class ExpenseKeywordStrategy(MatchStrategy):
    """Debits whose description uses expense vocabulary become new expenses."""
    name = "expense_keyword"
    direction = TransactionDirection.DEBIT

    def __init__(self, ceiling: float, confidence: float):
        self.ceiling = ceiling
        self.confidence = confidence

    def try_match(self, entry, context, claims):
        if not has_keyword(entry.description, EXPENSE_KEYWORDS):
            return None
        return MatchSuggestion(
            bank_entry_id=entry.id,
            mode=MatchMode.CREATE,
            target_type=TargetType.EXPENSE,
            confidence=self.confidence,
            reason="Description contains expense keyword",
            strategy=self.name,
        )


class BorrowerNameStrategy(MatchStrategy):
    """Fallback: description resembles the borrower of a live loan."""
    name = "borrower_name"

    def __init__(self, ceiling: float, threshold: float):
        self.ceiling = ceiling
        self.threshold = threshold

    def try_match(self, entry, context, claims):
        if has_keyword(entry.description, BASIC_EXPENSE_WORDS):
            return None

        best: Optional[MatchSuggestion] = None
        for loan in context.snapshot.loans:
            if not loan.is_live:
                continue
            borrower = context.snapshot.borrower(loan.borrower_id)
            if borrower is None:
                continue
            similarity = keyword_similarity(entry.description, borrower.display_name)
            if similarity <= self.threshold:
                continue
            if best is None or similarity > best.confidence:
                best = MatchSuggestion(
                    bank_entry_id=entry.id,
                    mode=MatchMode.CREATE,
                    target_type=(
                        TargetType.LOAN_REPAYMENT if entry.is_credit else TargetType.LOAN_DISBURSEMENT
                    ),
                    confidence=similarity,
                    reason=f"Borrower name: {borrower.display_name} ({round(similarity * 100)}%)",
                    strategy=self.name,
                    loan_id=loan.id,
                )
        return best


class InvestorNameStrategy(MatchStrategy):
    """Fallback: description resembles an active investor's name."""
    name = "investor_name"

    def __init__(self, ceiling: float, threshold: float):
        self.ceiling = ceiling
        self.threshold = threshold

    def try_match(self, entry, context, claims):
        if has_keyword(entry.description, BASIC_EXPENSE_WORDS):
            return None

        best: Optional[MatchSuggestion] = None
        for investor in context.snapshot.investors:
            if not investor.is_active or self._is_generic(investor):
                continue
            similarity = max(
                keyword_similarity(entry.description, investor.name),
                keyword_similarity(entry.description, investor.business_name),
            )
            if similarity <= self.threshold:
                continue
            if best is None or similarity > best.confidence:
                best = MatchSuggestion(
                    bank_entry_id=entry.id,
                    mode=MatchMode.CREATE,
                    target_type=(
                        TargetType.INVESTOR_CREDIT if entry.is_credit else TargetType.INVESTOR_WITHDRAWAL
                    ),
                    confidence=similarity,
                    reason=f"Investor name: {investor.display_name} ({round(similarity * 100)}%)",
                    strategy=self.name,
                    investor_id=investor.id,
                )
        return best

    @staticmethod
    def _is_generic(investor: Investor) -> bool:
        words = normalize_name(f"{investor.name} {investor.business_name}").split()
        return not words or all(w in GENERIC_INVESTOR_WORDS for w in words)


def default_strategies(settings: Settings) -> List[MatchStrategy]:
    """The cascade in fixed priority order."""
    grouped = settings.grouped_search_ceiling
    return [
        DirectMatchStrategy("direct_loan", (LedgerKind.REPAYMENT, LedgerKind.DISBURSEMENT)),
        DirectMatchStrategy("direct_investor_capital", (LedgerKind.CAPITAL_IN, LedgerKind.CAPITAL_OUT)),
        DirectMatchStrategy("direct_investor_interest", (LedgerKind.INTEREST_DEBIT,)),
        DirectMatchStrategy("direct_expense", (LedgerKind.EXPENSE,)),
        GroupedDisbursementStrategy(grouped),
        GroupedRepaymentStrategy(grouped),
        SharedContactRepaymentStrategy(grouped),
        GroupedInvestorStrategy(grouped),
        CrossPoolInvestorStrategy(grouped),
        LearnedPatternStrategy(settings.pattern_lookup_ceiling),
        ExpenseKeywordStrategy(settings.expense_keyword_ceiling, settings.expense_keyword_confidence),
        BorrowerNameStrategy(settings.borrower_name_ceiling, settings.borrower_name_threshold),
        InvestorNameStrategy(settings.investor_name_ceiling, settings.investor_name_threshold),
    ]
