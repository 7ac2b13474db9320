"""
Match Scorer - pair confidence for a (bank entry, ledger record) candidate.

Amount classification and date proximity are combined through a fixed
score table; a counterparty name found in the bank description boosts
the score. Everything here is pure and reproducible from its inputs.
"""

from datetime import date
from typing import Optional

from ..config import Settings, get_settings
from ..models import (
    AmountMatch,
    BankEntry,
    Counterparty,
    ExplanationPart,
    LedgerRecord,
    ScoreExplanation,
    ScoreResult,
    Severity,
)
from ..utils.text_similarity import description_contains_name

EXACT_TOLERANCE_PCT = 0.1
CLOSE_TOLERANCE_PCT = 5.0

# (amount bucket, max day difference or None for any, score); first hit wins
SCORE_TABLE = (
    (AmountMatch.EXACT, 0, 0.95),
    (AmountMatch.EXACT, 3, 0.85),
    (AmountMatch.EXACT, 7, 0.75),
    (AmountMatch.CLOSE, 0, 0.70),
    (AmountMatch.CLOSE, 3, 0.60),
    (AmountMatch.EXACT, 14, 0.50),
    (AmountMatch.CLOSE, 7, 0.45),
    (AmountMatch.EXACT, 30, 0.30),
    (AmountMatch.CLOSE, 14, 0.25),
    (AmountMatch.EXACT, None, 0.10),
    (AmountMatch.CLOSE, None, 0.10),
)

PROXIMITY_BUCKETS = (
    (0, 1.0),
    (1, 0.95),
    (3, 0.85),
    (7, 0.70),
    (14, 0.50),
    (30, 0.30),
)


def amounts_match(amount1_cents: int, amount2_cents: int, tolerance_pct: float = 1.0) -> bool:
    """Compare absolute amounts within a percentage of the larger one."""
    a1 = abs(amount1_cents)
    a2 = abs(amount2_cents)
    if a1 == 0 and a2 == 0:
        return True
    if a1 == 0 or a2 == 0:
        return False
    return abs(a1 - a2) * 100 <= max(a1, a2) * tolerance_pct + 1e-9


def classify_amount(
    amount1_cents: int,
    amount2_cents: int,
    exact_pct: float = EXACT_TOLERANCE_PCT,
    close_pct: float = CLOSE_TOLERANCE_PCT,
) -> AmountMatch:
    if amounts_match(amount1_cents, amount2_cents, exact_pct):
        return AmountMatch.EXACT
    if amounts_match(amount1_cents, amount2_cents, close_pct):
        return AmountMatch.CLOSE
    return AmountMatch.NONE


def days_between(date1: Optional[date], date2: Optional[date]) -> Optional[int]:
    if date1 is None or date2 is None:
        return None
    return abs((date1 - date2).days)


def dates_within_days(date1: Optional[date], date2: Optional[date], days: int) -> bool:
    diff = days_between(date1, date2)
    return diff is not None and diff <= days


def date_proximity_score(date1: Optional[date], date2: Optional[date]) -> float:
    """Bucketed proximity in [0, 1]; a missing date scores 0."""
    diff = days_between(date1, date2)
    if diff is None:
        return 0.0
    for max_days, score in PROXIMITY_BUCKETS:
        if diff <= max_days:
            return score
    return 0.1


def _format_cents(cents: int) -> str:
    return f"{cents / 100:,.2f}"


def _amount_explanation(bucket: AmountMatch, diff_cents: int) -> ExplanationPart:
    if bucket == AmountMatch.EXACT:
        return ExplanationPart("Exact match", Severity.OK)
    if bucket == AmountMatch.CLOSE:
        return ExplanationPart(f"Within 5% ({_format_cents(diff_cents)} difference)", Severity.WARNING)
    return ExplanationPart(f"{_format_cents(diff_cents)} difference", Severity.BAD)


def _date_explanation(diff: Optional[int]) -> ExplanationPart:
    if diff is None:
        return ExplanationPart("Date unknown", Severity.UNKNOWN)
    if diff == 0:
        return ExplanationPart("Same day", Severity.OK)
    if diff <= 3:
        return ExplanationPart(f"{diff} day{'s' if diff > 1 else ''} apart", Severity.OK)
    if diff <= 7:
        return ExplanationPart(f"{diff} days apart", Severity.WARNING)
    if diff <= 14:
        return ExplanationPart(f"{diff} days apart (moderate gap)", Severity.WARNING)
    return ExplanationPart(f"{diff} days apart (large gap)", Severity.BAD)


def calculate_match_score(
    entry: BankEntry,
    record: LedgerRecord,
    date_field: str = "record_date",
    exact_pct: float = EXACT_TOLERANCE_PCT,
    close_pct: float = CLOSE_TOLERANCE_PCT,
) -> ScoreResult:
    """
    Score a bank entry against a ledger record.

    Args:
        entry: Bank statement line
        record: Candidate ledger record
        date_field: Attribute of the record holding the date to compare

    Returns:
        ScoreResult with the table score and its explanation
    """
    bucket = classify_amount(entry.amount_cents, record.amount_cents, exact_pct, close_pct)
    diff = days_between(entry.statement_date, getattr(record, date_field, None))

    score = 0.0
    if bucket != AmountMatch.NONE:
        for row_bucket, max_days, row_score in SCORE_TABLE:
            if row_bucket != bucket:
                continue
            if max_days is None or (diff is not None and diff <= max_days):
                score = row_score
                break

    explanation = ScoreExplanation(
        amount=_amount_explanation(bucket, abs(entry.abs_cents - abs(record.amount_cents))),
        date=_date_explanation(diff),
        days_apart=diff,
    )
    return ScoreResult(score=score, explanation=explanation, amount_match=bucket)


def apply_name_boost(score: float, name_score: float, weight: float = 0.15, cap: float = 0.99) -> float:
    """Raise a positive score by a weighted name-containment score."""
    if score <= 0 or name_score <= 0:
        return score
    return min(cap, score + name_score * weight)


class MatchScorer:
    """Pair scorer with counterparty name boost, configured from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def score(
        self,
        entry: BankEntry,
        record: LedgerRecord,
        counterparty: Optional[Counterparty] = None,
        date_field: str = "record_date",
    ) -> ScoreResult:
        result = calculate_match_score(
            entry,
            record,
            date_field=date_field,
            exact_pct=self.settings.exact_tolerance_pct,
            close_pct=self.settings.close_tolerance_pct,
        )
        if counterparty is None or result.score <= 0:
            return result

        name_score = self.name_score(entry, counterparty)
        boosted = apply_name_boost(
            result.score,
            name_score,
            weight=self.settings.name_boost_weight,
            cap=self.settings.name_boost_cap,
        )
        if boosted == result.score:
            return result
        return ScoreResult(score=boosted, explanation=result.explanation, amount_match=result.amount_match)

    @staticmethod
    def name_score(entry: BankEntry, counterparty: Optional[Counterparty]) -> float:
        if counterparty is None:
            return 0.0
        return description_contains_name(
            entry.description, counterparty.name, counterparty.business_name
        )
