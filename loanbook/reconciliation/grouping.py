"""
Candidate Grouper - bounded subset-sum search for grouped matches.

Finds small groups (2 to 5 members) whose absolute amounts sum to a target
within tolerance:
- several bank entries paying one ledger record (anchored on one entry)
- several records of one counterparty settled by one bank entry
- a capital leg plus an interest leg of the same investor (cross-pool)

The search is exhaustive only within the small candidate window and
prefers the smallest valid group. It is deterministic for a given input
order.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TypeVar, Union

import structlog

from ..config import Settings, get_settings
from ..models import BankEntry, ClaimSet, Counterparty, LedgerPool, LedgerRecord
from ..utils.text_similarity import description_contains_name, group_has_related_descriptions
from .scoring import amounts_match, dates_within_days

logger = structlog.get_logger()

Item = TypeVar("Item", BankEntry, LedgerRecord)
Member = Union[BankEntry, LedgerRecord]

MIN_GROUP_SIZE = 2


def _cents(item: Member) -> int:
    return abs(item.amount_cents)


def _find_combo_of_size(
    candidates: Sequence[Item],
    size: int,
    chosen: List[Item],
    chosen_cents: int,
    target_cents: int,
    tolerance_pct: float,
    ceiling_cents: float,
    accept: Optional[Callable[[List[Item]], bool]],
) -> Optional[List[Item]]:
    if size == 0:
        if not amounts_match(chosen_cents, target_cents, tolerance_pct):
            return None
        if accept is not None and not accept(chosen):
            return None
        return list(chosen)

    for index in range(len(candidates) - size + 1):
        item = candidates[index]
        running = chosen_cents + _cents(item)
        if running > ceiling_cents:
            continue
        combo = _find_combo_of_size(
            candidates[index + 1:],
            size - 1,
            chosen + [item],
            running,
            target_cents,
            tolerance_pct,
            ceiling_cents,
            accept,
        )
        if combo is not None:
            return combo
    return None


def find_subset_sum(
    items: Sequence[Item],
    target_cents: int,
    anchor_id: Optional[str] = None,
    tolerance_pct: float = 1.0,
    max_size: int = 5,
    accept: Optional[Callable[[List[Item]], bool]] = None,
) -> Optional[List[Item]]:
    """
    Find the smallest group whose amounts sum to the target.

    Args:
        items: Candidate entries or records, in priority order
        target_cents: Amount the group must reach
        anchor_id: Member that must be part of the group
        tolerance_pct: Allowed deviation of the group total
        max_size: Largest group size, anchor included
        accept: Extra predicate a complete group must satisfy

    Returns:
        The group (anchor first when given), or None when there is no
        group or when the anchor alone already matches the target
    """
    target_cents = abs(target_cents)
    ceiling = target_cents * (1 + tolerance_pct / 100) + 1e-9

    if anchor_id is not None:
        anchor = next((item for item in items if item.id == anchor_id), None)
        if anchor is None:
            return None
        if amounts_match(_cents(anchor), target_cents, tolerance_pct):
            return None
        others = [item for item in items if item.id != anchor_id]
        chosen: List[Item] = [anchor]
        min_extra = MIN_GROUP_SIZE - 1
    else:
        others = list(items)
        chosen = []
        min_extra = MIN_GROUP_SIZE

    max_extra = min(len(others), max_size - len(chosen))
    chosen_cents = sum(_cents(item) for item in chosen)

    for size in range(min_extra, max_extra + 1):
        combo = _find_combo_of_size(
            others, size, chosen, chosen_cents, target_cents, tolerance_pct, ceiling, accept
        )
        if combo is not None:
            return combo
    return None


@dataclass
class GroupCandidate:
    """A validated group plus the date flags used to score it."""
    members: List[Member]
    all_same_day: bool
    all_near_target: bool

    @property
    def total_cents(self) -> int:
        return sum(_cents(m) for m in self.members)

    @property
    def size(self) -> int:
        return len(self.members)


class CandidateGrouper:
    """
    Grouped-match search over bank entries and ledger pools.

    Scoring of groups is discrete and stays below the score of a clean
    single exact same-day match.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.tolerance_pct = self.settings.group_tolerance_pct
        self.max_size = self.settings.group_max_size
        self.anchor_window = self.settings.group_anchor_window_days
        self.target_window = self.settings.group_target_window_days

    def group_bank_entries(
        self,
        anchor: BankEntry,
        bank_entries: Sequence[BankEntry],
        target: LedgerRecord,
        counterparty: Optional[Counterparty],
        claims: ClaimSet,
    ) -> Optional[GroupCandidate]:
        """
        Find bank entries, the anchor included, that together pay one record.

        Candidates share the anchor's direction, are unreconciled and
        unclaimed, and fall within the anchor window. Every member must be
        within the target window of the record date, and members must have
        related descriptions or name the counterparty.
        """
        target_cents = abs(target.amount_cents)
        if amounts_match(anchor.abs_cents, target_cents, self.tolerance_pct):
            return None
        if anchor.abs_cents * 100 > target_cents * (100 + self.tolerance_pct):
            return None

        nearby = [
            other for other in bank_entries
            if other.direction == anchor.direction
            and not other.is_reconciled
            and (other.id == anchor.id or not claims.is_entry_claimed(other.id))
            and dates_within_days(anchor.statement_date, other.statement_date, self.anchor_window)
        ]

        def valid(group: List[BankEntry]) -> bool:
            if not all(
                dates_within_days(e.statement_date, target.record_date, self.target_window)
                for e in group
            ):
                return False
            if group_has_related_descriptions([e.description for e in group]):
                return True
            return self._group_names_counterparty(group, counterparty)

        group = find_subset_sum(
            nearby,
            target_cents,
            anchor_id=anchor.id,
            tolerance_pct=self.tolerance_pct,
            max_size=self.max_size,
            accept=valid,
        )
        if group is None:
            return None

        all_same_day = all(
            dates_within_days(e.statement_date, anchor.statement_date, 0) for e in group
        )
        all_near_target = all(
            dates_within_days(e.statement_date, target.record_date, 3) for e in group
        )
        logger.debug(
            "Bank entry group found",
            anchor_id=anchor.id,
            target_id=target.id,
            size=len(group),
        )
        return GroupCandidate(members=group, all_same_day=all_same_day, all_near_target=all_near_target)

    def group_records(
        self,
        entry: BankEntry,
        records: Sequence[LedgerRecord],
        window_days: int,
    ) -> Optional[GroupCandidate]:
        """Find records, all near the entry date, whose amounts sum to the entry."""
        nearby = [
            r for r in records
            if dates_within_days(entry.statement_date, r.record_date, window_days)
        ]
        if len(nearby) < MIN_GROUP_SIZE:
            return None

        group = find_subset_sum(
            nearby,
            entry.abs_cents,
            tolerance_pct=self.tolerance_pct,
            max_size=self.max_size,
        )
        if group is None:
            return None

        all_same_day = all(dates_within_days(r.record_date, entry.statement_date, 1) for r in group)
        return GroupCandidate(members=group, all_same_day=all_same_day, all_near_target=True)

    def group_cross_pool(
        self,
        entry: BankEntry,
        capital_records: Sequence[LedgerRecord],
        interest_records: Sequence[LedgerRecord],
        window_days: int,
    ) -> Optional[GroupCandidate]:
        """
        Sum one investor's capital leg and interest leg to a single entry.
        The group needs at least one member from each pool.
        """
        capital = [r for r in capital_records if dates_within_days(entry.statement_date, r.record_date, window_days)]
        interest = [r for r in interest_records if dates_within_days(entry.statement_date, r.record_date, window_days)]
        if not capital or not interest:
            return None

        def spans_both_pools(group: List[LedgerRecord]) -> bool:
            pools = {r.pool for r in group}
            return LedgerPool.INVESTOR_TRANSACTIONS in pools and LedgerPool.INVESTOR_INTEREST in pools

        group = find_subset_sum(
            capital + interest,
            entry.abs_cents,
            tolerance_pct=self.tolerance_pct,
            max_size=self.max_size,
            accept=spans_both_pools,
        )
        if group is None:
            return None

        all_same_day = all(dates_within_days(r.record_date, entry.statement_date, 1) for r in group)
        return GroupCandidate(members=group, all_same_day=all_same_day, all_near_target=True)

    def score_bank_group(self, candidate: GroupCandidate, name_score: float = 0.0) -> float:
        """Confidence of a bank-entry group from its date flags and name score."""
        if candidate.all_same_day and candidate.all_near_target:
            score = 0.92
        elif candidate.all_same_day:
            score = 0.75
        elif candidate.all_near_target:
            score = 0.80
        else:
            score = 0.60
        return self.with_name_bonus(score, name_score)

    def with_name_bonus(self, score: float, name_score: float) -> float:
        if name_score <= 0:
            return score
        return min(score + name_score * self.settings.group_name_boost_weight, self.settings.group_score_cap)

    @staticmethod
    def _group_names_counterparty(group: List[BankEntry], counterparty: Optional[Counterparty]) -> bool:
        if counterparty is None:
            return False
        return any(
            description_contains_name(e.description, counterparty.name, counterparty.business_name) > 0.5
            for e in group
        )
