"""
Suggestion Builder - one deterministic pass over unreconciled bank entries.

Entries are processed oldest first (input order breaks date ties). Each
entry runs through the strategy cascade; the highest-scoring proposal at
or above the acceptance floor wins and claims its records and grouped bank
entries so no later entry can propose them again within the pass.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional
import time

import structlog

from ..config import Settings, get_settings
from ..models import (
    AuditAction,
    AuditEntry,
    BankEntry,
    ClaimSet,
    ExpenseTypeHint,
    LedgerSnapshot,
    MatchSuggestion,
)
from .grouping import CandidateGrouper
from .patterns import PatternStore
from .scoring import MatchScorer
from .strategies import MatchContext, MatchStrategy, default_strategies

logger = structlog.get_logger()

# A suggestion this confident with an expense type needs no pattern hint
HINT_SKIP_CONFIDENCE = 0.7


@dataclass
class SuggestionPass:
    """Result of one suggestion pass."""
    suggestions: Dict[str, MatchSuggestion] = field(default_factory=dict)
    claims: ClaimSet = field(default_factory=ClaimSet)
    unmatched_entry_ids: List[str] = field(default_factory=list)
    expense_type_hints: Dict[str, ExpenseTypeHint] = field(default_factory=dict)
    stats: Dict[str, int] = field(default_factory=dict)
    audit_entries: List[AuditEntry] = field(default_factory=list)

    def ordered(self) -> List[MatchSuggestion]:
        return list(self.suggestions.values())


def _processing_order(entries: List[BankEntry]) -> List[BankEntry]:
    indexed = list(enumerate(entries))
    indexed.sort(key=lambda pair: (pair[1].statement_date or date.max, pair[0]))
    return [entry for _, entry in indexed]


class SuggestionBuilder:
    """
    Runs the strategy cascade over a ledger snapshot.

    Strategies run in list order; a strategy with a ceiling only runs while
    the entry's best score is below it.
    """

    def __init__(
        self,
        pattern_store: Optional[PatternStore] = None,
        strategies: Optional[List[MatchStrategy]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.pattern_store = pattern_store
        self.strategies = strategies if strategies is not None else default_strategies(self.settings)
        self.scorer = MatchScorer(self.settings)
        self.grouper = CandidateGrouper(self.settings)

    def build(self, snapshot: LedgerSnapshot) -> SuggestionPass:
        """
        Compute at most one suggestion per unreconciled bank entry.

        Args:
            snapshot: Bank entries and ledger pools at a point in time

        Returns:
            SuggestionPass keyed by the primary bank entry id
        """
        start_time = time.time()
        entries = _processing_order(snapshot.unreconciled_entries())
        context = MatchContext(
            snapshot=snapshot,
            entries=entries,
            scorer=self.scorer,
            grouper=self.grouper,
            settings=self.settings,
            pattern_store=self.pattern_store,
        )
        result = SuggestionPass()
        claims = result.claims
        grouped_members = 0

        logger.info(
            "Starting suggestion pass",
            entries=len(entries),
            open_records=sum(len(records) for records in context.open_by_kind.values()),
        )

        for entry in entries:
            if claims.is_entry_claimed(entry.id):
                grouped_members += 1
                continue

            best = self.best_suggestion(entry, context, claims)
            if best is None or best.confidence < self.settings.acceptance_floor:
                result.unmatched_entry_ids.append(entry.id)
                continue

            claims.claim(best)
            result.suggestions[entry.id] = best
            logger.debug(
                "Suggestion accepted",
                bank_entry_id=entry.id,
                strategy=best.strategy,
                mode=best.mode.value,
                confidence=round(best.confidence, 3),
            )

        # A later anchor's group may take entries that found nothing on their own
        late_members = [i for i in result.unmatched_entry_ids if claims.is_entry_claimed(i)]
        if late_members:
            grouped_members += len(late_members)
            result.unmatched_entry_ids = [
                i for i in result.unmatched_entry_ids if not claims.is_entry_claimed(i)
            ]

        self._attach_expense_hints(entries, result)

        result.stats = {
            "entries": len(entries),
            "suggested": len(result.suggestions),
            "grouped_members": grouped_members,
            "unmatched": len(result.unmatched_entry_ids),
            "expense_hints": len(result.expense_type_hints),
        }
        for suggestion in result.suggestions.values():
            key = f"strategy_{suggestion.strategy}"
            result.stats[key] = result.stats.get(key, 0) + 1

        elapsed = time.time() - start_time
        result.audit_entries.append(AuditEntry(
            action=AuditAction.SUGGESTION_PASS,
            bank_entry_ids=list(result.suggestions.keys()),
            message=(
                f"Suggestion pass: {len(result.suggestions)} suggestions for "
                f"{len(entries)} unreconciled entries"
            ),
            details={**result.stats, "elapsed_seconds": round(elapsed, 3)},
        ))

        logger.info("Suggestion pass complete", elapsed_seconds=round(elapsed, 3), **result.stats)
        return result

    def best_suggestion(
        self,
        entry: BankEntry,
        context: MatchContext,
        claims: ClaimSet,
    ) -> Optional[MatchSuggestion]:
        """Highest-scoring proposal of the cascade for one entry, floor not applied."""
        best: Optional[MatchSuggestion] = None
        for strategy in self.strategies:
            best_score = best.confidence if best else 0.0
            if strategy.ceiling is not None and best_score >= strategy.ceiling:
                continue
            if not strategy.applies_to(entry):
                continue

            candidate = strategy.try_match(entry, context, claims)
            if candidate is not None and candidate.confidence > best_score:
                best = candidate
        return best

    def _attach_expense_hints(self, entries: List[BankEntry], result: SuggestionPass) -> None:
        if self.pattern_store is None:
            return

        for entry in entries:
            if entry.is_credit:
                continue
            # Members of another entry's group carry no hint of their own
            if result.claims.is_entry_claimed(entry.id) and entry.id not in result.suggestions:
                continue
            suggestion = result.suggestions.get(entry.id)
            if (
                suggestion is not None
                and suggestion.expense_type_id
                and suggestion.confidence >= HINT_SKIP_CONFIDENCE
            ):
                continue

            match = self.pattern_store.suggest_expense_type(entry)
            if match is None:
                continue

            hint = ExpenseTypeHint(
                expense_type_id=match.pattern.expense_type_id,
                confidence=match.score,
                pattern_id=match.pattern.id,
            )
            result.expense_type_hints[entry.id] = hint
            if suggestion is not None:
                suggestion.expense_type_hint = hint
