"""
Conflict Detector - advisory overlap check across suggestions.

Two bank entries conflict when their suggestions reference the same ledger
record or consume the same grouped bank entry. Detection never changes
suggestions; it drives batch-selection safety.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Set

import structlog

from ..models import MatchSuggestion

logger = structlog.get_logger()


def _target_keys(suggestion: MatchSuggestion) -> List[str]:
    keys = list(suggestion.target_keys)
    if suggestion.grouped_entries:
        keys.extend(f"bank:{entry_id}" for entry_id in suggestion.bank_entry_ids)
    return keys


class ConflictDetector:
    """Inverted target index over a suggestion map."""

    def detect(self, suggestions: Mapping[str, MatchSuggestion]) -> Dict[str, Set[str]]:
        """
        Map each conflicting bank entry id to the ids it conflicts with.

        Only link modes are considered; create suggestions reference no
        existing record.
        """
        index: Dict[str, List[str]] = {}
        for entry_id, suggestion in suggestions.items():
            if not suggestion.mode.is_link:
                continue
            for key in _target_keys(suggestion):
                owners = index.setdefault(key, [])
                if entry_id not in owners:
                    owners.append(entry_id)

        conflicts: Dict[str, Set[str]] = {}
        for key, owners in index.items():
            if len(owners) < 2:
                continue
            for owner in owners:
                conflicts.setdefault(owner, set()).update(o for o in owners if o != owner)

        if conflicts:
            logger.info("Suggestion conflicts detected", entries=len(conflicts))
        return conflicts

    @staticmethod
    def toggle_selection(
        selection: Iterable[str],
        entry_id: str,
        conflicts: Mapping[str, Set[str]],
    ) -> Set[str]:
        """
        Toggle an entry in a selection set.

        Selecting an entry deselects every entry it conflicts with.
        """
        updated = set(selection)
        if entry_id in updated:
            updated.discard(entry_id)
            return updated
        updated.add(entry_id)
        updated.difference_update(conflicts.get(entry_id, set()))
        return updated

    @staticmethod
    def select_confident(
        suggestions: Mapping[str, MatchSuggestion],
        min_confidence: float = 0.9,
        conflicts: Optional[Mapping[str, Set[str]]] = None,
    ) -> List[str]:
        """
        Entry ids safe to accept in bulk, most confident first.

        An entry is skipped when one of its targets is already taken by a
        higher-ranked selection.
        """
        ranked = sorted(
            (s for s in suggestions.values() if s.confidence >= min_confidence),
            key=lambda s: -s.confidence,
        )
        taken: Set[str] = set()
        selected: List[str] = []
        for suggestion in ranked:
            keys = set(_target_keys(suggestion)) | {f"bank:{i}" for i in suggestion.bank_entry_ids}
            if keys & taken:
                continue
            if conflicts and any(other in selected for other in conflicts.get(suggestion.bank_entry_id, ())):
                continue
            taken.update(keys)
            selected.append(suggestion.bank_entry_id)
        return selected
