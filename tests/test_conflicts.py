"""
Tests for the Conflict Detector.
"""

import pytest
from datetime import date

from loanbook.models import LedgerKind, MatchMode, MatchSuggestion, TargetType
from loanbook.reconciliation.conflicts import ConflictDetector

from conftest import make_entry, make_record


def suggestion(entry_id, mode, targets=(), grouped=(), confidence=0.9):
    return MatchSuggestion(
        bank_entry_id=entry_id,
        mode=mode,
        target_type=TargetType.LOAN_REPAYMENT,
        confidence=confidence,
        targets=list(targets),
        grouped_entries=list(grouped),
    )


@pytest.fixture
def record():
    return make_record("rep1", LedgerKind.REPAYMENT, 50000, date(2024, 3, 10))


class TestConflictDetector:
    def test_shared_record_conflicts(self, record):
        """Two entries both scoring 0.9 against one repayment conflict with each other."""
        suggestions = {
            "e1": suggestion("e1", MatchMode.MATCH, [record]),
            "e2": suggestion("e2", MatchMode.MATCH, [record]),
        }

        conflicts = ConflictDetector().detect(suggestions)

        assert conflicts == {"e1": {"e2"}, "e2": {"e1"}}

    def test_selecting_one_deselects_the_other(self, record):
        """Selecting a suggestion drops its conflicting sibling from the selection."""
        suggestions = {
            "e1": suggestion("e1", MatchMode.MATCH, [record]),
            "e2": suggestion("e2", MatchMode.MATCH, [record]),
        }
        conflicts = ConflictDetector().detect(suggestions)

        selection = ConflictDetector.toggle_selection(set(), "e1", conflicts)
        assert selection == {"e1"}
        selection = ConflictDetector.toggle_selection(selection, "e2", conflicts)
        assert selection == {"e2"}
        selection = ConflictDetector.toggle_selection(selection, "e2", conflicts)
        assert selection == set()

    def test_same_id_in_different_pools_is_not_a_conflict(self):
        """Targets are keyed by pool, so equal ids in two pools do not clash."""
        repayment = make_record("x", LedgerKind.REPAYMENT, 100, date(2024, 3, 10))
        capital = make_record("x", LedgerKind.CAPITAL_IN, 100, date(2024, 3, 10))
        suggestions = {
            "e1": suggestion("e1", MatchMode.MATCH, [repayment]),
            "e2": suggestion("e2", MatchMode.MATCH, [capital]),
        }
        assert ConflictDetector().detect(suggestions) == {}

    def test_shared_grouped_entry(self):
        """Test that a grouped bank member counts as a shared target."""
        disbursement_a = make_record("d1", LedgerKind.DISBURSEMENT, 1000, date(2024, 3, 10))
        disbursement_b = make_record("d2", LedgerKind.DISBURSEMENT, 1000, date(2024, 3, 10))
        e1 = make_entry("e1", -600, date(2024, 3, 10))
        e2 = make_entry("e2", -400, date(2024, 3, 10))
        e3 = make_entry("e3", -600, date(2024, 3, 10))
        suggestions = {
            "e1": suggestion("e1", MatchMode.GROUPED_DISBURSEMENT, [disbursement_a], [e1, e2]),
            "e3": suggestion("e3", MatchMode.GROUPED_DISBURSEMENT, [disbursement_b], [e3, e2]),
        }

        conflicts = ConflictDetector().detect(suggestions)

        assert conflicts == {"e1": {"e3"}, "e3": {"e1"}}

    def test_create_suggestions_ignored(self):
        """Create suggestions have no targets to conflict over."""
        suggestions = {
            "e1": suggestion("e1", MatchMode.CREATE),
            "e2": suggestion("e2", MatchMode.CREATE),
        }
        assert ConflictDetector().detect(suggestions) == {}

    def test_select_confident_skips_taken_targets(self, record):
        """Confident selection takes the stronger claim and skips the weaker one."""
        other = make_record("rep2", LedgerKind.REPAYMENT, 20000, date(2024, 3, 10))
        suggestions = {
            "e1": suggestion("e1", MatchMode.MATCH, [record], confidence=0.92),
            "e2": suggestion("e2", MatchMode.MATCH, [record], confidence=0.95),
            "e3": suggestion("e3", MatchMode.MATCH, [other], confidence=0.91),
            "e4": suggestion("e4", MatchMode.CREATE, confidence=0.5),
        }

        selected = ConflictDetector.select_confident(suggestions, min_confidence=0.9)

        assert selected == ["e2", "e3"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
