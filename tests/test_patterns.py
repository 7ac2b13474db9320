"""
Tests for the Pattern Store.
"""

import json
import pytest
from datetime import date

from loanbook.models import SplitRatios, TargetType, TransactionDirection
from loanbook.reconciliation.patterns import (
    PatternStore,
    fingerprint,
    keyword_match_score,
)

from conftest import make_entry


@pytest.fixture
def store(settings):
    return PatternStore(settings=settings)


class TestFingerprint:
    def test_fingerprint(self):
        """Fingerprint keeps the vendor words."""
        assert fingerprint("ACME LTD INVOICE 123456") == "acme invoice"

    def test_keyword_match_score(self):
        """Test weighted keyword scoring of entry against pattern tokens."""
        # exact "acme" plus "inv" contained in "invoice"
        assert keyword_match_score(["acme", "inv"], ["acme", "invoice"]) == pytest.approx(0.85)

    def test_fuzzy_token(self):
        """Near-identical tokens still score."""
        assert keyword_match_score(["stationary"], ["stationery"]) == pytest.approx(0.5)

    def test_no_overlap(self):
        """No shared tokens, no score."""
        assert keyword_match_score(["tesco"], ["acme"]) == 0.0


class TestLearning:
    def test_learn_creates_pattern(self, store):
        """Learning a new fingerprint creates a pattern at initial confidence."""
        entry = make_entry("e1", -10000, date(2024, 3, 1), "ACME LTD INVOICE")

        pattern = store.learn(entry, TargetType.EXPENSE, expense_type_id="supplies")

        assert len(store) == 1
        assert pattern.keyword_fingerprint == "acme invoice"
        assert pattern.amount_min_cents == 8000
        assert pattern.amount_max_cents == 12000
        assert pattern.direction == TransactionDirection.DEBIT
        assert pattern.confidence_score == pytest.approx(0.6)
        assert pattern.match_count == 1

    def test_repeat_reinforces(self, store):
        """Learning the same description again reinforces the pattern."""
        store.learn(make_entry("e1", -10000, date(2024, 3, 1), "ACME LTD INVOICE"), TargetType.EXPENSE)
        pattern = store.learn(make_entry("e2", -10500, date(2024, 4, 1), "ACME INVOICE"), TargetType.EXPENSE)

        assert len(store) == 1
        assert pattern.match_count == 2
        assert pattern.confidence_score == pytest.approx(0.7)

    def test_different_target_type_is_new_pattern(self, store):
        """Same text with another target type starts a new pattern."""
        store.learn(make_entry("e1", -10000, date(2024, 3, 1), "ACME INVOICE"), TargetType.EXPENSE)
        store.learn(
            make_entry("e2", -10000, date(2024, 3, 1), "ACME INVOICE"),
            TargetType.INVESTOR_WITHDRAWAL,
            investor_id="inv1",
        )
        assert len(store) == 2

    def test_reinforce_caps_confidence(self, store):
        """Confidence is capped at one however often it is reinforced."""
        pattern = store.learn(make_entry("e1", -10000, date(2024, 3, 1), "ACME INVOICE"), TargetType.EXPENSE)
        for _ in range(10):
            store.reinforce(pattern.id, 0.1)
        assert pattern.confidence_score == 1.0
        assert pattern.match_count == 11

    def test_reinforce_unknown(self, store):
        """Reinforcing an unknown pattern returns None."""
        assert store.reinforce("missing", 0.1) is None

    def test_empty_fingerprint_not_learned(self, store):
        """Descriptions with no usable words are not learned."""
        assert store.learn(make_entry("e1", -100, date(2024, 3, 1), "12345678"), TargetType.EXPENSE) is None
        assert len(store) == 0


class TestLookup:
    def test_fuzzy_match_inherits_target(self, store):
        """A later "ACME LTD INV 2" debit finds the "acme invoice" pattern."""
        store.learn(
            make_entry("e1", -10000, date(2024, 3, 1), "ACME LTD INVOICE"),
            TargetType.EXPENSE,
            expense_type_id="supplies",
        )

        match = store.find_best(make_entry("e2", -9500, date(2024, 4, 1), "ACME LTD INV 2"))

        assert match is not None
        assert match.keyword_score >= 0.5
        assert match.pattern.target_type == TargetType.EXPENSE
        assert match.score == pytest.approx(0.6 * 0.6 + 0.85 * 0.25 + 1 / 20)

    def test_direction_and_amount_band(self, store):
        """Lookups respect direction and the amount band."""
        store.learn(make_entry("e1", -10000, date(2024, 3, 1), "ACME INVOICE"), TargetType.EXPENSE)

        assert store.find_best(make_entry("e2", 10000, date(2024, 4, 1), "ACME INVOICE")) is None
        assert store.find_best(make_entry("e3", -20000, date(2024, 4, 1), "ACME INVOICE")) is None

    def test_best_pattern_wins(self, store):
        """The strongest pattern is returned."""
        weak = store.learn(make_entry("e1", -10000, date(2024, 3, 1), "ACME INVOICE"), TargetType.EXPENSE)
        strong = store.learn(
            make_entry("e2", -10000, date(2024, 3, 1), "ACME INVOICE"),
            TargetType.INVESTOR_WITHDRAWAL,
        )
        store.reinforce(strong.id, 0.3)

        match = store.find_best(make_entry("e3", -10000, date(2024, 4, 1), "ACME INVOICE"))

        assert match.pattern.id == strong.id
        assert match.pattern.id != weak.id

    def test_expense_type_hint(self, store):
        """Test suggesting an expense type from learned patterns."""
        store.learn(
            make_entry("e1", -10000, date(2024, 3, 1), "OFFICE DEPOT"),
            TargetType.EXPENSE,
            expense_type_id="office",
        )

        match = store.suggest_expense_type(make_entry("e2", -500000, date(2024, 4, 1), "OFFICE DEPOT"))

        assert match.pattern.expense_type_id == "office"
        assert store.suggest_expense_type(make_entry("e3", 500000, date(2024, 4, 1), "OFFICE DEPOT")) is None


class TestPersistence:
    def test_save_and_load(self, store, settings, tmp_path):
        """Patterns survive a save and load."""
        store.learn(
            make_entry("e1", -10000, date(2024, 3, 1), "ACME INVOICE"),
            TargetType.INVESTOR_WITHDRAWAL,
            investor_id="inv1",
            split_ratios=SplitRatios(capital=0.8, interest=0.2),
        )
        path = store.save(tmp_path / "patterns.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["total_patterns"] == 1

        loaded = PatternStore.load(path, settings=settings)
        pattern = loaded.patterns[0]
        assert pattern.keyword_fingerprint == "acme invoice"
        assert pattern.target_type == TargetType.INVESTOR_WITHDRAWAL
        assert pattern.investor_id == "inv1"
        assert pattern.split_ratios.interest == pytest.approx(0.2)

    def test_load_missing_file(self, settings, tmp_path):
        """A missing file loads as an empty store."""
        assert len(PatternStore.load(tmp_path / "missing.json", settings=settings)) == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
