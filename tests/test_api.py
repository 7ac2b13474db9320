"""
Tests for the HTTP API.
"""

import json
from pathlib import Path

import pytest
from datetime import date

from fastapi.testclient import TestClient

from loanbook.ledger import InMemoryLedgerStore
from loanbook.main import create_app
from loanbook.models import LedgerKind
from loanbook.reconciliation import PatternStore

from conftest import make_entry, make_record


@pytest.fixture
def store(borrower, loan, repayment_record):
    store = InMemoryLedgerStore()
    store.add_borrower(borrower)
    store.add_loan(loan)
    store.add_records([
        repayment_record,
        make_record("rep2", LedgerKind.REPAYMENT, 20000, date(2024, 3, 12), loan_id=loan.id),
    ])
    store.add_bank_entries([
        make_entry("e1", 50000, date(2024, 3, 10), "FPS JOHN SMITH"),
        make_entry("e2", 20000, date(2024, 3, 12), "FPS JOHN SMITH"),
        make_entry("e3", -240000, date(2024, 3, 14), "HMRC VAT PAYMENT"),
    ])
    return store


@pytest.fixture
def client(store, settings):
    app = create_app(store=store, pattern_store=PatternStore(settings=settings), settings=settings)
    with TestClient(app) as client:
        yield client


class TestAPI:
    def test_health(self, client):
        """Health endpoint answers."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_suggestions(self, client):
        """Suggestions list a match for e1 and an expense create for the HMRC debit."""
        data = client.get("/api/suggestions").json()

        by_entry = {s["bank_entry_id"]: s for s in data["suggestions"]}
        assert by_entry["e1"]["mode"] == "match"
        assert by_entry["e1"]["targets"][0]["id"] == "rep1"
        assert by_entry["e3"]["mode"] == "create"
        assert by_entry["e3"]["target_type"] == "expense"
        assert data["conflicts"] == {}
        assert data["stats"]["suggested"] == 3

    def test_reconcile_current_suggestion(self, client, store):
        """Applying the current suggestion reconciles the entry and drops it from the next pass."""
        response = client.post("/api/reconcile/e1")

        assert response.status_code == 200
        assert response.json()["status"] == "succeeded"
        assert store.bank_entries["e1"].is_reconciled
        assert "e1" not in {s["bank_entry_id"] for s in client.get("/api/suggestions").json()["suggestions"]}

    def test_reconcile_unknown_entry(self, client):
        """Unknown bank entry is a 404."""
        assert client.post("/api/reconcile/nope").status_code == 404

    def test_manual_choice(self, client, store, settings):
        """A manual expense choice creates the record and persists patterns."""
        response = client.post(
            "/api/reconcile/e3",
            json={"manual": {"target_type": "expense", "expense_type_id": "tax", "description": "VAT Q1"}},
        )

        assert response.status_code == 200
        record_id = response.json()["created_record_ids"][0]
        assert store.records[record_id].description == "VAT Q1"
        assert settings.patterns_file.exists()

    def test_failed_choice_is_conflict(self, client):
        """A choice the orchestrator rejects comes back as 409."""
        response = client.post("/api/reconcile/e1", json={"manual": {"target_type": "expense"}})

        assert response.status_code == 409
        assert response.json()["failure"] == "validation_failure"

    def test_bulk_confident(self, client, store):
        """Bulk apply without a selection takes only confident suggestions."""
        response = client.post("/api/reconcile/bulk", json={})

        summary = response.json()["summary"]
        # The expense-keyword create sits below the bulk threshold
        assert summary["succeeded"] == 2
        assert store.bank_entries["e1"].is_reconciled
        assert store.bank_entries["e2"].is_reconciled
        assert not store.bank_entries["e3"].is_reconciled

    def test_bulk_selection_unknown(self, client):
        """Selecting an entry without a suggestion is a 404."""
        response = client.post("/api/reconcile/bulk", json={"entry_ids": ["zzz"]})
        assert response.status_code == 404

    def test_offset_and_undo(self, client, store):
        """Test offsetting a refund and its reversal, then undoing from one side."""
        store.add_bank_entries([
            make_entry("o1", 7000, date(2024, 3, 10), "REFUND"),
            make_entry("o2", -7000, date(2024, 3, 10), "REFUND REVERSAL"),
        ])

        response = client.post("/api/offset", json={"bank_entry_ids": ["o1", "o2"], "notes": "Reversed refund"})
        assert response.status_code == 200
        assert store.bank_entries["o2"].is_reconciled

        response = client.post("/api/undo/o1")
        assert response.json()["status"] == "succeeded"
        assert not store.bank_entries["o2"].is_reconciled

    def test_offset_validation(self, client):
        """An offset of one entry fails request validation."""
        response = client.post("/api/offset", json={"bank_entry_ids": ["e1"], "notes": "x"})
        assert response.status_code == 422

    def test_audit_summary(self, client):
        """Audit summary counts suggestion passes and links."""
        client.get("/api/suggestions")
        client.post("/api/reconcile/e1")

        summary = client.get("/api/audit/summary").json()

        assert summary["action_counts"]["suggestion_pass"] == 2
        assert summary["action_counts"]["match_linked"] == 1

    def test_audit_export(self, client, settings):
        """Export writes the trail under the reports directory."""
        client.post("/api/reconcile/e1")

        data = client.post("/api/audit/export").json()

        path = Path(data["path"])
        assert path.parent == settings.reports_dir
        report = json.loads(path.read_text(encoding="utf-8"))
        assert report["total_entries"] == data["total_entries"]
        assert report["action_counts"]["match_linked"] == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
