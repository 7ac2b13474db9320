"""
Tests for the Reconciliation Orchestrator.
"""

import pytest
from datetime import date

from loanbook.ledger import InMemoryLedgerStore
from loanbook.models import (
    AuditAction,
    FailureKind,
    Investor,
    LedgerKind,
    LoanStatus,
    ManualChoice,
    MatchMode,
    MatchSuggestion,
    OutcomeStatus,
    ScheduleStatus,
    SplitRatios,
    TargetType,
)
from loanbook.reconciliation import PatternStore, PersistenceError, ReconciliationOrchestrator

from conftest import make_entry, make_record


@pytest.fixture
def store(borrower, loan, investor, repayment_record):
    store = InMemoryLedgerStore()
    store.add_borrower(borrower)
    store.add_loan(loan)
    store.add_investor(investor)
    store.add_records([repayment_record])
    return store


@pytest.fixture
def patterns(settings):
    return PatternStore(settings=settings)


@pytest.fixture
def orchestrator(store, patterns, settings):
    return ReconciliationOrchestrator(store, pattern_store=patterns, settings=settings)


def link_choice(entry_ids, record_ids, target_type=TargetType.LOAN_REPAYMENT):
    return ManualChoice(bank_entry_ids=list(entry_ids), target_type=target_type, record_ids=list(record_ids))


class TestLinkExisting:
    @pytest.mark.asyncio
    async def test_match(self, orchestrator, store):
        """Test linking one bank entry to one existing repayment."""
        store.add_bank_entries([make_entry("e1", 50000, date(2024, 3, 10), "FPS JOHN SMITH")])

        outcome = await orchestrator.apply(link_choice(["e1"], ["rep1"]))

        assert outcome.succeeded
        assert len(outcome.links) == 1
        link = outcome.links[0]
        assert link.record_id == "rep1"
        assert link.amount_cents == 50000
        assert not link.was_created
        assert link.notes == "Matched to existing transaction"
        assert store.bank_entries["e1"].is_reconciled
        assert store.records["rep1"].is_reconciled
        assert orchestrator.audit_logger.get_entries(action_filter=AuditAction.MATCH_LINKED.value)

    @pytest.mark.asyncio
    async def test_match_from_suggestion(self, orchestrator, store, repayment_record):
        """A suggestion applies the same way as a manual choice."""
        store.add_bank_entries([make_entry("e1", 50000, date(2024, 3, 10))])
        suggestion = MatchSuggestion(
            bank_entry_id="e1",
            mode=MatchMode.MATCH,
            target_type=TargetType.LOAN_REPAYMENT,
            confidence=0.95,
            targets=[repayment_record],
        )

        outcome = await orchestrator.apply(suggestion, auto=True)

        assert outcome.succeeded
        assert outcome.links[0].reconciliation_type == TargetType.LOAN_REPAYMENT

    @pytest.mark.asyncio
    async def test_imbalanced_link_fails(self, orchestrator, store):
        """Amounts that do not balance write nothing."""
        store.add_bank_entries([make_entry("e1", 51000, date(2024, 3, 10))])

        outcome = await orchestrator.apply(link_choice(["e1"], ["rep1"]))

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.failure == FailureKind.IMBALANCED_GROUP
        assert not store.bank_entries["e1"].is_reconciled
        assert store.links == {}

    @pytest.mark.asyncio
    async def test_one_cent_tolerance(self, orchestrator, store):
        """One cent of difference still balances."""
        store.add_bank_entries([make_entry("e1", 50001, date(2024, 3, 10))])
        outcome = await orchestrator.apply(link_choice(["e1"], ["rep1"]))
        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_reconciled_record_is_stale(self, orchestrator, store):
        """A record reconciled in the meantime makes the apply stale."""
        store.add_bank_entries([
            make_entry("e1", 50000, date(2024, 3, 10)),
            make_entry("e2", 50000, date(2024, 3, 10)),
        ])
        await orchestrator.apply(link_choice(["e1"], ["rep1"]))

        outcome = await orchestrator.apply(link_choice(["e2"], ["rep1"]))

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.failure == FailureKind.STALE_REFERENCE
        assert not store.bank_entries["e2"].is_reconciled

    @pytest.mark.asyncio
    async def test_reconciled_entry_is_stale(self, orchestrator, store):
        """An already reconciled bank entry is skipped."""
        store.add_bank_entries([make_entry("e1", 50000, date(2024, 3, 10), is_reconciled=True)])
        outcome = await orchestrator.apply(link_choice(["e1"], ["rep1"]))
        assert outcome.status == OutcomeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_direction_mismatch(self, orchestrator, store):
        """A debit cannot settle a repayment."""
        store.add_bank_entries([make_entry("e1", -50000, date(2024, 3, 10))])
        outcome = await orchestrator.apply(link_choice(["e1"], ["rep1"]))
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.failure == FailureKind.VALIDATION_FAILURE

    @pytest.mark.asyncio
    async def test_match_group(self, orchestrator, store, loan):
        """One credit links to several repayments, one link each."""
        store.add_records([
            make_record("r1", LedgerKind.REPAYMENT, 10000, date(2024, 3, 10), loan_id=loan.id),
            make_record("r2", LedgerKind.REPAYMENT, 20000, date(2024, 3, 10), loan_id=loan.id),
        ])
        store.add_bank_entries([make_entry("e1", 30000, date(2024, 3, 10))])

        outcome = await orchestrator.apply(link_choice(["e1"], ["r1", "r2"]))

        assert outcome.succeeded
        assert [link.amount_cents for link in outcome.links] == [10000, 20000]
        assert outcome.links[0].notes == "Grouped match: 2 transactions"

    @pytest.mark.asyncio
    async def test_grouped_disbursement_shares_group_id(self, orchestrator, store, loan):
        """Links of a grouped disbursement share one group id."""
        store.add_records([make_record("d1", LedgerKind.DISBURSEMENT, 100000, date(2024, 3, 10), loan_id=loan.id)])
        store.add_bank_entries([
            make_entry("e1", -60000, date(2024, 3, 10)),
            make_entry("e2", -40000, date(2024, 3, 11)),
        ])
        choice = link_choice(["e1", "e2"], ["d1"], TargetType.LOAN_DISBURSEMENT)
        assert choice.mode == MatchMode.GROUPED_DISBURSEMENT

        outcome = await orchestrator.apply(choice)

        assert outcome.succeeded
        group_ids = {link.group_id for link in outcome.links}
        assert len(group_ids) == 1 and None not in group_ids
        assert [link.amount_cents for link in outcome.links] == [60000, 40000]
        assert store.bank_entries["e1"].is_reconciled and store.bank_entries["e2"].is_reconciled

    @pytest.mark.asyncio
    async def test_net_receipt(self, orchestrator, store):
        """Mixed credit and debit settle one record at their net amount."""
        store.add_bank_entries([
            make_entry("e1", 60000, date(2024, 3, 10)),
            make_entry("e2", -10000, date(2024, 3, 10)),
        ])
        outcome = await orchestrator.apply(link_choice(["e1", "e2"], ["rep1"]))
        assert outcome.succeeded
        assert [link.amount_cents for link in outcome.links] == [60000, -10000]

    @pytest.mark.asyncio
    async def test_many_entries_to_many_records_rejected(self, orchestrator, store, loan):
        """Several bank entries may only settle one record, never several."""
        store.add_records([
            make_record("r1", LedgerKind.REPAYMENT, 50000, date(2024, 3, 10), loan_id=loan.id),
            make_record("r2", LedgerKind.REPAYMENT, 50000, date(2024, 3, 10), loan_id=loan.id),
        ])
        store.add_bank_entries([
            make_entry("e1", 60000, date(2024, 3, 10)),
            make_entry("e2", 40000, date(2024, 3, 10)),
        ])

        outcome = await orchestrator.apply(link_choice(["e1", "e2"], ["r1", "r2"]))

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.failure == FailureKind.VALIDATION_FAILURE
        assert store.links == {}
        assert not store.records["r1"].is_reconciled
        assert not store.records["r2"].is_reconciled
        assert not store.bank_entries["e1"].is_reconciled

    @pytest.mark.asyncio
    async def test_repeated_entry_counted_once(self, orchestrator, store):
        """A bank entry listed twice links once and its amount counts once."""
        store.add_bank_entries([make_entry("e1", 50000, date(2024, 3, 10))])

        outcome = await orchestrator.apply(link_choice(["e1", "e1"], ["rep1", "rep1"]))

        assert outcome.succeeded
        assert outcome.bank_entry_ids == ["e1"]
        assert [(link.bank_entry_id, link.record_id) for link in outcome.links] == [("e1", "rep1")]
        assert outcome.links[0].notes == "Matched to existing transaction"


class TestCreateNew:
    @pytest.mark.asyncio
    async def test_repayment_uses_waterfall(self, orchestrator, store, loan, patterns):
        """Test that a created repayment is split by the payment waterfall."""
        store.add_bank_entries([make_entry("e1", 30000, date(2024, 3, 10), "FPS JOHN SMITH LOAN")])
        choice = ManualChoice(bank_entry_ids=["e1"], target_type=TargetType.LOAN_REPAYMENT, loan_id=loan.id)

        outcome = await orchestrator.apply(choice)

        assert outcome.succeeded
        record = store.records[outcome.created_record_ids[0]]
        assert record.kind == LedgerKind.REPAYMENT
        assert record.interest_cents == 2000
        assert record.principal_cents == 28000
        assert record.is_reconciled
        assert loan.schedule[0].status == ScheduleStatus.PARTIAL
        assert outcome.links[0].was_created
        assert len(patterns) == 1
        assert patterns.patterns[0].target_type == TargetType.LOAN_REPAYMENT

    @pytest.mark.asyncio
    async def test_repayment_closes_and_undo_reopens(self, orchestrator, store, loan):
        """Settling the schedule closes the loan; undo reopens it."""
        store.add_bank_entries([make_entry("e1", 103000, date(2024, 3, 10))])
        choice = ManualChoice(bank_entry_ids=["e1"], target_type=TargetType.LOAN_REPAYMENT, loan_id=loan.id)

        outcome = await orchestrator.apply(choice)

        assert outcome.succeeded
        assert loan.status == LoanStatus.CLOSED

        undone = await orchestrator.undo("e1")

        assert undone.succeeded
        assert loan.status == LoanStatus.LIVE
        assert all(row.total_paid_cents == 0 for row in loan.schedule)
        assert outcome.created_record_ids[0] not in store.records
        assert not store.bank_entries["e1"].is_reconciled

    @pytest.mark.asyncio
    async def test_user_split_must_equal_amount(self, orchestrator, store, loan):
        """A user split that misses the bank amount is rejected."""
        store.add_bank_entries([make_entry("e1", 30000, date(2024, 3, 10))])
        choice = ManualChoice(
            bank_entry_ids=["e1"],
            target_type=TargetType.LOAN_REPAYMENT,
            loan_id=loan.id,
            principal_cents=20000,
            interest_cents=5000,
        )

        outcome = await orchestrator.apply(choice)

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.failure == FailureKind.VALIDATION_FAILURE
        assert len(store.records) == 1

    @pytest.mark.asyncio
    async def test_user_split(self, orchestrator, store, loan):
        """A valid user split is stored as given."""
        store.add_bank_entries([make_entry("e1", 30000, date(2024, 3, 10))])
        choice = ManualChoice(
            bank_entry_ids=["e1"],
            target_type=TargetType.LOAN_REPAYMENT,
            loan_id=loan.id,
            principal_cents=27000,
            interest_cents=3000,
        )

        outcome = await orchestrator.apply(choice)

        record = store.records[outcome.created_record_ids[0]]
        assert (record.principal_cents, record.interest_cents) == (27000, 3000)
        assert loan.schedule[1].interest_paid_cents == 1000

    @pytest.mark.asyncio
    async def test_disbursement_and_undo(self, orchestrator, store, loan):
        """Disbursement raises the disbursed total; undo lowers it back."""
        store.add_bank_entries([make_entry("e1", -25000, date(2024, 3, 10), "PAYOUT")])
        choice = ManualChoice(bank_entry_ids=["e1"], target_type=TargetType.LOAN_DISBURSEMENT, loan_id=loan.id)

        await orchestrator.apply(choice)
        assert loan.disbursed_cents == 125000

        await orchestrator.undo("e1")
        assert loan.disbursed_cents == 100000

    @pytest.mark.asyncio
    async def test_investor_credit_and_undo(self, orchestrator, store, investor):
        """Investor credit raises balance and contributions; undo reverses both."""
        store.add_bank_entries([make_entry("e1", 100000, date(2024, 3, 10), "ALICE WALKER TOP UP")])
        choice = ManualChoice(bank_entry_ids=["e1"], target_type=TargetType.INVESTOR_CREDIT, investor_id=investor.id)

        outcome = await orchestrator.apply(choice)

        assert outcome.succeeded
        assert investor.current_capital_balance_cents == 600000
        assert investor.total_capital_contributed_cents == 600000

        await orchestrator.undo("e1")
        assert investor.current_capital_balance_cents == 500000
        assert investor.total_capital_contributed_cents == 500000

    @pytest.mark.asyncio
    async def test_manual_interest_withdrawal_accrues(self, orchestrator, store, patterns):
        """Manual-interest investors get an accrual before the interest debit."""
        investor = store.add_investor(Investor(
            id="inv2",
            name="Bob Stone",
            manual_interest=True,
            current_capital_balance_cents=100000,
        ))
        store.add_bank_entries([make_entry("e1", -25000, date(2024, 3, 10), "BOB STONE WITHDRAWAL")])
        choice = ManualChoice(
            bank_entry_ids=["e1"],
            target_type=TargetType.INVESTOR_WITHDRAWAL,
            investor_id=investor.id,
            capital_cents=20000,
            interest_cents=5000,
        )

        outcome = await orchestrator.apply(choice)

        assert outcome.succeeded
        kinds = [store.records[i].kind for i in outcome.created_record_ids]
        assert kinds == [LedgerKind.CAPITAL_OUT, LedgerKind.INTEREST_CREDIT, LedgerKind.INTEREST_DEBIT]
        assert outcome.links[1].notes == "Interest accrual"
        assert investor.current_capital_balance_cents == 80000
        assert patterns.patterns[0].split_ratios.interest == pytest.approx(0.2)

        await orchestrator.undo("e1")
        assert investor.current_capital_balance_cents == 100000
        assert all(i not in store.records for i in outcome.created_record_ids)

    @pytest.mark.asyncio
    async def test_withdrawal_split_from_pattern_ratios(self, orchestrator, store, investor):
        """Pattern ratios split a withdrawal into capital and interest."""
        store.add_bank_entries([make_entry("e1", -10000, date(2024, 3, 10), "ALICE WALKER")])
        suggestion = MatchSuggestion(
            bank_entry_id="e1",
            mode=MatchMode.CREATE,
            target_type=TargetType.INVESTOR_WITHDRAWAL,
            confidence=0.8,
            investor_id=investor.id,
            default_split=SplitRatios(capital=0.8, interest=0.2),
        )

        outcome = await orchestrator.apply(suggestion)

        amounts = {store.records[i].kind: store.records[i].amount_cents for i in outcome.created_record_ids}
        assert amounts == {LedgerKind.CAPITAL_OUT: 8000, LedgerKind.INTEREST_DEBIT: 2000}

    @pytest.mark.asyncio
    async def test_expense(self, orchestrator, store):
        """Expense created with its type."""
        store.add_bank_entries([make_entry("e1", -240000, date(2024, 3, 10), "HMRC VAT PAYMENT")])
        choice = ManualChoice(bank_entry_ids=["e1"], target_type=TargetType.EXPENSE, expense_type_id="tax")

        outcome = await orchestrator.apply(choice)

        record = store.records[outcome.created_record_ids[0]]
        assert record.kind == LedgerKind.EXPENSE
        assert record.amount_cents == 240000
        assert record.expense_type_id == "tax"
        assert record.description == "HMRC VAT PAYMENT"

    @pytest.mark.asyncio
    async def test_missing_loan_is_stale(self, orchestrator, store):
        """Creating against a missing loan is skipped as stale."""
        store.add_bank_entries([make_entry("e1", 30000, date(2024, 3, 10))])
        choice = ManualChoice(bank_entry_ids=["e1"], target_type=TargetType.LOAN_REPAYMENT, loan_id="gone")

        outcome = await orchestrator.apply(choice)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.failure == FailureKind.STALE_REFERENCE

    @pytest.mark.asyncio
    async def test_wrong_direction_for_create(self, orchestrator, store):
        """Test rejecting a create whose direction does not fit the target."""
        store.add_bank_entries([make_entry("e1", 30000, date(2024, 3, 10))])
        choice = ManualChoice(bank_entry_ids=["e1"], target_type=TargetType.EXPENSE)

        outcome = await orchestrator.apply(choice)

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.failure == FailureKind.VALIDATION_FAILURE


class TestPatternUpdates:
    @pytest.mark.asyncio
    async def test_auto_apply_reinforces_only(self, orchestrator, store, patterns):
        """Auto applies reinforce patterns but never create them."""
        pattern = patterns.learn(
            make_entry("old", -10000, date(2024, 2, 1), "ACME INVOICE"),
            TargetType.EXPENSE,
            expense_type_id="supplies",
        )
        store.add_bank_entries([
            make_entry("e1", -10000, date(2024, 3, 10), "ACME INVOICE"),
            make_entry("e2", -10000, date(2024, 3, 10), "TOTALLY NEW VENDOR"),
        ])
        from_pattern = MatchSuggestion(
            bank_entry_id="e1",
            mode=MatchMode.CREATE,
            target_type=TargetType.EXPENSE,
            confidence=0.66,
            expense_type_id="supplies",
            pattern_id=pattern.id,
        )
        no_pattern = MatchSuggestion(
            bank_entry_id="e2",
            mode=MatchMode.CREATE,
            target_type=TargetType.EXPENSE,
            confidence=0.65,
        )

        await orchestrator.apply(from_pattern, auto=True)
        await orchestrator.apply(no_pattern, auto=True)

        assert len(patterns) == 1
        assert pattern.match_count == 2
        assert pattern.confidence_score == pytest.approx(0.65)

    @pytest.mark.asyncio
    async def test_human_confirmation_reinforces_existing(self, orchestrator, store, patterns):
        """A confirmed create reinforces the matching pattern."""
        pattern = patterns.learn(make_entry("old", -10000, date(2024, 2, 1), "ACME INVOICE"), TargetType.EXPENSE)
        store.add_bank_entries([make_entry("e1", -10000, date(2024, 3, 10), "ACME INVOICE")])

        await orchestrator.apply(ManualChoice(bank_entry_ids=["e1"], target_type=TargetType.EXPENSE))

        assert len(patterns) == 1
        assert pattern.confidence_score == pytest.approx(0.7)
        assert orchestrator.audit_logger.get_entries(action_filter=AuditAction.PATTERN_REINFORCED.value)


class TestOffset:
    @pytest.mark.asyncio
    async def test_offset_and_group_undo(self, orchestrator, store):
        """Undoing one offset member undoes the whole offset."""
        store.add_bank_entries([
            make_entry("e1", 5000, date(2024, 3, 10), "REFUND"),
            make_entry("e2", -5000, date(2024, 3, 10), "PAYMENT REVERSED"),
        ])

        outcome = await orchestrator.apply_offset(["e1", "e2"], "Bounced payment")

        assert outcome.succeeded
        assert all(link.reconciliation_type == TargetType.OFFSET for link in outcome.links)
        assert all(link.record_id is None for link in outcome.links)
        group_id = outcome.links[0].group_id
        assert group_id.startswith("offset_")
        assert outcome.links[0].notes == f"[{group_id}] Bounced payment"

        undone = await orchestrator.undo("e2")

        assert undone.succeeded
        assert set(undone.bank_entry_ids) == {"e1", "e2"}
        assert not store.bank_entries["e1"].is_reconciled
        assert store.links == {}

    @pytest.mark.asyncio
    async def test_offset_must_net_zero(self, orchestrator, store):
        """Offsets that do not net to zero fail."""
        store.add_bank_entries([
            make_entry("e1", 5000, date(2024, 3, 10)),
            make_entry("e2", -4000, date(2024, 3, 10)),
        ])
        outcome = await orchestrator.apply_offset(["e1", "e2"], "Mismatch")
        assert outcome.failure == FailureKind.IMBALANCED_GROUP
        assert not store.bank_entries["e1"].is_reconciled

    @pytest.mark.asyncio
    async def test_offset_needs_notes_and_both_signs(self, orchestrator, store):
        """Offsets need a note and both credits and debits."""
        store.add_bank_entries([
            make_entry("e1", 5000, date(2024, 3, 10)),
            make_entry("e2", -5000, date(2024, 3, 10)),
            make_entry("e3", 5000, date(2024, 3, 10)),
        ])
        no_notes = await orchestrator.apply_offset(["e1", "e2"], "  ")
        same_sign = await orchestrator.apply_offset(["e1", "e3"], "Duplicate")
        assert no_notes.failure == FailureKind.VALIDATION_FAILURE
        assert same_sign.failure == FailureKind.VALIDATION_FAILURE


class TestUndo:
    @pytest.mark.asyncio
    async def test_undo_link_keeps_record(self, orchestrator, store):
        """Undoing a link leaves the existing record in place."""
        store.add_bank_entries([make_entry("e1", 50000, date(2024, 3, 10))])
        await orchestrator.apply(link_choice(["e1"], ["rep1"]))

        outcome = await orchestrator.undo("e1")

        assert outcome.succeeded
        assert "rep1" in store.records
        assert not store.records["rep1"].is_reconciled
        assert not store.bank_entries["e1"].is_reconciled

    @pytest.mark.asyncio
    async def test_undo_is_idempotent(self, orchestrator, store):
        """Undo twice is harmless."""
        store.add_bank_entries([make_entry("e1", 50000, date(2024, 3, 10))])
        await orchestrator.apply(link_choice(["e1"], ["rep1"]))

        first = await orchestrator.undo("e1")
        second = await orchestrator.undo("e1")

        assert first.succeeded
        assert second.status == OutcomeStatus.SKIPPED
        assert len(store.records) == 1

    @pytest.mark.asyncio
    async def test_undo_group_from_any_member(self, orchestrator, store, loan):
        """Any member of a group undoes the whole group."""
        store.add_records([make_record("d1", LedgerKind.DISBURSEMENT, 100000, date(2024, 3, 10), loan_id=loan.id)])
        store.add_bank_entries([
            make_entry("e1", -60000, date(2024, 3, 10)),
            make_entry("e2", -40000, date(2024, 3, 10)),
        ])
        await orchestrator.apply(link_choice(["e1", "e2"], ["d1"], TargetType.LOAN_DISBURSEMENT))

        outcome = await orchestrator.undo("e2")

        assert set(outcome.bank_entry_ids) == {"e1", "e2"}
        assert not store.bank_entries["e1"].is_reconciled
        assert not store.records["d1"].is_reconciled

    @pytest.mark.asyncio
    async def test_undo_unknown_entry(self, orchestrator):
        """Undo of an unknown entry is skipped."""
        outcome = await orchestrator.undo("nope")
        assert outcome.status == OutcomeStatus.SKIPPED


class TestBatch:
    @pytest.mark.asyncio
    async def test_in_batch_claims(self, orchestrator, store):
        """Later batch items lose targets claimed by earlier ones."""
        store.add_bank_entries([
            make_entry("e1", 50000, date(2024, 3, 10)),
            make_entry("e2", 50000, date(2024, 3, 10)),
            make_entry("e3", -2000, date(2024, 3, 10), "BANK FEE"),
        ])
        progress = []
        items = [
            link_choice(["e1"], ["rep1"]),
            link_choice(["e2"], ["rep1"]),
            ManualChoice(bank_entry_ids=["e3"], target_type=TargetType.EXPENSE),
        ]

        result = await orchestrator.apply_batch(items, progress_callback=lambda done, total: progress.append((done, total)))

        assert (result.succeeded, result.failed, result.skipped) == (2, 0, 1)
        assert result.outcomes[1].message == "Target already used earlier in this batch"
        assert progress == [(1, 3), (2, 3), (3, 3)]
        assert orchestrator.audit_logger.get_entries(action_filter=AuditAction.BULK_COMPLETED.value)

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_batch(self, orchestrator, store):
        """A failed item does not stop the rest of the batch."""
        store.add_bank_entries([
            make_entry("e1", 51000, date(2024, 3, 10)),
            make_entry("e2", -2000, date(2024, 3, 10), "BANK FEE"),
        ])
        items = [
            link_choice(["e1"], ["rep1"]),
            ManualChoice(bank_entry_ids=["e2"], target_type=TargetType.EXPENSE),
        ]

        result = await orchestrator.apply_batch(items)

        assert (result.succeeded, result.failed) == (1, 1)
        assert result.summary()["reasons"][0]["bank_entry_ids"] == ["e1"]

    @pytest.mark.asyncio
    async def test_cancellation(self, orchestrator, store):
        """Test that cancelled items are skipped with reason cancelled."""
        store.add_bank_entries([
            make_entry(f"e{i}", -1000, date(2024, 3, 10), "BANK FEE") for i in range(3)
        ])
        items = [ManualChoice(bank_entry_ids=[f"e{i}"], target_type=TargetType.EXPENSE) for i in range(3)]
        calls = []

        def should_cancel():
            calls.append(1)
            return len(calls) > 1

        result = await orchestrator.apply_batch(items, should_cancel=should_cancel)

        assert result.cancelled
        assert result.succeeded == 1
        assert result.skipped == 2
        assert result.outcomes[-1].message == "cancelled"
        assert not store.bank_entries["e2"].is_reconciled

    @pytest.mark.asyncio
    async def test_undo_batch(self, orchestrator, store):
        """Batch undo skips an entry listed twice."""
        store.add_bank_entries([
            make_entry(f"e{i}", -1000, date(2024, 3, 10), "BANK FEE") for i in range(2)
        ])
        await orchestrator.apply_batch(
            [ManualChoice(bank_entry_ids=[f"e{i}"], target_type=TargetType.EXPENSE) for i in range(2)]
        )

        result = await orchestrator.undo_batch(["e0", "e1", "e0"])

        assert (result.succeeded, result.skipped) == (2, 1)
        assert len(store.records) == 1


class FailingFlagStore(InMemoryLedgerStore):
    async def set_bank_entry_reconciled(self, entry_id, reconciled):
        if reconciled:
            raise PersistenceError(f"Could not update bank entry {entry_id}", refs=[entry_id])
        await super().set_bank_entry_reconciled(entry_id, reconciled)


class FailingSecondFlagStore(InMemoryLedgerStore):
    async def set_bank_entry_reconciled(self, entry_id, reconciled):
        if reconciled and entry_id == "e2":
            raise PersistenceError(f"Could not update bank entry {entry_id}", refs=[entry_id])
        await super().set_bank_entry_reconciled(entry_id, reconciled)


class FailingDeleteStore(InMemoryLedgerStore):
    async def delete_record(self, record_id):
        raise PersistenceError(f"Could not delete {record_id}", refs=[record_id])


class TestPersistenceFailures:
    @pytest.mark.asyncio
    async def test_partial_write_reported(self, settings, repayment_record):
        """Links written before a failure are listed for cleanup."""
        store = FailingFlagStore()
        store.add_records([repayment_record])
        store.add_bank_entries([make_entry("e1", 50000, date(2024, 3, 10))])
        orchestrator = ReconciliationOrchestrator(store, settings=settings)

        outcome = await orchestrator.apply(link_choice(["e1"], ["rep1"]))

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.failure == FailureKind.PERSISTENCE_FAILURE
        assert outcome.needs_manual_cleanup == [f"link:{link_id}" for link_id in store.links]
        assert not store.bank_entries["e1"].is_reconciled

    @pytest.mark.asyncio
    async def test_flagged_entries_reported_for_cleanup(self, settings, loan):
        """Entries flagged before a failing flag write are listed for cleanup."""
        store = FailingSecondFlagStore()
        store.add_loan(loan)
        store.add_records([make_record("d1", LedgerKind.DISBURSEMENT, 100000, date(2024, 3, 10), loan_id=loan.id)])
        store.add_bank_entries([
            make_entry("e1", -60000, date(2024, 3, 10)),
            make_entry("e2", -40000, date(2024, 3, 10)),
        ])
        orchestrator = ReconciliationOrchestrator(store, settings=settings)

        outcome = await orchestrator.apply(link_choice(["e1", "e2"], ["d1"], TargetType.LOAN_DISBURSEMENT))

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.failure == FailureKind.PERSISTENCE_FAILURE
        assert "bank:e1" in outcome.needs_manual_cleanup
        assert "bank:e2" not in outcome.needs_manual_cleanup
        assert len([ref for ref in outcome.needs_manual_cleanup if ref.startswith("link:")]) == 2

    @pytest.mark.asyncio
    async def test_undo_continues_after_failure(self, settings):
        """Undo keeps going when one record cannot be deleted."""
        store = FailingDeleteStore()
        store.add_bank_entries([make_entry("e1", -2000, date(2024, 3, 10), "BANK FEE")])
        orchestrator = ReconciliationOrchestrator(store, settings=settings)
        applied = await orchestrator.apply(ManualChoice(bank_entry_ids=["e1"], target_type=TargetType.EXPENSE))

        outcome = await orchestrator.undo("e1")

        record_id = applied.created_record_ids[0]
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.failure == FailureKind.PERSISTENCE_FAILURE
        assert outcome.needs_manual_cleanup == [f"record:{record_id}"]
        # Link removal and the bank flag still went through
        assert store.links == {}
        assert not store.bank_entries["e1"].is_reconciled


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
