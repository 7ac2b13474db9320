"""
Shared fixtures for reconciliation tests.
"""

from datetime import date

import pytest

from loanbook.config import Settings
from loanbook.models import (
    BankEntry,
    Borrower,
    Investor,
    LedgerKind,
    LedgerRecord,
    Loan,
    ScheduleRow,
)


def make_entry(entry_id, amount_cents, on, description="", **kwargs):
    return BankEntry(
        id=entry_id,
        amount_cents=amount_cents,
        statement_date=on,
        description=description,
        **kwargs,
    )


def make_record(record_id, kind, amount_cents, on, **kwargs):
    return LedgerRecord(
        id=record_id,
        kind=kind,
        amount_cents=amount_cents,
        record_date=on,
        **kwargs,
    )


def make_schedule(rows, start=date(2024, 1, 1)):
    """Monthly rows from (principal, interest) pairs."""
    return [
        ScheduleRow(
            id=f"row{i + 1}",
            due_date=date(start.year, start.month + i, start.day),
            principal_due_cents=principal,
            interest_due_cents=interest,
        )
        for i, (principal, interest) in enumerate(rows)
    ]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path,
        patterns_file=tmp_path / "patterns.json",
        reports_dir=tmp_path / "reports",
    )


@pytest.fixture
def borrower():
    return Borrower(id="b1", full_name="John Smith", email="smith@example.com")


@pytest.fixture
def loan(borrower):
    return Loan(
        id="loan1",
        borrower_id=borrower.id,
        loan_number="LN-001",
        principal_cents=100000,
        disbursed_cents=100000,
        schedule=make_schedule([(50000, 2000), (50000, 1000)]),
    )


@pytest.fixture
def investor():
    return Investor(
        id="inv1",
        name="Alice Walker",
        current_capital_balance_cents=500000,
        total_capital_contributed_cents=500000,
    )


@pytest.fixture
def repayment_record(loan):
    return make_record("rep1", LedgerKind.REPAYMENT, 50000, date(2024, 3, 10), loan_id=loan.id)
