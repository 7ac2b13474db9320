"""
Loan payment waterfall.

Payments are applied to the oldest unpaid schedule rows first, interest
before principal. The functions here compute row updates without touching
the schedule; commit_updates and reverse_allocations apply them.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List

from ..models import ScheduleAllocation, ScheduleRow, ScheduleStatus

# A row within this many cents of its total due counts as paid
PAID_TOLERANCE_CENTS = 1


@dataclass
class RowUpdate:
    """New paid totals for one schedule row."""
    row_id: str
    principal_paid_cents: int
    interest_paid_cents: int
    status: ScheduleStatus
    principal_applied_cents: int = 0
    interest_applied_cents: int = 0


@dataclass
class WaterfallResult:
    """Outcome of applying a payment to a schedule."""
    updates: List[RowUpdate] = field(default_factory=list)
    remaining_cents: int = 0
    principal_applied_cents: int = 0
    interest_applied_cents: int = 0

    @property
    def allocations(self) -> List[ScheduleAllocation]:
        return [
            ScheduleAllocation(
                row_id=u.row_id,
                principal_cents=u.principal_applied_cents,
                interest_cents=u.interest_applied_cents,
            )
            for u in self.updates
        ]


def row_status(row_total_due: int, principal_paid: int, interest_paid: int) -> ScheduleStatus:
    total_paid = principal_paid + interest_paid
    if total_paid >= row_total_due - PAID_TOLERANCE_CENTS:
        return ScheduleStatus.PAID
    if total_paid > 0:
        return ScheduleStatus.PARTIAL
    return ScheduleStatus.PENDING


def _unpaid_rows(schedule: List[ScheduleRow]) -> List[ScheduleRow]:
    rows = sorted(schedule, key=lambda r: r.due_date or date.max)
    return [r for r in rows if r.status != ScheduleStatus.PAID]


def apply_payment_waterfall(payment_cents: int, schedule: List[ScheduleRow]) -> WaterfallResult:
    """
    Spread a payment over the schedule, interest first on each row.

    Args:
        payment_cents: Payment amount
        schedule: Loan schedule rows (not modified)

    Returns:
        WaterfallResult; remaining_cents is the overpayment left after
        every unpaid row is settled
    """
    result = WaterfallResult()
    remaining = payment_cents

    for row in _unpaid_rows(schedule):
        if remaining <= 0:
            break

        interest_payment = min(remaining, row.interest_outstanding_cents)
        remaining -= interest_payment
        principal_payment = min(remaining, row.principal_outstanding_cents)
        remaining -= principal_payment

        if interest_payment <= 0 and principal_payment <= 0:
            continue

        interest_paid = row.interest_paid_cents + interest_payment
        principal_paid = row.principal_paid_cents + principal_payment
        result.updates.append(RowUpdate(
            row_id=row.id,
            principal_paid_cents=principal_paid,
            interest_paid_cents=interest_paid,
            status=row_status(row.total_due_cents, principal_paid, interest_paid),
            principal_applied_cents=principal_payment,
            interest_applied_cents=interest_payment,
        ))
        result.principal_applied_cents += principal_payment
        result.interest_applied_cents += interest_payment

    result.remaining_cents = remaining
    return result


def apply_split_allocation(
    principal_cents: int,
    interest_cents: int,
    schedule: List[ScheduleRow],
) -> WaterfallResult:
    """
    Apply a user-fixed split: the interest amount to the oldest outstanding
    interest, then the principal amount to the oldest outstanding principal.
    """
    rows = _unpaid_rows(schedule)
    updates = {}
    remaining_interest = interest_cents
    remaining_principal = principal_cents

    for row in rows:
        if remaining_interest <= 0:
            break
        payment = min(remaining_interest, row.interest_outstanding_cents)
        if payment > 0:
            remaining_interest -= payment
            updates[row.id] = [row, 0, payment]

    for row in rows:
        if remaining_principal <= 0:
            break
        payment = min(remaining_principal, row.principal_outstanding_cents)
        if payment > 0:
            remaining_principal -= payment
            updates.setdefault(row.id, [row, 0, 0])[1] += payment

    result = WaterfallResult(remaining_cents=remaining_interest + remaining_principal)
    for row in rows:
        if row.id not in updates:
            continue
        _, principal_payment, interest_payment = updates[row.id]
        principal_paid = row.principal_paid_cents + principal_payment
        interest_paid = row.interest_paid_cents + interest_payment
        result.updates.append(RowUpdate(
            row_id=row.id,
            principal_paid_cents=principal_paid,
            interest_paid_cents=interest_paid,
            status=row_status(row.total_due_cents, principal_paid, interest_paid),
            principal_applied_cents=principal_payment,
            interest_applied_cents=interest_payment,
        ))
        result.principal_applied_cents += principal_payment
        result.interest_applied_cents += interest_payment
    return result


def commit_updates(schedule: List[ScheduleRow], updates: List[RowUpdate]) -> None:
    """Write computed row updates onto the schedule."""
    rows = {r.id: r for r in schedule}
    for update in updates:
        row = rows.get(update.row_id)
        if row is None:
            continue
        row.principal_paid_cents = update.principal_paid_cents
        row.interest_paid_cents = update.interest_paid_cents
        row.status = update.status


def reverse_allocations(schedule: List[ScheduleRow], allocations: List[ScheduleAllocation]) -> None:
    """Take previously applied allocations back off the schedule."""
    rows = {r.id: r for r in schedule}
    for allocation in allocations:
        row = rows.get(allocation.row_id)
        if row is None:
            continue
        row.principal_paid_cents = max(0, row.principal_paid_cents - allocation.principal_cents)
        row.interest_paid_cents = max(0, row.interest_paid_cents - allocation.interest_cents)
        row.status = row_status(row.total_due_cents, row.principal_paid_cents, row.interest_paid_cents)


def schedule_is_settled(schedule: List[ScheduleRow]) -> bool:
    """Every row paid, principal and interest alike."""
    if not schedule:
        return False
    return all(
        row_status(r.total_due_cents, r.principal_paid_cents, r.interest_paid_cents) == ScheduleStatus.PAID
        for r in schedule
    )
