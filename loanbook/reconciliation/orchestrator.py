"""
Reconciliation Orchestrator - applies and reverses reconciliation decisions.

Operations:
1. Link existing records (match, match_group, grouped_disbursement, grouped_investor)
2. Create a new ledger record from a bank entry (create)
3. Offset a zero-net set of bank entries against each other
4. Undo, deleting created records and reversing their balance effects
5. Sequential batch apply/undo with an in-batch claim set

Each single operation either completes or reports a typed failure. Bank
entries are marked reconciled only after every other write succeeded.
"""

from copy import deepcopy
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set, Union
from uuid import uuid4

import structlog

from ..config import Settings, get_settings
from ..ledger.waterfall import (
    WaterfallResult,
    apply_payment_waterfall,
    apply_split_allocation,
    commit_updates,
    reverse_allocations,
    schedule_is_settled,
)
from ..models import (
    AuditAction,
    AuditEntry,
    BankEntry,
    BulkResult,
    LedgerKind,
    LedgerRecord,
    LoanStatus,
    ManualChoice,
    MatchMode,
    MatchSuggestion,
    OutcomeStatus,
    ReconciliationLink,
    ReconciliationOutcome,
    ScheduleRow,
    SplitRatios,
    TargetType,
    TransactionDirection,
)
from ..utils.audit_logger import AuditLogger
from .errors import (
    ImbalancedGroupError,
    PersistenceError,
    ReconciliationError,
    SplitValidationError,
    StaleReferenceError,
)
from .patterns import PatternStore

if TYPE_CHECKING:
    from ..ledger.store import LedgerStore

logger = structlog.get_logger()

ApplyItem = Union[MatchSuggestion, ManualChoice]
Waterfall = Callable[[int, List[ScheduleRow]], WaterfallResult]
ProgressCallback = Callable[[int, int], None]

LINK_NOTES = {
    MatchMode.MATCH: "Matched to existing transaction",
    MatchMode.MATCH_GROUP: "Grouped match: {records} transactions",
    MatchMode.GROUPED_DISBURSEMENT: "Grouped disbursement: {entries} payments",
    MatchMode.GROUPED_INVESTOR: "Grouped investor: {entries} payments",
}


def observed_split(amount_cents: int, records: List[LedgerRecord]) -> SplitRatios:
    """Capital/interest/fee ratios of the records created for one bank amount."""
    if amount_cents == 0:
        return SplitRatios()
    capital = interest = fees = 0
    for record in records:
        if record.kind == LedgerKind.REPAYMENT:
            capital += record.principal_cents
            interest += record.interest_cents
            fees += record.fees_cents
        elif record.kind == LedgerKind.INTEREST_DEBIT:
            interest += record.amount_cents
        elif record.kind != LedgerKind.INTEREST_CREDIT:
            capital += record.amount_cents
    return SplitRatios(
        capital=capital / amount_cents,
        interest=interest / amount_cents,
        fees=fees / amount_cents,
    )


def _unique(ids: List[str]) -> List[str]:
    return list(dict.fromkeys(ids))


@dataclass
class ReconciliationRequest:
    """A suggestion or manual choice reduced to what the orchestrator needs."""
    bank_entry_ids: List[str]
    target_type: TargetType
    mode: MatchMode
    record_ids: List[str] = field(default_factory=list)
    loan_id: Optional[str] = None
    investor_id: Optional[str] = None
    expense_type_id: Optional[str] = None
    principal_cents: Optional[int] = None
    interest_cents: Optional[int] = None
    fees_cents: Optional[int] = None
    capital_cents: Optional[int] = None
    split_ratios: Optional[SplitRatios] = None
    description: str = ""
    notes: str = ""
    pattern_id: Optional[str] = None

    @classmethod
    def from_item(cls, item: ApplyItem) -> "ReconciliationRequest":
        """Normalize an item; repeated ids collapse to their first occurrence."""
        if isinstance(item, MatchSuggestion):
            return cls(
                bank_entry_ids=_unique(item.bank_entry_ids),
                target_type=item.target_type,
                mode=item.mode,
                record_ids=_unique(item.target_ids),
                loan_id=item.loan_id,
                investor_id=item.investor_id,
                expense_type_id=item.expense_type_id,
                split_ratios=item.default_split,
                pattern_id=item.pattern_id,
            )
        item = replace(item, bank_entry_ids=_unique(item.bank_entry_ids), record_ids=_unique(item.record_ids))
        return cls(
            bank_entry_ids=item.bank_entry_ids,
            target_type=item.target_type,
            mode=item.mode,
            record_ids=item.record_ids,
            loan_id=item.loan_id,
            investor_id=item.investor_id,
            expense_type_id=item.expense_type_id,
            principal_cents=item.principal_cents,
            interest_cents=item.interest_cents,
            fees_cents=item.fees_cents,
            capital_cents=item.capital_cents,
            description=item.description,
            notes=item.notes,
            pattern_id=item.pattern_id,
        )

    @property
    def claim_keys(self) -> Set[str]:
        keys = {f"bank:{i}" for i in self.bank_entry_ids}
        keys.update(f"record:{i}" for i in self.record_ids)
        return keys


class ReconciliationOrchestrator:
    """
    Applies suggestions and manual choices against a LedgerStore.

    Recoverable failures are returned as outcomes, never raised; unexpected
    exceptions from the store propagate.
    """

    def __init__(
        self,
        store: "LedgerStore",
        pattern_store: Optional[PatternStore] = None,
        waterfall: Waterfall = apply_payment_waterfall,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.pattern_store = pattern_store
        self.waterfall = waterfall
        self.audit_logger = audit_logger or AuditLogger(settings=self.settings)

    # Apply

    async def apply(self, item: ApplyItem, auto: bool = False) -> ReconciliationOutcome:
        """
        Apply one suggestion or manual choice.

        Args:
            item: MatchSuggestion or ManualChoice
            auto: True when accepted without human review; learned
                patterns are then only reinforced, never created

        Returns:
            ReconciliationOutcome; stale references are skipped, every
            other recoverable failure is reported as failed
        """
        request = ReconciliationRequest.from_item(item)
        outcome = ReconciliationOutcome(bank_entry_ids=list(request.bank_entry_ids))
        written: List[str] = []
        created_records: List[LedgerRecord] = []

        try:
            if not request.bank_entry_ids:
                raise ReconciliationError("No bank entries selected")
            entries = await self._load_entries(request.bank_entry_ids)

            if request.mode.is_link:
                await self._link_existing(request, entries, outcome, written)
            else:
                created_records = await self._create_new(request, entries, outcome, written)

            for entry in entries:
                await self.store.set_bank_entry_reconciled(entry.id, True)
                written.append(f"bank:{entry.id}")

        except ReconciliationError as e:
            self._fail(outcome, e, written)
            return outcome

        created = bool(outcome.created_record_ids)
        outcome.message = (
            f"Created {len(outcome.created_record_ids)} record(s)" if created
            else f"Linked {len(outcome.links)} record(s)"
        )
        self.audit_logger.log(AuditEntry(
            action=AuditAction.RECORD_CREATED if created else AuditAction.MATCH_LINKED,
            bank_entry_ids=outcome.bank_entry_ids,
            record_ids=[link.record_id for link in outcome.links if link.record_id],
            message=f"{request.target_type.value}: {outcome.message}",
            details={"mode": request.mode.value, "auto": auto},
        ))

        if created:
            self._update_patterns(request, entries[0], created_records, auto)
        return outcome

    async def _load_entries(self, entry_ids: List[str]) -> List[BankEntry]:
        entries = []
        for entry_id in entry_ids:
            entry = await self.store.get_bank_entry(entry_id)
            if entry is None:
                raise StaleReferenceError(f"Bank entry {entry_id} no longer exists", refs=[entry_id])
            if entry.is_reconciled:
                raise StaleReferenceError(f"Bank entry {entry_id} is already reconciled", refs=[entry_id])
            entries.append(entry)
        return entries

    async def _load_records(self, record_ids: List[str]) -> List[LedgerRecord]:
        records = []
        for record_id in record_ids:
            record = await self.store.get_record(record_id)
            if record is None or record.is_deleted:
                raise StaleReferenceError(f"Record {record_id} no longer exists", refs=[record_id])
            if record.is_reconciled:
                raise StaleReferenceError(f"Record {record_id} is already reconciled", refs=[record_id])
            records.append(record)
        return records

    def _check_balance(self, bank_total: int, record_total: int, context: str) -> None:
        if not self.settings.within_balance(bank_total, record_total):
            raise ImbalancedGroupError(
                f"Amounts do not balance ({context}): bank total {bank_total / 100:.2f} "
                f"vs transaction total {record_total / 100:.2f} "
                f"(difference: {abs(bank_total - record_total) / 100:.2f})"
            )

    async def _link_existing(
        self,
        request: ReconciliationRequest,
        entries: List[BankEntry],
        outcome: ReconciliationOutcome,
        written: List[str],
    ) -> None:
        if not request.record_ids:
            raise ReconciliationError("No records selected to link")
        records = await self._load_records(request.record_ids)
        if len(entries) > 1 and len(records) != 1:
            raise ReconciliationError(
                "Many bank entries can only settle a single record",
                refs=[r.id for r in records],
            )

        directions = {e.direction for e in entries}
        if len(directions) > 1:
            # Net receipt: mixed credits and debits settling one record
            bank_total = abs(sum(e.amount_cents for e in entries))
        else:
            direction = directions.pop()
            wrong = [r.id for r in records if r.direction != direction]
            if wrong:
                raise ReconciliationError(
                    f"Record direction does not match the bank entry ({direction.value})", refs=wrong
                )
            bank_total = sum(e.abs_cents for e in entries)
        self._check_balance(bank_total, sum(r.amount_cents for r in records), request.mode.value)

        notes = request.notes or LINK_NOTES[request.mode].format(
            records=len(records), entries=len(entries)
        )
        group_id = f"group_{uuid4().hex[:12]}" if len(entries) > 1 else None

        if len(entries) > 1:
            record = records[0]
            for entry in entries:
                link = ReconciliationLink(
                    bank_entry_id=entry.id,
                    record_id=record.id,
                    record_pool=record.pool,
                    amount_cents=entry.amount_cents if len(directions) > 1 else entry.abs_cents,
                    reconciliation_type=request.target_type,
                    notes=notes,
                    group_id=group_id,
                )
                outcome.links.append(await self._write_link(link, written))
        else:
            for record in records:
                link = ReconciliationLink(
                    bank_entry_id=entries[0].id,
                    record_id=record.id,
                    record_pool=record.pool,
                    amount_cents=record.amount_cents,
                    reconciliation_type=request.target_type,
                    notes=notes,
                )
                outcome.links.append(await self._write_link(link, written))

    async def _write_link(self, link: ReconciliationLink, written: List[str]) -> ReconciliationLink:
        created = await self.store.create_link(link)
        written.append(f"link:{created.id}")
        return created

    # Create

    async def _create_new(
        self,
        request: ReconciliationRequest,
        entries: List[BankEntry],
        outcome: ReconciliationOutcome,
        written: List[str],
    ) -> List[LedgerRecord]:
        if len(entries) != 1:
            raise ReconciliationError("Creating a record needs exactly one bank entry")
        entry = entries[0]

        handlers = {
            TargetType.LOAN_REPAYMENT: self._create_repayment,
            TargetType.LOAN_DISBURSEMENT: self._create_disbursement,
            TargetType.INVESTOR_CREDIT: self._create_investor_credit,
            TargetType.INVESTOR_WITHDRAWAL: self._create_investor_withdrawal,
            TargetType.INTEREST_WITHDRAWAL: self._create_interest_withdrawal,
            TargetType.EXPENSE: self._create_expense,
        }
        handler = handlers.get(request.target_type)
        if handler is None:
            raise ReconciliationError(f"Cannot create a record of type {request.target_type.value}")

        expected = (
            TransactionDirection.CREDIT
            if request.target_type in (TargetType.LOAN_REPAYMENT, TargetType.INVESTOR_CREDIT)
            else TransactionDirection.DEBIT
        )
        if entry.direction != expected:
            raise ReconciliationError(
                f"A {entry.direction.value} cannot create a {request.target_type.value}", refs=[entry.id]
            )

        records = await handler(request, entry, written)
        for record in records:
            outcome.created_record_ids.append(record.id)
            link = ReconciliationLink(
                bank_entry_id=entry.id,
                record_id=record.id,
                record_pool=record.pool,
                amount_cents=record.amount_cents,
                reconciliation_type=request.target_type,
                was_created=True,
                notes=request.notes or (
                    "Interest accrual" if record.kind == LedgerKind.INTEREST_CREDIT
                    else "Created new transaction"
                ),
            )
            outcome.links.append(await self._write_link(link, written))
        return records

    def _new_record(self, kind: LedgerKind, amount_cents: int, request, entry: BankEntry, **kwargs) -> LedgerRecord:
        return LedgerRecord(
            kind=kind,
            amount_cents=amount_cents,
            record_date=entry.statement_date,
            description=request.description or entry.description,
            reference=entry.external_reference,
            **kwargs,
        )

    async def _persist(self, record: LedgerRecord, written: List[str]) -> LedgerRecord:
        created = await self.store.create_record(record)
        written.append(created.key)
        return created

    async def _require_loan(self, request: ReconciliationRequest):
        if not request.loan_id:
            raise ReconciliationError(f"A loan is required for {request.target_type.value}")
        loan = await self.store.get_loan(request.loan_id)
        if loan is None:
            raise StaleReferenceError(f"Loan {request.loan_id} no longer exists", refs=[request.loan_id])
        return loan

    async def _require_investor(self, request: ReconciliationRequest):
        if not request.investor_id:
            raise ReconciliationError(f"An investor is required for {request.target_type.value}")
        investor = await self.store.get_investor(request.investor_id)
        if investor is None:
            raise StaleReferenceError(
                f"Investor {request.investor_id} no longer exists", refs=[request.investor_id]
            )
        return investor

    async def _create_repayment(self, request, entry, written):
        loan = await self._require_loan(request)
        amount = entry.abs_cents
        fees = request.fees_cents or 0

        if request.principal_cents is not None or request.interest_cents is not None:
            principal = request.principal_cents or 0
            interest = request.interest_cents or 0
            if principal + interest + fees != amount:
                raise SplitValidationError(
                    f"Split {(principal + interest + fees) / 100:.2f} does not equal "
                    f"bank amount {amount / 100:.2f}"
                )
            result = apply_split_allocation(principal, interest, loan.schedule)
        else:
            if fees > amount:
                raise SplitValidationError("Fees exceed the bank amount")
            result = self.waterfall(amount - fees, loan.schedule)
            interest = result.interest_applied_cents
            principal = amount - fees - interest

        projected = deepcopy(loan.schedule)
        commit_updates(projected, result.updates)
        closes_loan = loan.status != LoanStatus.CLOSED and schedule_is_settled(projected)

        record = self._new_record(
            LedgerKind.REPAYMENT, amount, request, entry,
            loan_id=loan.id,
            principal_cents=principal,
            interest_cents=interest,
            fees_cents=fees,
            allocations=result.allocations,
            closed_loan=closes_loan,
        )
        record = await self._persist(record, written)

        commit_updates(loan.schedule, result.updates)
        if closes_loan:
            loan.status = LoanStatus.CLOSED
            logger.info("Loan fully repaid", loan_id=loan.id, loan_number=loan.loan_number)
        await self.store.save_loan(loan)
        written.append(f"loan:{loan.id}")
        return [record]

    async def _create_disbursement(self, request, entry, written):
        loan = await self._require_loan(request)
        amount = entry.abs_cents
        record = await self._persist(
            self._new_record(
                LedgerKind.DISBURSEMENT, amount, request, entry,
                loan_id=loan.id, principal_cents=amount,
            ),
            written,
        )
        loan.disbursed_cents += amount
        await self.store.save_loan(loan)
        written.append(f"loan:{loan.id}")
        return [record]

    async def _create_investor_credit(self, request, entry, written):
        investor = await self._require_investor(request)
        amount = entry.abs_cents
        record = await self._persist(
            self._new_record(LedgerKind.CAPITAL_IN, amount, request, entry, investor_id=investor.id),
            written,
        )
        investor.current_capital_balance_cents += amount
        investor.total_capital_contributed_cents += amount
        await self.store.save_investor(investor)
        written.append(f"investor:{investor.id}")
        return [record]

    async def _create_investor_withdrawal(self, request, entry, written):
        investor = await self._require_investor(request)
        amount = entry.abs_cents

        if request.capital_cents is not None or request.interest_cents is not None:
            capital = request.capital_cents or 0
            interest = request.interest_cents or 0
        elif request.split_ratios is not None:
            capital, interest, fees = request.split_ratios.split(amount)
            capital += fees
        else:
            capital, interest = amount, 0

        if capital < 0 or interest < 0 or capital + interest != amount:
            raise SplitValidationError(
                f"Capital {capital / 100:.2f} + interest {interest / 100:.2f} does not equal "
                f"bank amount {amount / 100:.2f}"
            )

        records = []
        if capital > 0:
            records.append(await self._persist(
                self._new_record(LedgerKind.CAPITAL_OUT, capital, request, entry, investor_id=investor.id),
                written,
            ))
            investor.current_capital_balance_cents -= capital
            await self.store.save_investor(investor)
            written.append(f"investor:{investor.id}")
        if interest > 0:
            records.extend(await self._interest_leg(investor, interest, request, entry, written))
        return records

    async def _create_interest_withdrawal(self, request, entry, written):
        investor = await self._require_investor(request)
        return await self._interest_leg(investor, entry.abs_cents, request, entry, written)

    async def _interest_leg(self, investor, amount, request, entry, written):
        records = []
        if investor.manual_interest:
            # Manual-interest products accrue the interest being paid out
            records.append(await self._persist(
                LedgerRecord(
                    kind=LedgerKind.INTEREST_CREDIT,
                    amount_cents=amount,
                    record_date=entry.statement_date,
                    description=f"Interest accrued (auto-created): {entry.description}",
                    reference=entry.external_reference,
                    investor_id=investor.id,
                ),
                written,
            ))
        records.append(await self._persist(
            self._new_record(LedgerKind.INTEREST_DEBIT, amount, request, entry, investor_id=investor.id),
            written,
        ))
        return records

    async def _create_expense(self, request, entry, written):
        record = await self._persist(
            self._new_record(
                LedgerKind.EXPENSE, entry.abs_cents, request, entry,
                expense_type_id=request.expense_type_id,
            ),
            written,
        )
        return [record]

    def _update_patterns(
        self,
        request: ReconciliationRequest,
        entry: BankEntry,
        created_records: List[LedgerRecord],
        auto: bool,
    ) -> None:
        if self.pattern_store is None:
            return

        if auto:
            if not request.pattern_id:
                return
            pattern = self.pattern_store.reinforce(request.pattern_id, self.settings.pattern_auto_reinforce_step)
            action = AuditAction.PATTERN_REINFORCED
        else:
            existing = len(self.pattern_store)
            pattern = self.pattern_store.learn(
                entry,
                request.target_type,
                loan_id=request.loan_id,
                investor_id=request.investor_id,
                expense_type_id=request.expense_type_id,
                split_ratios=observed_split(entry.abs_cents, created_records),
            )
            learned = len(self.pattern_store) > existing
            action = AuditAction.PATTERN_LEARNED if learned else AuditAction.PATTERN_REINFORCED

        if pattern is not None:
            self.audit_logger.log(AuditEntry(
                action=action,
                bank_entry_ids=[entry.id],
                message=f'Pattern "{pattern.description_pattern}" ({pattern.match_count}x)',
                details={"pattern_id": pattern.id, "confidence": round(pattern.confidence_score, 3)},
            ))

    def _fail(self, outcome: ReconciliationOutcome, error: ReconciliationError, written: List[str]) -> None:
        outcome.status = (
            OutcomeStatus.SKIPPED if isinstance(error, StaleReferenceError) else OutcomeStatus.FAILED
        )
        outcome.failure = error.kind
        outcome.message = error.message
        outcome.needs_manual_cleanup = list(written)

        logger.warning(
            "Reconciliation not applied",
            bank_entry_ids=outcome.bank_entry_ids,
            failure=error.kind.value,
            error=error.message,
            needs_manual_cleanup=written,
        )
        self.audit_logger.log(AuditEntry(
            action=AuditAction.RECONCILIATION_FAILED,
            bank_entry_ids=outcome.bank_entry_ids,
            record_ids=list(error.refs),
            message="Reconciliation not applied",
            details={"failure": error.kind.value, "needs_manual_cleanup": list(written)},
            success=False,
            error_message=error.message,
        ))

    # Offset

    async def apply_offset(self, bank_entry_ids: List[str], notes: str) -> ReconciliationOutcome:
        """
        Reconcile credits and debits that net to zero against each other.
        No ledger record is created; links share an offset group id.
        """
        bank_entry_ids = _unique(bank_entry_ids)
        outcome = ReconciliationOutcome(bank_entry_ids=list(bank_entry_ids))
        written: List[str] = []
        try:
            if len(bank_entry_ids) < 2:
                raise ReconciliationError("An offset needs at least two bank entries")
            if not notes or not notes.strip():
                raise ReconciliationError("An offset needs an explanatory note")

            entries = await self._load_entries(bank_entry_ids)
            if len({e.direction for e in entries}) < 2:
                raise ReconciliationError("An offset needs both credits and debits")

            net = sum(e.amount_cents for e in entries)
            if not self.settings.within_balance(net, 0):
                raise ImbalancedGroupError(f"Offset entries net to {net / 100:.2f}, not zero")

            group_id = f"offset_{uuid4().hex[:12]}"
            for entry in entries:
                link = ReconciliationLink(
                    bank_entry_id=entry.id,
                    amount_cents=entry.amount_cents,
                    reconciliation_type=TargetType.OFFSET,
                    notes=f"[{group_id}] {notes.strip()}",
                    group_id=group_id,
                )
                outcome.links.append(await self._write_link(link, written))
            for entry in entries:
                await self.store.set_bank_entry_reconciled(entry.id, True)
                written.append(f"bank:{entry.id}")

        except ReconciliationError as e:
            self._fail(outcome, e, written)
            return outcome

        outcome.message = f"Offset {len(entries)} entries"
        self.audit_logger.log(AuditEntry(
            action=AuditAction.OFFSET_APPLIED,
            bank_entry_ids=outcome.bank_entry_ids,
            message=outcome.message,
            details={"group_id": group_id, "notes": notes.strip()},
        ))
        return outcome

    # Undo

    async def undo(self, bank_entry_id: str) -> ReconciliationOutcome:
        """
        Reverse the reconciliation of a bank entry.

        Records created by the reconciliation are deleted and their balance
        effects reversed; linked records are left untouched. Grouped and
        offset reconciliations are undone as a whole. A failure on one
        record is logged and the rest of the undo continues.
        """
        outcome = ReconciliationOutcome(bank_entry_ids=[bank_entry_id])

        entry = await self.store.get_bank_entry(bank_entry_id)
        if entry is None:
            outcome.status = OutcomeStatus.SKIPPED
            outcome.message = f"Bank entry {bank_entry_id} not found"
            return outcome

        links = await self.store.links_for_entry(bank_entry_id)
        if not entry.is_reconciled and not links:
            outcome.status = OutcomeStatus.SKIPPED
            outcome.message = "Bank entry is not reconciled"
            return outcome

        links = await self._expand_groups(links)
        entry_ids = [bank_entry_id]
        for link in links:
            if link.bank_entry_id not in entry_ids:
                entry_ids.append(link.bank_entry_id)
        outcome.bank_entry_ids = entry_ids

        cleanup: List[str] = []
        reversed_ids: Set[str] = set()
        for link in links:
            if not link.was_created or not link.record_id or link.record_id in reversed_ids:
                continue
            reversed_ids.add(link.record_id)
            try:
                await self._delete_created_record(link.record_id)
                outcome.created_record_ids.append(link.record_id)
            except ReconciliationError as e:
                logger.error("Failed to delete created record", record_id=link.record_id, error=e.message)
                cleanup.append(f"record:{link.record_id}")

        for link in links:
            try:
                await self.store.delete_link(link.id)
                outcome.links.append(link)
            except ReconciliationError as e:
                logger.error("Failed to delete reconciliation link", link_id=link.id, error=e.message)
                cleanup.append(f"link:{link.id}")

        for entry_id in entry_ids:
            try:
                await self.store.set_bank_entry_reconciled(entry_id, False)
            except ReconciliationError as e:
                logger.error("Failed to clear reconciled flag", bank_entry_id=entry_id, error=e.message)
                cleanup.append(f"bank:{entry_id}")

        outcome.needs_manual_cleanup = cleanup
        if cleanup:
            outcome.status = OutcomeStatus.FAILED
            outcome.failure = PersistenceError.kind
            outcome.message = f"Undo incomplete: {len(cleanup)} item(s) need manual cleanup"
        else:
            outcome.message = f"Undid {len(links)} link(s), deleted {len(outcome.created_record_ids)} record(s)"

        self.audit_logger.log(AuditEntry(
            action=AuditAction.RECONCILIATION_UNDONE,
            bank_entry_ids=entry_ids,
            record_ids=[link.record_id for link in links if link.record_id],
            message=outcome.message,
            details={"deleted_records": outcome.created_record_ids, "needs_manual_cleanup": cleanup},
            success=not cleanup,
        ))
        return outcome

    async def _expand_groups(self, links: List[ReconciliationLink]) -> List[ReconciliationLink]:
        expanded: Dict[str, ReconciliationLink] = {link.id: link for link in links}
        for group_id in {link.group_id for link in links if link.group_id}:
            for link in await self.store.links_for_group(group_id):
                expanded.setdefault(link.id, link)
        return list(expanded.values())

    async def _delete_created_record(self, record_id: str) -> None:
        record = await self.store.get_record(record_id)
        if record is None:
            logger.warning("Created record already gone", record_id=record_id)
            return

        if record.kind in (LedgerKind.REPAYMENT, LedgerKind.DISBURSEMENT) and record.loan_id:
            loan = await self.store.get_loan(record.loan_id)
            if loan is not None:
                if record.kind == LedgerKind.REPAYMENT:
                    reverse_allocations(loan.schedule, record.allocations)
                    if record.closed_loan:
                        loan.status = LoanStatus.LIVE
                else:
                    loan.disbursed_cents -= record.amount_cents
                await self.store.save_loan(loan)

        elif record.kind in (LedgerKind.CAPITAL_IN, LedgerKind.CAPITAL_OUT) and record.investor_id:
            investor = await self.store.get_investor(record.investor_id)
            if investor is not None:
                if record.kind == LedgerKind.CAPITAL_IN:
                    investor.current_capital_balance_cents -= record.amount_cents
                    investor.total_capital_contributed_cents -= record.amount_cents
                else:
                    investor.current_capital_balance_cents += record.amount_cents
                await self.store.save_investor(investor)

        await self.store.delete_record(record_id)

    # Batch

    async def apply_batch(
        self,
        items: List[ApplyItem],
        progress_callback: Optional[ProgressCallback] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        auto: bool = False,
    ) -> BulkResult:
        """
        Apply items one after another.

        A target consumed by an earlier item in the batch makes later items
        that reference it skip. Cancellation is checked between items.
        """
        result = BulkResult()
        claimed: Set[str] = set()
        total = len(items)

        for index, item in enumerate(items):
            request = ReconciliationRequest.from_item(item)
            if should_cancel is not None and should_cancel():
                self._cancel_rest(result, [ReconciliationRequest.from_item(i).bank_entry_ids for i in items[index:]])
                break

            keys = request.claim_keys
            if keys & claimed:
                outcome = ReconciliationOutcome(
                    bank_entry_ids=request.bank_entry_ids,
                    status=OutcomeStatus.SKIPPED,
                    failure=StaleReferenceError.kind,
                    message="Target already used earlier in this batch",
                )
            else:
                outcome = await self.apply(item, auto=auto)
                if outcome.succeeded:
                    claimed.update(keys)

            result.add(outcome)
            if progress_callback is not None:
                progress_callback(index + 1, total)

        self._log_bulk("apply", result)
        return result

    async def undo_batch(
        self,
        bank_entry_ids: List[str],
        progress_callback: Optional[ProgressCallback] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> BulkResult:
        """Undo entries one after another with the same reporting as apply_batch."""
        result = BulkResult()
        total = len(bank_entry_ids)

        for index, entry_id in enumerate(bank_entry_ids):
            if should_cancel is not None and should_cancel():
                self._cancel_rest(result, [[i] for i in bank_entry_ids[index:]])
                break
            result.add(await self.undo(entry_id))
            if progress_callback is not None:
                progress_callback(index + 1, total)

        self._log_bulk("undo", result)
        return result

    @staticmethod
    def _cancel_rest(result: BulkResult, remaining: List[List[str]]) -> None:
        result.cancelled = True
        for entry_ids in remaining:
            result.add(ReconciliationOutcome(
                bank_entry_ids=entry_ids,
                status=OutcomeStatus.SKIPPED,
                message="cancelled",
            ))

    def _log_bulk(self, operation: str, result: BulkResult) -> None:
        summary = result.summary()
        self.audit_logger.log(AuditEntry(
            action=AuditAction.BULK_COMPLETED,
            bank_entry_ids=[i for o in result.outcomes if o.succeeded for i in o.bank_entry_ids],
            message=(
                f"Bulk {operation}: {result.succeeded} succeeded, "
                f"{result.failed} failed, {result.skipped} skipped"
            ),
            details=summary,
            success=result.failed == 0,
        ))
