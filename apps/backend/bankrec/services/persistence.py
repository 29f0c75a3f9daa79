"""Persistence synchronizer: line upserts, validation write-back and reversal cascades."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bankrec.logger import async_log_timing, get_logger, log_exception
from bankrec.models import (
    BankReconciliation,
    BatchStatus,
    DeclarationPayment,
    Invoice,
    InvoiceReconciliation,
    LineStatus,
    ReconciliationBatch,
    ReconciliationLine,
    Subscription,
    SubscriptionConsumption,
    SubscriptionPayment,
)
from bankrec.services.errors import (
    BatchAlreadyValidatedError,
    BatchNotFoundError,
    CascadeError,
    InvoiceAlreadyLinkedError,
    PeriodAlreadyReconciledError,
)
from bankrec.services.vat import split_for_rate_text
from bankrec.services.working_set import LineState, PartnerRef, Transaction, WorkingSet

logger = get_logger(__name__)


@dataclass(frozen=True)
class LineFailure:
    line_number: str
    step: str
    error: str


@dataclass
class SaveReport:
    saved: int = 0
    failures: list[LineFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class ValidationReport:
    batch_number: str
    validated: bool = False
    processed: int = 0
    invoices_linked: int = 0
    payments_created: int = 0
    failures: list[LineFailure] = field(default_factory=list)


# --- row <-> state ---------------------------------------------------------


def line_state_from_row(row: ReconciliationLine) -> LineState:
    partner = None
    if row.partner_id is not None and row.partner_category is not None:
        partner = PartnerRef(id=row.partner_id, name=row.partner_name or "", category=row.partner_category)
    return LineState(
        transaction=Transaction(
            line_number=row.line_number,
            date=row.transaction_date,
            label=row.label,
            debit=row.debit,
            credit=row.credit,
            amount=row.amount,
        ),
        status=row.status,
        invoice_ids=tuple(UUID(value) for value in row.invoice_ids or []),
        suggested_invoice_id=row.suggested_invoice_id,
        subscription_id=row.subscription_id,
        declaration_id=row.declaration_id,
        partner=partner,
        score=row.score or 0,
        notes=row.notes,
    )


def apply_state_to_row(row: ReconciliationLine, line: LineState) -> None:
    row.status = line.status
    row.invoice_ids = [str(invoice_id) for invoice_id in line.invoice_ids]
    row.suggested_invoice_id = line.suggested_invoice_id
    row.subscription_id = line.subscription_id
    row.declaration_id = line.declaration_id
    row.partner_id = line.partner.id if line.partner else None
    row.partner_name = line.partner.name if line.partner else None
    row.partner_category = line.partner.category if line.partner else None
    row.score = line.score
    row.notes = line.notes


async def get_batch(db: AsyncSession, batch_id: UUID, *, with_lines: bool = False) -> ReconciliationBatch:
    query = select(ReconciliationBatch).where(ReconciliationBatch.id == batch_id)
    if with_lines:
        query = query.options(selectinload(ReconciliationBatch.lines)).execution_options(populate_existing=True)
    result = await db.execute(query)
    batch = result.scalar_one_or_none()
    if batch is None:
        raise BatchNotFoundError(batch_id)
    return batch


async def _load_line_rows(db: AsyncSession, batch_id: UUID) -> dict[str, ReconciliationLine]:
    result = await db.execute(
        select(ReconciliationLine)
        .where(ReconciliationLine.batch_id == batch_id)
        .order_by(ReconciliationLine.position)
    )
    return {row.line_number: row for row in result.scalars()}


async def _subscription_vat_rates(db: AsyncSession, subscription_ids: Iterable[UUID]) -> dict[UUID, str | None]:
    ids = set(subscription_ids)
    if not ids:
        return {}
    result = await db.execute(select(Subscription.id, Subscription.vat_rate).where(Subscription.id.in_(ids)))
    return {row.id: row.vat_rate for row in result}


def _apply_vat_split(row: ReconciliationLine, vat_rate: str | None) -> None:
    split = split_for_rate_text(row.amount, vat_rate) if row.subscription_id else None
    row.total_ht = split.total_ht if split else None
    row.total_tva = split.total_tva if split else None
    row.total_ttc = split.total_ttc if split else None


def refresh_counts(batch: ReconciliationBatch, lines: Iterable[LineState | ReconciliationLine]) -> None:
    statuses = [line.status for line in lines]
    batch.total_lines = len(statuses)
    batch.matched_lines = sum(1 for status in statuses if status == LineStatus.MATCHED)


# --- auto-save upsert ------------------------------------------------------


async def save_working_set(
    db: AsyncSession,
    batch: ReconciliationBatch,
    working_set: WorkingSet,
    *,
    line_numbers: Iterable[str] | None = None,
    allow_validated: bool = False,
) -> SaveReport:
    """Upsert every line's current state (or only ``line_numbers``).

    Each line is written inside its own SAVEPOINT; a failing line is reported
    and the others are kept.
    """
    if batch.status == BatchStatus.VALIDATED and not allow_validated:
        raise BatchAlreadyValidatedError(batch.number)

    wanted = set(line_numbers) if line_numbers is not None else None
    lines = [line for line in working_set.lines if wanted is None or line.line_number in wanted]
    report = SaveReport()

    async with async_log_timing("save_working_set", logger, batch_number=batch.number, lines=len(lines)):
        rows = await _load_line_rows(db, batch.id)
        vat_rates = await _subscription_vat_rates(db, (ln.subscription_id for ln in lines if ln.subscription_id))
        for position, line in enumerate(working_set.lines):
            if wanted is not None and line.line_number not in wanted:
                continue
            try:
                async with db.begin_nested():
                    row = rows.get(line.line_number)
                    if row is None:
                        row = _new_line_row(batch.id, position, line.transaction)
                        db.add(row)
                        rows[line.line_number] = row
                    apply_state_to_row(row, line)
                    _apply_vat_split(row, vat_rates.get(line.subscription_id) if line.subscription_id else None)
                    await db.flush()
                report.saved += 1
            except SQLAlchemyError as e:
                logger.error(
                    "Failed to save reconciliation line",
                    batch_number=batch.number,
                    line_number=line.line_number,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                report.failures.append(LineFailure(line.line_number, "line", str(e)))

        refresh_counts(batch, working_set.lines)
        await db.flush()

    return report


def _new_line_row(batch_id: UUID, position: int, transaction: Transaction) -> ReconciliationLine:
    return ReconciliationLine(
        batch_id=batch_id,
        line_number=transaction.line_number,
        position=position,
        transaction_date=transaction.date,
        label=transaction.label,
        debit=transaction.debit,
        credit=transaction.credit,
        amount=transaction.amount,
        status=LineStatus.UNMATCHED,
        invoice_ids=[],
    )


# --- validation ------------------------------------------------------------


async def find_overlapping_validated_batch(
    db: AsyncSession,
    date_start: date,
    date_end: date,
    *,
    exclude_batch_id: UUID | None = None,
) -> ReconciliationBatch | None:
    """Return a VALIDATED batch covering any day of [date_start, date_end]."""
    query = (
        select(ReconciliationBatch)
        .where(ReconciliationBatch.status == BatchStatus.VALIDATED)
        .where(ReconciliationBatch.date_start <= date_end)
        .where(ReconciliationBatch.date_end >= date_start)
        .order_by(ReconciliationBatch.date_start)
        .limit(1)
    )
    if exclude_batch_id is not None:
        query = query.where(ReconciliationBatch.id != exclude_batch_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def _ensure_record(db: AsyncSession, row: ReconciliationLine) -> BankReconciliation:
    result = await db.execute(select(BankReconciliation).where(BankReconciliation.line_number == row.line_number))
    record = result.scalar_one_or_none()
    if record is None:
        record = BankReconciliation(line_number=row.line_number)
        db.add(record)
    invoice_ids = row.invoice_ids or []
    record.transaction_date = row.transaction_date
    record.transaction_label = row.label
    record.transaction_debit = row.debit
    record.transaction_credit = row.credit
    record.transaction_amount = row.amount
    record.invoice_id = UUID(invoice_ids[0]) if invoice_ids else None
    record.subscription_id = row.subscription_id
    record.declaration_id = row.declaration_id
    record.notes = row.notes
    await db.flush()
    return record


async def _write_back_invoices(
    db: AsyncSession,
    batch: ReconciliationBatch,
    row: ReconciliationLine,
    record: BankReconciliation,
    now: datetime,
) -> int:
    invoice_ids = [UUID(value) for value in row.invoice_ids or []]
    if not invoice_ids:
        return 0
    # An invoice settles exactly one bank line across all batches
    result = await db.execute(
        select(Invoice.id, Invoice.reconciliation_line_number)
        .where(Invoice.id.in_(invoice_ids))
        .where(Invoice.reconciliation_line_number.is_not(None))
        .where(Invoice.reconciliation_line_number != row.line_number)
    )
    taken = result.first()
    if taken is not None:
        raise InvoiceAlreadyLinkedError(taken.id, taken.reconciliation_line_number)
    await db.execute(
        update(Invoice)
        .where(Invoice.id.in_(invoice_ids))
        .values(
            reconciliation_number=batch.number,
            reconciliation_line_number=row.line_number,
            reconciled_at=now,
        )
    )
    result = await db.execute(
        select(InvoiceReconciliation.invoice_id).where(InvoiceReconciliation.reconciliation_id == record.id)
    )
    existing = set(result.scalars())
    for invoice_id in invoice_ids:
        if invoice_id not in existing:
            db.add(InvoiceReconciliation(invoice_id=invoice_id, reconciliation_id=record.id, created_at=now))
    await db.flush()
    return len(invoice_ids)


async def _recreate_payment(db: AsyncSession, row: ReconciliationLine, record: BankReconciliation) -> int:
    """Purge then recreate the single payment row of a recurring line."""
    await db.execute(delete(SubscriptionPayment).where(SubscriptionPayment.reconciliation_id == record.id))
    await db.execute(delete(DeclarationPayment).where(DeclarationPayment.reconciliation_id == record.id))

    if row.subscription_id is not None:
        # A credit on a subscription is a refund
        amount = -abs(row.amount) if row.credit > 0 else abs(row.amount)
        db.add(
            SubscriptionPayment(
                subscription_id=row.subscription_id,
                reconciliation_id=record.id,
                payment_date=row.transaction_date,
                amount=amount,
                notes=row.notes,
            )
        )
    elif row.declaration_id is not None:
        db.add(
            DeclarationPayment(
                declaration_id=row.declaration_id,
                reconciliation_id=record.id,
                payment_date=row.transaction_date,
                amount=abs(row.amount),
                notes=row.notes,
            )
        )
    else:
        return 0
    await db.flush()
    return 1


async def validate_batch(
    db: AsyncSession,
    batch_id: UUID,
    *,
    now: datetime | None = None,
) -> ValidationReport:
    """Write the batch's links back to invoices and payments, then mark it VALIDATED.

    Fails before any write when another VALIDATED batch overlaps the period.
    Lines are processed in their own SAVEPOINT; when any line fails the batch
    stays IN_PROGRESS and validation can be retried.
    """
    batch = await get_batch(db, batch_id, with_lines=True)
    if batch.status == BatchStatus.VALIDATED:
        raise BatchAlreadyValidatedError(batch.number)

    conflict = await find_overlapping_validated_batch(
        db, batch.date_start, batch.date_end, exclude_batch_id=batch.id
    )
    if conflict is not None:
        raise PeriodAlreadyReconciledError(conflict.number, conflict.date_start, conflict.date_end)

    now = now or datetime.now(UTC)
    report = ValidationReport(batch_number=batch.number)

    async with async_log_timing("validate_batch", logger, batch_number=batch.number, lines=len(batch.lines)):
        for row in batch.lines:
            step = "record"
            try:
                async with db.begin_nested():
                    record = await _ensure_record(db, row)
                    if row.status == LineStatus.MATCHED:
                        step = "invoice-link"
                        linked = await _write_back_invoices(db, batch, row, record, now)
                        step = "payment"
                        created = await _recreate_payment(db, row, record)
                    else:
                        linked = created = 0
                report.invoices_linked += linked
                report.payments_created += created
                report.processed += 1
            except (SQLAlchemyError, InvoiceAlreadyLinkedError) as e:
                logger.error(
                    "Failed to validate reconciliation line",
                    batch_number=batch.number,
                    line_number=row.line_number,
                    step=step,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                report.failures.append(LineFailure(row.line_number, step, str(e)))

        refresh_counts(batch, batch.lines)
        if not report.failures:
            batch.status = BatchStatus.VALIDATED
            batch.validated_at = now
            report.validated = True
        await db.flush()

    logger.info(
        "Reconciliation batch validation finished",
        batch_number=batch.number,
        validated=report.validated,
        processed=report.processed,
        failures=len(report.failures),
        invoices_linked=report.invoices_linked,
        payments_created=report.payments_created,
    )
    return report


# --- reversal cascades -----------------------------------------------------


@asynccontextmanager
async def _cascade_step(step: str, line_number: str | None) -> AsyncIterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        log_exception(logger, e, "Reconciliation cascade step failed", step=step, line_number=line_number)
        raise CascadeError(step, line_number, e) from e


async def unlink_invoices(db: AsyncSession, line_number: str) -> None:
    await db.execute(
        update(Invoice)
        .where(Invoice.reconciliation_line_number == line_number)
        .values(reconciliation_number=None, reconciliation_line_number=None, reconciled_at=None)
    )


async def delete_consumptions(db: AsyncSession, record_id: UUID) -> None:
    await db.execute(delete(SubscriptionConsumption).where(SubscriptionConsumption.reconciliation_id == record_id))


async def delete_payments(db: AsyncSession, record_id: UUID) -> None:
    await db.execute(delete(SubscriptionPayment).where(SubscriptionPayment.reconciliation_id == record_id))
    await db.execute(delete(DeclarationPayment).where(DeclarationPayment.reconciliation_id == record_id))


async def delete_join_rows(db: AsyncSession, record_id: UUID) -> None:
    await db.execute(delete(InvoiceReconciliation).where(InvoiceReconciliation.reconciliation_id == record_id))


async def delete_record(db: AsyncSession, record_id: UUID) -> None:
    await db.execute(delete(BankReconciliation).where(BankReconciliation.id == record_id))


async def unlink_line(db: AsyncSession, line_number: str) -> bool:
    """Reverse every downstream write of one line, children before parents.

    Each step is an idempotent update or delete keyed by id, so a failed
    cascade can simply be retried. Returns True if a reconciliation record
    existed.
    """
    async with _cascade_step("invoice-unlink", line_number):
        await unlink_invoices(db, line_number)

    result = await db.execute(select(BankReconciliation.id).where(BankReconciliation.line_number == line_number))
    record_id = result.scalar_one_or_none()
    if record_id is None:
        await db.flush()
        return False

    async with _cascade_step("consumption-delete", line_number):
        await delete_consumptions(db, record_id)
    async with _cascade_step("payment-delete", line_number):
        await delete_payments(db, record_id)
    async with _cascade_step("join-delete", line_number):
        await delete_join_rows(db, record_id)
    async with _cascade_step("record-delete", line_number):
        await delete_record(db, record_id)
    await db.flush()
    return True


async def delete_batch(db: AsyncSession, batch_id: UUID) -> int:
    """Reverse every line of a batch, then delete its lines and the batch itself."""
    batch = await get_batch(db, batch_id, with_lines=True)
    batch_number = batch.number
    line_numbers = [row.line_number for row in batch.lines]

    async with async_log_timing("delete_batch", logger, batch_number=batch_number, lines=len(line_numbers)):
        for line_number in line_numbers:
            await unlink_line(db, line_number)
        async with _cascade_step("line", None):
            await db.execute(delete(ReconciliationLine).where(ReconciliationLine.batch_id == batch_id))
        async with _cascade_step("batch-delete", None):
            await db.execute(delete(ReconciliationBatch).where(ReconciliationBatch.id == batch_id))
        await db.flush()

    logger.info("Reconciliation batch deleted", batch_number=batch_number, lines=len(line_numbers))
    return len(line_numbers)
